"""Small maintenance utilities: create tables, seed sample data, assess fines once."""
import argparse
import logging

from app.core.config import settings, setup_logging
from app.core.database import Base, SessionLocal, engine
from app.core.exceptions import ConfigurationError
from app.models.models import Book, Role, User
from app.tasks.fines import UpdateFineTask

logger = logging.getLogger("library.cli")


def seed(db) -> None:
    # quick idempotent seed
    if db.query(User).count() == 0:
        db.add_all([
            User(name='Alice', email='alice@example.com', role=Role.USER),
            User(name='Bob', email='bob@example.com', role=Role.LIBRARIAN),
        ])
    if db.query(Book).count() == 0:
        db.add_all([
            Book(title='Data Engineering with Python', author='J. Reader', isbn='978-1111111111',
                 in_stock=3, keep_period=14),
            Book(title='Designing Data-Intensive Applications', author='Martin Kleppmann',
                 isbn='978-0980000000', in_stock=2, keep_period=7),
        ])
    db.commit()
    logger.info('Seeded sample data')


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Library booking utilities')
    parser.add_argument('--initdb', action='store_true', help='Create tables')
    parser.add_argument('--seed', action='store_true', help='Seed sample data')
    parser.add_argument('--run-fines', action='store_true', help='Assess late-return fines once')
    args = parser.parse_args(argv)

    setup_logging(settings.log_level)
    Base.metadata.create_all(bind=engine)
    if args.seed:
        db = SessionLocal()
        try:
            seed(db)
        finally:
            db.close()
    if args.run_fines:
        task = UpdateFineTask(SessionLocal)
        try:
            task.configure(settings)
        except ConfigurationError as exc:
            logger.critical(f"Fines not assessed: {exc}")
            return 1
        task.run()
    print('Done')
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
