import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.config import settings, setup_logging
from app.core.database import Base, SessionLocal, engine
from app.core.exceptions import LibraryError
from app.core.session import SessionStore
from app.api import routes
from app.tasks.scheduler import TaskScheduler, schedule_configured_tasks

setup_logging(settings.log_level)
logger = logging.getLogger("library")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Creating database tables (if not present)...")
    Base.metadata.create_all(bind=engine)
    scheduler = TaskScheduler()
    app.state.scheduler = scheduler
    schedule_configured_tasks(scheduler, settings, SessionLocal)
    try:
        yield
    finally:
        scheduler.cancel_all()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.state.sessions = SessionStore()
app.include_router(routes.router)


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.get("/health")
def health():
    return {"status": "ok"}
