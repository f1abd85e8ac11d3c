"""
InboxHub application entrypoint.

Run with ``uvicorn inboxhub.main:app``.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from inboxhub.api.routes import ROUTERS
from inboxhub.core.config import settings
from inboxhub.core.errors import register_exception_handlers
from inboxhub.models.database import init_db
from inboxhub.services.notifier import create_notifier

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    notifier = create_notifier(settings)
    await notifier.start()
    app.state.notifier = notifier
    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} started ({settings.NOTIFIER_BACKEND} notifier)")
    try:
        yield
    finally:
        await notifier.stop()
        logger.info(f"{settings.APP_NAME} stopped")


def create_app() -> FastAPI:
    app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    for router in ROUTERS:
        app.include_router(router, prefix="/api")
    return app


app = create_app()
