import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api.v1.router import api_router
from app.config import settings
from app.core.exceptions import BusinessError
from app.core.i18n import get_message
from app.core.middleware import LoggingMiddleware, RequestIDMiddleware
from app.core.response import error
from app.db import Database, create_database

logger = logging.getLogger("app")


def create_app(database: Optional[Database] = None) -> FastAPI:
    """Build the API.

    ``database`` is used as-is when given (tests); otherwise one is created
    at startup and disposed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logging.getLogger("app").setLevel(settings.LOG_LEVEL.upper())
        owned = database is None
        app.state.database = database or create_database()
        logger.info("Scribebuddy API started (env=%s)", settings.APP_ENV)
        try:
            yield
        finally:
            if owned:
                await app.state.database.dispose()

    app = FastAPI(title="Scribebuddy API", version="0.1.0", lifespan=lifespan)
    if database is not None:
        app.state.database = database
    app.include_router(api_router)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(LoggingMiddleware)

    @app.exception_handler(BusinessError)
    async def business_error_handler(
        request: Request, exc: BusinessError
    ) -> JSONResponse:
        message = get_message(exc.code, **exc.kwargs)
        if exc.status_code >= 500:
            logger.warning("Request failed with %s: %s", exc.code.name, message)
        return error(
            exc.code.value,
            message,
            data={"retryable": True} if exc.retryable else None,
            status_code=exc.status_code,
        )

    return app


app = create_app()
