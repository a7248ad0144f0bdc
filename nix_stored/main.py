import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from nix_stored import __version__
from nix_stored.app.errors import (
    AuthError,
    ConfigError,
    InvalidObjectKey,
    ObjectNotFound,
    StoreIOError,
    TransferCancelled,
)
from nix_stored.app.interceptors import default_chain
from nix_stored.app.services.auth_policy import AuthenticationPolicy
from nix_stored.app.services.limiter import TransferLimiter
from nix_stored.app.services.object_store import ObjectStore
from nix_stored.config import Settings, settings_from_env
from nix_stored.logger_config import setup_logger
from nix_stored.routes.cache_routes import register_routes

logger = logging.getLogger(__name__)

AUTH_CHALLENGE = 'Basic realm="nix-stored"'


@asynccontextmanager
async def lifespan(app: FastAPI):
    await app.state.object_store.initialize()
    yield


async def _auth_error(request: Request, exc: AuthError):
    return PlainTextResponse(str(exc), status_code=401, headers={"WWW-Authenticate": AUTH_CHALLENGE})


async def _invalid_key(request: Request, exc: InvalidObjectKey):
    return PlainTextResponse(str(exc), status_code=400)


async def _not_found(request: Request, exc: ObjectNotFound):
    logger.debug(f"Not found: {exc.path}")
    return PlainTextResponse("Not Found", status_code=404)


async def _store_io_error(request: Request, exc: StoreIOError):
    # Already logged with path and cause by the store
    return PlainTextResponse("Internal Server Error", status_code=500)


async def _transfer_cancelled(request: Request, exc: TransferCancelled):
    return PlainTextResponse("Service Unavailable", status_code=503)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the cache application from resolved settings."""
    settings = settings or Settings()

    app = FastAPI(title="nix-stored", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.object_store = ObjectStore(settings.store_path)
    app.state.limiter = TransferLimiter(settings.max_transfers)
    app.state.auth_policy = AuthenticationPolicy(settings.user_read, settings.user_write)

    app.add_exception_handler(AuthError, _auth_error)
    app.add_exception_handler(InvalidObjectKey, _invalid_key)
    app.add_exception_handler(ObjectNotFound, _not_found)
    app.add_exception_handler(StoreIOError, _store_io_error)
    app.add_exception_handler(TransferCancelled, _transfer_cancelled)

    register_routes(app, default_chain(app.state.auth_policy))
    return app


def main() -> int:
    # Verbose until the configured level is known
    setup_logger(logging.DEBUG)

    try:
        settings = settings_from_env()
    except ConfigError as e:
        logger.error(f"Couldn't load settings: {e}")
        return 1
    logger.info(f"Loaded settings: {settings}")

    setup_logger(settings.log_level, settings.log_file)

    app = create_app(settings)
    logger.info(f"Starting nix-stored on {settings.listen_interface}")
    logger.info(f"Store directory: {settings.store_path}")
    logger.info(f"Maximum concurrent transfers: {settings.max_transfers}")
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
    return 0


if __name__ == "__main__":
    sys.exit(main())
