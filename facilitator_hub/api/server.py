"""
Facilitator Hub API Server
FastAPI front for authorization building, settlement and facilitator management
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
import structlog

from facilitator_hub import __version__
from facilitator_hub.api.dependencies import limiter
from facilitator_hub.api.routers import facilitators, general, settlement
from facilitator_hub.config import HubConfig, configure_logging, get_hub_config
from facilitator_hub.errors import (
    ChainUnavailable,
    ConfigurationError,
    ConfirmationTimeout,
    DecryptionFailed,
    FacilitatorNotFound,
    HubError,
    SettlementFailed,
    SubmissionUnknown,
    Unauthorized,
    UnknownNetwork,
    UserDeclined,
    ValidationError,
)
from facilitator_hub.hub import Hub, build_hub

logger = structlog.get_logger()

# Most specific first
ERROR_STATUS_CODES = [
    (FacilitatorNotFound, 404),
    (Unauthorized, 403),
    (UnknownNetwork, 400),
    (ValidationError, 400),
    (UserDeclined, 400),
    (SettlementFailed, 400),
    (DecryptionFailed, 500),
    (ConfigurationError, 500),
    (ChainUnavailable, 502),
    (ConfirmationTimeout, 504),
    (SubmissionUnknown, 504),
]


def status_code_for(error: HubError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


async def hub_error_handler(request: Request, exc: HubError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error("api_request_failed", path=request.url.path, code=exc.code, error=exc.message)
    else:
        logger.warning("api_request_rejected", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app(config: Optional[HubConfig] = None, hub: Optional[Hub] = None) -> FastAPI:
    """
    Build the FastAPI app. Components are built in the lifespan unless a
    prebuilt hub is given.
    """
    config = config or (hub.config if hub else get_hub_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle manager for the FastAPI app"""
        if getattr(app.state, "hub", None) is None:
            app.state.hub = build_hub(config)
        logger.info(
            "hub_api_starting",
            host=config.api_host,
            port=config.api_port,
            networks=app.state.hub.registry.network_ids(),
        )
        yield
        await app.state.hub.close()
        logger.info("hub_api_shutting_down")

    app = FastAPI(
        title="Facilitator Hub",
        description="Gasless x402 settlement of ERC-3009 authorizations",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.hub = hub
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(HubError, hub_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(general.router)
    app.include_router(facilitators.router)
    app.include_router(settlement.router)
    return app


def main():
    """Run the API with uvicorn"""
    import uvicorn

    config = get_hub_config()
    configure_logging(config)
    uvicorn.run(create_app(config), host=config.api_host, port=config.api_port)


if __name__ == "__main__":
    main()
