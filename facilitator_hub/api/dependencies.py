from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address
import structlog

from facilitator_hub.hub import Hub

logger = structlog.get_logger()


def get_client_key(request: Request) -> str:
    """Get client identifier for rate limiting - uses IP address"""
    return get_remote_address(request)


limiter = Limiter(key_func=get_client_key)


def get_hub(request: Request) -> Hub:
    """Components built at startup and stored on app.state"""
    return request.app.state.hub
