"""Middleware module"""

from tracking_service.middleware.auth import authorize, organization_key
from tracking_service.middleware.error_handler import (
    error_handler_middleware,
    tracking_error_handler,
    validation_error_handler,
)

__all__ = [
    "authorize",
    "organization_key",
    "error_handler_middleware",
    "tracking_error_handler",
    "validation_error_handler",
]
