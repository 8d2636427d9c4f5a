"""FastAPI middleware for error handling."""

from .error_handlers import (
    agent_unavailable_handler,
    http_exception_handler,
    internal_exception_handler,
    register_error_handlers,
    resume_token_exception_handler,
    validation_exception_handler,
)

__all__ = [
    "register_error_handlers",
    "validation_exception_handler",
    "http_exception_handler",
    "resume_token_exception_handler",
    "agent_unavailable_handler",
    "internal_exception_handler",
]
