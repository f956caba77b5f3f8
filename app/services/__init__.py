from app.services.cache import summary_cache
from app.services.logging import logging_service

# For convenience, export all services
__all__ = [
    "summary_cache",
    "logging_service",
]
