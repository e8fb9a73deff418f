"""Core utilities and configuration for the promotion engine"""
from core.config import settings
from core.exceptions import ConfigurationError, PromotionEngineError, ValidationError
from core.logging import get_logger

__all__ = [
    "settings",
    "get_logger",
    "PromotionEngineError",
    "ValidationError",
    "ConfigurationError",
]
