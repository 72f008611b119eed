# Re-export shared modules for production package usage
from .config import settings, Settings
from .logger import get_logger

__all__ = [
    "settings",
    "Settings",
    "get_logger",
]
