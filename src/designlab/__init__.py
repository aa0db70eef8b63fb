"""Design Lab - versioned design projects with asynchronous AI generation."""

__version__ = "0.1.0"

from designlab.core.config import DesignLabConfig, config

__all__ = [
    "DesignLabConfig",
    "config",
]
