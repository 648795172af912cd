"""Runtime configuration."""

from payrecon_api.config.settings import Settings

__all__ = ["Settings"]
