"""HTTP surface of the capture orchestrator."""

from .main import configure_logging, create_app

__all__ = ["configure_logging", "create_app"]
