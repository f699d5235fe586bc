"""TaskGate REST API."""

from taskgate.api.router import router

__all__ = ["router"]
