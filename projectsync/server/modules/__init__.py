"""FastAPI router package for the relay's websocket surface."""

__all__ = []
