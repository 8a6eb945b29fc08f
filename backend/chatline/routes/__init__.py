from . import health, prometheus, websocket

__all__ = ["health", "prometheus", "websocket"]
