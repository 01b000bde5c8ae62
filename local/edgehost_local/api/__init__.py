"""API routes for edgehost local."""
from .routes import router, as_deferred_websocket, to_native_response, DeferredWebSocketResponse

__all__ = ["router", "as_deferred_websocket", "to_native_response", "DeferredWebSocketResponse"]
