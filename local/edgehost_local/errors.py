"""Domain errors for edgehost local."""


class EdgeHostError(Exception):
    """Base exception for edgehost errors"""
    pass


class ConfigError(EdgeHostError):
    """Raised when the project configuration can't be loaded or is invalid"""
    pass


class ClientProtocolError(EdgeHostError):
    """Raised when a request or a script response breaks the HTTP/WebSocket protocol"""
    pass


class ExecutorInitError(EdgeHostError):
    """Raised when a script fails to compile or load"""
    pass


class ExecutorRuntimeError(EdgeHostError):
    """Raised when a script throws while handling a request"""
    pass


class ExecutorNotReadyError(EdgeHostError):
    """Raised when a request arrives before any script run has started"""
    pass


class BindingResolutionError(EdgeHostError):
    """Raised when a binding can't be resolved to a concrete capability"""
    pass


class KVError(EdgeHostError):
    """Raised when a KV backend rejects an operation"""
    pass


class SandboxError(EdgeHostError):
    """Raised when the sandbox process or its control channel fails"""
    pass


class TransportError(EdgeHostError):
    """Raised when a reply can't be delivered to the client"""
    pass


_REMOTE_ERRORS = {
    cls.__name__: cls
    for cls in (
        ClientProtocolError,
        ExecutorInitError,
        ExecutorRuntimeError,
        ExecutorNotReadyError,
        BindingResolutionError,
        KVError,
    )
}


def error_from_remote(error_type: str, message: str) -> EdgeHostError:
    """Rebuild an error raised on the other side of the sandbox channel."""
    cls = _REMOTE_ERRORS.get(error_type)
    if cls is None:
        return SandboxError(f"{error_type}: {message}")
    return cls(message)
