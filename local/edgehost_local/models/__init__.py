"""Data models for edgehost local."""
from .bindings import (
    Binding,
    PlainValueBinding,
    SecretBinding,
    KVNamespaceBinding,
    DurableObjectNamespaceBinding,
    ResolvedBinding,
    ScriptConfig,
    Credential,
    ProfileConfig,
    ProjectConfig,
    RequestMetadata,
)
from .wire import WireRequest, WireResponse, encode_body, decode_body

__all__ = [
    "Binding",
    "PlainValueBinding",
    "SecretBinding",
    "KVNamespaceBinding",
    "DurableObjectNamespaceBinding",
    "ResolvedBinding",
    "ScriptConfig",
    "Credential",
    "ProfileConfig",
    "ProjectConfig",
    "RequestMetadata",
    "WireRequest",
    "WireResponse",
    "encode_body",
    "decode_body",
]
