"""Script, binding and credential models."""
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class _ConfigModel(BaseModel):
    """Accepts the platform's camelCase keys as well as the Python field names."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class PlainValueBinding(_ConfigModel):
    value: str


class SecretBinding(_ConfigModel):
    secret: str


class KVNamespaceBinding(_ConfigModel):
    kv_namespace: str = Field(alias="kvNamespace")


class DurableObjectNamespaceBinding(_ConfigModel):
    do_namespace: str = Field(alias="doNamespace")
    class_name: str = Field(alias="className")


Binding = Union[PlainValueBinding, SecretBinding, KVNamespaceBinding, DurableObjectNamespaceBinding]

BindingKind = Literal["value", "secret", "kv", "do"]


@dataclass(frozen=True)
class ResolvedBinding:
    """A binding resolved for one run.

    ``value`` is the literal for ``value``/``secret`` bindings, the namespace
    name for ``kv`` bindings and the declaring model for ``do`` bindings.
    """

    name: str
    kind: BindingKind
    value: Any

    def to_wire(self) -> Dict[str, Any]:
        if self.kind == "do":
            return {
                "name": self.name,
                "kind": self.kind,
                "value": self.value.model_dump(by_alias=True),
            }
        return {"name": self.name, "kind": self.kind, "value": self.value}

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "ResolvedBinding":
        value = data["value"]
        if data["kind"] == "do":
            value = DurableObjectNamespaceBinding.model_validate(value)
        return cls(name=data["name"], kind=data["kind"], value=value)


class ScriptConfig(_ConfigModel):
    """A script entry from the project configuration."""

    name: str = ""
    path: Path
    kind: Literal["module", "script"] = "module"
    local_port: int = Field(8080, alias="localPort")
    local_hostname: Optional[str] = Field(None, alias="localHostname")
    local_in_process: bool = Field(False, alias="localInProcess")
    bindings: Dict[str, Binding] = Field(default_factory=dict)


class Credential(_ConfigModel):
    account_id: str = Field(alias="accountId")
    api_token: str = Field(alias="apiToken")


class ProfileConfig(Credential):
    default: bool = False


class ProjectConfig(_ConfigModel):
    scripts: Dict[str, ScriptConfig] = Field(default_factory=dict)
    profiles: Dict[str, ProfileConfig] = Field(default_factory=dict)


class RequestMetadata(BaseModel):
    """Per-request facts normally injected by the edge platform."""

    cf_connecting_ip: str
    hostname: Optional[str] = None
    http_protocol: str = "HTTP/1.1"
