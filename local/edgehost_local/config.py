"""Configuration management for edgehost local."""
import json
from pathlib import Path
from typing import Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError
from .models import Credential, ProjectConfig, ScriptConfig

# Default paths
DEFAULT_CONFIG_FILE = ".edgehost.json"
DEFAULT_STORAGE_DIR = Path.home() / ".edgehost" / "storage"


class Settings(BaseSettings):
    """Process settings, read from EDGEHOST_* environment variables or .env."""

    model_config = SettingsConfigDict(env_prefix="EDGEHOST_", env_file=".env", extra="ignore")

    config_path: Path = Path(DEFAULT_CONFIG_FILE)
    host: str = "127.0.0.1"
    log_level: str = "info"
    storage_dir: Path = DEFAULT_STORAGE_DIR
    external_ip: Optional[str] = None
    account_id: Optional[str] = None
    api_token: Optional[str] = Field(None, repr=False)

    @property
    def kv_db_path(self) -> Path:
        return self.storage_dir / "kv.db"


def load_config(config_path: Path) -> ProjectConfig:
    """Load the project file. Script paths are resolved relative to it."""
    config_path = Path(config_path)
    try:
        with open(config_path, "r") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {config_path}") from e
    except (OSError, ValueError) as e:
        raise ConfigError(f"Unable to read config file {config_path}: {e}") from e

    try:
        config = ProjectConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config file {config_path}:\n{e}") from e

    base_dir = config_path.resolve().parent
    for name, script in config.scripts.items():
        script.name = name
        if not script.path.is_absolute():
            script.path = (base_dir / script.path).resolve()
    return config


def get_script(config: ProjectConfig, name: str) -> ScriptConfig:
    script = config.scripts.get(name)
    if script is None:
        available = ", ".join(sorted(config.scripts)) or "none"
        raise ConfigError(f"Unknown script '{name}' (available: {available})")
    return script


def resolve_credential(config: ProjectConfig, settings: Settings) -> Optional[Credential]:
    """Pick the account credential used for remote KV namespaces.

    Settings win, then the default profile, then the only profile. Without
    one, KV namespaces are stored locally.
    """
    if settings.account_id or settings.api_token:
        if not (settings.account_id and settings.api_token):
            raise ConfigError("EDGEHOST_ACCOUNT_ID and EDGEHOST_API_TOKEN must be set together")
        return Credential(account_id=settings.account_id, api_token=settings.api_token)

    profiles = list(config.profiles.values())
    defaults = [p for p in profiles if p.default]
    if len(defaults) > 1:
        raise ConfigError("More than one profile is marked as default")
    profile = defaults[0] if defaults else (profiles[0] if len(profiles) == 1 else None)
    if profile is None:
        return None
    return Credential(account_id=profile.account_id, api_token=profile.api_token)
