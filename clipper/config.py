"""
Configuration management for clipper.

The configuration is stored as a TOML file in the store directory. It
holds annotation defaults and the audit mirror endpoint. Settings that
the user changes at runtime (API key, mock/disabled switches) live in the
key/value store and override the file; see ``AnnotationConfig.from_store``.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w


CONFIG_FILENAME = "clipper.toml"
CONFIG_VERSION = 1

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_TIMEOUT = 12.0

# Storage keys for runtime settings
SETTINGS_KEYS = ("openaiKey", "useMockIfFail", "aiDisabled")


def default_store_path() -> Path:
    """Store location: CLIPPER_STORE_PATH, else ~/.clipper."""
    env = os.environ.get("CLIPPER_STORE_PATH")
    return Path(env) if env else Path.home() / ".clipper"


def env_api_key() -> str:
    return (
        os.environ.get("CLIPPER_OPENAI_API_KEY")
        or os.environ.get("OPENAI_API_KEY")
        or ""
    )


@dataclass
class AnnotationSettings:
    """File-level defaults for the annotation resolver."""
    model: str = DEFAULT_MODEL
    base_url: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT
    ai_disabled: bool = False
    use_mock_if_fail: bool = True


@dataclass
class AuditSettings:
    """Remote audit mirror. Disabled when project_id is empty."""
    project_id: str = ""
    collection: str = "clips"
    timeout: float = 10.0


@dataclass
class ClipperConfig:
    """Complete clipper configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    annotation: AnnotationSettings = field(default_factory=AnnotationSettings)
    audit: AuditSettings = field(default_factory=AuditSettings)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def database_path(self) -> Path:
        return self.path / "clipper.db"

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


@dataclass(frozen=True)
class AnnotationConfig:
    """The per-call configuration the resolver sees."""
    ai_disabled: bool = False
    use_mock_if_fail: bool = True
    api_key: str = ""

    @classmethod
    def from_store(cls, values: dict[str, Any], defaults: Optional[AnnotationSettings] = None) -> "AnnotationConfig":
        """Build from stored settings, falling back to file defaults and env."""
        defaults = defaults or AnnotationSettings()
        api_key = values.get("openaiKey")
        ai_disabled = values.get("aiDisabled")
        use_mock = values.get("useMockIfFail")
        return cls(
            ai_disabled=bool(defaults.ai_disabled if ai_disabled is None else ai_disabled),
            use_mock_if_fail=bool(defaults.use_mock_if_fail if use_mock is None else use_mock),
            api_key=str(api_key).strip() if api_key else env_api_key(),
        )


def load_config(store_path: Path) -> ClipperConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    ann = data.get("annotation", {})
    audit = data.get("audit", {})
    try:
        annotation = AnnotationSettings(
            model=str(ann.get("model", DEFAULT_MODEL)),
            base_url=ann.get("base_url") or None,
            timeout=float(ann.get("timeout", DEFAULT_TIMEOUT)),
            ai_disabled=bool(ann.get("ai_disabled", False)),
            use_mock_if_fail=bool(ann.get("use_mock_if_fail", True)),
        )
        audit_settings = AuditSettings(
            project_id=str(audit.get("project_id", "")),
            collection=str(audit.get("collection", "clips")),
            timeout=float(audit.get("timeout", 10.0)),
        )
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid config {config_path}: {e}") from e

    return ClipperConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        annotation=annotation,
        audit=audit_settings,
    )


def save_config(config: ClipperConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    annotation: dict[str, Any] = {
        "model": config.annotation.model,
        "timeout": config.annotation.timeout,
        "ai_disabled": config.annotation.ai_disabled,
        "use_mock_if_fail": config.annotation.use_mock_if_fail,
    }
    # TOML has no null
    if config.annotation.base_url:
        annotation["base_url"] = config.annotation.base_url

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "annotation": annotation,
        "audit": {
            "project_id": config.audit.project_id,
            "collection": config.audit.collection,
            "timeout": config.audit.timeout,
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Optional[Path] = None) -> ClipperConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    store_path = store_path or default_store_path()
    if (store_path / CONFIG_FILENAME).exists():
        return load_config(store_path)
    config = ClipperConfig(path=store_path)
    save_config(config)
    return config
