"""Configuration for the session ledger.

Settings live in a Pydantic model. Optional overrides are read from
`<storage_root>/.taskledger/config.json`; keyword overrides win over the file.
"""

import json
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .models import ExecutionMode


NAMESPACE_DIR = ".taskledger"
CONFIG_FILENAME = "config.json"


class LedgerConfig(BaseModel):
    """Configuration for the store, scheduler and mode selector."""

    # Storage
    storage_root: Path = Field(..., description="Directory that holds the ledger namespace")
    namespace: str = Field(default=NAMESPACE_DIR, description="Namespace directory under storage_root")
    ledger_filename: str = Field(default="sessions.json")
    session_id_prefix: str = Field(
        default="session",
        description="Alphabetic prefix of generated session ids"
    )

    # Persistence
    min_persist_interval_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Routine writes closer together than this are coalesced"
    )

    # Lifecycle
    session_timeout_seconds: float = Field(
        default=1800.0,  # 30 minutes
        ge=0,
        description="Inactivity after which an active session times out"
    )
    cleanup_interval_seconds: float = Field(
        default=300.0,  # 5 minutes
        gt=0,
        description="Interval between idle-session sweeps"
    )

    # Mode selection
    default_mode: ExecutionMode = Field(
        default=ExecutionMode.AUTO,
        description="Global default mode; 'auto' defers to the recommender"
    )
    fallback_mode: ExecutionMode = Field(
        default=ExecutionMode.LOCAL,
        description="Mode used when the recommender itself answers 'auto'"
    )
    remote_threshold: float = Field(
        default=7.0,
        ge=0,
        le=10,
        description="Complexity score at or above which remote mode is recommended"
    )

    # Execution
    execution_timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Default bound on executor calls (None = unbounded)"
    )

    # Logging
    log_file: Optional[str] = Field(
        default=None,
        description="Append log lines to this file (relative to the namespace dir)"
    )

    @field_validator("session_id_prefix")
    @classmethod
    def _prefix_is_alpha(cls, value: str) -> str:
        if not value.isalpha() or not value.isascii():
            raise ValueError("session_id_prefix must contain ASCII letters only")
        return value

    @field_validator("fallback_mode")
    @classmethod
    def _fallback_is_concrete(cls, value: ExecutionMode) -> ExecutionMode:
        if not value.is_concrete:
            raise ValueError("fallback_mode must be 'local' or 'remote'")
        return value

    @property
    def namespace_dir(self) -> Path:
        return self.storage_root / self.namespace

    @property
    def ledger_path(self) -> Path:
        return self.namespace_dir / self.ledger_filename

    @property
    def log_path(self) -> Optional[Path]:
        if not self.log_file:
            return None
        return self.namespace_dir / self.log_file


def load_config(storage_root: Path, **overrides: Any) -> LedgerConfig:
    """Build a LedgerConfig for a storage root.

    Args:
        storage_root: Existing directory that will hold the ledger
        **overrides: Field values that take precedence over config.json

    Returns:
        Validated LedgerConfig

    Raises:
        ConfigurationError: If the root is missing or the config is invalid
    """
    if storage_root is None:
        raise ConfigurationError("No storage root configured")

    root = Path(storage_root).expanduser()
    if not root.exists():
        raise ConfigurationError(f"Storage root does not exist: {root}")
    if not root.is_dir():
        raise ConfigurationError(f"Storage root is not a directory: {root}")

    data: dict[str, Any] = {}
    config_file = root / overrides.get("namespace", NAMESPACE_DIR) / CONFIG_FILENAME
    if config_file.exists():
        try:
            loaded = json.loads(config_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {config_file}: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"{config_file} must contain a JSON object")
        data.update(loaded)

    data.update(overrides)
    data["storage_root"] = root.resolve()

    try:
        return LedgerConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
