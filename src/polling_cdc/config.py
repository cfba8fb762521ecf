"""
Polling session configuration.

Configuration priority (highest to lowest):
1. Environment variables
2. YAML config file
3. Dataclass defaults

A config file holds one or more sessions plus optional select-query
template overrides:

    templates:
      PostgreSQL.recordSelectQuery: "SELECT {{FIELD_LIST}} FROM {{TABLE_NAME}} {{CONDITION}}"
    sessions:
      - name: orders
        table_name: orders
        polling_column: id
        polling_interval_seconds: 5
        connection:
          url: postgresql://db.internal:5432/shop
          username: cdc
          password: secret
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from polling_cdc.common.exceptions import ConfigurationError

DEFAULT_CONFIG_PATH = Path("config.yaml")

SEED_STRATEGY_LAST_ROW = "last_row"
SEED_STRATEGY_MAX = "max"
SEED_STRATEGIES = (SEED_STRATEGY_LAST_ROW, SEED_STRATEGY_MAX)


@dataclass(frozen=True)
class ConnectionConfig:
    """Database connection settings.

    Exactly one mode per session:
    - url (+ username, password, driver): build a dedicated engine
    - datasource_name: reuse an engine registered under that name
    """

    url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    driver: Optional[str] = None
    datasource_name: Optional[str] = None

    # SQLAlchemy engine options for url mode
    pool_pre_ping: bool = True

    @property
    def uses_datasource(self) -> bool:
        return self.datasource_name is not None

    def validate(self) -> None:
        """Check that exactly one connection mode is configured.

        Raises:
            ConfigurationError: If both or neither mode is set
        """
        if self.url and self.datasource_name:
            raise ConfigurationError(
                "Connection must use either url or datasource_name, not both"
            )
        if not self.url and not self.datasource_name:
            raise ConfigurationError(
                "Connection requires url or datasource_name"
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectionConfig":
        return cls(
            url=data.get("url"),
            username=data.get("username"),
            password=data.get("password"),
            driver=data.get("driver"),
            datasource_name=data.get("datasource_name") or data.get("datasource"),
            pool_pre_ping=bool(data.get("pool_pre_ping", True)),
        )


@dataclass(frozen=True)
class SessionConfig:
    """Configuration for one polling session (one table).

    Immutable for the lifetime of the session.
    """

    table_name: str
    polling_column: str
    connection: ConnectionConfig
    polling_interval_seconds: float = 1

    # Session name for logs/metrics (default: table name)
    name: str = ""

    # Initial offset; when set the seed query is skipped
    last_offset: Optional[str] = None

    # How the offset is seeded for an uninitialized session:
    #   last_row - scan the polling column and keep the last row's value
    #   max      - SELECT MAX(polling_column)
    seed_strategy: str = SEED_STRATEGY_LAST_ROW

    # Offset checkpoint file for resuming after restart (disabled if None)
    checkpoint_path: Optional[Path] = None

    def __post_init__(self):
        if not self.name:
            object.__setattr__(self, "name", self.table_name)

    def validate(self) -> None:
        """Validate session settings.

        Raises:
            ConfigurationError: On missing or invalid values
        """
        if not self.table_name:
            raise ConfigurationError("table_name is required")
        if not self.polling_column:
            raise ConfigurationError("polling_column is required")
        if self.polling_interval_seconds < 0:
            raise ConfigurationError(
                f"polling_interval_seconds must be >= 0, got {self.polling_interval_seconds}"
            )
        if self.seed_strategy not in SEED_STRATEGIES:
            raise ConfigurationError(
                f"seed_strategy must be one of {SEED_STRATEGIES}, got {self.seed_strategy!r}"
            )
        self.connection.validate()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionConfig":
        """Build a session from a YAML mapping."""
        checkpoint_path = data.get("checkpoint_path")
        last_offset = data.get("last_offset")
        return cls(
            name=data.get("name", ""),
            table_name=data.get("table_name", ""),
            polling_column=data.get("polling_column", ""),
            polling_interval_seconds=_parse_interval(data.get("polling_interval_seconds", 1)),
            connection=ConnectionConfig.from_dict(data.get("connection", {}) or {}),
            last_offset=str(last_offset) if last_offset is not None else None,
            seed_strategy=data.get("seed_strategy", SEED_STRATEGY_LAST_ROW),
            checkpoint_path=Path(checkpoint_path) if checkpoint_path else None,
        )


def _parse_interval(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"polling_interval_seconds must be a number, got {value!r}", cause=e
        ) from e


def _apply_env_overrides(session_data: Dict[str, Any]) -> Dict[str, Any]:
    """Apply POLLING_* environment variables to a single session mapping."""
    data = dict(session_data)
    connection = dict(data.get("connection", {}) or {})

    if os.getenv("POLLING_SESSION_NAME"):
        data["name"] = os.getenv("POLLING_SESSION_NAME")
    if os.getenv("POLLING_TABLE"):
        data["table_name"] = os.getenv("POLLING_TABLE")
    if os.getenv("POLLING_COLUMN"):
        data["polling_column"] = os.getenv("POLLING_COLUMN")
    if os.getenv("POLLING_INTERVAL_SECONDS"):
        data["polling_interval_seconds"] = os.getenv("POLLING_INTERVAL_SECONDS")
    if os.getenv("POLLING_LAST_OFFSET"):
        data["last_offset"] = os.getenv("POLLING_LAST_OFFSET")
    if os.getenv("POLLING_SEED_STRATEGY"):
        data["seed_strategy"] = os.getenv("POLLING_SEED_STRATEGY")
    if os.getenv("POLLING_CHECKPOINT_PATH"):
        data["checkpoint_path"] = os.getenv("POLLING_CHECKPOINT_PATH")

    # Either connection mode from env replaces the other
    if os.getenv("POLLING_DATABASE_URL"):
        connection["url"] = os.getenv("POLLING_DATABASE_URL")
        connection.pop("datasource_name", None)
        connection.pop("datasource", None)
    if os.getenv("POLLING_DATASOURCE"):
        connection["datasource_name"] = os.getenv("POLLING_DATASOURCE")
        connection.pop("url", None)
    if os.getenv("POLLING_DATABASE_USER"):
        connection["username"] = os.getenv("POLLING_DATABASE_USER")
    if os.getenv("POLLING_DATABASE_PASSWORD"):
        connection["password"] = os.getenv("POLLING_DATABASE_PASSWORD")
    if os.getenv("POLLING_DATABASE_DRIVER"):
        connection["driver"] = os.getenv("POLLING_DATABASE_DRIVER")

    data["connection"] = connection
    return data


@dataclass
class PollingConfig:
    """Top-level configuration: sessions plus template overrides."""

    sessions: List[SessionConfig] = field(default_factory=list)

    # "<databaseProductName>.recordSelectQuery" -> template structure
    template_overrides: Dict[str, str] = field(default_factory=dict)

    def get_session(self, name: str) -> SessionConfig:
        """Get a session by name.

        Raises:
            ConfigurationError: If no session has that name
        """
        for session in self.sessions:
            if session.name == name:
                return session
        raise ConfigurationError(
            f"Unknown session '{name}'",
            context={"available": [s.name for s in self.sessions]},
        )

    @classmethod
    def load_config(cls, config_path: Optional[Path] = None) -> "PollingConfig":
        """Load configuration from YAML file with environment variable overrides.

        Environment overrides apply to the only session in the file, or
        define one when the file has none. Files with several sessions are
        used as-is.

        Args:
            config_path: Path to YAML config file. Defaults to ./config.yaml.

        Returns:
            PollingConfig instance

        Raises:
            ConfigurationError: If the file is invalid or a session fails validation
        """
        config_path = config_path or Path(
            os.getenv("POLLING_CONFIG_PATH", str(DEFAULT_CONFIG_PATH))
        )

        yaml_data: Dict[str, Any] = {}
        if config_path.exists():
            try:
                with open(config_path, "r") as f:
                    yaml_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(
                    f"Invalid YAML in {config_path}", cause=e
                ) from e

        sessions_data: List[Dict[str, Any]] = list(yaml_data.get("sessions", []) or [])
        if len(sessions_data) <= 1:
            base = sessions_data[0] if sessions_data else {}
            session_data = _apply_env_overrides(base)
            if session_data.get("table_name") or base:
                sessions_data = [session_data]

        sessions = [SessionConfig.from_dict(data) for data in sessions_data]
        for session in sessions:
            session.validate()

        names = [s.name for s in sessions]
        if len(names) != len(set(names)):
            raise ConfigurationError(f"Duplicate session names: {names}")

        template_overrides = {
            str(key): str(value)
            for key, value in (yaml_data.get("templates", {}) or {}).items()
        }

        return cls(sessions=sessions, template_overrides=template_overrides)


def with_last_offset(session: SessionConfig, last_offset: Optional[str]) -> SessionConfig:
    """Copy of a session starting from a different offset."""
    return replace(session, last_offset=last_offset)
