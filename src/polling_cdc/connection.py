"""
Database connection providers for polling sessions.

A session obtains its connection in one of two ways:
- url mode: a dedicated SQLAlchemy engine built from url/username/password/driver
- datasource mode: an engine registered process-wide under a name, shared by
  every session that names it

Either way the worker sees a ConnectionProvider and never touches the engine.
"""

import threading
from typing import Dict, Optional, Protocol, runtime_checkable

from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError

from core.logging.setup import get_logger
from core.security.sanitize import sanitize_url
from polling_cdc.common.exceptions import ConfigurationError, ConnectionError
from polling_cdc.config import ConnectionConfig

logger = get_logger(__name__)


@runtime_checkable
class ConnectionProvider(Protocol):
    """
    Protocol for handing a polling worker its database connection.

    Implementations own the engine lifecycle; the worker owns the
    connection it was given and closes it on exit.
    """

    def get_connection(self) -> Connection:
        """
        Open a connection.

        Raises:
            ConnectionError: If the database cannot be reached
        """
        ...

    def get_database_product_name(self, connection: Connection) -> str:
        """Database product name reported by the connection's metadata."""
        ...

    def close(self) -> None:
        """Release resources held by the provider."""
        ...


# =============================================================================
# Datasource registry
# =============================================================================

_datasources: Dict[str, Engine] = {}
_datasources_lock = threading.Lock()


def register_datasource(name: str, engine: Engine) -> None:
    """
    Register a shared engine under a datasource name.

    Re-registering a name replaces the previous engine; the caller owns
    disposal of both.
    """
    with _datasources_lock:
        _datasources[name] = engine
    logger.info("Registered datasource", extra={"datasource": name})


def get_datasource(name: str) -> Engine:
    """
    Look up a registered engine.

    Raises:
        ConfigurationError: If no engine is registered under the name
    """
    with _datasources_lock:
        engine = _datasources.get(name)
        available = sorted(_datasources)
    if engine is None:
        raise ConfigurationError(
            f"Datasource '{name}' is not registered",
            context={"datasource": name, "available": available},
        )
    return engine


def unregister_datasource(name: str) -> Optional[Engine]:
    """Remove a datasource; returns the engine that was registered, if any."""
    with _datasources_lock:
        return _datasources.pop(name, None)


# =============================================================================
# SQLAlchemy provider
# =============================================================================


class SQLAlchemyConnectionProvider:
    """
    Connection provider backed by a SQLAlchemy engine.

    Usage:
        provider = SQLAlchemyConnectionProvider.from_config(session.connection)
        connection = provider.get_connection()
        provider.get_database_product_name(connection)  # "postgresql"
    """

    def __init__(self, engine: Engine, owns_engine: bool = False, datasource_name: Optional[str] = None):
        """
        Args:
            engine: Engine connections are drawn from
            owns_engine: Dispose the engine on close()
            datasource_name: Registry name when the engine is shared
        """
        self.engine = engine
        self.owns_engine = owns_engine
        self.datasource_name = datasource_name

    @classmethod
    def from_config(cls, config: ConnectionConfig) -> "SQLAlchemyConnectionProvider":
        """
        Build a provider for either connection mode.

        Raises:
            ConfigurationError: If the config is invalid, the URL can't be
                parsed or the datasource isn't registered
        """
        config.validate()

        if config.uses_datasource:
            engine = get_datasource(config.datasource_name)
            return cls(engine, owns_engine=False, datasource_name=config.datasource_name)

        try:
            url = make_url(config.url)
        except ArgumentError as e:
            raise ConfigurationError(
                "Invalid database url", cause=e, context={"url": sanitize_url(config.url)}
            ) from e

        updates = {}
        if config.driver:
            updates["drivername"] = config.driver
        if config.username is not None:
            updates["username"] = config.username
        if config.password is not None:
            updates["password"] = config.password
        if updates:
            url = url.set(**updates)

        try:
            engine = create_engine(url, pool_pre_ping=config.pool_pre_ping, future=True)
        except (ArgumentError, ImportError) as e:
            raise ConfigurationError(
                f"Cannot create engine for driver '{url.drivername}'",
                cause=e,
                context={"url": url.render_as_string(hide_password=True)},
            ) from e

        logger.debug(
            "Created database engine",
            extra={"url": url.render_as_string(hide_password=True)},
        )
        return cls(engine, owns_engine=True)

    def get_connection(self) -> Connection:
        try:
            return self.engine.connect()
        except SQLAlchemyError as e:
            raise ConnectionError(
                "Failed to connect to database",
                cause=e,
                context={
                    "url": self.engine.url.render_as_string(hide_password=True),
                    "datasource": self.datasource_name,
                },
            ) from e

    def get_database_product_name(self, connection: Connection) -> str:
        return connection.dialect.name

    def close(self) -> None:
        if self.owns_engine:
            self.engine.dispose()
