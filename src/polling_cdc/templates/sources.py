"""
Template sources for record select queries.

Provides:
- TemplateSource: Protocol the resolver reads templates through
- load_bundled_templates(): Default templates shipped with the package
- ConfigTemplateSource: Runtime overrides backed by a mapping, defaults
  backed by the bundled table
"""

import threading
from pathlib import Path
from typing import Dict, Mapping, Optional, Protocol, runtime_checkable

import yaml

from core.logging.setup import get_logger
from polling_cdc.common.exceptions import ConfigurationError

logger = get_logger(__name__)

BUNDLED_TEMPLATES_PATH = Path(__file__).parent / "query_templates.yaml"

RECORD_SELECT_QUERY = "recordSelectQuery"

# Placeholders substituted into a template structure
PLACE_HOLDER_TABLE_NAME = "{{TABLE_NAME}}"
PLACE_HOLDER_FIELD_LIST = "{{FIELD_LIST}}"
PLACE_HOLDER_CONDITION = "{{CONDITION}}"


def override_key(database_name: str) -> str:
    """Config key an operator sets to override the template for a product."""
    return f"{database_name}.{RECORD_SELECT_QUERY}"


@runtime_checkable
class TemplateSource(Protocol):
    """
    Protocol for looking up select query template structures.

    Overrides are consulted before bundled defaults.
    """

    def lookup_override(self, key: str) -> Optional[str]:
        """
        Look up a configured override.

        Args:
            key: "<databaseProductName>.recordSelectQuery"

        Returns:
            Template structure or None
        """
        ...

    def lookup_default(self, database_name: str) -> Optional[str]:
        """
        Look up the bundled default for a database product.

        Args:
            database_name: Product name reported by the connection

        Returns:
            Template structure or None
        """
        ...


_bundled_templates: Optional[Dict[str, str]] = None
_bundled_lock = threading.Lock()


def load_bundled_templates(path: Optional[Path] = None) -> Dict[str, str]:
    """
    Load the bundled template table, keyed by lower-cased product name.

    The default table is read once per process; passing an explicit path
    always reads that file.

    Args:
        path: Alternative templates file (same layout as the bundled one)

    Returns:
        Mapping of lower-cased database name to template structure

    Raises:
        ConfigurationError: If the file is missing or malformed
    """
    global _bundled_templates

    if path is None:
        with _bundled_lock:
            if _bundled_templates is None:
                _bundled_templates = _read_templates_file(BUNDLED_TEMPLATES_PATH)
            return _bundled_templates

    return _read_templates_file(path)


def _read_templates_file(path: Path) -> Dict[str, str]:
    if not path.exists():
        raise ConfigurationError(f"{path.name} is not found", context={"path": str(path)})

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Query configuration read error in {path}", cause=e) from e

    templates: Dict[str, str] = {}
    for entry in data.get("databases", []) or []:
        database_name = entry.get("database_name")
        query = entry.get("record_select_query")
        if not database_name or not query:
            logger.warning(
                "Skipping incomplete template entry",
                extra={"path": str(path), "database_name": database_name},
            )
            continue
        # First entry wins, as with a linear scan
        templates.setdefault(database_name.lower(), query)

    logger.debug(
        "Loaded query templates",
        extra={"path": str(path), "database_name": sorted(templates)},
    )
    return templates


class ConfigTemplateSource:
    """
    Template source backed by runtime overrides and a default table.

    Overrides are looked up by exact key. Defaults are matched on the
    product name case-insensitively.

    Usage:
        source = ConfigTemplateSource(
            overrides={"SQLite.recordSelectQuery": "SELECT {{FIELD_LIST}} FROM {{TABLE_NAME}} {{CONDITION}}"}
        )
        source.lookup_default("sqlite")
    """

    def __init__(
        self,
        overrides: Optional[Mapping[str, str]] = None,
        defaults: Optional[Mapping[str, str]] = None,
    ):
        """
        Args:
            overrides: Override templates keyed by "<product>.recordSelectQuery"
            defaults: Default templates keyed by product name
                (default: bundled table)
        """
        self._overrides = dict(overrides or {})
        if defaults is None:
            self._defaults = load_bundled_templates()
        else:
            self._defaults = {name.lower(): query for name, query in defaults.items()}

    def lookup_override(self, key: str) -> Optional[str]:
        return self._overrides.get(key)

    def lookup_default(self, database_name: str) -> Optional[str]:
        return self._defaults.get(database_name.lower())
