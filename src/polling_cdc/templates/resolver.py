"""
Query template resolution for a polling session.

Turns a database product name plus {table, field list, condition} into a
concrete select statement. The template structure is resolved once and
memoized on the resolver, so each session owns its own cache.
"""

import logging
import threading
from typing import Optional

from polling_cdc.common.exceptions import ConfigurationError, UnsupportedDatabaseError
from polling_cdc.common.logging import LoggedClass
from polling_cdc.templates.sources import (
    PLACE_HOLDER_CONDITION,
    PLACE_HOLDER_FIELD_LIST,
    PLACE_HOLDER_TABLE_NAME,
    ConfigTemplateSource,
    TemplateSource,
    override_key,
)


class QueryTemplateResolver(LoggedClass):
    """
    Resolves and fills the record select query template for one table.

    Resolution order, first non-empty hit wins:
    1. Override "<databaseProductName>.recordSelectQuery"
    2. Bundled default matched case-insensitively on the product name

    Once resolved the structure is reused for the resolver's lifetime, even
    if a later call reports a different product name.

    Example:
        >>> resolver = QueryTemplateResolver("orders")
        >>> resolver.resolve("sqlite")
        >>> resolver.build_query("*", "WHERE id > :last_offset")
        'SELECT * FROM orders WHERE id > :last_offset'
    """

    log_component = "templates"

    def __init__(
        self,
        table_name: str,
        template_source: Optional[TemplateSource] = None,
    ):
        """
        Args:
            table_name: Table substituted for {{TABLE_NAME}}
            template_source: Where templates come from
                (default: bundled defaults, no overrides)
        """
        self.table_name = table_name
        self._template_source = template_source or ConfigTemplateSource()
        self._structure: Optional[str] = None
        self._database_name: Optional[str] = None
        self._lock = threading.Lock()
        super().__init__()

    @property
    def structure(self) -> Optional[str]:
        """Memoized template structure, None until resolved."""
        return self._structure

    @property
    def database_name(self) -> Optional[str]:
        """Product name the structure was resolved for."""
        return self._database_name

    def resolve(self, database_name: str) -> str:
        """
        Resolve the template structure for a database product.

        Args:
            database_name: Product name reported by the connection

        Returns:
            Template structure with placeholders

        Raises:
            UnsupportedDatabaseError: If neither an override nor a default
                template exists for the product
        """
        with self._lock:
            if self._structure:
                return self._structure

            key = override_key(database_name)
            structure = self._template_source.lookup_override(key) or ""
            if structure:
                self._log(
                    logging.INFO,
                    "Using configured select query override",
                    database_name=database_name,
                    override_key=key,
                )
            else:
                structure = self._template_source.lookup_default(database_name) or ""

            if not structure:
                raise UnsupportedDatabaseError(database_name, key)

            self._structure = structure
            self._database_name = database_name
            self._log(
                logging.DEBUG,
                "Resolved select query template",
                database_name=database_name,
            )
            return structure

    def build_query(self, field_list: str, condition: str) -> str:
        """
        Fill the memoized template.

        Args:
            field_list: Columns to select ("*" or a column list)
            condition: Filter clause, may be empty

        Returns:
            Concrete select statement

        Raises:
            ConfigurationError: If resolve() has not succeeded yet
        """
        if not self._structure:
            raise ConfigurationError(
                "Select query template has not been resolved",
                context={"table": self.table_name},
            )

        return (
            self._structure.replace(PLACE_HOLDER_TABLE_NAME, self.table_name)
            .replace(PLACE_HOLDER_FIELD_LIST, field_list)
            .replace(PLACE_HOLDER_CONDITION, condition)
        )
