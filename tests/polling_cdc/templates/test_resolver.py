"""Tests for select query template resolution."""

from unittest.mock import MagicMock

import pytest

from polling_cdc.common.exceptions import ConfigurationError, UnsupportedDatabaseError
from polling_cdc.templates.resolver import QueryTemplateResolver
from polling_cdc.templates.sources import ConfigTemplateSource

STRUCTURE = "SELECT {{FIELD_LIST}} FROM {{TABLE_NAME}} {{CONDITION}}"


class TestResolve:
    def test_bundled_default_matches_case_insensitively(self):
        resolver = QueryTemplateResolver("orders")

        assert resolver.resolve("POSTGRESQL") == STRUCTURE
        assert resolver.database_name == "POSTGRESQL"

    def test_override_wins_over_default(self):
        source = ConfigTemplateSource(
            overrides={"MySQL.recordSelectQuery": "SELECT {{FIELD_LIST}} FROM `{{TABLE_NAME}}` {{CONDITION}}"}
        )
        resolver = QueryTemplateResolver("orders", source)

        resolver.resolve("MySQL")

        assert resolver.build_query("*", "") == "SELECT * FROM `orders` "

    def test_override_key_is_case_sensitive(self):
        source = ConfigTemplateSource(
            overrides={"mysql.recordSelectQuery": "SELECT 1"},
        )
        resolver = QueryTemplateResolver("orders", source)

        assert resolver.resolve("MySQL") == STRUCTURE

    def test_empty_override_falls_back_to_default(self):
        source = ConfigTemplateSource(overrides={"SQLite.recordSelectQuery": ""})
        resolver = QueryTemplateResolver("orders", source)

        assert resolver.resolve("SQLite") == STRUCTURE

    def test_unsupported_database(self):
        source = ConfigTemplateSource(defaults={})
        resolver = QueryTemplateResolver("orders", source)

        with pytest.raises(UnsupportedDatabaseError) as exc_info:
            resolver.resolve("FooDB")

        message = str(exc_info.value)
        assert "Unsupported database: FooDB" in message
        assert "FooDB.recordSelectQuery" in message
        assert resolver.structure is None

    def test_memoized_for_resolver_lifetime(self):
        source = MagicMock()
        source.lookup_override.return_value = None
        source.lookup_default.return_value = STRUCTURE
        resolver = QueryTemplateResolver("orders", source)

        resolver.resolve("SQLite")
        # Later product names are ignored once resolved
        assert resolver.resolve("FooDB") == STRUCTURE

        source.lookup_default.assert_called_once_with("SQLite")

    def test_memo_is_per_resolver(self):
        source = ConfigTemplateSource(
            overrides={"SQLite.recordSelectQuery": "SELECT {{FIELD_LIST}} FROM main.{{TABLE_NAME}} {{CONDITION}}"},
        )
        first = QueryTemplateResolver("orders", source)
        second = QueryTemplateResolver("orders")

        first.resolve("SQLite")
        second.resolve("SQLite")

        assert first.build_query("*", "") != second.build_query("*", "")


class TestBuildQuery:
    def test_substitutes_all_placeholders(self):
        source = ConfigTemplateSource(defaults={"SQLite": STRUCTURE})
        resolver = QueryTemplateResolver("orders", source)
        resolver.resolve("sqlite")

        query = resolver.build_query("*", "WHERE id > ?")

        assert query == "SELECT * FROM orders WHERE id > ?"

    def test_empty_condition_leaves_trailing_space(self):
        resolver = QueryTemplateResolver("orders")
        resolver.resolve("sqlite")

        assert resolver.build_query("id", "") == "SELECT id FROM orders "

    def test_requires_resolve_first(self):
        resolver = QueryTemplateResolver("orders")

        with pytest.raises(ConfigurationError, match="not been resolved"):
            resolver.build_query("*", "")
