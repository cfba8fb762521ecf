"""
Select query templates.

Per-database-product SQL skeletons with {{TABLE_NAME}}, {{FIELD_LIST}} and
{{CONDITION}} placeholders, plus the resolver that fills them.
"""

from polling_cdc.templates.resolver import QueryTemplateResolver
from polling_cdc.templates.sources import (
    ConfigTemplateSource,
    TemplateSource,
    load_bundled_templates,
    override_key,
)

__all__ = [
    "ConfigTemplateSource",
    "QueryTemplateResolver",
    "TemplateSource",
    "load_bundled_templates",
    "override_key",
]
