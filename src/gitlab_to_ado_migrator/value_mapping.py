"""
Field value translation for work items created on the destination.

Mapping tables come from the ``field_mappings`` configuration section, one
table per destination field, e.g. ``{"Custom.Risk": {"High": "1 - High"}}``.
A ``*`` in a source pattern matches any text and is substituted into the
target pattern.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any


class ValueTranslator:
    """Handles value translation patterns for one field."""

    def __init__(self, patterns: Mapping[str, str] | None) -> None:
        self.patterns: list[tuple[str, str]] = []

        for source, target in (patterns or {}).items():
            if not source:
                msg = f"Empty source pattern for target value '{target}'"
                raise ValueError(msg)
            self.patterns.append((source, target))

    def translate(self, value: str) -> str:
        """Translate a value using configured patterns; exact matches win over wildcards."""
        for source_pattern, target_pattern in self.patterns:
            if "*" not in source_pattern and source_pattern == value:
                return target_pattern
        for source_pattern, target_pattern in self.patterns:
            if "*" in source_pattern:
                regex_pattern = "(.*)".join(re.escape(part) for part in source_pattern.split("*"))
                match = re.match(f"^{regex_pattern}$", value)
                if match:
                    return target_pattern.replace("*", match.group(1))
        return value


class FieldValueMapper:
    """Applies the per-field translators to a dict of work item fields."""

    def __init__(self, mappings: Mapping[str, Mapping[str, str]] | None = None) -> None:
        self._translators: dict[str, ValueTranslator] = {
            field_name: ValueTranslator(patterns) for field_name, patterns in (mappings or {}).items()
        }

    @property
    def fields(self) -> frozenset[str]:
        return frozenset(self._translators)

    def map_value(self, field_name: str, value: Any) -> Any:
        translator = self._translators.get(field_name)
        if translator is None or not isinstance(value, str):
            return value
        return translator.translate(value)

    def map_fields(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        return {name: self.map_value(name, value) for name, value in fields.items()}
