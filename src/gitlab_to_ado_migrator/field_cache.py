"""Session-scoped cache of allowed-value domains for work item fields."""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from .api import encode_segment
from .models import FieldSchemaEntry

if TYPE_CHECKING:
    from .api import DestinationApi

logger: logging.Logger = logging.getLogger(__name__)


def _now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def _allowed_values(data: Any) -> frozenset[str]:
    if not isinstance(data, dict):
        return frozenset()
    values = data.get("allowedValues") or []
    return frozenset(str(v) for v in values if v is not None)


class FieldSchemaCache:
    """Fetches each field's allowed values at most once per session.

    Validating every imported work item against the server used to repeat the
    same schema lookup for each item; this keeps one lookup per distinct
    (work item type, field) pair. The same field can carry a different domain
    on each type, so entries are never shared across types. Entries never
    expire; ``refresh()`` is the only way to drop them.
    """

    def __init__(
        self,
        api: DestinationApi,
        project: str,
        *,
        work_item_type: str = "Task",
        clock: Callable[[], dt.datetime] = _now,
    ) -> None:
        self._api: DestinationApi = api
        self.project: str = project
        self.work_item_type: str = work_item_type
        self._clock: Callable[[], dt.datetime] = clock
        self._entries: dict[tuple[str, str], FieldSchemaEntry] = {}
        self.lookups: int = 0

    def _field_path(self, work_item_type: str, field_name: str) -> str:
        return (
            f"{encode_segment(self.project)}/_apis/wit/workitemtypes/"
            f"{encode_segment(work_item_type)}/fields/{encode_segment(field_name)}"
        )

    def entry(self, field_name: str, work_item_type: str | None = None) -> FieldSchemaEntry:
        """Schema entry of a field on ``work_item_type`` (the cache's default type when omitted)."""
        wit = work_item_type or self.work_item_type
        cached = self._entries.get((wit, field_name))
        if cached is not None:
            return cached

        response = self._api.get(self._field_path(wit, field_name), params={"$expand": "allowedValues"})
        self.lookups += 1
        entry = FieldSchemaEntry(
            field_name=field_name,
            allowed_values=_allowed_values(response.data),
            fetched_at=self._clock(),
        )
        self._entries[(wit, field_name)] = entry
        logger.debug(f"Cached {len(entry.allowed_values)} allowed values for {wit} field {field_name}")
        return entry

    def get_allowed_values(self, field_name: str, work_item_type: str | None = None) -> frozenset[str]:
        return self.entry(field_name, work_item_type).allowed_values

    def is_allowed(self, field_name: str, value: str, work_item_type: str | None = None) -> bool:
        """Whether ``value`` may be set on the field; an empty domain means free text."""
        allowed = self.get_allowed_values(field_name, work_item_type)
        return not allowed or value in allowed

    def refresh(self, field_name: str | None = None) -> None:
        """Drop one cached field (on every type), or all of them."""
        if field_name is None:
            self._entries.clear()
        else:
            for key in [k for k in self._entries if k[1] == field_name]:
                del self._entries[key]

    def __contains__(self, key: object) -> bool:
        # A bare field name refers to the default type
        if isinstance(key, str):
            key = (self.work_item_type, key)
        return key in self._entries
