"""
Reconcile optimistic client records with authoritative server state.

Entries are matched by client correlation id, never by position. A server
record always replaces the optimistic entry that carries its id.
"""

import uuid
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Mapping, Optional

from loguru import logger

CORRELATION_KEY = "client_correlation_id"


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def _correlation_id(record: Any, key: str) -> Optional[str]:
    if isinstance(record, Mapping):
        return record.get(key)
    return getattr(record, key, None)


class Reconciler:
    """Local view of records: confirmed server rows plus pending optimistic ones."""

    def __init__(self, key: str = CORRELATION_KEY):
        self.key = key
        self._pending: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self._server: List[Any] = []

    def add_optimistic(self, record: Dict[str, Any]) -> str:
        """Track a record created locally before the server confirmed it."""
        correlation_id = record.get(self.key) or new_correlation_id()
        self._pending[correlation_id] = {**record, self.key: correlation_id, "optimistic": True}
        return correlation_id

    def apply_server_snapshot(self, records: Iterable[Any]) -> List[Any]:
        """Replace the server view; confirmed optimistic entries are dropped."""
        self._server = list(records)
        for record in self._server:
            correlation_id = _correlation_id(record, self.key)
            if correlation_id and self._pending.pop(correlation_id, None) is not None:
                logger.debug(f"Optimistic record {correlation_id} confirmed by server")
        return self.view()

    def rollback(self, correlation_id: str) -> bool:
        """Drop an optimistic entry whose write failed."""
        return self._pending.pop(correlation_id, None) is not None

    @property
    def pending_ids(self) -> List[str]:
        return list(self._pending)

    def view(self) -> List[Any]:
        return self._server + list(self._pending.values())
