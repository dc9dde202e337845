from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

from sponsorcrm.domain import transitions
from sponsorcrm.domain.stages import Axis

logger = logging.getLogger(__name__)

PIPELINE_LIST_PREFIX: tuple[str, ...] = ("sponsor-for-conference", "list")

QueryKey = tuple[Any, ...]
Mutation = Callable[[str, Axis, str], Any]


class DragError(RuntimeError):
    pass


class QueryCache:
    """Client-side cache of query results keyed by tuples.

    ``loader`` refetches a key on invalidation; without one, invalidated keys
    are only marked stale.
    """

    def __init__(self, loader: Callable[[QueryKey], Any] | None = None) -> None:
        self._entries: dict[QueryKey, Any] = {}
        self.loader = loader
        self.stale: set[QueryKey] = set()

    def get(self, key: QueryKey) -> Any:
        return self._entries.get(key)

    def set(self, key: QueryKey, value: Any) -> None:
        self._entries[key] = value
        self.stale.discard(key)

    def keys(self, prefix: QueryKey) -> list[QueryKey]:
        return [key for key in self._entries if key[: len(prefix)] == prefix]

    def snapshot(self, prefix: QueryKey) -> dict[QueryKey, Any]:
        return {key: copy.deepcopy(self._entries[key]) for key in self.keys(prefix)}

    def restore(self, snapshot: dict[QueryKey, Any]) -> None:
        for key, value in snapshot.items():
            self._entries[key] = value

    def invalidate(self, prefix: QueryKey) -> None:
        for key in self.keys(prefix):
            if self.loader is None:
                self.stale.add(key)
            else:
                self.set(key, self.loader(key))

    def records(self, prefix: QueryKey) -> Iterator[dict[str, Any]]:
        for key in self.keys(prefix):
            yield from self._entries[key] or []


@dataclass
class DragGesture:
    sfc_id: str
    axis: Axis
    source_value: str
    dropped: bool = False
    error: Exception | None = field(default=None, repr=False)


class BoardReconciler:
    """Optimistic drag-and-drop status moves over a cached pipeline board."""

    def __init__(
        self,
        cache: QueryCache,
        mutate: Mutation,
        prefix: QueryKey = PIPELINE_LIST_PREFIX,
    ) -> None:
        self.cache = cache
        self.mutate = mutate
        self.prefix = prefix

    def start_drag(self, sfc_id: str, axis: Axis | str = Axis.PIPELINE) -> DragGesture:
        axis = transitions.parse_axis(axis)
        for record in self.cache.records(self.prefix):
            if record.get("sfc_id") == sfc_id:
                return DragGesture(sfc_id=sfc_id, axis=axis, source_value=record.get(axis.value))
        raise DragError(f"Record is not on the board: {sfc_id}")

    def drop(self, gesture: DragGesture, target_value: str) -> bool:
        """Move the card and persist; returns False when nothing changed or the move was rolled back."""
        if gesture.dropped:
            raise DragError("This drag has already been dropped.")
        gesture.dropped = True
        if target_value == gesture.source_value:
            return False

        snapshot = self.cache.snapshot(self.prefix)
        self._apply(gesture.sfc_id, gesture.axis, target_value)
        try:
            self.mutate(gesture.sfc_id, gesture.axis, target_value)
        except Exception as exc:
            logger.warning("Move of %s to %s rolled back: %s", gesture.sfc_id, target_value, exc)
            gesture.error = exc
            self.cache.restore(snapshot)
            return False
        finally:
            self.cache.invalidate(self.prefix)
        return True

    def _apply(self, sfc_id: str, axis: Axis, value: str) -> None:
        for key in self.cache.keys(self.prefix):
            rows = self.cache.get(key) or []
            self.cache.set(
                key,
                [{**row, axis.value: value} if row.get("sfc_id") == sfc_id else row for row in rows],
            )
