from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from uuid import uuid4

from sponsorcrm.domain import rules
from sponsorcrm.domain.models import Activity, ActivityDraft
from sponsorcrm.domain.stages import ActivityType
from sponsorcrm.services.clock import Clock, now_iso
from sponsorcrm.services.utils import dumps
from sponsorcrm.store.sqlite import SqliteSession, SqliteStore

logger = logging.getLogger(__name__)

SYSTEM_AUTHOR = "system"


@dataclass(frozen=True)
class BulkLogResult:
    created: int
    failed: int


class ActivityLog:
    """Append-only history of pipeline records."""

    def __init__(self, store: SqliteStore, clock: Clock) -> None:
        self.store = store
        self.clock = clock

    def append(
        self,
        session: SqliteSession,
        sfc_id: str,
        draft: ActivityDraft,
        author: str = SYSTEM_AUTHOR,
    ) -> str:
        rules.require(draft.description, "description")
        rules.validate_enum(draft.activity_type, [t.value for t in ActivityType], "activity_type")
        now = now_iso(self.clock)
        activity_id = str(uuid4())
        metadata = {
            "old_value": draft.old_value,
            "new_value": draft.new_value,
            "timestamp": now,
            "additional_data": draft.additional_data,
        }
        session.insert(
            "activities",
            {
                "activity_id": activity_id,
                "sfc_id": sfc_id,
                "activity_type": draft.activity_type,
                "description": draft.description,
                "metadata": dumps(metadata),
                "created_by": author or SYSTEM_AUTHOR,
                "created_at": now,
            },
        )
        return activity_id

    def record(self, sfc_id: str, draft: ActivityDraft, author: str = SYSTEM_AUTHOR) -> str:
        with self.store.session() as session:
            return self.append(session, sfc_id, draft, author)

    def record_many(
        self,
        entries: Iterable[tuple[str, ActivityDraft]],
        author: str = SYSTEM_AUTHOR,
    ) -> BulkLogResult:
        created = 0
        failed = 0
        for sfc_id, draft in entries:
            try:
                self.record(sfc_id, draft, author)
            except (sqlite3.Error, rules.ValidationError) as exc:
                logger.warning("Failed to log activity for %s: %s", sfc_id, exc)
                failed += 1
            else:
                created += 1
        return BulkLogResult(created=created, failed=failed)

    def list_for(self, sfc_id: str) -> list[Activity]:
        rows = self.store.fetch_all(
            "SELECT * FROM activities WHERE sfc_id = ? ORDER BY created_at DESC, rowid DESC",
            (sfc_id,),
        )
        return [Activity.from_row(row) for row in rows]

    def ids_for(self, session: SqliteSession, sfc_ids: Iterable[str]) -> list[str]:
        sfc_ids = list(sfc_ids)
        if not sfc_ids:
            return []
        placeholders = ", ".join("?" for _ in sfc_ids)
        rows = session.fetch_all(
            f"SELECT activity_id FROM activities WHERE sfc_id IN ({placeholders})", sfc_ids
        )
        return [row["activity_id"] for row in rows]
