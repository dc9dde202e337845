from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from sponsorcrm.domain import transitions
from sponsorcrm.domain.models import ActivityDraft
from sponsorcrm.domain.stages import ActivityType, Axis
from sponsorcrm.domain.transitions import TransitionResult
from sponsorcrm.errors import NotFoundError
from sponsorcrm.services.activity import SYSTEM_AUTHOR, ActivityLog
from sponsorcrm.services.clock import Clock, now_iso
from sponsorcrm.services.sponsors import get_record
from sponsorcrm.services.utils import dumps, normalize_tags
from sponsorcrm.store.sqlite import SqliteStore

logger = logging.getLogger(__name__)

_UNSET = object()


@dataclass(frozen=True)
class BulkUpdate:
    status: str | None = None
    contract_status: str | None = None
    invoice_status: str | None = None
    assigned_to: object = _UNSET
    tags: list[str] | None = None
    add_tags: list[str] = field(default_factory=list)
    remove_tags: list[str] = field(default_factory=list)

    def axis_values(self) -> list[tuple[Axis, str]]:
        pairs = [
            (Axis.PIPELINE, self.status),
            (Axis.CONTRACT, self.contract_status),
            (Axis.INVOICE, self.invoice_status),
        ]
        return [(axis, value) for axis, value in pairs if value is not None]


@dataclass(frozen=True)
class BulkUpdateResult:
    updated: int
    total: int


class PipelineMutationService:
    """Authoritative single-axis status mutation for pipeline records."""

    def __init__(self, store: SqliteStore, activity_log: ActivityLog, clock: Clock) -> None:
        self.store = store
        self.activity_log = activity_log
        self.clock = clock

    def update_status(
        self, sfc_id: str, axis: Axis | str, value: str, author: str = SYSTEM_AUTHOR
    ) -> TransitionResult:
        axis = transitions.parse_axis(axis)
        transitions.validate(axis, value)
        with self.store.transaction() as session:
            record = get_record(session, sfc_id)
            result = transitions.transition(record, axis, value, now_iso(self.clock))
            if result.changed:
                session.update("sponsor_for_conference", "sfc_id", sfc_id, result.updates)
                self.activity_log.append(session, sfc_id, result.activity, author)
        if result.changed:
            logger.info("%s %s: %s -> %s", sfc_id, axis.value, result.old_value, result.new_value)
        return result

    def bulk_update(
        self, sfc_ids: Iterable[str], update: BulkUpdate, author: str = SYSTEM_AUTHOR
    ) -> BulkUpdateResult:
        """Apply the same change to many records in a single transaction.

        Unknown ids are skipped. Every axis change logs its own activity and an
        assignment change logs a note.
        """
        sfc_ids = list(dict.fromkeys(sfc_ids))
        axis_values = update.axis_values()
        for axis, value in axis_values:
            transitions.validate(axis, value)

        updated = 0
        now = now_iso(self.clock)
        with self.store.transaction() as session:
            assignee_name = None
            if update.assigned_to not in (_UNSET, None):
                row = session.fetch_one(
                    "SELECT name FROM organizers WHERE organizer_id = ?", (update.assigned_to,)
                )
                assignee_name = row["name"] if row else update.assigned_to

            for sfc_id in sfc_ids:
                try:
                    record = get_record(session, sfc_id)
                except NotFoundError:
                    continue
                changes: dict[str, object] = {}
                drafts: list[ActivityDraft] = []

                for axis, value in axis_values:
                    result = transitions.transition(record, axis, value, now)
                    if result.changed:
                        changes.update(result.updates)
                        drafts.append(result.activity)

                if update.assigned_to is not _UNSET and update.assigned_to != record.assigned_to:
                    changes["assigned_to"] = update.assigned_to
                    description = (
                        f"Assigned to {assignee_name} via bulk update"
                        if update.assigned_to
                        else "Unassigned via bulk update"
                    )
                    drafts.append(ActivityDraft(ActivityType.NOTE.value, description))

                tags = _apply_tags(list(record.tags), update)
                if tags != list(record.tags):
                    changes["tags"] = dumps(tags)

                if not changes:
                    continue
                changes["updated_at"] = now
                session.update("sponsor_for_conference", "sfc_id", sfc_id, changes)
                for draft in drafts:
                    self.activity_log.append(session, sfc_id, draft, author)
                updated += 1

        logger.info("Bulk update changed %d of %d records", updated, len(sfc_ids))
        return BulkUpdateResult(updated=updated, total=len(sfc_ids))


def _apply_tags(current: list[str], update: BulkUpdate) -> list[str]:
    tags = normalize_tags(update.tags) if update.tags is not None else list(current)
    for tag in update.add_tags:
        if tag not in tags:
            tags.append(tag)
    return [tag for tag in tags if tag not in update.remove_tags]
