from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass

from sponsorcrm.errors import NotFoundError
from sponsorcrm.services.activity import ActivityLog
from sponsorcrm.store.migrations import Schema, load_schema
from sponsorcrm.store.sqlite import SqliteSession, SqliteStore

logger = logging.getLogger(__name__)

ASSET_REF = "assets.asset_id"


@dataclass(frozen=True)
class DeletePlan:
    sfc_ids: tuple[str, ...]
    activity_ids: tuple[str, ...]
    asset_ids: tuple[str, ...]
    retained_asset_ids: tuple[str, ...] = ()
    sponsor_id: str | None = None

    def summary(self) -> dict[str, int]:
        return {
            "sponsor_for_conference": len(self.sfc_ids),
            "activities": len(self.activity_ids),
            "assets": len(self.asset_ids),
            "sponsors": 1 if self.sponsor_id else 0,
        }


@dataclass(frozen=True)
class BulkDeleteResult:
    deleted: int
    total: int
    asset_ids: tuple[str, ...] = ()


class AssetReferenceGuard:
    """Counts references to an asset across every schema column that points at assets."""

    def __init__(self, schema: Schema | None = None) -> None:
        schema = schema or load_schema()
        self.references = schema.references_to(ASSET_REF)

    def count_references(
        self,
        session: SqliteSession,
        asset_id: str,
        exclude: Mapping[str, Iterable[str]] | None = None,
    ) -> int:
        exclude = {table: set(ids) for table, ids in (exclude or {}).items()}
        total = 0
        for table, column, primary_key in self.references:
            rows = session.fetch_all(
                f"SELECT {primary_key} AS pk FROM {table} WHERE {column} = ?", (asset_id,)
            )
            skipped = exclude.get(table, set())
            total += sum(1 for row in rows if row["pk"] not in skipped)
        return total

    def partition(
        self,
        session: SqliteSession,
        candidate_ids: Iterable[str | None],
        exclude: Mapping[str, Iterable[str]] | None = None,
    ) -> tuple[list[str], list[str]]:
        """Split candidates into (safe to delete, still referenced elsewhere)."""
        safe: list[str] = []
        retained: list[str] = []
        # dict.fromkeys keeps first-seen order while removing duplicates
        for asset_id in dict.fromkeys(c for c in candidate_ids if c):
            if self.count_references(session, asset_id, exclude) == 0:
                safe.append(asset_id)
            else:
                retained.append(asset_id)
        return safe, retained


class CascadingDeleteExecutor:
    def __init__(
        self,
        store: SqliteStore,
        activity_log: ActivityLog,
        guard: AssetReferenceGuard | None = None,
    ) -> None:
        self.store = store
        self.activity_log = activity_log
        self.guard = guard or AssetReferenceGuard()

    def plan_records(
        self,
        session: SqliteSession,
        sfc_ids: Iterable[str],
        delete_contract_assets: bool,
        missing_ok: bool = False,
    ) -> DeletePlan:
        sfc_ids = list(dict.fromkeys(sfc_ids))
        found: list[str] = []
        candidates: list[str | None] = []
        for sfc_id in sfc_ids:
            row = session.fetch_one(
                "SELECT sfc_id, contract_asset_id FROM sponsor_for_conference WHERE sfc_id = ?",
                (sfc_id,),
            )
            if row is None:
                if missing_ok:
                    continue
                raise NotFoundError(f"Sponsor for conference not found: {sfc_id}")
            found.append(sfc_id)
            candidates.append(row["contract_asset_id"])
        safe: list[str] = []
        retained: list[str] = []
        if delete_contract_assets:
            safe, retained = self.guard.partition(
                session, candidates, exclude={"sponsor_for_conference": found}
            )
        return DeletePlan(
            sfc_ids=tuple(found),
            activity_ids=tuple(self.activity_log.ids_for(session, found)),
            asset_ids=tuple(safe),
            retained_asset_ids=tuple(retained),
        )

    def plan_sponsor(self, session: SqliteSession, sponsor_id: str) -> DeletePlan:
        sponsor = session.fetch_one(
            "SELECT sponsor_id, logo_asset_id FROM sponsors WHERE sponsor_id = ?", (sponsor_id,)
        )
        if sponsor is None:
            raise NotFoundError(f"Sponsor not found: {sponsor_id}")
        records = session.fetch_all(
            "SELECT sfc_id, contract_asset_id FROM sponsor_for_conference WHERE sponsor_id = ?",
            (sponsor_id,),
        )
        sfc_ids = [row["sfc_id"] for row in records]
        candidates = [row["contract_asset_id"] for row in records]
        candidates.append(sponsor["logo_asset_id"])
        safe, retained = self.guard.partition(
            session,
            candidates,
            exclude={"sponsor_for_conference": sfc_ids, "sponsors": [sponsor_id]},
        )
        return DeletePlan(
            sfc_ids=tuple(sfc_ids),
            activity_ids=tuple(self.activity_log.ids_for(session, sfc_ids)),
            asset_ids=tuple(safe),
            retained_asset_ids=tuple(retained),
            sponsor_id=sponsor_id,
        )

    def execute(self, session: SqliteSession, plan: DeletePlan) -> None:
        # Children before parents so foreign keys hold at every statement.
        session.delete("activities", "activity_id", plan.activity_ids)
        session.delete("sponsor_for_conference", "sfc_id", plan.sfc_ids)
        if plan.sponsor_id:
            session.delete("sponsors", "sponsor_id", [plan.sponsor_id])
        session.delete("assets", "asset_id", plan.asset_ids)

    def delete_sponsor_for_conference(
        self, sfc_id: str, delete_contract_asset: bool = False
    ) -> DeletePlan:
        return self._run(
            lambda session: self.plan_records(session, [sfc_id], delete_contract_asset)
        )

    def delete_sponsor(self, sponsor_id: str) -> DeletePlan:
        return self._run(lambda session: self.plan_sponsor(session, sponsor_id))

    def delete_many(
        self, sfc_ids: Iterable[str], delete_contract_assets: bool = False
    ) -> BulkDeleteResult:
        """Delete several records in one transaction; unknown ids are skipped and counted."""
        sfc_ids = list(dict.fromkeys(sfc_ids))
        plan = self._run(
            lambda session: self.plan_records(
                session, sfc_ids, delete_contract_assets, missing_ok=True
            )
        )
        return BulkDeleteResult(
            deleted=len(plan.sfc_ids),
            total=len(sfc_ids),
            asset_ids=plan.asset_ids,
        )

    def release_asset(
        self,
        session: SqliteSession,
        asset_id: str | None,
        exclude: Mapping[str, Iterable[str]] | None = None,
    ) -> bool:
        """Delete an asset inside the caller's transaction if nothing else references it."""
        if not asset_id:
            return False
        safe, _ = self.guard.partition(session, [asset_id], exclude)
        session.delete("assets", "asset_id", safe)
        return bool(safe)

    def _run(self, planner: Callable[[SqliteSession], DeletePlan]) -> DeletePlan:
        with self.store.transaction() as session:
            plan = planner(session)
            self.execute(session, plan)
        logger.info(
            "Deleted %s (retained assets: %s)",
            plan.summary(),
            ", ".join(plan.retained_asset_ids) or "none",
        )
        return plan
