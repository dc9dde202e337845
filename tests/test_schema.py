import sqlite3
from pathlib import Path

import pytest

from sponsorcrm.store.migrations import SchemaError, load_schema, table_ddl
from sponsorcrm.store.sqlite import SqliteStore


def test_apply_schema_creates_tables(tmp_path: Path) -> None:
    db_path = tmp_path / "test.sqlite"
    store = SqliteStore(db_path)
    store.apply_schema()

    for table in ("sponsors", "conferences", "sponsor_for_conference", "activities", "assets"):
        row = store.fetch_one("SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,))
        assert row is not None, table


def test_apply_schema_is_idempotent(tmp_path: Path) -> None:
    store = SqliteStore(tmp_path / "test.sqlite")
    store.apply_schema()
    store.apply_schema()

    row = store.fetch_one("SELECT COUNT(*) AS n FROM __schema_meta")
    assert row["n"] == 1


def test_asset_references_cover_sponsor_logo_and_contract() -> None:
    references = {(table, column) for table, column, _ in load_schema().references_to("assets.asset_id")}
    assert ("sponsors", "logo_asset_id") in references
    assert ("sponsor_for_conference", "contract_asset_id") in references


def test_enum_columns_reject_unknown_values(tmp_path: Path) -> None:
    store = SqliteStore(tmp_path / "test.sqlite")
    store.apply_schema()
    now = "2026-03-10T12:00:00+00:00"
    store.execute(
        "INSERT INTO signing_agreements (agreement_id, name, participant_email, state, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        ("tok-1", "Agreement", "ada@acme.example", "OUT_FOR_SIGNATURE", now, now),
    )

    with pytest.raises(sqlite3.IntegrityError):
        store.execute("UPDATE signing_agreements SET state = ? WHERE agreement_id = ?", ("ARCHIVED", "tok-1"))


def test_reminder_count_defaults_to_zero() -> None:
    ddl = table_ddl(load_schema(), "sponsor_for_conference")

    assert "reminder_count INTEGER NOT NULL DEFAULT 0" in ddl
    assert "CHECK (signature_status IN ('not-started', 'pending', 'signed', 'rejected', 'expired'))" in ddl


def test_dangling_reference_is_a_schema_error(tmp_path: Path) -> None:
    schema_path = tmp_path / "schema.yaml"
    schema_path.write_text(
        "tables:\n"
        "  activities:\n"
        "    primary_key: activity_id\n"
        "    fields:\n"
        "      activity_id: {type: uuid, required: true}\n"
        "      sfc_id: {type: uuid, ref: sponsor_for_conference.sfc_id}\n",
        encoding="utf-8",
    )

    with pytest.raises(SchemaError, match="sponsor_for_conference.sfc_id"):
        load_schema(schema_path)
