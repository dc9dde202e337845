from __future__ import annotations

import csv
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from openpyxl import Workbook
from openpyxl.styles import Font

from sponsorcrm.services.sponsors import list_records
from sponsorcrm.store.sqlite import SqliteStore

PIPELINE_SHEET = "pipeline"
ACTIVITY_SHEET = "activities"

ACTIVITY_QUERY = (
    "SELECT activities.created_at, sponsors.name AS sponsor_name, conferences.title AS conference_title, "
    "activities.activity_type, activities.description, activities.created_by, activities.sfc_id "
    "FROM activities "
    "JOIN sponsor_for_conference AS sfc ON activities.sfc_id = sfc.sfc_id "
    "JOIN sponsors ON sfc.sponsor_id = sponsors.sponsor_id "
    "JOIN conferences ON sfc.conference_id = conferences.conference_id "
)


def export_excel(store: SqliteStore, out_path: Path, conference_id: str | None = None) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    wb = Workbook()
    wb.remove(wb.active)
    for title, rows in _sheets(store, conference_id):
        _write_sheet(wb.create_sheet(title=title), rows)
    wb.save(out_path)


def export_csv_tables(store: SqliteStore, out_dir: Path, conference_id: str | None = None) -> list[Path]:
    out_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    for title, rows in _sheets(store, conference_id):
        headers = list(rows[0].keys()) if rows else []
        csv_path = out_dir / f"{title}.csv"
        with csv_path.open("w", newline="", encoding="utf-8") as handle:
            writer = csv.writer(handle)
            writer.writerow(headers)
            for row in rows:
                writer.writerow([row[h] for h in headers])
        written.append(csv_path)
    return written


def _sheets(store: SqliteStore, conference_id: str | None) -> list[tuple[str, list[dict[str, Any]]]]:
    query = ACTIVITY_QUERY
    params: list[str] = []
    if conference_id:
        query += "WHERE sfc.conference_id = ? "
        params.append(conference_id)
    query += "ORDER BY activities.created_at DESC, activities.rowid DESC"
    activities = [dict(row) for row in store.fetch_all(query, params)]
    return [
        (PIPELINE_SHEET, list_records(store, conference_id=conference_id)),
        (ACTIVITY_SHEET, activities),
    ]


def _write_sheet(ws, rows: Sequence[dict[str, Any]]) -> None:
    if not rows:
        return
    headers = list(rows[0].keys())
    ws.append(headers)
    for cell in ws[1]:
        cell.font = Font(bold=True)
    ws.freeze_panes = "A2"
    for row in rows:
        ws.append([row[h] for h in headers])
