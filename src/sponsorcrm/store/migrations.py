from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

DEFAULT_SCHEMA_PATH = Path(__file__).with_name("canonical.yaml")

TYPE_MAP = {
    "uuid": "TEXT",
    "text": "TEXT",
    "number": "REAL",
    "int": "INTEGER",
    "datetime": "TEXT",
    "date": "TEXT",
    "enum": "TEXT",
    "bool": "INTEGER",
    "json": "TEXT",
    "blob": "BLOB",
}


@dataclass(frozen=True)
class Schema:
    version: int
    enums: dict[str, list[str]]
    tables: dict[str, Any]

    def fields(self, table_name: str) -> dict[str, Any]:
        return self.tables[table_name].get("fields") or {}

    def references_to(self, target: str) -> list[tuple[str, str, str]]:
        """Return (table, column, primary_key) for every field whose ref is ``target``."""
        found: list[tuple[str, str, str]] = []
        for table_name, table_def in self.tables.items():
            primary_key = table_def.get("primary_key")
            for field_name, field_def in self.fields(table_name).items():
                if field_def.get("ref") == target:
                    found.append((table_name, field_name, primary_key))
        return found


class SchemaError(RuntimeError):
    pass


def load_schema(schema_path: Path = DEFAULT_SCHEMA_PATH) -> Schema:
    data = yaml.safe_load(schema_path.read_text(encoding="utf-8")) or {}
    enums = data.get("enums") or {}
    tables = data.get("tables") or {}
    if not isinstance(tables, dict):
        raise SchemaError("Schema tables must be a mapping.")
    for table_name, table_def in tables.items():
        if not isinstance(table_def, dict) or not isinstance(table_def.get("fields"), dict):
            raise SchemaError(f"Table {table_name} fields must be a mapping.")
        for field_name, field_def in table_def["fields"].items():
            if not isinstance(field_def, dict):
                raise SchemaError(f"Field {table_name}.{field_name} must be a mapping.")
            _check_field(table_name, field_name, field_def, enums, tables)
    return Schema(version=data.get("version", 1), enums=enums, tables=tables)


def apply_schema(conn, schema_path: Path = DEFAULT_SCHEMA_PATH) -> None:
    schema = load_schema(schema_path)
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute(
        "CREATE TABLE IF NOT EXISTS __schema_meta (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
    )

    for table_name, table_def in schema.tables.items():
        conn.execute(table_ddl(schema, table_name))
        _create_indexes(conn, table_name, table_def)

    conn.execute(
        "INSERT OR REPLACE INTO __schema_meta (version, applied_at) VALUES (?, datetime('now'))",
        (schema.version,),
    )
    conn.commit()


def table_ddl(schema: Schema, table_name: str) -> str:
    primary_key = schema.tables[table_name].get("primary_key")
    columns: list[str] = []
    constraints: list[str] = []

    for field_name, field_def in schema.fields(table_name).items():
        columns.append(_column_sql(field_name, field_def, primary_key))
        allowed = _allowed_values(schema, field_def)
        if allowed is not None:
            constraints.append(f"CHECK ({field_name} IN ({allowed}))")
        ref = field_def.get("ref")
        if ref:
            ref_table, ref_field = ref.split(".")
            constraints.append(f"FOREIGN KEY ({field_name}) REFERENCES {ref_table}({ref_field})")

    if isinstance(primary_key, list):
        columns.append(f"PRIMARY KEY ({', '.join(primary_key)})")

    return f"CREATE TABLE IF NOT EXISTS {table_name} ({', '.join(columns + constraints)});"


def _check_field(
    table_name: str,
    field_name: str,
    field_def: dict[str, Any],
    enums: dict[str, list[str]],
    tables: dict[str, Any],
) -> None:
    field_type = field_def.get("type")
    if field_type not in TYPE_MAP:
        raise SchemaError(f"Unknown field type {field_type} for {table_name}.{field_name}.")
    if field_type == "enum" and field_def.get("enum") not in enums:
        raise SchemaError(f"Field {table_name}.{field_name} names unknown enum {field_def.get('enum')}.")
    ref = field_def.get("ref")
    if ref:
        ref_table, _, ref_field = ref.partition(".")
        if ref_field not in ((tables.get(ref_table) or {}).get("fields") or {}):
            raise SchemaError(f"Field {table_name}.{field_name} references unknown column {ref}.")


def _allowed_values(schema: Schema, field_def: dict[str, Any]) -> str | None:
    if field_def["type"] == "enum":
        return ", ".join(_quote(value) for value in schema.enums[field_def["enum"]])
    if field_def["type"] == "bool":
        return "0, 1"
    return None


def _column_sql(field_name: str, field_def: dict[str, Any], primary_key: str | list[str]) -> str:
    parts = [field_name, TYPE_MAP[field_def["type"]]]
    if field_def.get("required", False):
        parts.append("NOT NULL")
    if "default" in field_def:
        parts.append(f"DEFAULT {_quote(field_def['default'])}")
    if isinstance(primary_key, str) and field_name == primary_key:
        parts.append("PRIMARY KEY")
    return " ".join(parts)


def _quote(value: Any) -> str:
    if isinstance(value, bool):
        return str(int(value))
    if isinstance(value, (int, float)):
        return str(value)
    return "'" + str(value).replace("'", "''") + "'"


def _create_indexes(conn, table_name: str, table_def: dict[str, Any]) -> None:
    for index_fields in table_def.get("indexes") or []:
        if not isinstance(index_fields, list) or not index_fields:
            continue
        idx_name = f"idx_{table_name}_{'_'.join(index_fields)}"
        conn.execute(f"CREATE INDEX IF NOT EXISTS {idx_name} ON {table_name} ({', '.join(index_fields)});")
