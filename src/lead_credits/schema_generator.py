from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type

from .models.account import Account
from .models.audit import AdWatchLog, ReferralLog
from .models.base import DBSerializableModel
from .models.entitlement import Entitlement
from .models.ledger import LedgerEntry


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    Account,
    Entitlement,
    ReferralLog,
    AdWatchLog,
    LedgerEntry,
]

# (table, columns, unique) for every lookup filter the engines issue
INDEXES: List[Tuple[str, Tuple[str, ...], bool]] = [
    (Account.collection_name, ("referral_code",), True),
    (Account.collection_name, ("external_identity_id",), False),
    (Account.collection_name, ("device_id", "external_identity_id"), False),
    (Entitlement.collection_name, ("code",), True),
    (ReferralLog.collection_name, ("referrer_identity_id",), False),
    (AdWatchLog.collection_name, ("account_id",), False),
    (LedgerEntry.collection_name, ("account_id", "created_at"), False),
]


def generate_logical_schema() -> Dict[str, Any]:
    """
    Generate a backend-agnostic logical schema for all registered models.
    This is the single source of truth; SQL/NoSQL specific renderers convert it.
    """
    schema = {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}
    for table, columns, unique in INDEXES:
        schema[table].setdefault("indexes", []).append(
            {"columns": list(columns), "unique": unique}
        )
    return schema


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    """
    Small SQL DDL renderer. For production you would typically plug this
    into a migration tool.
    """
    statements: List[str] = []
    for table_name, spec in schema.items():
        pk = spec.get("primary_key") or "id"
        columns: List[str] = []
        for field_name, meta in spec["properties"].items():
            sql_type = _map_logical_to_sql(meta["type"], dialect=dialect)
            nullable = "NULL" if meta["nullable"] and field_name != pk else "NOT NULL"
            columns.append(f'    "{field_name}" {sql_type} {nullable}')
        columns.append(f'    PRIMARY KEY ("{pk}")')
        statements.append(
            f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n' + ",\n".join(columns) + "\n);\n"
        )
        for index in spec.get("indexes", []):
            cols = index["columns"]
            name = f"ix_{table_name}_{'_'.join(cols)}"
            kind = "UNIQUE INDEX" if index["unique"] else "INDEX"
            col_list = ", ".join(f'"{c}"' for c in cols)
            statements.append(
                f'CREATE {kind} IF NOT EXISTS "{name}" ON "{table_name}" ({col_list});\n'
            )
    return "\n".join(statements)


_BSON_TYPES = {
    "integer": "int",
    "number": "double",
    "boolean": "bool",
    "string": "string",
    "datetime": "date",
    "object": "object",
    "array": "array",
}


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """
    Render per-collection `$jsonSchema` validators and index specs for
    MongoDB. The `id` column is stored as `_id`, so it is left out of the
    validator and never indexed separately.
    """
    collections: Dict[str, Any] = {}
    for table_name, spec in schema.items():
        pk = spec.get("primary_key") or "id"
        properties: Dict[str, Any] = {}
        for field_name, meta in spec["properties"].items():
            if field_name == pk:
                continue
            # Enums and other named types are persisted as their string value
            bson_type = _BSON_TYPES.get(meta["type"], "string")
            properties[field_name] = {
                "bsonType": [bson_type, "null"] if meta["nullable"] else bson_type
            }
            if meta.get("description"):
                properties[field_name]["description"] = meta["description"]
        collections[table_name] = {
            "validator": {
                "$jsonSchema": {
                    "bsonType": "object",
                    "required": [f for f in spec.get("required", []) if f != pk],
                    "properties": properties,
                }
            },
            "indexes": [
                {
                    "keys": [[column, 1] for column in index["columns"]],
                    "unique": index["unique"],
                    "name": f"ix_{table_name}_{'_'.join(index['columns'])}",
                }
                for index in spec.get("indexes", [])
            ],
        }
    return json.dumps(collections, indent=2)


def _map_logical_to_sql(logical_type: str, dialect: str) -> str:
    logical_type = logical_type.lower()
    if logical_type == "integer":
        return "INTEGER"
    if logical_type == "number":
        return "DOUBLE PRECISION"
    if logical_type == "boolean":
        return "BOOLEAN"
    if logical_type == "datetime":
        return "TIMESTAMPTZ" if dialect == "postgres" else "TIMESTAMP"
    if logical_type == "object":
        return "JSONB" if dialect == "postgres" else "JSON"
    return "TEXT"


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Generate store schemas for the lead credits ledger."
    )
    parser.add_argument("backend", choices=["sql", "mongo"], help="Schema flavour to render.")
    parser.add_argument(
        "--dialect",
        choices=["postgres", "mysql", "sqlite"],
        default="postgres",
        help="SQL dialect; ignored for mongo.",
    )
    parser.add_argument(
        "-o", "--output", type=Path, help="Write to this file instead of stdout."
    )
    args = parser.parse_args(argv)

    schema = generate_logical_schema()
    rendered = (
        render_sql_ddl(schema, dialect=args.dialect)
        if args.backend == "sql"
        else render_nosql_schema(schema)
    )
    if args.output is None:
        print(rendered)
        return
    args.output.write_text(rendered + "\n", encoding="utf-8")


if __name__ == "__main__":
    main()
