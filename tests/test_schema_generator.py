import json

from lead_credits.schema_generator import (
    generate_logical_schema,
    main,
    render_nosql_schema,
    render_sql_ddl,
)


def test_logical_schema_covers_all_tables():
    schema = generate_logical_schema()

    assert set(schema) == {
        "accounts",
        "super_keys",
        "referral_logs",
        "ad_watch_logs",
        "credit_ledger",
    }
    accounts = schema["accounts"]["properties"]
    assert accounts["credits"]["type"] == "integer"
    assert accounts["referred_by"]["nullable"] is True
    assert accounts["entitlement_expires_at"]["type"] == "datetime"
    assert schema["credit_ledger"]["properties"]["details"]["type"] == "object"
    assert {"columns": ["code"], "unique": True} in schema["super_keys"]["indexes"]


def test_sql_ddl_renders_tables_and_indexes():
    ddl = render_sql_ddl(generate_logical_schema())

    assert 'CREATE TABLE IF NOT EXISTS "accounts"' in ddl
    assert '"credits" INTEGER NOT NULL' in ddl
    assert '"referred_by" TEXT NULL' in ddl
    assert '"entitlement_expires_at" TIMESTAMPTZ NULL' in ddl
    assert '"id" TEXT NOT NULL' in ddl
    assert (
        'CREATE UNIQUE INDEX IF NOT EXISTS "ix_accounts_referral_code" '
        'ON "accounts" ("referral_code");'
    ) in ddl


def test_sql_ddl_dialect_types():
    ddl = render_sql_ddl(generate_logical_schema(), dialect="mysql")

    assert "TIMESTAMPTZ" not in ddl
    assert '"details" JSON NOT NULL' in ddl


def test_mongo_validators_and_indexes():
    rendered = json.loads(render_nosql_schema(generate_logical_schema()))

    accounts = rendered["accounts"]
    validator = accounts["validator"]["$jsonSchema"]
    assert "id" not in validator["properties"]
    assert validator["properties"]["credits"]["bsonType"] == "int"
    assert validator["properties"]["referred_by"]["bsonType"] == ["string", "null"]
    assert "device_id" in validator["required"]
    assert {
        "keys": [["referral_code", 1]],
        "unique": True,
        "name": "ix_accounts_referral_code",
    } in accounts["indexes"]
    ledger = rendered["credit_ledger"]["validator"]["$jsonSchema"]["properties"]
    assert ledger["event_type"]["bsonType"] == "string"
    assert ledger["created_at"]["bsonType"] == "date"


def test_cli_writes_output_file(tmp_path):
    target = tmp_path / "schema.sql"

    main(["sql", "--dialect", "sqlite", "-o", str(target)])

    assert 'CREATE TABLE IF NOT EXISTS "super_keys"' in target.read_text(encoding="utf-8")
