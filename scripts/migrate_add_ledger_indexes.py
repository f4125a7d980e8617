"""Idempotent migration to add stock ledger lookup indexes.

Adds indexes used by the day view, autofill and event resyncs:
- ledger_entries(location_id, day)
- sale_events(location_id, item_id, sale_date)
- transfer_permits(location_id, permit_date)
- propagation_runs(location_id, item_id)

Safe to rerun on Postgres or SQLite (uses IF NOT EXISTS).
"""
import argparse
import os
import sys

from sqlalchemy import create_engine, inspect, text


LOG_PREFIX = "[add_ledger_indexes]"

INDEX_DEFINITIONS = [
    {
        "name": "ix_ledger_entries_location_day",
        "table": "ledger_entries",
        "columns": ["location_id", "day"],
        "expression": "location_id, day",
    },
    {
        "name": "ix_sale_events_location_item_date",
        "table": "sale_events",
        "columns": ["location_id", "item_id", "sale_date"],
        "expression": "location_id, item_id, sale_date",
    },
    {
        "name": "ix_transfer_permits_location_date",
        "table": "transfer_permits",
        "columns": ["location_id", "permit_date"],
        "expression": "location_id, permit_date",
    },
    {
        "name": "ix_propagation_runs_location_item",
        "table": "propagation_runs",
        "columns": ["location_id", "item_id"],
        "expression": "location_id, item_id",
    },
]


def log(message: str) -> None:
    print(f"{LOG_PREFIX} {message}")
    sys.stdout.flush()


def get_database_url() -> str:
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL environment variable is not set")
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+psycopg://", 1)
    elif url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def table_has_columns(inspector, table: str, columns: list[str]) -> bool:
    if not inspector.has_table(table):
        log(f"Table {table} is missing; skipping related indexes.")
        return False

    column_names = {col["name"] for col in inspector.get_columns(table)}
    missing = [col for col in columns if col not in column_names]
    if missing:
        log(f"Table {table} lacks {', '.join(missing)}; skipping.")
        return False

    return True


def create_indexes(engine) -> int:
    inspector = inspect(engine)
    created = 0
    with engine.begin() as conn:
        for index in INDEX_DEFINITIONS:
            if not table_has_columns(inspector, index["table"], index["columns"]):
                continue

            log(f"Ensuring {index['name']}...")
            conn.execute(
                text(
                    f"CREATE INDEX IF NOT EXISTS {index['name']} "
                    f"ON {index['table']} ({index['expression']});"
                )
            )
            created += 1
    log(f"{created} index(es) ensured.")
    return created


def drop_indexes(engine) -> None:
    with engine.begin() as conn:
        for index in INDEX_DEFINITIONS:
            log(f"Dropping {index['name']} if present...")
            conn.execute(text(f"DROP INDEX IF EXISTS {index['name']};"))
    log("Index drop complete.")


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Add or drop the stock ledger lookup indexes."
    )
    parser.add_argument(
        "--downgrade",
        action="store_true",
        help="Drop the indexes instead of creating them.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(sys.argv[1:] if argv is None else argv)

    try:
        database_url = get_database_url()
    except RuntimeError as exc:
        log(f"Migration aborted: {exc}")
        sys.exit(1)

    engine = create_engine(database_url)
    log(f"Connected using dialect {engine.dialect.name}.")

    try:
        if args.downgrade:
            drop_indexes(engine)
        else:
            create_indexes(engine)
        log("Migration completed successfully.")
    except Exception as exc:
        log(f"Migration failed: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
