#!/usr/bin/env python3
"""List the tables and indexes of the configured database."""
from sqlalchemy import create_engine, inspect

from camrent.config import get_settings


def check_indexes(database_url: str | None = None) -> None:
    engine = create_engine(database_url or get_settings().database_url)
    inspector = inspect(engine)
    print("Tables:")
    for table in inspector.get_table_names():
        print(f"  {table}")

    print("\nDatabase Indexes:")
    for table in inspector.get_table_names():
        for index in inspector.get_indexes(table):
            columns = ", ".join(column for column in index["column_names"] if column)
            unique = " UNIQUE" if index.get("unique") else ""
            print(f"Table: {table}, Index: {index['name']}{unique}, Columns: {columns}")


if __name__ == "__main__":
    check_indexes()
