#!/usr/bin/env python3
"""
DB-Audit Quick Start Example
============================

Builds a small SQLite source database in a temporary directory and audits it
three times:
1. First run against an empty audit store (everything is new, no row dumps)
2. Second run without changes (nothing is recorded)
3. Third run after updating and inserting rows (only those are recorded)

Run this script to see DB-Audit in action without any configuration.
"""

import sqlite3
import tempfile
from pathlib import Path
from datetime import datetime

import yaml

from db_audit import AuditRunner, format_summary, load_config, setup_logging
from db_audit_utils import ConfigValidator


def create_sample_source(path: Path):
    """Create the demo source database."""
    connection = sqlite3.connect(path)
    connection.executescript("""
        CREATE TABLE artist (artist_id INTEGER PRIMARY KEY, name TEXT);
        CREATE TABLE album (album_id INTEGER PRIMARY KEY, artist_id INTEGER, title TEXT);
        CREATE TABLE tag (label TEXT);

        INSERT INTO artist VALUES (1, 'AC/DC'), (2, 'Accept'), (3, 'Aerosmith');
        INSERT INTO album VALUES
            (1, 1, 'For Those About To Rock We Salute You'),
            (2, 2, 'Balls to the Wall'),
            (3, 2, 'Restless and Wild'),
            (4, 3, 'Big Ones');
        INSERT INTO tag VALUES ('rock'), ('metal'), ('rock');
    """)
    connection.commit()
    connection.close()


def create_sample_config(workdir: Path) -> dict:
    """Configuration for the demo source."""
    return {
        'key_separator': '|',
        'audit': {
            'type': 'sqlite',
            'connection_string': str(workdir / 'audit.db'),
        },
        'source': {
            'type': 'sqlite',
            'connection_string': str(workdir / 'source.db'),
            'tables': [
                {'table_name': 'artist', 'key_columns': ['artist_id']},
                {'table_name': 'album', 'key_columns': ['artist_id', 'album_id']},
                # No key columns: identity is the row hash
                {'table_name': 'tag'},
            ],
        },
        'run': {
            'show_progress': False,
        },
        'logging': {
            'level': 'WARNING',
        },
    }


def modify_source(path: Path):
    """Update one album title and add a new artist."""
    connection = sqlite3.connect(path)
    connection.execute("UPDATE album SET title = 'Restless & Wild' WHERE album_id = 3")
    connection.execute("INSERT INTO artist VALUES (4, 'Alanis Morissette')")
    connection.commit()
    connection.close()


def show_audit_rows(path: Path):
    """Print what the audit store holds."""
    connection = sqlite3.connect(path)
    rows = connection.execute(
        "SELECT TableName, PrimaryKey, RowHash, RowDump IS NOT NULL FROM audit ORDER BY AuditId"
    ).fetchall()
    connection.close()

    print(f"\n📋 Audit store contents ({len(rows)} rows):")
    for table_name, primary_key, row_hash, has_dump in rows:
        print(f"  {table_name:8} {str(primary_key):8} {row_hash}  dump={'yes' if has_dump else 'no'}")


def main():
    """Main demonstration function."""
    print("🛡️  DB-AUDIT QUICK START")
    print("=" * 60)
    print(f"Generated on: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    with tempfile.TemporaryDirectory() as tmp:
        workdir = Path(tmp)
        create_sample_source(workdir / 'source.db')

        config_file = workdir / 'config.yaml'
        with open(config_file, 'w') as f:
            yaml.safe_dump(create_sample_config(workdir), f, sort_keys=False)

        is_valid, errors, warnings = ConfigValidator().validate_configuration(str(config_file))
        print(f"\n🔍 Configuration valid: {is_valid}")
        for message in errors + warnings:
            print(f"  • {message}")

        config = load_config(str(config_file), required=True)
        setup_logging(config.logging_config)

        print("\n1️⃣  First run (empty audit store)")
        print(format_summary(AuditRunner(config, save_history=1).run()))

        print("\n2️⃣  Second run (no changes)")
        print(format_summary(AuditRunner(config, save_history=1).run()))

        modify_source(workdir / 'source.db')
        print("\n3️⃣  Third run (one album renamed, one artist added)")
        print(format_summary(AuditRunner(config, save_history=1).run()))

        show_audit_rows(workdir / 'audit.db')

    print("""
🎯 Next Steps
=============
1. Install:            pip install -e .
2. Generate a config:  python db_audit_utils.py discover --connection-string ./your.sqlite
3. Validate it:        python db_audit_utils.py validate config.yaml
4. Run an audit:       python db_audit.py --config config.yaml -a -v -H 1
5. Review history:     python db_audit_utils.py history --config config.yaml
""")


if __name__ == "__main__":
    main()
