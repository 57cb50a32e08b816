#!/usr/bin/env python3
"""
DB-Audit Utility Scripts
========================

Helpers around the audit run:
- Configuration validation without touching any database
- Table discovery and configuration generation from the source catalog
- History inspection (metrics of the last N audit runs)

Usage:
    python db_audit_utils.py [command] [options]

Commands:
    validate     - Validate existing configuration
    discover     - Discover tables and generate configuration
    history      - Show saved history of recent audit runs
"""

import sys
import logging
import argparse
import yaml
import pandas as pd
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Any, Optional, Tuple

from db_audit import (
    AuditConfig, AuditError, DatabaseConfig, DatabaseManager, RowCanonicalizer,
    SnapshotStore, SourceConfig, CONFIG_SECTIONS, build_config, load_config
)


# Oracle reserved words that cannot be unquoted table names
ORACLE_RESERVED_WORDS = {'AUDIT', 'TABLE', 'ROWS', 'LEVEL', 'SESSION', 'USER'}


class ConfigValidator:
    """Validates DB-Audit configurations."""

    def __init__(self):
        self.validation_errors = []
        self.validation_warnings = []

    def validate_configuration(self, config_path: str) -> Tuple[bool, List[str], List[str]]:
        """Validate a DB-Audit configuration file."""
        self.validation_errors = []
        self.validation_warnings = []

        try:
            with open(config_path, 'r') as f:
                config = yaml.safe_load(f) or {}
        except Exception as e:
            self.validation_errors.append(f"Failed to load configuration file: {e}")
            return False, self.validation_errors, self.validation_warnings

        return self.validate_dict(config)

    def validate_dict(self, config: Dict[str, Any]) -> Tuple[bool, List[str], List[str]]:
        """Validate an already parsed configuration mapping."""
        self.validation_errors = []
        self.validation_warnings = []

        if not isinstance(config, dict):
            self.validation_errors.append("Configuration must be a mapping")
            return False, self.validation_errors, self.validation_warnings

        self._validate_structure(config)
        self._validate_database_config(config.get('audit') or {}, 'audit')
        self._validate_database_config(config.get('source') or {}, 'source')
        self._validate_table_configs((config.get('source') or {}).get('tables'))
        self._validate_run_config(config.get('run') or {})

        # Catch anything the checks above do not know about (unknown keys, bad types)
        if not self.validation_errors:
            try:
                build_config(config)
            except AuditError as e:
                self.validation_errors.append(str(e))

        is_valid = len(self.validation_errors) == 0
        return is_valid, self.validation_errors, self.validation_warnings

    def _validate_structure(self, config: Dict[str, Any]):
        """Validate top-level sections."""
        for section in config:
            if section not in CONFIG_SECTIONS:
                self.validation_errors.append(f"Unknown section: {section}")

        for section in ('audit', 'source', 'run', 'logging'):
            if section in config and config[section] is not None and not isinstance(config[section], dict):
                self.validation_errors.append(f"'{section}' must be a mapping")

        separator = config.get('key_separator', '|')
        if not isinstance(separator, str) or separator == '':
            self.validation_errors.append("key_separator must be a non-empty string")

        if 'source' not in config:
            self.validation_warnings.append("No source section - defaults to ./source.db")

    def _validate_database_config(self, db_config: Dict[str, Any], config_name: str):
        """Validate database connection configuration."""
        if not isinstance(db_config, dict):
            return

        db_type = db_config.get('type', 'sqlite')
        if db_type not in DatabaseManager.SUPPORTED_TYPES:
            self.validation_errors.append(
                f"{config_name}.type must be one of {', '.join(DatabaseManager.SUPPORTED_TYPES)}"
            )
            return

        if db_type == 'oracle':
            for field_name in ('user', 'password', 'connection_string'):
                if not db_config.get(field_name):
                    self.validation_errors.append(f"{config_name}.{field_name} is required for oracle")
            dsn = db_config.get('connection_string') or ''
            if dsn and ':' not in dsn and '/' not in dsn:
                self.validation_warnings.append(
                    f"{config_name}.connection_string should be a DSN (host:port/service)"
                )
            if config_name == 'audit':
                for field_name, default in (('audit_table_name', 'audit'), ('history_table_name', 'history')):
                    if str(db_config.get(field_name) or default).upper() in ORACLE_RESERVED_WORDS:
                        self.validation_warnings.append(
                            f"audit.{field_name} '{db_config.get(field_name) or default}' "
                            f"is a reserved word in Oracle - choose another table name"
                        )

        if config_name == 'source' and db_type == 'sqlite':
            path = db_config.get('connection_string', './source.db')
            if not Path(path).exists():
                self.validation_warnings.append(f"source database file not found: {path}")

    def _validate_table_configs(self, table_configs: Optional[List[Any]]):
        """Validate individual table configurations."""
        if table_configs is None:
            self.validation_warnings.append("source.tables not set - every catalog table will be audited")
            return

        if not isinstance(table_configs, list):
            self.validation_errors.append("source.tables must be a list")
            return

        if len(table_configs) == 0:
            self.validation_warnings.append("source.tables is empty - nothing will be audited")

        table_names = set()
        for i, table_config in enumerate(table_configs):
            if isinstance(table_config, str):
                table_config = {'table_name': table_config}
            if not isinstance(table_config, dict) or 'table_name' not in table_config:
                self.validation_errors.append(f"tables[{i}].table_name is required")
                continue

            table_name = table_config['table_name']
            if table_name in table_names:
                self.validation_errors.append(f"Duplicate table name: {table_name}")
            table_names.add(table_name)

            key_columns = table_config.get('key_columns')
            if key_columns is None:
                continue
            if not isinstance(key_columns, list) or not all(isinstance(c, str) and c for c in key_columns):
                self.validation_errors.append(
                    f"tables[{i}] ({table_name}).key_columns must be a list of column names"
                )
            elif len(key_columns) == 0:
                self.validation_warnings.append(
                    f"tables[{i}] ({table_name}).key_columns is empty - row hash will be used as identity"
                )
            elif len(set(key_columns)) != len(key_columns):
                self.validation_errors.append(f"tables[{i}] ({table_name}).key_columns has duplicates")

    def _validate_run_config(self, run_config: Dict[str, Any]):
        """Validate run settings."""
        if not isinstance(run_config, dict):
            return

        algorithm = run_config.get('hash_algorithm', 'md5')
        if algorithm not in RowCanonicalizer.SUPPORTED_ALGORITHMS:
            self.validation_errors.append(
                f"run.hash_algorithm must be one of {', '.join(RowCanonicalizer.SUPPORTED_ALGORITHMS)}"
            )

        fetch_size = run_config.get('fetch_size', 1000)
        if not isinstance(fetch_size, int) or fetch_size < 1:
            self.validation_errors.append("run.fetch_size must be a positive integer")
        elif fetch_size > 100000:
            self.validation_warnings.append("run.fetch_size above 100,000 may use a lot of memory")

        max_workers = run_config.get('max_workers', 1)
        if not isinstance(max_workers, int) or max_workers < 1 or max_workers > 32:
            self.validation_errors.append("run.max_workers must be between 1 and 32")

        table_timeout = run_config.get('table_timeout')
        if table_timeout is not None and (not isinstance(table_timeout, (int, float)) or table_timeout <= 0):
            self.validation_errors.append("run.table_timeout must be a positive number of seconds")

        if run_config.get('on_error', 'abort') not in ('abort', 'continue'):
            self.validation_errors.append("run.on_error must be 'abort' or 'continue'")

        retry_attempts = run_config.get('retry_attempts', 3)
        if not isinstance(retry_attempts, int) or retry_attempts < 1:
            self.validation_errors.append("run.retry_attempts must be at least 1")


class TableDiscovery:
    """Discovers source tables and generates DB-Audit configurations."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def discover_tables(self) -> List[Dict[str, Any]]:
        """List catalog tables with their row counts and primary key columns."""
        tables = []
        for table_name in self.db_manager.list_catalog_tables():
            tables.append({
                'table_name': table_name,
                'row_count': self.db_manager.count_rows(table_name),
                'key_columns': self.db_manager.get_primary_key_columns(table_name),
            })
        return tables

    def generate_configuration(self, source_config: DatabaseConfig,
                               audit_path: str = './audit.db') -> Dict[str, Any]:
        """Generate a complete DB-Audit configuration for every discovered table."""
        table_configs = []
        for table_info in self.discover_tables():
            table_config = {'table_name': table_info['table_name']}
            if table_info['key_columns']:
                table_config['key_columns'] = table_info['key_columns']
            else:
                logging.warning(f"Table {table_info['table_name']} has no primary key - "
                                "row hash will be used as identity")
            table_configs.append(table_config)

        defaults = AuditConfig().to_dict()
        source = {
            'type': source_config.type,
            'connection_string': source_config.connection_string,
        }
        if source_config.user:
            source['user'] = source_config.user
            source['password'] = 'CHANGE_ME'
        source['tables'] = table_configs

        return {
            'key_separator': defaults['key_separator'],
            'audit': {'type': 'sqlite', 'connection_string': audit_path},
            'source': source,
            'run': defaults['run'],
            'logging': defaults['logging'],
        }


def history_report(store: SnapshotStore, limit: Optional[int] = None) -> pd.DataFrame:
    """Pivot saved history into one column per execution timestamp."""
    df = store.read_history(limit)
    if df.empty:
        return df

    report = df.pivot_table(index='Key', columns='ExecutionTimestamp',
                            values='Value', aggfunc='last')
    # Run totals first, then tables by name
    order = sorted(report.index, key=lambda key: (key.startswith('Table '), key))
    return report.reindex(order)


def cmd_validate(args):
    """Validate configuration file."""
    print(f"🔍 Validating configuration: {args.config}")

    validator = ConfigValidator()
    is_valid, errors, warnings = validator.validate_configuration(args.config)

    if errors:
        print("\n❌ Validation Errors:")
        for error in errors:
            print(f"  • {error}")

    if warnings:
        print("\n⚠️  Validation Warnings:")
        for warning in warnings:
            print(f"  • {warning}")

    if is_valid:
        print("\n✅ Configuration is valid!")
    else:
        print(f"\n❌ Configuration has {len(errors)} errors")
        sys.exit(1)


def cmd_discover(args):
    """Discover tables and generate configuration."""
    print("🔍 Discovering source tables...")

    source_config = SourceConfig(
        type=args.type,
        connection_string=args.connection_string,
        user=args.user,
        password=args.password
    )
    db_manager = DatabaseManager(source_config, read_only=True)
    discovery = TableDiscovery(db_manager)

    try:
        config = discovery.generate_configuration(source_config, args.audit_path)
    except AuditError as e:
        print(f"❌ Discovery failed: {e}")
        sys.exit(1)
    finally:
        db_manager.close()

    output_file = args.output or 'config.yaml'
    with open(output_file, 'w') as f:
        f.write("# DB-Audit Configuration\n")
        f.write(f"# Generated on: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
        f.write(f"# Tables discovered: {len(config['source']['tables'])}\n\n")
        yaml.safe_dump(config, f, default_flow_style=False, indent=2, sort_keys=False)

    print(f"✅ Configuration generated: {output_file}")
    for table_config in config['source']['tables']:
        key_columns = ', '.join(table_config.get('key_columns', [])) or '(row hash)'
        print(f"  • {table_config['table_name']}: key={key_columns}")


def cmd_history(args):
    """Show saved history."""
    try:
        config = load_config(args.config)
        store = SnapshotStore(DatabaseManager(config.audit), config.audit)
        try:
            report = history_report(store, args.limit)
        finally:
            store.close()
    except AuditError as e:
        print(f"❌ Could not read history: {e}")
        sys.exit(1)

    if report.empty:
        print("No history saved yet (run the audit with -H 1)")
        return

    print(report.to_string())


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="DB-Audit Utility Scripts",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Validate command
    validate_parser = subparsers.add_parser('validate', help='Validate configuration file')
    validate_parser.add_argument('config', help='Configuration file to validate')

    # Discover command
    discover_parser = subparsers.add_parser('discover', help='Discover tables and generate configuration')
    discover_parser.add_argument('--type', choices=DatabaseManager.SUPPORTED_TYPES, default='sqlite',
                                 help='Source database type')
    discover_parser.add_argument('--connection-string', required=True,
                                 help='SQLite file path or Oracle DSN')
    discover_parser.add_argument('--user', help='Database username (oracle)')
    discover_parser.add_argument('--password', help='Database password (oracle)')
    discover_parser.add_argument('--audit-path', default='./audit.db', help='SQLite audit store path')
    discover_parser.add_argument('--output', help='Output configuration file')

    # History command
    history_parser = subparsers.add_parser('history', help='Show saved history')
    history_parser.add_argument('--config', default='config.yaml', help='Configuration file')
    history_parser.add_argument('--limit', type=int, default=5, help='Number of recent runs to show')

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    if args.command == 'validate':
        cmd_validate(args)
    elif args.command == 'discover':
        cmd_discover(args)
    elif args.command == 'history':
        cmd_history(args)


if __name__ == "__main__":
    main()
