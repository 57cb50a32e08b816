#!/usr/bin/env python3
"""
DB-Audit: Hash-Based Row Change Auditing
========================================

Detects row-level changes in a relational source between successive runs
by content hashing, and appends only the changed rows to an audit store.

Each run, for every audited table:
- the previous snapshot of row hashes is loaded from the audit store
- every source row is canonicalized and hashed
- rows whose hash differs from the last recorded one (or that were never
  seen) are committed to the audit store in one transaction per table
- run statistics are summarized and optionally appended to a history log

Supported databases: SQLite (sqlite3) and Oracle (oracledb).

Usage:
    python db_audit.py --config config.yaml -a -v -H 1

Version: 1.0.0
"""

import re
import sys
import json
import math
import yaml
import base64
import hashlib
import logging
import sqlite3
import threading
import time
import argparse
from datetime import datetime, date, time as dt_time, timezone
from decimal import Decimal
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict, replace
from typing import List, Dict, Any, Optional, Tuple, Iterator, Callable
from pathlib import Path

import oracledb
import pandas as pd
import psutil
from tenacity import (
    RetryError, Retrying, before_sleep_log, retry_if_exception_type,
    stop_after_attempt, wait_exponential
)
from tqdm import tqdm


DB_ERRORS = (sqlite3.Error, oracledb.Error)

DATABASE_CHANGES = "Database changes"
ROWS_PROCESSED = "Rows processed"
EXECUTION_TIME = "Execution time"


# Errors

class AuditError(Exception):
    """Base exception for DB-Audit operations."""

    def __init__(self, message: str, table: Optional[str] = None,
                 row: Optional[Dict[str, Any]] = None):
        self.table = table
        self.row = row
        context = []
        if table:
            context.append(f"table={table}")
        if row is not None:
            preview = repr(row)
            if len(preview) > 200:
                preview = preview[:197] + "..."
            context.append(f"row={preview}")
        if context:
            message = f"{message} [{', '.join(context)}]"
        super().__init__(message)


class ConfigurationError(AuditError):
    """Invalid configuration, or data that contradicts it (e.g. an empty key)."""


class ConnectivityError(AuditError):
    """The source or the audit store cannot be reached."""


class QueryError(AuditError):
    """A statement failed against the source or the audit store."""


class SerializationError(AuditError):
    """A row cannot be canonicalized."""


class CommitError(AuditError):
    """Writing changed rows or history to the audit store failed."""


class TableTimeoutError(AuditError):
    """A table scan exceeded run.table_timeout."""


class RunCancelledError(AuditError):
    """The run was cancelled between tables or rows."""


# Configuration

@dataclass
class DatabaseConfig:
    """Database connection configuration."""
    type: str = 'sqlite'
    connection_string: str = './audit.db'
    user: Optional[str] = None
    password: Optional[str] = None
    connection_timeout: int = 30


@dataclass
class StoreConfig(DatabaseConfig):
    """Audit store connection plus the names of its two tables."""
    audit_table_name: str = 'audit'
    history_table_name: str = 'history'


@dataclass
class TableConfig:
    """Audited table and the columns that identify its rows."""
    table_name: str
    key_columns: Optional[List[str]] = None  # None means the row hash is the identity


@dataclass
class SourceConfig(DatabaseConfig):
    """Audited database; tables=None means every table in the catalog."""
    connection_string: str = './source.db'
    tables: Optional[List[TableConfig]] = None


@dataclass
class RunConfig:
    """Settings for a single audit run."""
    hash_algorithm: str = 'md5'
    fetch_size: int = 1000
    max_workers: int = 1
    table_timeout: Optional[float] = None  # seconds per table scan
    retry_attempts: int = 3
    retry_backoff: float = 1.0
    on_error: str = 'abort'  # abort | continue
    show_progress: bool = True
    show_memory_usage: bool = False


@dataclass
class LoggingConfig:
    """Logging handlers and format."""
    level: str = 'INFO'
    log_directory: str = './logs'
    enable_file_output: bool = False
    enable_console_output: bool = True
    log_format: str = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'


@dataclass
class AuditConfig:
    """Complete DB-Audit configuration."""
    key_separator: str = '|'
    audit: StoreConfig = field(default_factory=StoreConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    run: RunConfig = field(default_factory=RunConfig)
    logging_config: LoggingConfig = field(default_factory=LoggingConfig)

    def key_columns_for(self, table_name: str) -> Optional[List[str]]:
        """Return the configured key columns for a table, or None when unkeyed."""
        for table in self.source.tables or []:
            if table.table_name == table_name:
                return table.key_columns or None
        return None

    def to_dict(self, mask_passwords: bool = True) -> Dict[str, Any]:
        """Plain dict in the layout of the configuration file."""
        data = asdict(self)
        data['logging'] = data.pop('logging_config')
        if mask_passwords:
            for section in ('audit', 'source'):
                if data[section].get('password'):
                    data[section]['password'] = '********'
        return data


CONFIG_SECTIONS = ('key_separator', 'audit', 'source', 'run', 'logging')


def _parse_table(entry: Any) -> TableConfig:
    if isinstance(entry, str):
        return TableConfig(table_name=entry)
    if not isinstance(entry, dict):
        raise ConfigurationError(f"Table entry must be a name or a mapping, got: {entry!r}")

    table = TableConfig(**entry)
    key_columns = table.key_columns
    if key_columns is not None and (
            not isinstance(key_columns, list)
            or not all(isinstance(column, str) and column for column in key_columns)):
        raise ConfigurationError(
            f"key_columns of table {table.table_name} must be a list of column names, "
            f"got: {key_columns!r}"
        )
    return table


def build_config(raw: Dict[str, Any]) -> AuditConfig:
    """Convert a parsed configuration mapping into an AuditConfig."""
    if not isinstance(raw, dict):
        raise ConfigurationError("Configuration must be a mapping")

    unknown = sorted(set(raw) - set(CONFIG_SECTIONS))
    if unknown:
        raise ConfigurationError(f"Unknown configuration sections: {', '.join(unknown)}")

    try:
        source = dict(raw.get('source') or {})
        tables = source.pop('tables', None)
        if tables is not None:
            tables = [_parse_table(entry) for entry in tables]

        return AuditConfig(
            key_separator=str(raw.get('key_separator', '|')),
            audit=StoreConfig(**(raw.get('audit') or {})),
            source=SourceConfig(tables=tables, **source),
            run=RunConfig(**(raw.get('run') or {})),
            logging_config=LoggingConfig(**(raw.get('logging') or {})),
        )
    except TypeError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def load_config(config_path: Optional[str] = None, required: bool = False) -> AuditConfig:
    """
    Load configuration from a YAML (or JSON) file.

    A missing file falls back to the defaults unless required is set.
    """
    if not config_path or not Path(config_path).exists():
        if required:
            raise ConfigurationError(f"Configuration file not found: {config_path}")
        logging.info(f"No configuration file at {config_path}, using defaults")
        return AuditConfig()

    try:
        with open(config_path, 'r') as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to load config file {config_path}: {e}") from e

    config = build_config(raw)
    logging.info(f"Loaded configuration from {config_path}")
    return config


def setup_logging(log_config: LoggingConfig, level: Optional[str] = None):
    """Setup logging handlers from the logging section."""
    log_level = getattr(logging, (level or log_config.level).upper(), logging.INFO)
    formatter = logging.Formatter(log_config.log_format)

    handlers = []
    if log_config.enable_file_output:
        log_dir = Path(log_config.log_directory)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"db_audit_{datetime.now().strftime('%Y%m%d')}.log"
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if log_config.enable_console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(level=log_level, handlers=handlers,
                        format=log_config.log_format, force=True)


def utc_timestamp() -> str:
    """Current UTC time with second precision, e.g. '2024-05-01 13:45:10'."""
    return datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')


def format_duration(seconds: float) -> str:
    return f"{seconds:.3f}s"


_SIMPLE_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_$#]*$')


def decode_text(value: bytes):
    """SQLite text factory: UTF-8 text as str, anything else as the raw bytes."""
    try:
        return value.decode('utf-8')
    except UnicodeDecodeError:
        return value


def quote_identifier(name: str) -> str:
    """Quote a table name unless it is a plain identifier."""
    if _SIMPLE_IDENTIFIER.match(name):
        return name
    return '"' + name.replace('"', '""') + '"'


# Data model

@dataclass
class AuditRecord:
    """Last known state of one row identity in one table."""
    table_name: str
    primary_key: Optional[str]
    row_hash: str
    row_dump: Optional[str] = None
    modified: Optional[str] = None

    @property
    def lookup_key(self) -> str:
        """Primary key when the table is keyed, otherwise the row hash."""
        return self.primary_key if self.primary_key is not None else self.row_hash


@dataclass
class HistoryRecord:
    """One metric of one audit run."""
    execution_timestamp: str
    key: str
    value: str


@dataclass
class RunMetrics:
    """Counters collected while auditing."""
    rows_processed: int = 0
    database_changes: int = 0
    table_changes: Dict[str, int] = field(default_factory=dict)
    unseen_rows: Dict[str, int] = field(default_factory=dict)
    execution_time: float = 0.0
    started_at: float = field(default_factory=time.monotonic)

    def start_table(self, table_name: str):
        self.table_changes.setdefault(table_name, 0)

    def record_change(self, table_name: str):
        self.database_changes += 1
        self.table_changes[table_name] = self.table_changes.get(table_name, 0) + 1

    def merge(self, other: 'RunMetrics'):
        """Add the counters of a finished table scan."""
        self.rows_processed += other.rows_processed
        self.database_changes += other.database_changes
        for table_name, changes in other.table_changes.items():
            self.table_changes[table_name] = self.table_changes.get(table_name, 0) + changes
        for table_name, unseen in other.unseen_rows.items():
            self.unseen_rows[table_name] = unseen

    def stop(self):
        self.execution_time = time.monotonic() - self.started_at


@dataclass
class RunSummary:
    """Result of an audit run, sorted by table name."""
    rows_processed: int
    database_changes: int
    table_changes: List[Tuple[str, int]]
    unseen_rows: List[Tuple[str, int]]
    execution_time: float
    first_run: bool = False
    history_saved: bool = False
    execution_timestamp: Optional[str] = None
    failed_tables: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def status(self) -> str:
        return 'completed_with_errors' if self.failed_tables else 'completed'


# Database access

class DatabaseManager:
    """Connection and query helper for one SQLite or Oracle database."""

    SUPPORTED_TYPES = ('sqlite', 'oracle')

    def __init__(self, config: DatabaseConfig, read_only: bool = False,
                 retry_attempts: int = 3, retry_backoff: float = 1.0):
        if config.type not in self.SUPPORTED_TYPES:
            raise ConfigurationError(
                f"Unsupported database type '{config.type}' "
                f"(expected one of: {', '.join(self.SUPPORTED_TYPES)})"
            )
        self.config = config
        self.read_only = read_only
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = retry_backoff
        self._connection = None

    def describe(self) -> str:
        return f"{self.config.type}:{self.config.connection_string}"

    def _open(self):
        if self.config.type == 'sqlite':
            if self.read_only:
                uri = Path(self.config.connection_string).resolve().as_uri() + '?mode=ro'
                connection = sqlite3.connect(uri, uri=True, timeout=self.config.connection_timeout)
            else:
                connection = sqlite3.connect(self.config.connection_string,
                                             timeout=self.config.connection_timeout)
            connection.text_factory = decode_text
            return connection

        # CLOB/BLOB columns come back as str/bytes
        oracledb.defaults.fetch_lobs = False
        return oracledb.connect(
            user=self.config.user,
            password=self.config.password,
            dsn=self.config.connection_string
        )

    def connect(self):
        """Open the connection, retrying failures with exponential backoff."""
        if self._connection is not None:
            return self._connection

        try:
            for attempt in Retrying(
                stop=stop_after_attempt(self.retry_attempts),
                wait=wait_exponential(multiplier=self.retry_backoff),
                retry=retry_if_exception_type(DB_ERRORS),
                before_sleep=before_sleep_log(logging.getLogger(), logging.WARNING),
                sleep=time.sleep,
            ):
                with attempt:
                    self._connection = self._open()
        except RetryError as e:
            error = e.last_attempt.exception()
            raise ConnectivityError(
                f"Failed to connect to {self.describe()} after "
                f"{e.last_attempt.attempt_number} attempt(s): {error}"
            ) from error

        logging.debug(f"Connected to {self.describe()}")
        return self._connection

    def close(self):
        if self._connection is not None:
            try:
                self._connection.close()
            finally:
                self._connection = None

    def execute_query(self, query: str, params: Optional[Dict] = None,
                      table: Optional[str] = None) -> pd.DataFrame:
        """Execute a query and return results as DataFrame."""
        connection = self.connect()
        try:
            return pd.read_sql(query, connection, params=params or {})
        except (pd.errors.DatabaseError,) + DB_ERRORS as e:
            raise QueryError(f"Query failed against {self.describe()}: {e}", table=table) from e

    def execute_non_query(self, query: str, params: Optional[Dict] = None):
        """Execute a non-query statement and commit it."""
        connection = self.connect()
        cursor = connection.cursor()
        try:
            cursor.execute(query, params or {})
            connection.commit()
        except DB_ERRORS as e:
            connection.rollback()
            raise QueryError(f"Statement failed against {self.describe()}: {e}") from e
        finally:
            cursor.close()

    def iter_query(self, query: str, params: Optional[Dict] = None,
                   fetch_size: int = 1000, table: Optional[str] = None) -> Iterator[Dict[str, Any]]:
        """Stream query results as dicts, fetch_size rows at a time."""
        connection = self.connect()
        cursor = connection.cursor()
        try:
            try:
                cursor.execute(query, params or {})
                columns = [description[0] for description in cursor.description]
            except DB_ERRORS as e:
                raise QueryError(f"Query failed against {self.describe()}: {e}", table=table) from e

            while True:
                try:
                    batch = cursor.fetchmany(fetch_size)
                except DB_ERRORS as e:
                    raise QueryError(f"Fetch failed against {self.describe()}: {e}", table=table) from e
                if not batch:
                    break
                for values in batch:
                    yield dict(zip(columns, values))
        finally:
            cursor.close()

    def count_rows(self, table_name: str) -> int:
        """Get total row count for a table."""
        df = self.execute_query(f"SELECT COUNT(*) AS row_count FROM {quote_identifier(table_name)}",
                                table=table_name)
        return int(df.iloc[0, 0])

    def stream_rows(self, table_name: str, fetch_size: int = 1000) -> Iterator[Dict[str, Any]]:
        """Lazily yield every row of a table as a column -> value dict."""
        return self.iter_query(f"SELECT * FROM {quote_identifier(table_name)}",
                               fetch_size=fetch_size, table=table_name)

    def list_catalog_tables(self) -> List[str]:
        """Get all table names from the database catalog."""
        if self.config.type == 'sqlite':
            query = """
            SELECT name FROM sqlite_master
            WHERE type = 'table' AND name NOT LIKE 'sqlite_%'
            ORDER BY name
            """
        else:
            query = "SELECT table_name FROM user_tables ORDER BY table_name"

        df = self.execute_query(query)
        return df.iloc[:, 0].tolist()

    def get_primary_key_columns(self, table_name: str) -> List[str]:
        """Get primary key columns for a table, in key order."""
        if self.config.type == 'sqlite':
            query = """
            SELECT name FROM pragma_table_info(:table_name)
            WHERE pk > 0
            ORDER BY pk
            """
        else:
            query = """
            SELECT cc.column_name
            FROM user_constraints c, user_cons_columns cc
            WHERE c.table_name = UPPER(:table_name)
            AND c.constraint_type = 'P'
            AND c.constraint_name = cc.constraint_name
            ORDER BY cc.position
            """

        df = self.execute_query(query, {'table_name': table_name})
        return df.iloc[:, 0].tolist()


def list_tables(config: AuditConfig, source: DatabaseManager) -> List[str]:
    """Configured allow-list in order, otherwise every table in the source catalog."""
    if config.source.tables is not None:
        return [table.table_name for table in config.source.tables]

    table_names = source.list_catalog_tables()

    # Auditing a database into itself must not audit the audit tables
    if (config.source.type == config.audit.type
            and config.source.connection_string == config.audit.connection_string):
        own_tables = {config.audit.audit_table_name, config.audit.history_table_name}
        table_names = [name for name in table_names if name not in own_tables]

    return table_names


# Row canonicalization

class RowCanonicalizer:
    """Deterministic serialization and fingerprint of a row."""

    SUPPORTED_ALGORITHMS = ('md5', 'sha1', 'sha256')

    def __init__(self, algorithm: str = 'md5'):
        if algorithm not in self.SUPPORTED_ALGORITHMS:
            raise ConfigurationError(f"Unsupported hashing algorithm: {algorithm}")
        self.algorithm = algorithm

    @staticmethod
    def _coerce(value: Any) -> Any:
        if isinstance(value, (bytes, bytearray, memoryview)):
            return {'$binary': base64.b64encode(bytes(value)).decode('ascii')}
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, (datetime, date, dt_time)):
            return value.isoformat()
        raise TypeError(f"Object of type {type(value).__name__} is not serializable")

    @staticmethod
    def _tag_non_finite(value: Any) -> Any:
        # Floats bypass default=, so NaN and Infinity are tagged here
        if isinstance(value, float) and not math.isfinite(value):
            if math.isnan(value):
                return {'$float': 'nan'}
            return {'$float': 'inf' if value > 0 else '-inf'}
        return value

    def canonicalize(self, row: Dict[str, Any]) -> Tuple[bytes, str]:
        """
        Serialize a row and hash it.

        Columns are sorted by name and serialized as compact JSON, so two rows
        with the same column -> value pairs always give the same bytes.

        Returns:
            (serialized bytes, hex fingerprint)
        """
        try:
            payload = json.dumps(
                {column: self._tag_non_finite(value) for column, value in row.items()},
                sort_keys=True,
                separators=(',', ':'),
                ensure_ascii=False,
                allow_nan=False,
                default=self._coerce
            ).encode('utf-8')
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Row cannot be canonicalized: {e}", row=row) from e

        return payload, hashlib.new(self.algorithm, payload).hexdigest()

    @staticmethod
    def key_text(value: Any) -> str:
        """Stable text of a key column value; NULL becomes an empty string."""
        if value is None:
            return ''
        if isinstance(value, bool):
            return 'true' if value else 'false'
        if isinstance(value, (bytes, bytearray, memoryview)):
            return bytes(value).hex()
        if isinstance(value, (datetime, date, dt_time)):
            return value.isoformat()
        return str(value)


# Snapshot store

class SnapshotStore:
    """Audit and history tables in the audit database."""

    def __init__(self, db_manager: DatabaseManager, config: StoreConfig):
        self.db_manager = db_manager
        self.audit_table = config.audit_table_name
        self.history_table = config.history_table_name

    def _schema(self) -> List[str]:
        if self.db_manager.config.type == 'sqlite':
            return [
                f"""
                CREATE TABLE IF NOT EXISTS {self.audit_table} (
                    AuditId INTEGER PRIMARY KEY AUTOINCREMENT,
                    TableName TEXT NOT NULL,
                    PrimaryKey TEXT,
                    RowHash TEXT NOT NULL,
                    RowDump TEXT,
                    Modified TEXT NOT NULL
                )
                """,
                f"CREATE INDEX IF NOT EXISTS {self.audit_table}_table_name "
                f"ON {self.audit_table} (TableName)",
                f"""
                CREATE TABLE IF NOT EXISTS {self.history_table} (
                    ExecutionTimestamp TEXT NOT NULL,
                    Key TEXT NOT NULL,
                    Value TEXT
                )
                """,
            ]

        return [
            f"""
            CREATE TABLE {self.audit_table} (
                AuditId NUMBER GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
                TableName VARCHAR2(128) NOT NULL,
                PrimaryKey VARCHAR2(4000),
                RowHash VARCHAR2(64) NOT NULL,
                RowDump CLOB,
                Modified VARCHAR2(19) NOT NULL
            )
            """,
            f"CREATE INDEX {self.audit_table}_TN ON {self.audit_table} (TableName)",
            f"""
            CREATE TABLE {self.history_table} (
                ExecutionTimestamp VARCHAR2(19) NOT NULL,
                Key VARCHAR2(256) NOT NULL,
                Value VARCHAR2(256)
            )
            """,
        ]

    def initialize(self) -> bool:
        """
        Create the audit and history tables if needed.

        Returns:
            True when the audit table is empty, i.e. this is the first run
        """
        for statement in self._schema():
            try:
                self.db_manager.execute_non_query(statement)
            except QueryError as e:
                if "ORA-00955" in str(e):  # Object already exists
                    logging.debug(f"Audit store object already exists: {statement.split('(')[0].strip()}")
                    continue
                raise

        df = self.db_manager.execute_query(f"SELECT COUNT(*) AS row_count FROM {self.audit_table}")
        first_run = int(df.iloc[0, 0]) == 0
        if first_run:
            logging.info("Audit store is empty - first run, row dumps will be omitted")
        return first_run

    def read_audit_records(self, table_name: str, fetch_size: int = 1000) -> Iterator[AuditRecord]:
        """
        Yield the recorded hashes of one table, oldest first.

        RowDump is not read; the working set only needs identities and hashes.
        """
        query = f"""
        SELECT TableName, PrimaryKey, RowHash, Modified
        FROM {self.audit_table}
        WHERE TableName = :table_name
        ORDER BY AuditId
        """
        for row in self.db_manager.iter_query(query, {'table_name': table_name},
                                              fetch_size=fetch_size, table=table_name):
            values = list(row.values())
            yield AuditRecord(
                table_name=values[0],
                primary_key=values[1],
                row_hash=values[2],
                modified=values[3]
            )

    @contextmanager
    def transaction(self, table_name: Optional[str] = None):
        """Yield a cursor; commit on success, roll back on any error."""
        connection = self.db_manager.connect()
        cursor = connection.cursor()
        try:
            yield cursor
            connection.commit()
        except DB_ERRORS as e:
            connection.rollback()
            raise CommitError(f"Transaction rolled back: {e}", table=table_name) from e
        except BaseException:
            connection.rollback()
            raise
        finally:
            cursor.close()

    def write_record(self, cursor, record: AuditRecord):
        cursor.execute(
            f"""
            INSERT INTO {self.audit_table} (TableName, PrimaryKey, RowHash, RowDump, Modified)
            VALUES (:table_name, :primary_key, :row_hash, :row_dump, :modified)
            """,
            asdict(record)
        )

    def append_history(self, records: List[HistoryRecord]):
        """Append history rows in one transaction."""
        with self.transaction() as cursor:
            for record in records:
                cursor.execute(
                    f"""
                    INSERT INTO {self.history_table} (ExecutionTimestamp, Key, Value)
                    VALUES (:execution_timestamp, :key, :value)
                    """,
                    asdict(record)
                )

    def read_history(self, limit: Optional[int] = None) -> pd.DataFrame:
        """History rows of the last `limit` executions (all when None)."""
        df = self.db_manager.execute_query(
            f"SELECT ExecutionTimestamp, Key, Value FROM {self.history_table}"
        )
        # Oracle returns upper-case column labels
        df.columns = ['ExecutionTimestamp', 'Key', 'Value']

        if limit:
            timestamps = sorted(df['ExecutionTimestamp'].unique())[-limit:]
            df = df[df['ExecutionTimestamp'].isin(timestamps)]
        return df.reset_index(drop=True)

    def close(self):
        self.db_manager.close()


# Core engine

class TableWorkingSet:
    """
    Previously audited rows of one table, drained as the scan matches them.

    Keyed records are indexed by primary key and the newest record wins.
    Hash-keyed records are counted, so N identical rows recorded earlier
    match N identical rows in the current scan.
    """

    def __init__(self, table_name: str):
        self.table_name = table_name
        self._records: Dict[str, AuditRecord] = {}
        self._counts: Dict[str, int] = {}

    def add(self, record: AuditRecord):
        key = record.lookup_key
        if record.primary_key is None:
            self._counts[key] = self._counts.get(key, 0) + 1
        else:
            self._counts[key] = 1
        self._records[key] = record

    def get(self, key: str) -> Optional[AuditRecord]:
        return self._records.get(key)

    def take(self, key: str, row_hash: str) -> bool:
        """Remove the entry for key if its hash matches; return True on match."""
        record = self._records.get(key)
        if record is None or record.row_hash != row_hash:
            return False

        remaining = self._counts[key] - 1
        if remaining:
            self._counts[key] = remaining
        else:
            del self._records[key]
            del self._counts[key]
        return True

    def leftover(self) -> List[AuditRecord]:
        """Entries not matched by the scan (identities missing or changed)."""
        return list(self._records.values())

    def __contains__(self, key: str) -> bool:
        return key in self._records

    def __len__(self) -> int:
        return sum(self._counts.values())


class SnapshotLoader:
    """Loads the working set of a table from the snapshot store."""

    def __init__(self, store: SnapshotStore, fetch_size: int = 1000,
                 show_memory_usage: bool = False):
        self.store = store
        self.fetch_size = fetch_size
        self.show_memory_usage = show_memory_usage

    def load_working_set(self, table_name: str) -> TableWorkingSet:
        working_set = TableWorkingSet(table_name)
        for record in self.store.read_audit_records(table_name, self.fetch_size):
            working_set.add(record)

        if self.show_memory_usage:
            memory_mb = psutil.Process().memory_info().rss / 1024 / 1024
            logging.info(f"Loaded {len(working_set):,} audit records for {table_name} "
                         f"(process memory {memory_mb:.1f} MB)")
        else:
            logging.debug(f"Loaded {len(working_set):,} audit records for {table_name}")
        return working_set


class DiffEngine:
    """Classifies source rows as changed or unchanged against a working set."""

    def __init__(self, canonicalizer: RowCanonicalizer, config: AuditConfig,
                 metrics: RunMetrics):
        self.canonicalizer = canonicalizer
        self.config = config
        self.metrics = metrics
        self._key_columns: Dict[str, Optional[List[str]]] = {}

    def key_columns(self, table_name: str) -> Optional[List[str]]:
        """Configured key columns of a table, looked up once per table."""
        if table_name not in self._key_columns:
            self._key_columns[table_name] = self.config.key_columns_for(table_name)
        return self._key_columns[table_name]

    def build_identity(self, table_name: str, row: Dict[str, Any]) -> Optional[str]:
        """Join the key column values of a row, or None for unkeyed tables."""
        key_columns = self.key_columns(table_name)
        if not key_columns:
            return None

        parts = []
        for column in key_columns:
            if column not in row:
                raise ConfigurationError(f"Key column '{column}' not found in row",
                                         table=table_name, row=row)
            parts.append(self.canonicalizer.key_text(row[column]))

        if not any(parts):
            raise ConfigurationError(f"Empty primary key for key columns {key_columns}",
                                     table=table_name, row=row)
        return self.config.key_separator.join(parts)

    def classify(self, table_name: str, row: Dict[str, Any],
                 working_set: TableWorkingSet) -> Tuple[AuditRecord, bool]:
        """
        Decide whether a row changed since the last recorded run.

        A matched, unchanged entry is removed from the working set. A changed
        row leaves the working set untouched.

        Returns:
            (audit record for the row, changed flag)
        """
        self.metrics.rows_processed += 1

        primary_key = self.build_identity(table_name, row)
        row_dump, row_hash = self.canonicalizer.canonicalize(row)
        record = AuditRecord(
            table_name=table_name,
            primary_key=primary_key,
            row_hash=row_hash,
            row_dump=row_dump.decode('utf-8')
        )

        if working_set.take(record.lookup_key, row_hash):
            return record, False

        self.metrics.record_change(table_name)
        return record, True


class BatchWriter:
    """Commits the changed rows of a table in a single transaction."""

    def __init__(self, store: SnapshotStore, first_run: bool):
        self.store = store
        self.first_run = first_run

    def commit_table(self, table_name: str, records: List[AuditRecord]) -> int:
        """
        Write all changed rows of a table, or none of them.

        Returns:
            Number of records committed
        """
        if not records:
            logging.debug(f"No changes to commit for {table_name}")
            return 0

        with self.store.transaction(table_name) as cursor:
            for record in records:
                self.store.write_record(cursor, replace(
                    record,
                    row_dump=None if self.first_run else record.row_dump,
                    modified=utc_timestamp()
                ))

        logging.debug(f"Committed {len(records):,} audit records for {table_name}")
        return len(records)


class HistoryRecorder:
    """Summarizes run metrics and appends them to the history table."""

    def __init__(self, store: SnapshotStore):
        self.store = store

    def finish(self, metrics: RunMetrics, persist_history: bool,
               first_run: bool = False,
               failed_tables: Optional[Dict[str, str]] = None) -> RunSummary:
        table_changes = sorted(metrics.table_changes.items())
        summary = RunSummary(
            rows_processed=metrics.rows_processed,
            database_changes=metrics.database_changes,
            table_changes=table_changes,
            unseen_rows=sorted(metrics.unseen_rows.items()),
            execution_time=metrics.execution_time,
            first_run=first_run,
            failed_tables=sorted((failed_tables or {}).items())
        )

        if persist_history:
            execution_timestamp = utc_timestamp()
            records = [
                HistoryRecord(execution_timestamp, f"Table {table_name}", str(changes))
                for table_name, changes in table_changes
            ]
            records.append(HistoryRecord(execution_timestamp, DATABASE_CHANGES,
                                         str(metrics.database_changes)))
            records.append(HistoryRecord(execution_timestamp, ROWS_PROCESSED,
                                         str(metrics.rows_processed)))
            records.append(HistoryRecord(execution_timestamp, EXECUTION_TIME,
                                         format_duration(metrics.execution_time)))
            self.store.append_history(records)

            summary.history_saved = True
            summary.execution_timestamp = execution_timestamp
            logging.info(f"Saved {len(records)} history rows for execution {execution_timestamp}")

        return summary


def format_summary(summary: RunSummary) -> str:
    """Render a run summary for the console."""
    lines = [
        "=" * 60,
        "DB-AUDIT SUMMARY",
        "=" * 60,
        f"Status: {summary.status}",
        f"First run: {'yes' if summary.first_run else 'no'}",
        f"{ROWS_PROCESSED}: {summary.rows_processed:,}",
        f"{DATABASE_CHANGES}: {summary.database_changes:,}",
        f"{EXECUTION_TIME}: {format_duration(summary.execution_time)}",
        "",
        "TABLE CHANGES:",
        "-" * 30,
    ]
    unseen = dict(summary.unseen_rows)
    for table_name, changes in summary.table_changes:
        line = f"  {table_name}: {changes:,}"
        if unseen.get(table_name):
            line += f" (unmatched prior records: {unseen[table_name]:,})"
        lines.append(line)

    if summary.failed_tables:
        lines.append("")
        lines.append("FAILED TABLES:")
        lines.append("-" * 30)
        for table_name, error in summary.failed_tables:
            lines.append(f"  {table_name}: {error}")

    if summary.history_saved:
        lines.append("")
        lines.append(f"History saved at {summary.execution_timestamp}")

    lines.append("=" * 60)
    return "\n".join(lines)


# Run controller

@dataclass
class TableScan:
    """Changed rows and counters of one fully scanned table."""
    table_name: str
    changed: List[AuditRecord]
    metrics: RunMetrics


@dataclass
class AuditContext:
    """Everything one run needs, built once and passed explicitly."""
    config: AuditConfig
    source: DatabaseManager
    store: SnapshotStore
    canonicalizer: RowCanonicalizer
    metrics: RunMetrics
    first_run: bool = False
    writer: Optional[BatchWriter] = None
    failed_tables: Dict[str, str] = field(default_factory=dict)


class AuditRunner:
    """
    Runs an audit over every table and decides what to do on failure.

    Tables are scanned and committed one at a time. With run.max_workers > 1
    the load and scan phases run in a thread pool, each worker with its own
    connections, while commits stay on the calling thread in table order.
    History is appended only after every table has finished.
    """

    def __init__(self, config: AuditConfig, save_history: int = 0, verbose: bool = False):
        if config.run.on_error not in ('abort', 'continue'):
            raise ConfigurationError(f"run.on_error must be 'abort' or 'continue', got '{config.run.on_error}'")
        self.config = config
        self.save_history = save_history
        self.verbose = verbose
        self.canonicalizer = RowCanonicalizer(config.run.hash_algorithm)
        self._cancel_event = threading.Event()
        self._stop_event = threading.Event()

    def cancel(self):
        """Request cancellation; honoured between tables and between rows."""
        self._cancel_event.set()

    def _source_manager(self) -> DatabaseManager:
        return DatabaseManager(self.config.source, read_only=True,
                               retry_attempts=self.config.run.retry_attempts,
                               retry_backoff=self.config.run.retry_backoff)

    def _store(self) -> SnapshotStore:
        db_manager = DatabaseManager(self.config.audit,
                                     retry_attempts=self.config.run.retry_attempts,
                                     retry_backoff=self.config.run.retry_backoff)
        return SnapshotStore(db_manager, self.config.audit)

    def _check_interrupts(self, table_name: Optional[str] = None,
                          deadline: Optional[float] = None):
        if self._cancel_event.is_set() or self._stop_event.is_set():
            raise RunCancelledError("Audit run cancelled", table=table_name)
        if deadline is not None and time.monotonic() > deadline:
            raise TableTimeoutError(
                f"Table scan exceeded {self.config.run.table_timeout}s", table=table_name
            )

    def run(self) -> RunSummary:
        """
        Audit every table and record the results.

        Raises:
            AuditError: the first failure, unless run.on_error is 'continue'
        """
        context = AuditContext(
            config=self.config,
            source=self._source_manager(),
            store=self._store(),
            canonicalizer=self.canonicalizer,
            metrics=RunMetrics()
        )

        try:
            context.first_run = context.store.initialize()
            context.writer = BatchWriter(context.store, context.first_run)

            table_names = list_tables(self.config, context.source)
            logging.info(f"Auditing {len(table_names)} tables")

            self._audit_tables(context, table_names)
            context.metrics.stop()

            summary = HistoryRecorder(context.store).finish(
                context.metrics,
                persist_history=self.save_history > 0,
                first_run=context.first_run,
                failed_tables=context.failed_tables
            )
            logging.info(f"Audit completed: {summary.database_changes:,} changes in "
                         f"{summary.rows_processed:,} rows ({format_duration(summary.execution_time)})")
            return summary

        except AuditError as e:
            logging.error(f"Audit aborted: {e}")
            raise
        finally:
            context.source.close()
            context.store.close()

    def _audit_tables(self, context: AuditContext, table_names: List[str]):
        max_workers = self.config.run.max_workers
        if max_workers <= 1 or len(table_names) <= 1:
            for table_name in table_names:
                self._check_interrupts(table_name)
                self._complete_table(context, table_name, lambda name=table_name: self._scan_table(
                    context, name, context.source, context.store))
            return

        self._stop_event.clear()
        executor = ThreadPoolExecutor(max_workers=max_workers)
        try:
            futures = [
                (table_name, executor.submit(self._scan_in_worker, context, table_name))
                for table_name in table_names
            ]
            for table_name, future in futures:
                self._check_interrupts(table_name)
                self._complete_table(context, table_name, future.result)
        finally:
            # Stops in-flight scans when a commit or scan aborted the run
            self._stop_event.set()
            executor.shutdown(wait=True, cancel_futures=True)
            self._stop_event.clear()

    def _complete_table(self, context: AuditContext, table_name: str,
                        scan: Callable[[], TableScan]):
        """Finish the scan of a table and commit it, applying the error policy."""
        try:
            table_scan = scan()
            context.writer.commit_table(table_name, table_scan.changed)
        except RunCancelledError:
            raise
        except AuditError as e:
            if self.config.run.on_error != 'continue':
                raise
            logging.error(f"Table {table_name} failed, continuing with next table: {e}")
            context.failed_tables[table_name] = str(e)
            return

        context.metrics.merge(table_scan.metrics)
        changes = table_scan.metrics.table_changes.get(table_name, 0)
        if self.verbose:
            logging.info(f"{table_name} {changes}")
        else:
            logging.debug(f"{table_name} {changes}")

    def _scan_in_worker(self, context: AuditContext, table_name: str) -> TableScan:
        source = self._source_manager()
        store = self._store()
        try:
            return self._scan_table(context, table_name, source, store)
        finally:
            source.close()
            store.close()

    def _scan_table(self, context: AuditContext, table_name: str,
                    source: DatabaseManager, store: SnapshotStore) -> TableScan:
        """Load the working set of a table and classify every source row."""
        run_config = self.config.run
        deadline = None
        if run_config.table_timeout:
            deadline = time.monotonic() + run_config.table_timeout

        metrics = RunMetrics()
        metrics.start_table(table_name)
        engine = DiffEngine(context.canonicalizer, self.config, metrics)

        working_set = SnapshotLoader(store, run_config.fetch_size,
                                     run_config.show_memory_usage).load_working_set(table_name)
        row_count = source.count_rows(table_name)
        changed = []

        self._check_interrupts(table_name, deadline)
        with tqdm(total=row_count, desc=f"Auditing {table_name}", unit="rows",
                  disable=not run_config.show_progress, leave=False) as pbar:
            for row in source.stream_rows(table_name, run_config.fetch_size):
                self._check_interrupts(table_name, deadline)
                record, is_changed = engine.classify(table_name, row, working_set)
                if is_changed:
                    changed.append(record)
                pbar.update(1)
                if metrics.rows_processed % run_config.fetch_size == 0:
                    pbar.set_postfix({'Changes': metrics.database_changes})

        unseen = len(working_set)
        metrics.unseen_rows[table_name] = unseen
        if unseen:
            logging.debug(f"{table_name}: {unseen:,} prior records not matched by this scan")

        return TableScan(table_name=table_name, changed=changed, metrics=metrics)


# CLI

def _print_tables(config: AuditConfig, source: DatabaseManager):
    table_names = list_tables(config, source)
    df = pd.DataFrame({
        'table_name': table_names,
        'key_columns': [', '.join(config.key_columns_for(name) or []) or '(row hash)'
                        for name in table_names],
        'rows': [source.count_rows(name) for name in table_names],
    })
    print(df.to_string(index=False) if not df.empty else "No tables found")


def main(argv: Optional[List[str]] = None):
    """Main entry point for DB-Audit."""
    parser = argparse.ArgumentParser(
        description='DB-Audit - hash-based row change auditing'
    )
    parser.add_argument('--config', default='config.yaml',
                        help='Configuration file path (default: config.yaml)')
    parser.add_argument('-l', '--list-tables', action='store_true', help='List tables')
    parser.add_argument('-a', '--audit', action='store_true', help='Run audit')
    parser.add_argument('-c', '--print-config', action='store_true', help='Print config')
    parser.add_argument('-H', '--history', type=int, default=0, metavar='N',
                        help='Save history for this audit run when N > 0')
    parser.add_argument('-v', '--verbose', action='store_true', help='Print results of audit run')
    parser.add_argument('--workers', type=int, help='Override run.max_workers')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Override logging level')

    args = parser.parse_args(argv)

    if not (args.list_tables or args.audit or args.print_config):
        parser.print_usage()
        sys.exit(1)

    try:
        config = load_config(args.config, required=args.config != parser.get_default('config'))
        if args.workers:
            config.run.max_workers = args.workers
        setup_logging(config.logging_config, args.log_level)

        if args.list_tables:
            source = DatabaseManager(config.source, read_only=True,
                                     retry_attempts=config.run.retry_attempts,
                                     retry_backoff=config.run.retry_backoff)
            try:
                _print_tables(config, source)
            finally:
                source.close()

        elif args.audit:
            runner = AuditRunner(config, save_history=args.history, verbose=args.verbose)
            try:
                summary = runner.run()
            except KeyboardInterrupt:
                runner.cancel()
                raise
            if args.verbose:
                print(format_summary(summary))
            if summary.failed_tables:
                sys.exit(1)

        elif args.print_config:
            print(yaml.safe_dump(config.to_dict(), sort_keys=False, default_flow_style=False))

    except KeyboardInterrupt:
        logging.info("Process interrupted by user")
        print("\n⚠️  DB-Audit interrupted by user")
        sys.exit(1)
    except AuditError as e:
        logging.error(f"Fatal error: {e}")
        print(f"❌ DB-Audit failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
