#!/usr/bin/env python3
"""
Tests for the DB-Audit utility scripts: validation, discovery and history.

Run with: python -m pytest tests/ -v
"""

import sys
import sqlite3
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

# Add parent directory to path
sys.path.append(str(Path(__file__).parent.parent))

from db_audit import (
    AuditRunner, DatabaseConfig, DatabaseManager, HistoryRecord, SnapshotStore,
    StoreConfig, build_config, load_config
)
from db_audit_utils import ConfigValidator, TableDiscovery, history_report, main


def valid_config(tmp_path):
    return {
        'key_separator': '|',
        'audit': {'type': 'sqlite', 'connection_string': str(tmp_path / 'audit.db')},
        'source': {
            'type': 'sqlite',
            'connection_string': str(tmp_path / 'source.db'),
            'tables': [
                {'table_name': 'artist', 'key_columns': ['artist_id']},
                {'table_name': 'playlist_track', 'key_columns': ['playlist_id', 'track_id']},
                'tag',
            ],
        },
        'run': {'hash_algorithm': 'sha256', 'fetch_size': 500, 'max_workers': 2},
    }


class TestConfigValidator:
    """Test configuration validation."""

    def test_valid_configuration(self, tmp_path, sample_source):
        is_valid, errors, warnings = ConfigValidator().validate_dict(valid_config(tmp_path))

        assert is_valid
        assert errors == []
        assert warnings == []

    def test_validate_file(self, tmp_path, sample_source):
        config_path = tmp_path / 'config.yaml'
        config_path.write_text(yaml.safe_dump(valid_config(tmp_path)))

        is_valid, errors, _ = ConfigValidator().validate_configuration(str(config_path))

        assert is_valid, errors

    def test_unreadable_file(self, tmp_path):
        is_valid, errors, _ = ConfigValidator().validate_configuration(str(tmp_path / 'missing.yaml'))

        assert not is_valid
        assert 'Failed to load configuration file' in errors[0]

    def test_unknown_section(self, tmp_path, sample_source):
        config = valid_config(tmp_path)
        config['target'] = {}

        is_valid, errors, _ = ConfigValidator().validate_dict(config)

        assert not is_valid
        assert 'Unknown section: target' in errors

    def test_empty_separator(self, tmp_path, sample_source):
        config = valid_config(tmp_path)
        config['key_separator'] = ''

        is_valid, errors, _ = ConfigValidator().validate_dict(config)

        assert not is_valid
        assert 'key_separator must be a non-empty string' in errors

    def test_unsupported_database_type(self, tmp_path, sample_source):
        config = valid_config(tmp_path)
        config['audit']['type'] = 'postgres'

        is_valid, errors, _ = ConfigValidator().validate_dict(config)

        assert not is_valid
        assert any(error.startswith('audit.type') for error in errors)

    def test_oracle_requires_credentials(self, tmp_path):
        config = valid_config(tmp_path)
        config['source'] = {'type': 'oracle', 'connection_string': 'localhost:1521/XE',
                            'tables': ['EMPLOYEES']}

        is_valid, errors, _ = ConfigValidator().validate_dict(config)

        assert not is_valid
        assert 'source.user is required for oracle' in errors
        assert 'source.password is required for oracle' in errors

    def test_oracle_reserved_audit_table_name(self, tmp_path, sample_source):
        config = valid_config(tmp_path)
        config['audit'] = {'type': 'oracle', 'user': 'scott', 'password': 'tiger',
                           'connection_string': 'localhost:1521/XE'}

        is_valid, _, warnings = ConfigValidator().validate_dict(config)

        assert is_valid
        assert any(warning.startswith("audit.audit_table_name 'audit' is a reserved word")
                   for warning in warnings)

        config['audit']['audit_table_name'] = 'DB_AUDIT_ROWS'
        _, _, warnings = ConfigValidator().validate_dict(config)
        assert not any('reserved word' in warning for warning in warnings)

    def test_missing_source_file_is_a_warning(self, tmp_path):
        is_valid, _, warnings = ConfigValidator().validate_dict(valid_config(tmp_path))

        assert is_valid
        assert any('source database file not found' in warning for warning in warnings)

    def test_duplicate_tables(self, tmp_path, sample_source):
        config = valid_config(tmp_path)
        config['source']['tables'].append({'table_name': 'artist'})

        is_valid, errors, _ = ConfigValidator().validate_dict(config)

        assert not is_valid
        assert 'Duplicate table name: artist' in errors

    @pytest.mark.parametrize('key_columns', ['artist_id', [1], ['']])
    def test_bad_key_columns(self, tmp_path, sample_source, key_columns):
        config = valid_config(tmp_path)
        config['source']['tables'][0]['key_columns'] = key_columns

        is_valid, errors, _ = ConfigValidator().validate_dict(config)

        assert not is_valid
        assert any('key_columns must be a list of column names' in error for error in errors)

    def test_duplicate_key_columns(self, tmp_path, sample_source):
        config = valid_config(tmp_path)
        config['source']['tables'][0]['key_columns'] = ['artist_id', 'artist_id']

        is_valid, errors, _ = ConfigValidator().validate_dict(config)

        assert not is_valid
        assert any('has duplicates' in error for error in errors)

    def test_empty_key_columns_is_a_warning(self, tmp_path, sample_source):
        config = valid_config(tmp_path)
        config['source']['tables'][0]['key_columns'] = []

        is_valid, _, warnings = ConfigValidator().validate_dict(config)

        assert is_valid
        assert any('row hash will be used as identity' in warning for warning in warnings)

    def test_catalog_mode_is_a_warning(self, tmp_path, sample_source):
        config = valid_config(tmp_path)
        del config['source']['tables']

        is_valid, _, warnings = ConfigValidator().validate_dict(config)

        assert is_valid
        assert any('every catalog table will be audited' in warning for warning in warnings)

    @pytest.mark.parametrize('run_config, message', [
        ({'hash_algorithm': 'crc32'}, 'run.hash_algorithm'),
        ({'fetch_size': 0}, 'run.fetch_size'),
        ({'max_workers': 64}, 'run.max_workers'),
        ({'table_timeout': -5}, 'run.table_timeout'),
        ({'on_error': 'ignore'}, 'run.on_error'),
        ({'retry_attempts': 0}, 'run.retry_attempts'),
    ])
    def test_bad_run_settings(self, tmp_path, sample_source, run_config, message):
        config = valid_config(tmp_path)
        config['run'] = run_config

        is_valid, errors, _ = ConfigValidator().validate_dict(config)

        assert not is_valid
        assert any(error.startswith(message) for error in errors)

    def test_unknown_field_caught_by_build(self, tmp_path, sample_source):
        config = valid_config(tmp_path)
        config['run']['threads'] = 4

        is_valid, errors, _ = ConfigValidator().validate_dict(config)

        assert not is_valid
        assert 'Invalid configuration' in errors[0]


class TestTableDiscovery:
    """Test table discovery on a SQLite source."""

    def test_discover_tables(self, tmp_path, sample_source):
        db_manager = DatabaseManager(DatabaseConfig(connection_string=str(sample_source)), read_only=True)
        try:
            tables = TableDiscovery(db_manager).discover_tables()
        finally:
            db_manager.close()

        assert tables == [
            {'table_name': 'artist', 'row_count': 2, 'key_columns': ['artist_id']},
            {'table_name': 'playlist_track', 'row_count': 3, 'key_columns': ['playlist_id', 'track_id']},
            {'table_name': 'tag', 'row_count': 3, 'key_columns': []},
        ]

    def test_generate_configuration(self, tmp_path, sample_source):
        source_config = DatabaseConfig(connection_string=str(sample_source))
        db_manager = DatabaseManager(source_config, read_only=True)
        try:
            config = TableDiscovery(db_manager).generate_configuration(
                source_config, str(tmp_path / 'audit.db'))
        finally:
            db_manager.close()

        assert config['source']['tables'] == [
            {'table_name': 'artist', 'key_columns': ['artist_id']},
            {'table_name': 'playlist_track', 'key_columns': ['playlist_id', 'track_id']},
            {'table_name': 'tag'},
        ]
        # The generated configuration is accepted as is
        assert ConfigValidator().validate_dict(config)[0]
        assert build_config(config).key_columns_for('playlist_track') == ['playlist_id', 'track_id']

    def test_discover_command(self, tmp_path, sample_source, capsys):
        output = tmp_path / 'generated.yaml'

        main(['discover', '--connection-string', str(sample_source),
              '--audit-path', str(tmp_path / 'audit.db'), '--output', str(output)])

        config = load_config(str(output), required=True)
        assert [t.table_name for t in config.source.tables] == ['artist', 'playlist_track', 'tag']
        assert 'Configuration generated' in capsys.readouterr().out

    @patch('db_audit.time.sleep')
    def test_discover_missing_source(self, mock_sleep, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(['discover', '--connection-string', str(tmp_path / 'missing.db'),
                  '--output', str(tmp_path / 'generated.yaml')])

        assert exc_info.value.code == 1
        assert not (tmp_path / 'generated.yaml').exists()


class TestHistoryReport:
    """Test the history pivot."""

    def _store(self, tmp_path):
        config = StoreConfig(connection_string=str(tmp_path / 'audit.db'))
        store = SnapshotStore(DatabaseManager(config), config)
        store.initialize()
        return store

    def test_empty_history(self, tmp_path):
        store = self._store(tmp_path)
        try:
            assert history_report(store).empty
        finally:
            store.close()

    def test_pivot(self, tmp_path):
        store = self._store(tmp_path)
        try:
            for timestamp, changes in (('2024-01-01 00:00:00', '3'), ('2024-01-02 00:00:00', '1')):
                store.append_history([
                    HistoryRecord(timestamp, 'Table b', changes),
                    HistoryRecord(timestamp, 'Table a', '0'),
                    HistoryRecord(timestamp, 'Database changes', changes),
                    HistoryRecord(timestamp, 'Rows processed', '10'),
                ])

            report = history_report(store)
            latest = history_report(store, limit=1)
        finally:
            store.close()

        assert list(report.columns) == ['2024-01-01 00:00:00', '2024-01-02 00:00:00']
        assert list(report.index) == ['Database changes', 'Rows processed', 'Table a', 'Table b']
        assert report.loc['Table b', '2024-01-01 00:00:00'] == '3'
        assert list(latest.columns) == ['2024-01-02 00:00:00']

    def test_history_command(self, tmp_path, sample_source, capsys):
        config = valid_config(tmp_path)
        config['run'] = {'show_progress': False}
        config_path = tmp_path / 'config.yaml'
        config_path.write_text(yaml.safe_dump(config))
        AuditRunner(load_config(str(config_path)), save_history=1).run()

        main(['history', '--config', str(config_path)])

        output = capsys.readouterr().out
        assert 'Table artist' in output
        assert 'Execution time' in output

    def test_history_command_without_store(self, tmp_path, capsys):
        config_path = tmp_path / 'config.yaml'
        config_path.write_text(yaml.safe_dump({'audit': {'connection_string': str(tmp_path / 'audit.db')}}))

        with pytest.raises(SystemExit) as exc_info:
            main(['history', '--config', str(config_path)])

        assert exc_info.value.code == 1
        assert 'Could not read history' in capsys.readouterr().out


class TestValidateCommand:
    """Test the validate subcommand."""

    def test_valid(self, tmp_path, sample_source, capsys):
        config_path = tmp_path / 'config.yaml'
        config_path.write_text(yaml.safe_dump(valid_config(tmp_path)))

        main(['validate', str(config_path)])

        assert 'Configuration is valid' in capsys.readouterr().out

    def test_invalid(self, tmp_path, sample_source, capsys):
        config = valid_config(tmp_path)
        config['run']['on_error'] = 'ignore'
        config_path = tmp_path / 'config.yaml'
        config_path.write_text(yaml.safe_dump(config))

        with pytest.raises(SystemExit) as exc_info:
            main(['validate', str(config_path)])

        assert exc_info.value.code == 1
        assert 'run.on_error' in capsys.readouterr().out

    def test_no_command(self):
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 1


# Fixtures
@pytest.fixture
def sample_source(tmp_path):
    """Source database with keyed, composite-keyed and unkeyed tables."""
    path = tmp_path / 'source.db'
    connection = sqlite3.connect(path)
    connection.executescript("""
        CREATE TABLE artist (artist_id INTEGER PRIMARY KEY, name TEXT);
        CREATE TABLE playlist_track (
            playlist_id INTEGER,
            track_id INTEGER,
            PRIMARY KEY (playlist_id, track_id)
        );
        CREATE TABLE tag (label TEXT);

        INSERT INTO artist VALUES (1, 'AC/DC'), (2, 'Accept');
        INSERT INTO playlist_track VALUES (1, 10), (1, 11), (2, 10);
        INSERT INTO tag VALUES ('rock'), ('metal'), ('rock');
    """)
    connection.commit()
    connection.close()
    return path
