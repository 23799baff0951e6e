"""Tests for the command line interface."""

import pytest
from sqlalchemy import inspect

from bizflow.config import LogLevel
from bizflow.storage.database import create_database_engine
from bizflow.startup import create_argument_parser, load_configuration, main


class TestArgumentParser:

    def test_overrides_are_applied(self):
        args = create_argument_parser().parse_args(
            ["--env", "testing", "--port", "9001", "--log-level", "DEBUG", "run", "--workers", "2"]
        )

        config = load_configuration(args)

        assert args.command == "run"
        assert args.workers == 2
        assert config.port == 9001
        assert config.log_level == LogLevel.DEBUG
        assert config.database_url == "sqlite:///:memory:"

    def test_preset_without_overrides(self):
        args = create_argument_parser().parse_args(["--env", "production", "config", "show"])

        config = load_configuration(args)

        assert config.log_structured is True
        assert args.config_command == "show"


class TestCommands:

    def test_db_init_and_seed(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'cli.db'}"

        main(["--env", "testing", "--database-url", url, "db", "init"])
        main(["--env", "testing", "--database-url", url, "db", "seed"])

        engine = create_database_engine(url, connect_args={"check_same_thread": False})
        try:
            tables = set(inspect(engine).get_table_names())
            assert {"workflow_definitions", "workflow_instances"} <= tables
            with engine.connect() as connection:
                count = connection.exec_driver_sql("SELECT COUNT(*) FROM workflow_definitions").scalar()
            assert count == 1
        finally:
            engine.dispose()

    def test_config_show(self, capsys):
        main(["--env", "testing", "config", "show"])

        output = capsys.readouterr().out
        assert "Database URL: sqlite:///:memory:" in output
        assert "Anthropic API Key: not set" in output

    def test_missing_db_command_exits(self):
        with pytest.raises(SystemExit):
            main(["--env", "testing", "db"])
