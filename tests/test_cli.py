"""Tests for the command line interface."""

import json

import pytest

from expense_matching.runner.main import create_cli, main
from expense_matching.state_store import MatchingDatabaseService

ORG = "org-acme"


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Config path and database isolated in tmp_path."""
    db_path = tmp_path / "state.db"
    monkeypatch.setenv("EXPENSE_MATCHING_DB", str(db_path))
    return tmp_path / "config.yaml", db_path


@pytest.fixture
def records_file(tmp_path):
    path = tmp_path / "records.json"
    path.write_text(
        json.dumps(
            {
                "transactions": [
                    {
                        "id": "tx-1",
                        "amount": "-12.50",
                        "transaction_date": "2024-02-01",
                        "merchant_name": "STARBUCKS",
                        "user_id": "U1",
                    }
                ],
                "receipts": [
                    {
                        "id": "r-1",
                        "total_amount": "12.50",
                        "receipt_date": "2024-02-01",
                        "merchant_name": "Starbucks Coffee #1234",
                        "uploaded_by": "U1",
                    }
                ],
            }
        )
    )
    return path


class TestParser:
    """Tests for argument parsing."""

    def test_commands_registered(self):
        parser = create_cli()
        for argv in (
            ["init"],
            ["status"],
            ["import", "records.json"],
            ["auto-match", "--org", ORG],
            ["bulk-match", "--org", ORG, "--batch-size", "50"],
            ["suggest", "--org", ORG, "r-1", "--type", "receipt"],
            ["confirm", "--org", ORG, "tx-1", "r-1", "--user", "alice"],
            ["reject", "--org", ORG, "tx-1", "r-1", "--correct-receipt", "r-2"],
            ["metrics", "--org", ORG, "--days", "7"],
            ["update-config", "--org", ORG, "--apply"],
            ["worker", "--org", ORG, "--org", "org-other", "--once"],
        ):
            assert parser.parse_args(argv).command == argv[0]

    def test_worker_collects_organizations(self):
        parsed = create_cli().parse_args(["worker", "--org", "a", "--org", "b"])
        assert parsed.org == ["a", "b"]

    def test_no_command_prints_help(self, cli_env):
        assert main([]) == 1


class TestCommands:
    """End-to-end command runs against a temporary database."""

    def test_init(self, cli_env, capsys):
        config_path, db_path = cli_env

        assert main(["-c", str(config_path), "init"]) == 0

        assert config_path.exists()
        assert db_path.exists()
        assert "Created config" in capsys.readouterr().out

    def test_import_and_auto_match(self, cli_env, records_file, capsys):
        config_path, db_path = cli_env

        assert main(["-c", str(config_path), "import", str(records_file), "--org", ORG]) == 0
        assert main(["-c", str(config_path), "auto-match", "--org", ORG]) == 0

        out = capsys.readouterr().out
        assert "Imported 1 transaction(s), 1 receipt(s)" in out
        assert "tx-1 -> r-1" in out
        match = MatchingDatabaseService(db_path).get_active_match_for_transaction(ORG, "tx-1")
        assert match.receipt_id == "r-1"

    def test_dry_run_saves_nothing(self, cli_env, records_file, capsys):
        config_path, db_path = cli_env
        main(["-c", str(config_path), "import", str(records_file), "--org", ORG])

        assert main(["-c", str(config_path), "auto-match", "--org", ORG, "--dry-run"]) == 0

        assert "[DRY RUN]" in capsys.readouterr().out
        assert MatchingDatabaseService(db_path).get_stats()["matches_active"] == 0

    def test_import_reports_invalid_records(self, cli_env, tmp_path, capsys):
        config_path, _ = cli_env
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"transactions": [{"id": "tx-x", "amount": "oops"}]}))

        assert main(["-c", str(config_path), "import", str(path), "--org", ORG]) == 1
        assert "missing amount" in capsys.readouterr().out

    def test_confirm_unknown_pair(self, cli_env, capsys):
        config_path, _ = cli_env
        assert main(["-c", str(config_path), "confirm", "--org", ORG, "tx-9", "r-9"]) == 1
        assert "not found" in capsys.readouterr().out

    def test_status(self, cli_env, records_file, capsys):
        config_path, _ = cli_env
        main(["-c", str(config_path), "import", str(records_file), "--org", ORG])

        assert main(["-c", str(config_path), "status"]) == 0
        out = capsys.readouterr().out
        assert "Transactions:           1" in out

    def test_worker_once(self, cli_env, records_file, capsys):
        config_path, db_path = cli_env
        main(["-c", str(config_path), "import", str(records_file), "--org", ORG])

        assert main(["-c", str(config_path), "worker", "--org", ORG, "--once"]) == 0
        assert "bulk_match" in capsys.readouterr().out
        assert MatchingDatabaseService(db_path).get_stats()["matches_active"] == 1

    def test_invalid_config_file(self, cli_env, capsys):
        config_path, _ = cli_env
        config_path.write_text("matching:\n  auto_match_threshold: 2.0\n")

        assert main(["-c", str(config_path), "status"]) == 1
        assert "Failed to load config" in capsys.readouterr().out
