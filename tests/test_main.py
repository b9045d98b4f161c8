"""Tests for the dunning-notifier command line."""

import json

import pytest

from dunning_notifier.main import build_parser, main
from dunning_notifier.store import SqliteDatabase, SqliteObligationStore


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        f"storage:\n  db_path: {tmp_path / 'cli.db'}\n"
        f"templates:\n  store_path: {tmp_path / 'templates.yaml'}\n"
        "chat:\n  enabled: false\n"
        "smtp:\n  enabled: false\n"
        "output:\n  log_file: ''\n"
        "schedule:\n  frequency: weekly\n  weekdays: [mon]\n  time: '08:00'\n",
        encoding="utf-8",
    )
    return path


class TestParser:

    def test_subcommand_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_reset_defaults_actor(self):
        args = build_parser().parse_args(["reset", "COB-1"])
        assert args.obligation_id == "COB-1"
        assert args.actor == "cli"


class TestCommands:

    def test_next_fire_json(self, config_path, capsys):
        assert main(["--config", str(config_path), "next-fire", "--json"]) == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["schedule"] == "weekly on mon at 08:00"
        assert payload["enabled"] is True
        assert "T08:00:00" in payload["next_fire_time"]

    def test_run_now_json_with_empty_store(self, config_path, capsys):
        assert main(["--config", str(config_path), "run-now", "--json"]) == 0
        report = json.loads(capsys.readouterr().out)
        assert report["total_scanned"] == 0
        assert report["trigger"] == "manual"

    def test_reset(self, tmp_path, config_path, capsys, make_obligation):
        SqliteObligationStore(SqliteDatabase(tmp_path / "cli.db")).upsert(make_obligation("COB-9"))

        assert main(["--config", str(config_path), "reset", "COB-9", "--actor", "ops"]) == 0
        assert "COB-9" in capsys.readouterr().out

        assert main(["--config", str(config_path), "reset", "GHOST"]) == 1
        assert "not found" in capsys.readouterr().out

    def test_config_error(self, tmp_path, capsys):
        bad = tmp_path / "bad.yaml"
        bad.write_text("schedule:\n  frequency: monthly\n", encoding="utf-8")
        assert main(["--config", str(bad), "next-fire"]) == 1
        assert "CONFIG ERROR" in capsys.readouterr().out
