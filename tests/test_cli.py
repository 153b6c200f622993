"""Tests for the bmq command-line interface."""

import json
import os

import pytest
from click.testing import CliRunner

from birthday_mail_queue.cli import _format_ts, main, run_async


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("BMQ_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def invoke(tmp_path):
    runner = CliRunner()
    base = ["--config", str(tmp_path / "missing.ini"), "--db", str(tmp_path / "cli.db")]

    def _invoke(*args):
        return runner.invoke(main, [*base, *args])

    return _invoke


def enqueue(invoke, name, priority=0):
    return invoke(
        "enqueue",
        "--name", name,
        "--email", f"{name.lower()}@example.com",
        "--subject", "Happy Birthday",
        "--body", "Best wishes",
        "--priority", str(priority),
    )


def test_run_async_executes_coroutine():
    async def answer():
        return 42

    assert run_async(answer()) == 42


def test_format_ts():
    assert _format_ts(None) == "-"
    assert len(_format_ts(0.0)) == 19


def test_enqueue_and_stats(invoke):
    result = enqueue(invoke, "Anna")
    assert result.exit_code == 0, result.output
    assert "Queued message 1 for Anna" in result.output

    result = invoke("stats", "--json")
    assert result.exit_code == 0, result.output
    stats = json.loads(result.stdout)
    assert (stats["pending"], stats["total"]) == (1, 1)
    assert stats["rate_limits"]["minute"]["max"] == 10


def test_stats_table(invoke):
    enqueue(invoke, "Anna")
    result = invoke("stats")
    assert result.exit_code == 0, result.output
    assert "pending" in result.output
    assert "Email Queue" in result.output
    assert "24h attempts" in result.output


def test_list_orders_by_priority(invoke):
    enqueue(invoke, "Anna")
    enqueue(invoke, "Bruno", priority=3)

    result = invoke("list", "--json")
    assert result.exit_code == 0, result.output
    names = [m["contact_name"] for m in json.loads(result.stdout)]
    assert names == ["Bruno", "Anna"]

    result = invoke("list", "--status", "sent")
    assert "Queue is empty." in result.output


def test_process_now_without_smtp_schedules_retry(invoke):
    enqueue(invoke, "Anna")

    result = invoke("process-now")
    assert result.exit_code == 0, result.output
    report = json.loads(result.stdout)
    assert report["processed"] == 1
    assert report["retried"] == 1

    messages = json.loads(invoke("list", "--json").stdout)
    assert messages[0]["retry_count"] == 1
    assert messages[0]["error"] == "Email not configured"

    result = invoke("send-log")
    assert result.exit_code == 0, result.output
    assert "Delivery Attempts" in result.output


def test_cleanup_reports_removed_count(invoke):
    enqueue(invoke, "Anna")
    result = invoke("cleanup", "--days", "0")
    assert result.exit_code == 0, result.output
    assert "Removed 0 message(s)" in result.output


def test_invalid_settings_exit_with_error(tmp_path, monkeypatch):
    monkeypatch.setenv("BMQ_PORT", "http")
    result = CliRunner().invoke(main, ["--config", str(tmp_path / "missing.ini"), "stats"])
    assert result.exit_code == 1
