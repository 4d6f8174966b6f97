"""
Tests for the CLI interface.
"""

import json
import logging
import os
import shutil
import tempfile
from unittest.mock import patch

import pytest
import structlog
import yaml
from typer.testing import CliRunner

from ai_route_guard.cli.main import EXIT_CODE_FAIL, EXIT_CODE_PASS, app
from ai_route_guard.core.types import Objective
from ai_route_guard.storage.models import LedgerCategory

from .helpers import router_config_data

runner = CliRunner()


@pytest.fixture(autouse=True)
def restore_logging():
    """Commands reconfigure the root logger; put it back afterwards."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


@pytest.fixture
def config_path():
    """Router config written to a temporary YAML file."""
    temp_dir = tempfile.mkdtemp()
    path = os.path.join(temp_dir, "router.yaml")
    with open(path, 'w', encoding='utf-8') as f:
        yaml.dump(router_config_data(), f)
    yield path
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def router_context(make_context):
    """In-memory context handed to every command instead of a real one."""
    ctx = make_context()
    ctx.objective.set(Objective.COST)
    with patch('ai_route_guard.cli.main.build_context', return_value=ctx):
        yield ctx


def _invoke(*args):
    return runner.invoke(app, ["--log-level", "ERROR", *args])


class TestCLI:
    """Test general CLI behavior."""

    def test_no_command_prints_banner(self):
        result = _invoke()

        assert result.exit_code == EXIT_CODE_PASS
        assert "AI Route Guard" in result.output

    def test_init_creates_database(self):
        temp_dir = tempfile.mkdtemp()
        try:
            db_path = os.path.join(temp_dir, "router.db")

            result = _invoke("init", "--db", db_path)

            assert result.exit_code == EXIT_CODE_PASS
            assert "Database initialized" in result.output
            assert os.path.exists(db_path)
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)


class TestRouteCommand:
    """Test the route command."""

    def test_requires_config(self):
        result = _invoke("route", "hello")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "needs --config" in result.output

    def test_missing_config_file(self):
        result = _invoke("route", "hello", "--config", "/nonexistent/router.yaml")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Configuration error" in result.output

    def test_route_prints_result(self, router_context, config_path):
        result = _invoke("route", "hi", "--config", config_path)

        assert result.exit_code == EXIT_CODE_PASS
        assert "Backend: zero" in result.output
        assert "from zero" in result.output

    def test_route_json(self, router_context, config_path):
        result = _invoke("route", "hi", "--config", config_path, "--task-type", "daily-thought", "--json")

        data = json.loads(result.stdout)
        assert result.exit_code == EXIT_CODE_PASS
        assert data["status"] == "served"
        assert data["backend_id"] == "premium"
        assert data["complexity"] == "simple"
        assert data["cost"] == 0.03
        assert data["guardrail"]["rule"] == "high-quality-premium"

    def test_all_backends_failing(self, router_context, config_path, farm):
        for backend in farm.backends.values():
            backend.fail = True

        result = _invoke("route", "hi", "--config", config_path)

        assert result.exit_code == EXIT_CODE_FAIL
        assert "All backends failed" in result.output
        assert router_context.retry_queue.stats()["pending"] == 0

    def test_background_request_deferred(self, router_context, config_path, farm):
        for backend in farm.backends.values():
            backend.fail = True

        result = _invoke("route", "hi", "--config", config_path, "--background")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Deferred to retry queue" in result.output
        assert router_context.retry_queue.stats()["pending"] == 1


class TestReportCommands:
    """Test health, budget, costs and guardrails output."""

    def test_health(self, router_context, config_path):
        result = _invoke("health", "--config", config_path)

        assert result.exit_code == EXIT_CODE_PASS
        assert "Backend Health" in result.output
        assert "healthy" in result.output

    def test_budget_json(self, router_context):
        router_context.ledger.record(LedgerCategory.GENERATION_CALL, "premium", 85.0)

        result = _invoke("budget", "--json")

        data = json.loads(result.stdout)
        assert result.exit_code == EXIT_CODE_PASS
        assert data["state"] == "warning"
        assert data["objective"] == "cost"

    def test_costs(self, router_context):
        router_context.ledger.record(LedgerCategory.GENERATION_CALL, "premium", 0.03)

        result = _invoke("costs", "--days", "7")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Cost Report" in result.output
        assert "premium: $0.0300 over 1 calls" in result.output

    def test_guardrails(self, router_context):
        result = _invoke("guardrails")

        assert result.exit_code == EXIT_CODE_PASS
        assert "aggressive-complex-floor" in result.output


class TestRetryCommands:
    """Test the retry sub-commands."""

    def test_list_empty(self, router_context):
        result = _invoke("retry", "list")

        assert result.exit_code == EXIT_CODE_PASS
        assert "No retry records" in result.output

    def test_list_unknown_status(self, router_context):
        result = _invoke("retry", "list", "--status", "stuck")

        assert result.exit_code == EXIT_CODE_FAIL

    def test_list_and_mark(self, router_context):
        record = router_context.retry_queue.enqueue("generation", {"prompt": "hello"})

        listed = _invoke("retry", "list", "--status", "pending")
        marked = _invoke("retry", "mark", record.id, "--failed", "--reason", "not needed")

        assert listed.exit_code == EXIT_CODE_PASS
        assert "Retry Queue" in listed.output
        assert marked.exit_code == EXIT_CODE_PASS
        assert f"{record.id} marked failed" in marked.output
        assert router_context.retry_queue.get(record.id).last_error == "not needed"

    def test_mark_unknown_record(self, router_context):
        result = _invoke("retry", "mark", "missing", "--succeeded")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown retry record" in result.output

    def test_history(self, router_context, clock):
        record = router_context.retry_queue.enqueue("generation", {"prompt": "hi"})
        clock.advance(router_context.retry_queue.next_delay(0))
        router_context.retry_queue.sweep()

        result = _invoke("retry", "history", "--record", record.id)

        assert result.exit_code == EXIT_CODE_PASS
        assert "Retry Executions" in result.output

    def test_history_empty(self, router_context):
        result = _invoke("retry", "history")

        assert result.exit_code == EXIT_CODE_PASS
        assert "No retry executions" in result.output

    def test_sweep(self, router_context, config_path, clock):
        router_context.retry_queue.enqueue("generation", {"prompt": "hi"})
        clock.advance(router_context.retry_queue.next_delay(0))

        result = _invoke("retry", "sweep", "--config", config_path)

        assert result.exit_code == EXIT_CODE_PASS
        assert "Processed 1: 1 succeeded" in result.output


class TestServeCommand:
    def test_unknown_objective(self, router_context, config_path):
        result = _invoke("serve", "--config", config_path, "--objective", "cheapest")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "unknown objective" in result.output
