"""
Tests for the CLI interface.
"""
import os
import tempfile
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from ai_cost_meter.cli.main import app, EXIT_CODE_DENIED, EXIT_CODE_FAIL, EXIT_CODE_PASS
from ai_cost_meter.storage.models import UsageRecord
from ai_cost_meter.storage.repository import SQLiteMeteringStore, new_record_id

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep the CLI from reconfiguring logging for the test process."""
    with patch('ai_cost_meter.cli.main.configure_logging') as mock:
        yield mock


class TestCLI:
    """Test CLI commands against a temporary database."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "cli.db")

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def invoke(self, *args):
        return runner.invoke(app, ["--db", self.db_path, *args])

    def test_init(self):
        result = self.invoke("init")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.output
        assert os.path.exists(self.db_path)

    def test_init_with_seed(self):
        result = self.invoke("init", "--seed")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Seeded 9 pricing records" in result.output

    def test_add_pricing(self):
        self.invoke("init")

        result = self.invoke("add-pricing", "openai", "gpt-4", "--input", "0.03", "--output", "0.06",
                             "--effective", "2026-01-01")

        assert result.exit_code == EXIT_CODE_PASS
        assert "openai/gpt-4" in result.output

    def test_add_pricing_duplicate_fails(self):
        self.invoke("init")
        args = ("add-pricing", "openai", "gpt-4", "--input", "0.03", "--output", "0.06",
                "--effective", "2026-01-01")
        self.invoke(*args)

        result = self.invoke(*args)

        assert result.exit_code == EXIT_CODE_FAIL
        assert "already exists" in result.output

    def test_add_pricing_bad_amount_fails(self):
        self.invoke("init")
        result = self.invoke("add-pricing", "openai", "gpt-4", "--input", "cheap", "--output", "0.06")
        assert result.exit_code == EXIT_CODE_FAIL

    def test_check_without_quotas(self):
        self.invoke("init")

        result = self.invoke("check", "acme", "openai", "gpt-4", "--cost", "5")

        assert result.exit_code == EXIT_CODE_PASS
        assert "ALLOWED" in result.output
        assert "No quotas defined" in result.output

    def test_check_denied(self):
        self.invoke("init")
        self.invoke("set-quota", "acme", "--limit", "1.0", "--period", "daily")

        result = self.invoke("check", "acme", "openai", "gpt-4", "--cost", "1.0")

        assert result.exit_code == EXIT_CODE_DENIED
        assert "DENIED" in result.output
        assert "Limiting quota: daily" in result.output

    def test_check_allowed_under_quota(self):
        self.invoke("init")
        self.invoke("set-quota", "acme", "--limit", "10", "--provider", "openai")

        result = self.invoke("check", "acme", "openai", "gpt-4", "--cost", "0.5")

        assert result.exit_code == EXIT_CODE_PASS
        assert "provider_monthly" in result.output

    def test_check_negative_cost_fails(self):
        self.invoke("init")

        result = self.invoke("check", "acme", "openai", "gpt-4", "--cost=-1")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "estimated_cost" in result.output

    def test_set_quota_model_requires_provider(self):
        self.invoke("init")

        result = self.invoke("set-quota", "acme", "--limit", "10", "--model", "gpt-4")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "must also name a provider" in result.output

    def test_summary_empty(self):
        self.invoke("init")

        result = self.invoke("summary", "acme")

        assert result.exit_code == EXIT_CODE_PASS
        assert "No usage recorded for acme" in result.output

    def test_summary_with_usage(self):
        self.invoke("init")
        SQLiteMeteringStore(self.db_path).log_usage(UsageRecord(
            record_id=new_record_id(),
            timestamp=datetime.now(timezone.utc),
            user_id="user-1",
            organization_id="acme",
            provider="openai",
            model="gpt-4",
            input_tokens=1000,
            output_tokens=500,
            cost_usd=1.25,
        ))

        result = self.invoke("summary", "acme", "--days", "7")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Total cost: $1.25" in result.output
        assert "Total calls: 1" in result.output

    def test_reset_quotas(self):
        self.invoke("init")
        result = self.invoke("reset-quotas")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Reset 0 expired quotas" in result.output

    def test_status_without_cache(self):
        result = self.invoke("status")

        assert result.exit_code == EXIT_CODE_PASS
        assert "disabled" in result.output

    def test_missing_config_file(self):
        result = runner.invoke(app, ["--config", os.path.join(self.temp_dir, "none.yaml"), "status"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error loading configuration" in result.output
