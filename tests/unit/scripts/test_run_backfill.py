"""Tests for the run_backfill command line entry point."""

import argparse
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from scripts.run_backfill import build_parser, main, parse_option
from app.utils.error_handler import BackfillException


def _settings(configured=True):
    settings = MagicMock()
    settings.sanity_configured = configured
    return settings


class TestParseOption:
    def test_key_value(self):
        assert parse_option("kind=checkout") == ("kind", "checkout")
        assert parse_option(" orderId = order-1 ") == ("orderId", "order-1")

    def test_missing_separator(self):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_option("kind")


class TestParser:
    def test_defaults_to_dry_run(self):
        args = build_parser().parse_args(["orders", "--option", "a=1", "--option", "b=2"])

        assert args.apply is False
        assert dict(args.option) == {"a": "1", "b": "2"}

    def test_unknown_job_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["nope"])


class TestMain:
    def test_list(self):
        assert main(["--list"]) == 0

    def test_missing_job_is_usage_error(self):
        assert main([]) == 2

    def test_unconfigured_sanity(self):
        with patch("scripts.run_backfill.setup_logging"), patch(
            "scripts.run_backfill.get_settings", return_value=_settings(configured=False)
        ):
            assert main(["orders"]) == 2

    def test_runs_job_as_dry_run(self):
        job = MagicMock()
        job.run = AsyncMock(return_value={"ok": True, "dryRun": True})

        with patch("scripts.run_backfill.setup_logging"), patch(
            "scripts.run_backfill.get_settings", return_value=_settings()
        ), patch("scripts.run_backfill.get_backfill_job", return_value=job), patch(
            "scripts.run_backfill.close_sanity_client", new=AsyncMock()
        ), patch("scripts.run_backfill.close_redis", new=AsyncMock()):
            code = main(["order-stripe", "--limit", "10", "--option", "kind=checkout"])

        assert code == 0
        job.run.assert_awaited_once_with(dry_run=True, limit=10, resume=False, kind="checkout")

    def test_job_failure_returns_1(self):
        job = MagicMock()
        job.run = AsyncMock(side_effect=BackfillException("fetch failed", job="orders", operation="fetch"))
        close_sanity = AsyncMock()

        with patch("scripts.run_backfill.setup_logging"), patch(
            "scripts.run_backfill.get_settings", return_value=_settings()
        ), patch("scripts.run_backfill.get_backfill_job", return_value=job), patch(
            "scripts.run_backfill.close_sanity_client", new=close_sanity
        ), patch("scripts.run_backfill.close_redis", new=AsyncMock()):
            code = main(["orders", "--apply"])

        assert code == 1
        close_sanity.assert_awaited_once()
