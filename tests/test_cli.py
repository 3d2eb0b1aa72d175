"""
Tests for the command line entry point.
"""
import json
from unittest.mock import AsyncMock, patch

import pytest

from mirrorfault import cli
from mirrorfault.engine.catalogue import list_scenarios
from mirrorfault.models import SelfCheckReport


@pytest.fixture(autouse=True)
def logging_setup():
    with patch("mirrorfault.cli.setup_logging") as setup:
        yield setup


def test_list(capsys):
    assert cli.main(["list"]) == 0

    out = capsys.readouterr().out
    for scenario in list_scenarios():
        assert scenario.name in out


def test_self_check_reports_json(capsys):
    report = SelfCheckReport(scenario="refused", expected="refused", observed="refused")

    with patch("mirrorfault.cli.ScenarioRunner.self_check", new=AsyncMock(return_value=report)):
        assert cli.main(["self-check", "refused"]) == 0

    line = capsys.readouterr().out.strip().splitlines()[-1]
    assert json.loads(line)["observed"] == "refused"


def test_self_check_failure_exit_status():
    report = SelfCheckReport(scenario="refused", expected="refused", observed="ok")

    with patch("mirrorfault.cli.ScenarioRunner.self_check", new=AsyncMock(return_value=report)):
        assert cli.main(["self-check", "refused"]) == 1


def test_unknown_scenario(capsys):
    assert cli.main(["self-check", "no_such_fault"]) == 2
    assert "Unknown scenario" in capsys.readouterr().err


def test_run_requires_binary(capsys):
    with patch.object(cli.settings, "binary", None):
        assert cli.main(["run", "refused"]) == 2

    assert "No binary given" in capsys.readouterr().err


def test_invalid_request_limit(capsys):
    assert cli.main(["--request-limit", "50", "self-check", "refused"]) == 2
    assert "Invalid scenario configuration" in capsys.readouterr().err


def test_log_dir_option(tmp_path, logging_setup):
    assert cli.main(["--log-dir", str(tmp_path), "list"]) == 0

    logging_setup.assert_called_once()
    assert logging_setup.call_args.kwargs["log_dir"] == tmp_path


def test_lists_sigterm_scenario(capsys):
    assert cli.main(["list"]) == 0
    assert "sigterm_after_hello" in capsys.readouterr().out
