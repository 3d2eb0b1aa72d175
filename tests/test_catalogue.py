"""
Tests for the scenario catalogue and scenario models.
"""
import pytest
from pydantic import ValidationError

from mirrorfault.config import Settings
from mirrorfault.engine.catalogue import CATALOGUE, get_scenario, list_scenarios
from mirrorfault.exceptions import ConfigurationError
from mirrorfault.models import (
    ExchangeOutcome,
    FaultKind,
    FaultPoint,
    FaultScenario,
    HandshakeOutcome,
    ScenarioConfig,
    TerminalState,
)


class TestCatalogue:
    """Tests for catalogue lookups and terminal-state mapping"""

    def test_names_are_unique(self):
        assert len(CATALOGUE) == len(list_scenarios())

    def test_get_scenario(self):
        scenario = get_scenario("hello_wrong_size")

        assert scenario.point == FaultPoint.HANDSHAKE
        assert scenario.kind == FaultKind.BAD_SIZE
        assert scenario.stderr_patterns == ("Remote size does not match local size",)

    def test_unknown_scenario(self):
        with pytest.raises(ConfigurationError) as exc_info:
            get_scenario("no_such_fault")

        assert "refused" in exc_info.value.details["known"]

    @pytest.mark.parametrize("scenario", list_scenarios(), ids=lambda s: s.name)
    def test_faults_before_handoff_keep_service(self, scenario):
        if scenario.kind == FaultKind.NONE:
            assert scenario.expected_state == TerminalState.ENTRUSTED
        elif scenario.kind == FaultKind.TERMINATE:
            assert scenario.expected_state == TerminalState.KILLED
        elif scenario.before_handoff:
            assert scenario.expected_state == TerminalState.ABORTED
        else:
            assert scenario.expected_state == TerminalState.KILLED

    @pytest.mark.parametrize(
        "name, pattern",
        [
            ("refused", "failed to connect"),
            ("hang_after_connect", "Remote server failed to respond"),
            ("reject_acl", "Mirror was rejected"),
            ("hello_wrong_magic", "Mirror was rejected"),
        ],
    )
    def test_documented_diagnostics(self, name, pattern):
        assert pattern in get_scenario(name).stderr_patterns

    def test_close_after_hello_is_retried_silently(self):
        scenario = get_scenario("close_after_hello")

        assert scenario.retried
        assert scenario.stdout_patterns == ("Mirror started",)
        assert scenario.expected_state == TerminalState.ABORTED

    def test_sigterm_after_hello_quits_with_status_1(self):
        scenario = get_scenario("sigterm_after_hello")

        assert scenario.point == FaultPoint.AFTER_HANDSHAKE
        assert scenario.kind == FaultKind.TERMINATE
        assert scenario.expected_state == TerminalState.KILLED
        assert scenario.killed_statuses(ScenarioConfig()) == (-9, 1)

    def test_killed_scenarios_document_their_exit_status(self):
        for scenario in list_scenarios():
            if scenario.expected_state == TerminalState.KILLED:
                assert scenario.exit_statuses, scenario.name
            else:
                assert scenario.exit_statuses == (), scenario.name

    def test_request_faults_expect_a_diagnostic(self):
        for scenario in list_scenarios():
            if scenario.point == FaultPoint.REQUEST:
                assert scenario.expects_diagnostic, scenario.name


class TestFaultScenario:
    """Tests for outcome derivation on FaultScenario"""

    def test_refuse_does_not_listen(self):
        assert not get_scenario("refused").listens
        assert get_scenario("reject_acl").listens

    def test_handshake_outcomes(self):
        assert get_scenario("hang_after_connect").handshake_outcome == HandshakeOutcome.HANG
        assert get_scenario("reject_acl").handshake_outcome == HandshakeOutcome.CLOSE
        assert get_scenario("hello_wrong_magic").handshake_outcome == HandshakeOutcome.WRONG_MAGIC
        assert get_scenario("error_on_write").handshake_outcome == HandshakeOutcome.CORRECT

    def test_exchange_outcomes(self):
        assert get_scenario("error_on_write").exchange_outcome == ExchangeOutcome.ERROR
        assert get_scenario("write_wrong_handle").exchange_outcome == ExchangeOutcome.WRONG_HANDLE
        assert get_scenario("entrust_wrong_magic").exchange_outcome == ExchangeOutcome.WRONG_MAGIC
        assert get_scenario("mirror_complete").exchange_outcome == ExchangeOutcome.CORRECT
        assert get_scenario("close_after_hello").exchange_outcome is None

    def test_scenarios_are_immutable(self):
        scenario = get_scenario("refused")
        with pytest.raises(ValidationError):
            scenario.name = "changed"

    def test_custom_scenario(self):
        scenario = FaultScenario(
            name="slow_entrust",
            point=FaultPoint.ENTRUST,
            kind=FaultKind.STALL,
            expected_state=TerminalState.KILLED,
        )
        assert scenario.exchange_outcome == ExchangeOutcome.HANG
        assert not scenario.before_handoff

    def test_close_during_handshake(self):
        scenario = FaultScenario(
            name="close_before_hello",
            point=FaultPoint.HANDSHAKE,
            kind=FaultKind.CLOSE,
            expected_state=TerminalState.ABORTED,
        )

        assert scenario.handshake_outcome == HandshakeOutcome.CLOSE
        assert scenario.exchange_outcome is None

    @pytest.mark.parametrize(
        "point, kind",
        [
            (FaultPoint.HANDSHAKE, FaultKind.ERROR_RESPONSE),
            (FaultPoint.HANDSHAKE, FaultKind.NONE),
            (FaultPoint.BEFORE_HANDSHAKE, FaultKind.CLOSE),
            (FaultPoint.AFTER_HANDSHAKE, FaultKind.STALL),
            (FaultPoint.REQUEST, FaultKind.BAD_MAGIC),
            (FaultPoint.REQUEST, FaultKind.REFUSE),
            (FaultPoint.BEFORE_ENTRUST, FaultKind.BAD_REPLY_HANDLE),
            (FaultPoint.ENTRUST, FaultKind.TERMINATE),
        ],
    )
    def test_unsupported_kind_at_point(self, point, kind):
        with pytest.raises(ValidationError) as exc_info:
            FaultScenario(name="unsupported", point=point, kind=kind, expected_state=TerminalState.ABORTED)

        assert f"{kind.value} is not supported at {point.value}" in str(exc_info.value)


class TestScenarioConfig:
    """Tests for ScenarioConfig"""

    def test_defaults(self):
        config = ScenarioConfig()

        assert config.request_limit_secs == 4.0
        assert config.killed_exit_codes == (-9,)
        assert config.retry_policy.deadline == config.connect_deadline_sec

    def test_stall_must_outlast_request_limit(self):
        with pytest.raises(ValidationError):
            ScenarioConfig(request_limit_secs=5.0, exchange_timeout_sec=5.0)

    def test_from_settings(self):
        settings = Settings(request_limit_secs=1.5, exchange_timeout_sec=3.0, killed_exit_codes=[1])
        config = ScenarioConfig.from_settings(settings, dest_port=5000)

        assert config.request_limit_secs == 1.5
        assert config.killed_exit_codes == (1,)
        assert config.dest_port == 5000

    def test_settings_from_environment(self, monkeypatch):
        monkeypatch.setenv("MIRRORFAULT_REQUEST_LIMIT_SECS", "2.5")
        monkeypatch.setenv("MIRRORFAULT_BINARY", "/usr/local/bin/flexnbd")

        settings = Settings()

        assert settings.request_limit_secs == 2.5
        assert str(settings.binary) == "/usr/local/bin/flexnbd"
