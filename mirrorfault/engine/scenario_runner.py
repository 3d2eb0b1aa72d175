"""
Scenario Runner - drives one fault scenario end to end.

Component Overview:
-------------------
A scenario composes:
- a TargetProcess serving a known export with a control socket
- a FaultEndpoint acting as the mirror destination, scripted by one
  FaultScenario
- the ``mirror`` control command that triggers the migration, and for
  some scenarios ``break`` or SIGTERM once the hello is out
- checks on what the process visibly does: exit status, diagnostic
  substrings, continued local reads/writes and control commands,
  migration success

Only this layer decides whether an error ends a scenario. Errors from
the endpoint are recorded as what the double observed; PlumbingError
(the harness's own setup failing) aborts the scenario and is reported as
``harness_error``, never as a verdict on the process under test.

Self-check:
-----------
``self_check`` plays the scenario against an in-process source endpoint
over loopback and confirms the double produces exactly the scripted
divergence. A double configured to corrupt the reply handle shows up
there as ``handle_mismatch`` attributed to the endpoint, so it cannot be
mistaken for a fault of the process under test.
"""
from __future__ import annotations

import asyncio
import re
import socket
import uuid
from pathlib import Path
from typing import Optional

import structlog

from mirrorfault.config import settings
from mirrorfault.engine.control_channel import ControlChannel
from mirrorfault.engine.fault_endpoint import FaultEndpoint
from mirrorfault.engine.target_process import ProcessCommands, TargetProcess
from mirrorfault.engine.timeout_guard import TimeoutGuard
from mirrorfault.exceptions import (
    ConnectTimeout,
    FrameIncomplete,
    HarnessError,
    PeerClosed,
    PlumbingError,
    ProcessError,
    ProtocolMismatch,
    Rejected,
    Timeout,
    UnexpectedExit,
)
from mirrorfault.models import (
    FaultKind,
    FaultPoint,
    FaultScenario,
    HandshakeOutcome,
    ScenarioConfig,
    ScenarioReport,
    SelfCheckReport,
    TerminalState,
)

logger = structlog.get_logger()

SAMPLE_OFFSET = 0
SAMPLE_DATA = b"12345678"
AFTER_FAULT_DATA = b"87654321"

# What a correct source observes for each scripted divergence
_EXPECTED_OBSERVATION = {
    FaultKind.NONE: "ok",
    FaultKind.CANCEL: "ok",
    FaultKind.TERMINATE: "ok",
    FaultKind.STALL: "stalled",
    FaultKind.CLOSE: "closed",
    FaultKind.BAD_MAGIC: "bad_hello_magic",
    FaultKind.BAD_SIZE: "size_mismatch",
    FaultKind.BAD_REPLY_MAGIC: "bad_reply_magic",
    FaultKind.BAD_REPLY_HANDLE: "handle_mismatch",
    FaultKind.ERROR_RESPONSE: "rejected",
    FaultKind.REFUSE: "refused",
    FaultKind.REJECT: "rejected",
}


def expected_observation(scenario: FaultScenario) -> str:
    """What a correct source observes when the double plays ``scenario``"""
    # A close before any hello byte looks the same as an ACL rejection
    if scenario.handshake_outcome == HandshakeOutcome.CLOSE:
        return "rejected"
    return _EXPECTED_OBSERVATION[scenario.kind]


def _unused_port(host: str) -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


def classify_observation(error: Optional[HarnessError]) -> str:
    """Name what a source endpoint saw, from the error it got (if any)"""
    if error is None:
        return "ok"
    if isinstance(error, ConnectTimeout):
        return "refused"
    if isinstance(error, ProtocolMismatch):
        return error.details.get("reason", "protocol_mismatch")
    if isinstance(error, Rejected):
        return "rejected"
    if isinstance(error, PeerClosed):
        return "closed"
    if isinstance(error, FrameIncomplete):
        return "closed" if error.peer_closed else "stalled"
    if isinstance(error, Timeout):
        return "stalled"
    return type(error).__name__


class ScenarioRunner:
    """
    Runs catalogued fault scenarios against the binary under test.

    Args:
        binary: Path of the mirroring server binary (only needed by ``run``)
        config: Base scenario configuration; ``run`` accepts overrides
        work_dir: Where export files and control sockets are created
    """

    def __init__(
        self,
        binary: Optional[Path] = None,
        config: Optional[ScenarioConfig] = None,
        work_dir: Optional[Path] = None,
        guard: Optional[TimeoutGuard] = None,
    ):
        self.binary = binary
        self.config = config or ScenarioConfig.from_settings(settings)
        self.work_dir = Path(work_dir or settings.work_dir)
        self.guard = guard or TimeoutGuard()
        self._commands: Optional[ProcessCommands] = None

    # ------------------------------------------------------------------
    # Self-check of the double
    # ------------------------------------------------------------------

    async def self_check(self, scenario: FaultScenario) -> SelfCheckReport:
        """Play ``scenario`` against an in-process source and compare observations."""
        cfg = self.config
        dest = FaultEndpoint(cfg.model_copy(update={"dest_port": 0}), self.guard)
        source = FaultEndpoint(cfg, self.guard)
        endpoint_error: Optional[HarnessError] = None

        dest_task = asyncio.create_task(dest.run_scenario(scenario))
        if scenario.listens:
            listening = await self.guard.run_bounded(cfg.accept_timeout_sec, dest.listening.wait(), what="double to listen")
            if not listening.ok:
                dest_task.cancel()
                raise PlumbingError("Double never started listening", details={"scenario": scenario.name})
            port = dest.bound_port
        else:
            port = _unused_port(cfg.bind_ip)

        observed_error: Optional[HarnessError] = None
        try:
            await source.connect_with_retry(cfg.bind_ip, port, cfg.retry_policy)
            await source.read_handshake(expected_size=cfg.export_size)
            if scenario.point != FaultPoint.HANDSHAKE and scenario.kind not in (FaultKind.CANCEL, FaultKind.TERMINATE):
                await source.write(SAMPLE_OFFSET, SAMPLE_DATA)
            if scenario.point in (FaultPoint.BEFORE_ENTRUST, FaultPoint.ENTRUST):
                await source.entrust()
            await source.disconnect()
        except PlumbingError:
            raise
        except HarnessError as e:
            observed_error = e
        finally:
            observed = classify_observation(observed_error)
            await source.close()
            try:
                await dest_task
            except HarnessError as e:
                endpoint_error = e

        report = SelfCheckReport(
            scenario=scenario.name,
            expected=expected_observation(scenario),
            observed=observed,
        )
        log = logger.info if report.passed else logger.error
        log(
            "self_check_done",
            scenario=scenario.name,
            expected=report.expected,
            observed=report.observed,
            attributed_to=report.attributed_to,
            endpoint_error=endpoint_error.message if endpoint_error else None,
        )
        return report

    # ------------------------------------------------------------------
    # Scenario against the process under test
    # ------------------------------------------------------------------

    def _write_export(self, name: str, size: int) -> Path:
        path = self.work_dir / f".mirrorfault.{name}.{uuid.uuid4().hex}.img"
        path.write_bytes(b"f" * size)
        return path

    async def _commands_for_binary(self) -> ProcessCommands:
        if self.binary is None:
            raise PlumbingError("No binary configured for this runner")
        if self._commands is None:
            self._commands = await ProcessCommands.detect(self.binary)
        return self._commands

    async def _check_local_service(self, process: TargetProcess, control: ControlChannel, cfg: ScenarioConfig) -> bool:
        """
        Previously written data is intact, the export still takes writes and
        the control socket still answers.

        A hung or failing verb counts against the process under test; only a
        PlumbingError escapes.
        """
        try:
            if await process.local_read(SAMPLE_OFFSET, len(SAMPLE_DATA)) != SAMPLE_DATA:
                return False
            if not await process.local_write(SAMPLE_OFFSET, AFTER_FAULT_DATA):
                return False
            if await process.local_read(SAMPLE_OFFSET, len(AFTER_FAULT_DATA)) != AFTER_FAULT_DATA:
                return False
            await process.local_write(SAMPLE_OFFSET, SAMPLE_DATA)
            return (await control.acl(cfg.bind_ip)).ok
        except PlumbingError:
            raise
        except HarnessError as e:
            logger.warning("local_service_unresponsive", error=e.message, error_type=type(e).__name__)
            return False

    async def _still_mirroring(self, control: ControlChannel) -> bool:
        try:
            status = await control.status()
        except PlumbingError:
            raise
        except HarnessError as e:
            logger.warning("status_unavailable", error=e.message)
            return False
        return bool(status.get("is_mirroring", False))

    async def _observe_terminal_state(self, process: TargetProcess, scenario: FaultScenario, cfg: ScenarioConfig) -> Optional[TerminalState]:
        if scenario.expected_state == TerminalState.ABORTED:
            wait = cfg.close_timeout_sec
        else:
            wait = cfg.process_exit_timeout_sec
        returncode = await process.wait_exit(wait)

        if returncode is None:
            return TerminalState.ABORTED
        if returncode == 0:
            return TerminalState.ENTRUSTED
        if returncode in scenario.killed_statuses(cfg):
            return TerminalState.KILLED
        return None

    async def _await_cancelled(self, control: ControlChannel, cfg: ScenarioConfig) -> bool:
        async def _poll() -> bool:
            while True:
                status = await control.status()
                if not status.get("is_mirroring", False):
                    return True
                await asyncio.sleep(0.1)

        result = await self.guard.run_bounded(cfg.exchange_timeout_sec, _poll, what="migration to stop")
        return bool(result.ok and result.value)

    async def _act_after_hello(
        self,
        scenario: FaultScenario,
        endpoint: FaultEndpoint,
        process: TargetProcess,
        control: ControlChannel,
        cfg: ScenarioConfig,
        report: ScenarioReport,
    ) -> None:
        """Interrupt the migration from outside once the double has sent its hello."""
        sent = await self.guard.run_bounded(cfg.accept_timeout_sec, endpoint.handshake_sent.wait(), what="hello")
        if not sent.ok:
            report.failures.append("process never connected to the destination")
            return

        if scenario.kind == FaultKind.TERMINATE:
            process.terminate()
            return

        try:
            cancel_reply = await control.cancel()
        except PlumbingError:
            raise
        except HarnessError as e:
            report.failures.append(f"break command failed: {e.message}")
            return
        logger.info("migration_cancelled", scenario=scenario.name, code=cancel_reply.code, message=cancel_reply.message)
        if not await self._await_cancelled(control, cfg):
            report.failures.append("migration still running after break")

    async def run(self, scenario: FaultScenario, verify_double: bool = True, **overrides) -> ScenarioReport:
        """
        Run ``scenario`` against a fresh instance of the binary.

        Args:
            scenario: Catalogued fault to inject
            verify_double: Self-check the double first; a failing self-check
                aborts the scenario as a harness error
            **overrides: ScenarioConfig fields replaced for this run only
        """
        cfg = self.config.model_copy(update=overrides) if overrides else self.config
        report = ScenarioReport(scenario=scenario.name, expected_state=scenario.expected_state)
        log = logger.bind(scenario=scenario.name)

        if verify_double:
            check = await ScenarioRunner(config=cfg, guard=self.guard).self_check(scenario)
            if not check.passed:
                report.harness_error = (
                    f"double self-check failed: expected {check.expected}, observed {check.observed}"
                )
                return report

        export: Optional[Path] = None
        process: Optional[TargetProcess] = None
        endpoint_task: Optional[asyncio.Task] = None
        trigger: Optional[asyncio.Task] = None
        control_reply = None

        try:
            commands = await self._commands_for_binary()
            export = self._write_export(scenario.name, cfg.export_size)
            ctrl_path = self.work_dir / f".mirrorfault.ctrl.{uuid.uuid4().hex}"
            process = TargetProcess(
                commands, cfg, scenario.expected_state, ctrl_path, self.guard,
                killed_statuses=scenario.killed_statuses(cfg),
            )
            await process.start(export, acl=[cfg.bind_ip])

            try:
                written = await process.local_write(SAMPLE_OFFSET, SAMPLE_DATA)
            except PlumbingError:
                raise
            except HarnessError as e:
                raise PlumbingError("Could not write sample data before mirroring", details={"error": e.message})
            if not written:
                raise PlumbingError("Could not write sample data before mirroring")

            endpoint = FaultEndpoint(cfg, self.guard)
            endpoint_task = asyncio.create_task(endpoint.run_scenario(scenario))
            if scenario.listens:
                listening = await self.guard.run_bounded(cfg.accept_timeout_sec, endpoint.listening.wait(), what="double to listen")
                if not listening.ok:
                    raise PlumbingError("Double never started listening", details={"scenario": scenario.name})

            control = ControlChannel(ctrl_path, cfg.hello_timeout_sec + cfg.exchange_timeout_sec, self.guard)
            trigger = asyncio.create_task(control.mirror(cfg.bind_ip, cfg.dest_port))

            if scenario.kind in (FaultKind.CANCEL, FaultKind.TERMINATE):
                await self._act_after_hello(scenario, endpoint, process, control, cfg, report)

            try:
                control_reply = await trigger
                report.control_reply = control_reply
            except HarnessError as e:
                if isinstance(e, PlumbingError):
                    raise
                log.warning("mirror_command_failed", error=e.message)

            try:
                trace = await endpoint_task
                log.info("endpoint_finished", **trace)
            except HarnessError as e:
                if isinstance(e, PlumbingError):
                    raise
                report.endpoint_error = f"{type(e).__name__}: {e.message}"
                if isinstance(e, Timeout) and scenario.kind == FaultKind.STALL:
                    report.failures.append("process never gave up on the stalled destination")

            report.observed_state = await self._observe_terminal_state(process, scenario, cfg)
            if report.observed_state == TerminalState.ABORTED:
                if scenario.retried:
                    report.still_mirroring = await self._still_mirroring(control)
                report.local_service_ok = await self._check_local_service(process, control, cfg)

        except (PlumbingError, ProcessError) as e:
            report.harness_error = f"{type(e).__name__}: {e.message}"
            log.error("scenario_aborted", error=e.message, details=e.details)

        except HarnessError as e:
            report.failures.append(f"{type(e).__name__}: {e.message}")
            log.error("scenario_step_failed", error=e.message, details=e.details)

        finally:
            for task in (endpoint_task, trigger):
                if task is not None and not task.done():
                    task.cancel()
                    await asyncio.wait({task})
            if process is not None:
                try:
                    report.returncode = await process.stop_and_check()
                except UnexpectedExit as e:
                    report.returncode = e.returncode
                    report.failures.append(f"unexpected exit status {e.returncode}, allowed {e.expected}")
                report.stdout = process.stdout
                report.stderr = process.stderr
            if export is not None and export.exists():
                export.unlink()

        if report.harness_error is None:
            self._check_expectations(report, scenario)

        log.info(
            "scenario_done",
            passed=report.passed,
            expected=scenario.expected_state.value,
            observed=report.observed_state.value if report.observed_state else None,
            failures=report.failures,
        )
        return report

    def _check_expectations(self, report: ScenarioReport, scenario: FaultScenario) -> None:
        reply_text = report.control_reply.message if report.control_reply else ""
        diagnostics = report.stderr + reply_text
        output = report.stdout + reply_text

        if report.observed_state != scenario.expected_state:
            observed = report.observed_state.value if report.observed_state else f"exit {report.returncode}"
            report.failures.append(f"expected {scenario.expected_state.value}, observed {observed}")

        for pattern in scenario.stderr_patterns:
            if not re.search(pattern, diagnostics):
                report.failures.append(f"diagnostic /{pattern}/ not reported")
        for pattern in scenario.stdout_patterns:
            if not re.search(pattern, output):
                report.failures.append(f"output /{pattern}/ not reported")
        if scenario.expects_diagnostic and not report.stderr.strip():
            report.failures.append("no diagnostic on the error stream")

        if scenario.expected_state == TerminalState.ABORTED and report.local_service_ok is False:
            report.failures.append("local service did not survive the aborted migration")
        if scenario.retried and report.still_mirroring is False:
            report.failures.append("process gave up instead of retrying the destination")
