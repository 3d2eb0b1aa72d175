"""
Target Process - handle on the mirroring server under test.

The process is an external binary driven only through its CLI verbs
(``serve``, ``read``, ``write``), its control socket and its
exit status. ``TargetProcess`` fixes the expected terminal state when it is
created and checks the exit status exactly once, in ``stop_and_check``.
The per-request time limit is handed to the child through its own
environment; the harness's environment is never modified.
"""
from __future__ import annotations

import asyncio
import os
import signal
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import psutil
import structlog

from mirrorfault.engine.timeout_guard import TimeoutGuard
from mirrorfault.exceptions import PlumbingError, ProcessStartError, UnexpectedExit
from mirrorfault.models import ScenarioConfig, TerminalState

logger = structlog.get_logger()

REQUEST_LIMIT_ENV = "FLEXNBD_MS_REQUEST_LIMIT_SECS"
_POLL_INTERVAL_SEC = 0.1


class _Killer:
    """Adapter so TimeoutGuard can tear down a child process like a channel"""

    def __init__(self, proc: asyncio.subprocess.Process):
        self.proc = proc

    def close(self) -> None:
        if self.proc.returncode is None:
            try:
                self.proc.kill()
            except ProcessLookupError:
                pass


class ProcessCommands:
    """Builds argv lists for the binary's verbs"""

    def __init__(self, binary: Path, verbose: bool = False):
        self.binary = Path(binary)
        self.verbose = verbose

    @classmethod
    async def detect(cls, binary: Path, timeout_sec: float = 5.0) -> "ProcessCommands":
        """Ask ``serve --help`` to learn whether ``--verbose`` is supported."""
        binary = Path(binary)
        if not binary.is_file() or not os.access(binary, os.X_OK):
            raise PlumbingError(f"{binary} is not executable")

        proc = await asyncio.create_subprocess_exec(
            str(binary), "serve", "--help",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        result = await TimeoutGuard().run_bounded(
            timeout_sec, proc.communicate(), channel=_Killer(proc), what="serve --help"
        )
        if not result.ok:
            await proc.wait()
            raise PlumbingError("Binary did not answer serve --help", details={"error": result.error.message})

        help_text = (result.value[0] or b"").decode(errors="replace")
        verbose = "--verbose" in help_text
        logger.debug("binary_inspected", binary=str(binary), verbose=verbose)
        return cls(binary, verbose)

    def _common(self) -> List[str]:
        return ["--verbose"] if self.verbose else []

    def serve(self, ip: str, port: int, file: Path, sock: Path, acl: Sequence[str] = ()) -> List[str]:
        return [
            str(self.binary), "serve",
            "--addr", ip, "--port", str(port),
            "--file", str(file), "--sock", str(sock),
            *self._common(), *acl,
        ]

    def read(self, ip: str, port: int, offset: int, size: int) -> List[str]:
        return [
            str(self.binary), "read",
            "--addr", ip, "--port", str(port),
            "--from", str(offset), *self._common(), "--size", str(size),
        ]

    def write(self, ip: str, port: int, offset: int, size: int) -> List[str]:
        return [
            str(self.binary), "write",
            "--addr", ip, "--port", str(port),
            "--from", str(offset), *self._common(), "--size", str(size),
        ]


class TargetProcess:
    """
    A serving instance of the binary under test.

    Args:
        commands: argv builder for the binary
        config: scenario configuration (addresses, limits, deadlines)
        expected_state: terminal state the scenario expects; fixed for the
            lifetime of the handle
        ctrl_path: control socket path to create
        killed_statuses: exit statuses accepted for a KILLED scenario;
            defaults to the configured killed exit codes
    """

    def __init__(
        self,
        commands: ProcessCommands,
        config: ScenarioConfig,
        expected_state: TerminalState,
        ctrl_path: Path,
        guard: Optional[TimeoutGuard] = None,
        killed_statuses: Optional[Sequence[int]] = None,
    ):
        self.commands = commands
        self.config = config
        self.expected_state = expected_state
        self.ctrl_path = Path(ctrl_path)
        self.guard = guard or TimeoutGuard()
        self.killed_statuses = tuple(config.killed_exit_codes if killed_statuses is None else killed_statuses)

        self._proc: Optional[asyncio.subprocess.Process] = None
        self._stdout: List[str] = []
        self._stderr: List[str] = []
        self._collectors: List[asyncio.Task] = []
        self._checked = False
        self.exited_on_its_own: Optional[bool] = None

    @property
    def env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env[REQUEST_LIMIT_ENV] = str(self.config.request_limit_secs)
        return env

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode if self._proc else None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def stdout(self) -> str:
        return "".join(self._stdout)

    @property
    def stderr(self) -> str:
        return "".join(self._stderr)

    async def _collect(self, stream: asyncio.StreamReader, sink: List[str], name: str) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode(errors="replace")
            sink.append(text)
            logger.debug("target_output", stream=name, line=text.rstrip())

    async def start(self, export_file: Path, acl: Sequence[str] = ()) -> None:
        """Launch ``serve`` and wait for the control socket to appear."""
        if self.ctrl_path.exists():
            self.ctrl_path.unlink()

        argv = self.commands.serve(self.config.bind_ip, self.config.source_port, export_file, self.ctrl_path, acl)
        logger.info("launching_target", argv=" ".join(argv))
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                start_new_session=True,
            )
        except OSError as e:
            raise ProcessStartError(f"Cannot launch {argv[0]}", details={"error": str(e)})

        self._collectors = [
            asyncio.create_task(self._collect(self._proc.stdout, self._stdout, "stdout")),
            asyncio.create_task(self._collect(self._proc.stderr, self._stderr, "stderr")),
        ]

        async def _await_socket() -> None:
            while not self.ctrl_path.is_socket():
                if self._proc.returncode is not None:
                    raise ProcessStartError(
                        "Server did not start",
                        details={"returncode": self._proc.returncode, "argv": argv},
                    )
                await asyncio.sleep(_POLL_INTERVAL_SEC)

        result = await self.guard.run_bounded(
            self.config.process_start_timeout_sec, _await_socket, what="control socket"
        )
        if result.timed_out:
            raise ProcessStartError("Control socket never appeared", details={"path": str(self.ctrl_path)})
        result.unwrap()
        logger.info("target_started", pid=self._proc.pid, ctrl=str(self.ctrl_path))

    async def wait_exit(self, deadline: float) -> Optional[int]:
        """Return the exit status if the process exits within ``deadline``, else None."""
        if self._proc is None:
            return None
        result = await self.guard.run_bounded(deadline, self._proc.wait(), what="process exit")
        return result.value if result.ok else None

    async def run_verb(self, argv: List[str], input_data: Optional[bytes] = None) -> Tuple[int, bytes, bytes]:
        """Run a short-lived CLI verb (read/write) under the exchange deadline."""
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self.env,
        )
        result = await self.guard.run_bounded(
            self.config.exchange_timeout_sec,
            proc.communicate(input_data),
            channel=_Killer(proc),
            what=f"{argv[1]} command",
        )
        if not result.ok:
            await proc.wait()
        out, err = result.unwrap()
        return proc.returncode, out, err

    async def local_read(self, offset: int, size: int) -> bytes:
        argv = self.commands.read(self.config.bind_ip, self.config.source_port, offset, size)
        returncode, out, err = await self.run_verb(argv)
        if returncode != 0:
            logger.warning("local_read_failed", returncode=returncode, stderr=err.decode(errors="replace"))
        return out

    async def local_write(self, offset: int, data: bytes) -> bool:
        argv = self.commands.write(self.config.bind_ip, self.config.source_port, offset, len(data))
        returncode, _, err = await self.run_verb(argv, data)
        if returncode != 0:
            logger.warning("local_write_failed", returncode=returncode, stderr=err.decode(errors="replace"))
        return returncode == 0

    def terminate(self) -> None:
        """Send SIGTERM, as an operator stopping the server mid-migration would."""
        if not self.running:
            return
        logger.info("terminating_target", pid=self._proc.pid)
        try:
            self._proc.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            pass

    def _kill_tree(self) -> None:
        try:
            parent = psutil.Process(self._proc.pid)
            for child in parent.children(recursive=True):
                child.kill()
            parent.kill()
        except psutil.NoSuchProcess:
            pass

    async def stop_and_check(self) -> Optional[int]:
        """
        Stop the process (if still running) and check its exit status once.

        A process still running at teardown gets SIGINT and must exit 0.
        A process that already exited on its own must match the expected
        terminal state: 0 for ENTRUSTED, a killed status for KILLED.

        Raises:
            UnexpectedExit: status not documented for the expected state
        """
        if self._checked:
            raise PlumbingError("Exit status already checked")
        self._checked = True
        if self._proc is None:
            return None

        self.exited_on_its_own = self._proc.returncode is not None
        if not self.exited_on_its_own:
            try:
                self._proc.send_signal(signal.SIGINT)
            except ProcessLookupError:
                pass
            if await self.wait_exit(self.config.process_exit_timeout_sec) is None:
                logger.error("target_ignored_sigint", pid=self._proc.pid)
                self._kill_tree()
                await self._proc.wait()

        for task in self._collectors:
            await asyncio.wait({task}, timeout=self.config.close_timeout_sec)
            task.cancel()

        returncode = self._proc.returncode
        logger.info(
            "target_stopped",
            returncode=returncode,
            on_its_own=self.exited_on_its_own,
            expected_state=self.expected_state.value,
        )

        if self.exited_on_its_own:
            if self.expected_state == TerminalState.KILLED:
                allowed = list(self.killed_statuses)
            elif self.expected_state == TerminalState.ENTRUSTED:
                allowed = [0]
            else:
                allowed = []
        else:
            allowed = [0]

        if returncode not in allowed:
            raise UnexpectedExit(
                f"Process exited with status {returncode}",
                returncode=returncode,
                expected=allowed,
            )
        return returncode
