"""
Core data models
"""
from enum import Enum, IntEnum
from typing import List, Optional, Tuple
from pydantic import BaseModel, Field, model_validator


class RequestType(IntEnum):
    """Command codes carried in a request frame"""

    READ = 0
    WRITE = 1
    DISCONNECT = 2
    ENTRUST = 65536


class HandshakeOutcome(str, Enum):
    """Scripted behaviour of the double when it owes the peer a hello"""

    CORRECT = "correct"
    WRONG_MAGIC = "wrong_magic"
    WRONG_SIZE = "wrong_size"
    HANG = "hang"
    CLOSE = "close"


class ExchangeOutcome(str, Enum):
    """Scripted behaviour of the double after receiving one request"""

    CORRECT = "correct"
    HANG = "hang"
    CLOSE = "close"
    WRONG_MAGIC = "wrong_magic"
    WRONG_HANDLE = "wrong_handle"
    ERROR = "error"


class FaultPoint(str, Enum):
    """Protocol point at which the double diverges"""

    BEFORE_HANDSHAKE = "before_handshake"
    HANDSHAKE = "handshake"
    AFTER_HANDSHAKE = "after_handshake"
    REQUEST = "request"
    BEFORE_ENTRUST = "before_entrust"
    ENTRUST = "entrust"


class FaultKind(str, Enum):
    """How the double diverges at its fault point"""

    NONE = "none"
    STALL = "stall"
    CLOSE = "close"
    BAD_MAGIC = "bad_magic"
    BAD_SIZE = "bad_size"
    BAD_REPLY_MAGIC = "bad_reply_magic"
    BAD_REPLY_HANDLE = "bad_reply_handle"
    ERROR_RESPONSE = "error_response"
    REFUSE = "refuse"
    REJECT = "reject"
    CANCEL = "cancel"
    TERMINATE = "terminate"


class TerminalState(str, Enum):
    """Terminal states of a migration attempt, seen from the source"""

    ENTRUSTED = "entrusted"
    ABORTED = "aborted"
    KILLED = "killed"


class HandshakeFrame(BaseModel):
    """Server hello: 152 bytes on the wire"""

    model_config = {"frozen": True}

    magic: bytes
    reserved: bytes
    export_size: int


class RequestFrame(BaseModel):
    """Client request header"""

    model_config = {"frozen": True}

    magic: bytes
    type: int
    handle: bytes
    offset: int
    length: int


class ResponseFrame(BaseModel):
    """Reply header: 16 bytes on the wire"""

    model_config = {"frozen": True}

    magic: bytes
    error_code: int
    handle: bytes


class RetryPolicy(BaseModel):
    """Bounded connect retry: total deadline plus fixed backoff between attempts"""

    model_config = {"frozen": True}

    deadline: float = Field(gt=0, description="Total seconds allowed for all attempts")
    backoff: float = Field(ge=0, description="Seconds to wait after each refusal")


_HANDSHAKE_FAULTS = {
    FaultKind.STALL: HandshakeOutcome.HANG,
    FaultKind.BAD_MAGIC: HandshakeOutcome.WRONG_MAGIC,
    FaultKind.BAD_SIZE: HandshakeOutcome.WRONG_SIZE,
    FaultKind.CLOSE: HandshakeOutcome.CLOSE,
    FaultKind.REJECT: HandshakeOutcome.CLOSE,
}

_EXCHANGE_FAULTS = {
    FaultKind.NONE: ExchangeOutcome.CORRECT,
    FaultKind.STALL: ExchangeOutcome.HANG,
    FaultKind.CLOSE: ExchangeOutcome.CLOSE,
    FaultKind.BAD_REPLY_MAGIC: ExchangeOutcome.WRONG_MAGIC,
    FaultKind.BAD_REPLY_HANDLE: ExchangeOutcome.WRONG_HANDLE,
    FaultKind.ERROR_RESPONSE: ExchangeOutcome.ERROR,
}

# Kinds the double knows how to play at each point
_SUPPORTED_KINDS = {
    FaultPoint.BEFORE_HANDSHAKE: frozenset({FaultKind.REFUSE}),
    FaultPoint.HANDSHAKE: frozenset(_HANDSHAKE_FAULTS),
    FaultPoint.AFTER_HANDSHAKE: frozenset({FaultKind.CLOSE, FaultKind.CANCEL, FaultKind.TERMINATE}),
    FaultPoint.REQUEST: frozenset(_EXCHANGE_FAULTS),
    FaultPoint.BEFORE_ENTRUST: frozenset({FaultKind.CLOSE}),
    FaultPoint.ENTRUST: frozenset(_EXCHANGE_FAULTS),
}


class FaultScenario(BaseModel):
    """
    Named, immutable description of one injected fault.

    ``point`` and ``kind`` say where and how the double diverges; the
    remaining fields are what the runner asserts about the process under
    test once the fault has been injected.
    """

    model_config = {"frozen": True}

    name: str
    description: str = ""
    point: FaultPoint
    kind: FaultKind
    expected_state: TerminalState
    stderr_patterns: Tuple[str, ...] = ()
    stdout_patterns: Tuple[str, ...] = ()
    expects_diagnostic: bool = False
    retried: bool = False
    exit_statuses: Tuple[int, ...] = Field(
        default=(),
        description="Statuses documented for this scenario's KILLED exit, on top of the configured ones",
    )

    @model_validator(mode="after")
    def _kind_supported_at_point(self) -> "FaultScenario":
        supported = _SUPPORTED_KINDS[self.point]
        if self.kind not in supported:
            allowed = ", ".join(sorted(kind.value for kind in supported))
            raise ValueError(f"{self.kind.value} is not supported at {self.point.value} (use one of: {allowed})")
        return self

    @property
    def listens(self) -> bool:
        return self.kind != FaultKind.REFUSE

    @property
    def handshake_outcome(self) -> HandshakeOutcome:
        if self.point == FaultPoint.HANDSHAKE:
            return _HANDSHAKE_FAULTS[self.kind]
        return HandshakeOutcome.CORRECT

    @property
    def exchange_outcome(self) -> Optional[ExchangeOutcome]:
        if self.point in (FaultPoint.REQUEST, FaultPoint.ENTRUST):
            return _EXCHANGE_FAULTS[self.kind]
        return None

    @property
    def before_handoff(self) -> bool:
        """True when the fault lands strictly before the irrevocable handoff"""
        return self.point not in (FaultPoint.BEFORE_ENTRUST, FaultPoint.ENTRUST)

    def killed_statuses(self, config: "ScenarioConfig") -> Tuple[int, ...]:
        """Exit statuses that count as KILLED when this scenario runs under ``config``"""
        return tuple(config.killed_exit_codes) + self.exit_statuses


class ScenarioConfig(BaseModel):
    """
    Explicit per-scenario configuration.

    Built once per scenario and passed down to the endpoint and the process
    handle; nothing reads it from the process environment afterwards.
    """

    model_config = {"frozen": True}

    bind_ip: str = "127.0.0.1"
    source_port: int = 41234
    dest_port: int = 41235
    export_size: int = 4096
    request_limit_secs: float = 4.0
    hello_timeout_sec: float = 5.0
    accept_timeout_sec: float = 10.0
    exchange_timeout_sec: float = 10.0
    close_timeout_sec: float = 2.0
    connect_deadline_sec: float = 2.0
    connect_backoff_sec: float = 0.2
    process_start_timeout_sec: float = 5.0
    process_exit_timeout_sec: float = 10.0
    killed_exit_codes: Tuple[int, ...] = (-9,)

    @model_validator(mode="after")
    def _stall_outlasts_request_limit(self) -> "ScenarioConfig":
        # A stalled double must still be waiting when the process gives up
        if self.exchange_timeout_sec <= self.request_limit_secs:
            raise ValueError("exchange_timeout_sec must exceed request_limit_secs")
        return self

    @classmethod
    def from_settings(cls, settings, **overrides) -> "ScenarioConfig":
        values = {name: getattr(settings, name) for name in cls.model_fields if hasattr(settings, name)}
        if "killed_exit_codes" in values:
            values["killed_exit_codes"] = tuple(values["killed_exit_codes"])
        values.update(overrides)
        return cls(**values)

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(deadline=self.connect_deadline_sec, backoff=self.connect_backoff_sec)


class ControlReply(BaseModel):
    """One ``<code>: <message>`` line from the control socket"""

    code: str
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.code == "0"


class ScenarioReport(BaseModel):
    """Outcome of one scenario run"""

    scenario: str
    expected_state: TerminalState
    observed_state: Optional[TerminalState] = None
    control_reply: Optional[ControlReply] = None
    stdout: str = ""
    stderr: str = ""
    returncode: Optional[int] = None
    local_service_ok: Optional[bool] = None
    still_mirroring: Optional[bool] = None
    endpoint_error: Optional[str] = None
    harness_error: Optional[str] = None
    failures: List[str] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.harness_error is None and not self.failures


class SelfCheckReport(BaseModel):
    """Result of running the double against an in-process source"""

    scenario: str
    expected: str
    observed: str
    attributed_to: str = "endpoint"

    @property
    def passed(self) -> bool:
        return self.expected == self.observed
