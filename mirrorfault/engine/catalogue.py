"""
Catalogue of documented destination faults.

Each entry fixes where the double diverges, how, and the one terminal
state the process under test must reach. Faults strictly before the
ENTRUST handoff must leave local service running (ABORTED); faults at or
right before the handoff may legitimately end the process (KILLED), as
may a SIGTERM delivered while a migration is in flight. A scenario that
expects KILLED names the exit statuses documented for it.
"""
from typing import Dict, List

from mirrorfault.exceptions import ConfigurationError
from mirrorfault.models import FaultKind, FaultPoint, FaultScenario, TerminalState

_SCENARIOS = [
    FaultScenario(
        name="refused",
        description="Nothing listens at the destination",
        point=FaultPoint.BEFORE_HANDSHAKE,
        kind=FaultKind.REFUSE,
        expected_state=TerminalState.ABORTED,
        stderr_patterns=("failed to connect",),
    ),
    FaultScenario(
        name="hang_after_connect",
        description="Accept the connection, never send the hello",
        point=FaultPoint.HANDSHAKE,
        kind=FaultKind.STALL,
        expected_state=TerminalState.ABORTED,
        stderr_patterns=("Remote server failed to respond",),
    ),
    FaultScenario(
        name="reject_acl",
        description="Accept, then drop the connection before any frame",
        point=FaultPoint.HANDSHAKE,
        kind=FaultKind.REJECT,
        expected_state=TerminalState.ABORTED,
        stderr_patterns=("Mirror was rejected",),
    ),
    FaultScenario(
        name="hello_wrong_magic",
        description="Hello carries a wrong magic token",
        point=FaultPoint.HANDSHAKE,
        kind=FaultKind.BAD_MAGIC,
        expected_state=TerminalState.ABORTED,
        stderr_patterns=("Mirror was rejected",),
    ),
    FaultScenario(
        name="hello_wrong_size",
        description="Hello advertises an export size different from the source's",
        point=FaultPoint.HANDSHAKE,
        kind=FaultKind.BAD_SIZE,
        expected_state=TerminalState.ABORTED,
        stderr_patterns=("Remote size does not match local size",),
    ),
    FaultScenario(
        name="close_after_hello",
        description="Send a correct hello, then close; the source retries silently",
        point=FaultPoint.AFTER_HANDSHAKE,
        kind=FaultKind.CLOSE,
        expected_state=TerminalState.ABORTED,
        stdout_patterns=("Mirror started",),
        retried=True,
    ),
    FaultScenario(
        name="hang_after_write",
        description="Accept one write, withhold the reply past the request limit",
        point=FaultPoint.REQUEST,
        kind=FaultKind.STALL,
        expected_state=TerminalState.ABORTED,
        expects_diagnostic=True,
    ),
    FaultScenario(
        name="error_on_write",
        description="Answer the first write with a non-zero error code",
        point=FaultPoint.REQUEST,
        kind=FaultKind.ERROR_RESPONSE,
        expected_state=TerminalState.ABORTED,
        expects_diagnostic=True,
    ),
    FaultScenario(
        name="close_after_write",
        description="Close the connection before replying to the first write",
        point=FaultPoint.REQUEST,
        kind=FaultKind.CLOSE,
        expected_state=TerminalState.ABORTED,
        expects_diagnostic=True,
    ),
    FaultScenario(
        name="write_wrong_magic",
        description="Reply to the first write with a corrupted magic",
        point=FaultPoint.REQUEST,
        kind=FaultKind.BAD_REPLY_MAGIC,
        expected_state=TerminalState.ABORTED,
        expects_diagnostic=True,
    ),
    FaultScenario(
        name="write_wrong_handle",
        description="Reply to the first write with a handle that matches nothing",
        point=FaultPoint.REQUEST,
        kind=FaultKind.BAD_REPLY_HANDLE,
        expected_state=TerminalState.ABORTED,
        expects_diagnostic=True,
    ),
    FaultScenario(
        name="close_before_entrust",
        description="Acknowledge every write, close when the ENTRUST request arrives",
        point=FaultPoint.BEFORE_ENTRUST,
        kind=FaultKind.CLOSE,
        expected_state=TerminalState.KILLED,
        exit_statuses=(1,),
    ),
    FaultScenario(
        name="entrust_wrong_magic",
        description="Acknowledge every write, garble the ENTRUST reply",
        point=FaultPoint.ENTRUST,
        kind=FaultKind.BAD_REPLY_MAGIC,
        expected_state=TerminalState.KILLED,
        exit_statuses=(1,),
    ),
    FaultScenario(
        name="cancel_after_hello",
        description="Operator breaks the migration after a correct hello",
        point=FaultPoint.AFTER_HANDSHAKE,
        kind=FaultKind.CANCEL,
        expected_state=TerminalState.ABORTED,
    ),
    FaultScenario(
        name="sigterm_after_hello",
        description="SIGTERM the source once the hello is sent; it must quit with status 1",
        point=FaultPoint.AFTER_HANDSHAKE,
        kind=FaultKind.TERMINATE,
        expected_state=TerminalState.KILLED,
        exit_statuses=(1,),
    ),
    FaultScenario(
        name="mirror_complete",
        description="Behave correctly through ENTRUST",
        point=FaultPoint.ENTRUST,
        kind=FaultKind.NONE,
        expected_state=TerminalState.ENTRUSTED,
    ),
]

CATALOGUE: Dict[str, FaultScenario] = {scenario.name: scenario for scenario in _SCENARIOS}


def get_scenario(name: str) -> FaultScenario:
    try:
        return CATALOGUE[name]
    except KeyError:
        raise ConfigurationError(f"Unknown scenario: {name}", details={"known": sorted(CATALOGUE)})


def list_scenarios() -> List[FaultScenario]:
    return list(_SCENARIOS)
