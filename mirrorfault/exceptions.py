"""
Exception hierarchy for the fault harness

Every failure the double or the runner can report is a HarnessError so a
scenario step can catch them with a single except clause. Protocol faults
observed on the wire, deadline expiry and process-level verdicts are kept
in separate branches; PlumbingError marks a failure of the harness itself.
"""
from typing import Optional


class HarnessError(Exception):
    """
    Base exception for all harness errors.

    Carries a human readable message plus a details dict for structured
    logging and scenario reports.
    """
    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(HarnessError):
    """Invalid settings or scenario configuration."""
    pass


# Protocol errors

class ProtocolError(HarnessError):
    """Base class for framing and protocol content errors."""
    pass


class FrameIncomplete(ProtocolError):
    """
    Peer stalled or closed before a complete frame arrived.

    ``details`` holds ``expected`` and ``received`` byte counts.
    """

    @property
    def received(self) -> int:
        return self.details.get("received", 0)

    @property
    def peer_closed(self) -> bool:
        return self.details.get("reason") in ("eof", "reset")


class ProtocolMismatch(ProtocolError):
    """Wrong magic, size disagreement or uncorrelated handle."""
    pass


class PeerClosed(ProtocolError):
    """Peer dropped the connection while the double was still writing."""
    pass


class InvalidHandle(ProtocolError):
    """Correlation handle handed to the codec is not exactly 8 bytes."""
    pass


# Deadline errors

class Timeout(HarnessError):
    """A guarded operation did not finish before its deadline."""
    pass


class ConnectTimeout(Timeout):
    """Active open kept being refused until the retry deadline passed."""
    pass


# Peer refusal

class Rejected(HarnessError):
    """Explicit refusal by the peer: ACL drop or non-zero reply error code."""
    pass


# Process under test

class ProcessError(HarnessError):
    """Base class for errors about the process under test."""
    pass


class ProcessStartError(ProcessError):
    """Process under test failed to start or never opened its control socket."""
    pass


class UnexpectedExit(ProcessError):
    """Process exited with a status not documented for the scenario."""
    def __init__(self, message: str, returncode: Optional[int], expected: Optional[list] = None):
        super().__init__(message, {"returncode": returncode, "expected": expected})
        self.returncode = returncode
        self.expected = expected


# Harness plumbing

class PlumbingError(HarnessError):
    """
    Harness-side failure (own socket setup, missing binary, bad port).

    Aborts the current scenario and is never reported as a fault of the
    process under test.
    """
    pass
