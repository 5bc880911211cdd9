# common/errors.py
# Exception hierarchy used by both the relay and the client core.
# Recoverable problems (bad input, a peer that is offline) and fatal ones
# (a broken direct channel) are told apart by the caller, not by the class.


class ShareError(Exception):
    """Base class for every error raised by SovereignShare code."""


class ProtocolError(ShareError):
    """A signaling message or direct-channel frame does not follow the wire format.

    Attributes:
        code (str): Short machine-readable code reported back to the sender (e.g. 'INVALID_ENVELOPE').
    """

    def __init__(self, message, code="PROTOCOL_ERROR"):
        super().__init__(message)
        self.code = code


class SessionError(ShareError):
    """A session operation cannot run in the current state."""


class IllegalTransition(SessionError):
    """Requested phase change is not in the transition table."""

    def __init__(self, current, requested):
        super().__init__(f"Illegal session transition {current.value} -> {requested.value}")
        self.current = current
        self.requested = requested


class TransferError(ShareError):
    """A file transfer violated the chunk protocol and was discarded."""


class ChannelError(ShareError):
    """The direct channel rejected an operation or failed."""


class SignalingError(ShareError):
    """The connection to the relay is missing or broke while sending."""
