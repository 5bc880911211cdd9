# common/protocol.py
# Signaling wire protocol shared by the relay and the clients.
# Every signaling frame is a JSON object of the form {"type": <event name>, "payload": {...}},
# the same framing the relay has always used, with named events instead of numeric type codes.

import enum
import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone

from common.errors import ProtocolError

# --- Identity Format ---
# Identities are 10 alphanumeric characters. Clients generate them from upper-case letters and digits,
# but the relay accepts any alphanumeric token of the right length.
IDENTITY_LENGTH = 10
IDENTITY_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
VALID_IDENTITY_REGEX = re.compile(r"^[A-Za-z0-9]{10}$")

# --- Event Names ---
# client -> relay
EVT_REGISTER = "register"
EVT_FORWARD = "forward"
EVT_ACCEPT_FORWARD = "accept-forward"
# relay -> client
EVT_REGISTER_ACK = "register-ack"
EVT_DELIVER = "deliver"
EVT_DELIVERY_ERROR = "delivery-error"
EVT_PEER_LEFT = "peer-left"
EVT_SUPERSEDED = "superseded"
EVT_ERROR = "error"

# --- Error Codes (payload of EVT_ERROR) ---
E_INVALID_JSON = "INVALID_JSON"
E_INVALID_IDENTITY = "INVALID_IDENTITY"
E_INVALID_ENVELOPE = "INVALID_ENVELOPE"
E_NOT_REGISTERED = "NOT_REGISTERED"
E_IDENTITY_MISMATCH = "IDENTITY_MISMATCH"
E_UNKNOWN_TYPE = "UNKNOWN_TYPE"
E_RATE_LIMITED = "RATE_LIMITED"

# Reason strings carried by delivery-error / peer-left / superseded.
REASON_NOT_FOUND = "target not found"
REASON_DISCONNECTED = "disconnected"
REASON_SUPERSEDED = "identity registered by another connection"


class SignalKind(str, enum.Enum):
    """Closed set of negotiation envelope kinds routed by the relay."""

    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    REJECT = "reject"


@dataclass(frozen=True)
class Envelope:
    """A routed negotiation message. The relay never looks inside `payload`."""

    sender: str
    target: str
    kind: SignalKind
    payload: dict

    def to_forward_payload(self):
        return {"from": self.sender, "to": self.target, "kind": self.kind.value, "payload": self.payload}


def is_valid_identity(value):
    """Returns True if `value` is a well-formed 10-character alphanumeric identity."""
    return isinstance(value, str) and VALID_IDENTITY_REGEX.match(value) is not None


def utc_timestamp():
    """Current UTC time as an ISO 8601 string (used for serverTime, relayTime and chat timestamps)."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def encode_message(message_type, payload):
    """Serializes one signaling frame to its JSON text form."""
    return json.dumps({"type": message_type, "payload": payload})


def decode_message(raw):
    """
    Parses one signaling frame.

    Args:
        raw (str | bytes): The text received from the WebSocket.

    Returns:
        tuple[str, dict]: The event name and its payload dictionary.

    Raises:
        ProtocolError: If the text is not JSON or does not have the {type, payload} shape.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}", code=E_INVALID_JSON) from e
    if not isinstance(data, dict):
        raise ProtocolError("Message is not a JSON object", code=E_INVALID_JSON)
    message_type = data.get("type")
    payload = data.get("payload")
    if not isinstance(message_type, str) or not message_type:
        raise ProtocolError("Missing or invalid 'type'", code=E_INVALID_ENVELOPE)
    if not isinstance(payload, dict):
        raise ProtocolError("Missing or invalid 'payload'", code=E_INVALID_ENVELOPE)
    return message_type, payload


def parse_kind(value):
    """Maps a wire string to SignalKind, raising ProtocolError for anything outside the closed set."""
    try:
        return SignalKind(value)
    except ValueError:
        raise ProtocolError(f"Unknown envelope kind {value!r}", code=E_INVALID_ENVELOPE) from None


def parse_envelope(payload):
    """
    Validates the payload of a `forward` event and builds an Envelope from it.

    Both identities must be well formed and the negotiation payload must be a JSON object.

    Raises:
        ProtocolError: With code INVALID_ENVELOPE if any field is missing or malformed.
    """
    sender = payload.get("from")
    target = payload.get("to")
    body = payload.get("payload")
    if not is_valid_identity(sender):
        raise ProtocolError("Missing or invalid 'from'", code=E_INVALID_ENVELOPE)
    if not is_valid_identity(target):
        raise ProtocolError("Missing or invalid 'to'", code=E_INVALID_ENVELOPE)
    if not isinstance(body, dict):
        raise ProtocolError("Missing or invalid 'payload'", code=E_INVALID_ENVELOPE)
    return Envelope(sender=sender, target=target, kind=parse_kind(payload.get("kind")), payload=body)
