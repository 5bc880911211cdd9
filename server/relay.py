# server/relay.py
# The Signaling Relay: validates negotiation envelopes from connected clients and delivers them
# to the right peer, or reports them undeliverable.
# Responsibilities include:
# - Binding connections to identities through the Identity Registry (register / register-ack / superseded).
# - Forwarding 'forward' and 'accept-forward' envelopes after checking their structure and sender identity.
# - Reporting undeliverable envelopes back to their sender only (delivery-error).
# - Announcing disconnects to the remaining connections (peer-left).
# The relay never stores or inspects negotiation payloads, and never sees file or chat data.

import asyncio          # For broadcasting peer-left notices concurrently.
import logging          # For logging relay events, warnings, and errors.

import websockets       # Only for the ConnectionClosed exception family.
import websockets.exceptions

from common import protocol
from common.errors import ProtocolError
from server import config
from server.registry import IdentityRegistry


def describe(handle):
    """Short, log-friendly description of a connection (its remote address)."""
    return getattr(handle, "remote_address", None) or f"<conn {id(handle):x}>"


# --- Helper function to send JSON messages ---
async def send_json(websocket, message_type, payload):
    """
    Formats a signaling frame as JSON and sends it over a WebSocket connection.
    Handles serialization, logs the outgoing event if DEBUG is enabled, and never raises.

    Args:
        websocket: The client's connection object (anything with an async `send`).
        message_type (str): Event name (e.g. 'deliver', 'delivery-error').
        payload (dict): The event body.

    Returns:
        bool: True if the frame was handed to the connection, False if sending failed.
    """
    try:
        message = protocol.encode_message(message_type, payload)
        if config.DEBUG:
            logging.info(f"Sending '{message_type}' to {describe(websocket)}")
        await websocket.send(message)
        return True
    except websockets.exceptions.ConnectionClosed:
        # Expected when the client disconnects between lookup and send.
        logging.warning(f"Failed to send '{message_type}' to {describe(websocket)} because connection is closed.")
    except Exception:
        logging.exception(f"Unexpected error sending '{message_type}' to {describe(websocket)}")
    return False


class SignalingRelay:
    """
    Stateless-per-message forwarder between identified connections.

    Every public coroutine handles one inbound event to completion; the only state it touches
    is the Identity Registry and the set of open connections.
    """

    def __init__(self, registry=None):
        self.registry = registry if registry is not None else IdentityRegistry()
        # Every open connection, registered or not (used for peer-left broadcasts and health stats).
        self.connections = set()
        # Dispatch table for client -> relay events.
        self._handlers = {
            protocol.EVT_REGISTER: self._handle_register,
            protocol.EVT_FORWARD: self.on_forward,
            protocol.EVT_ACCEPT_FORWARD: self.on_accept_forward,
        }

    # --- Connection Lifecycle ---
    def on_connect(self, handle):
        self.connections.add(handle)

    async def on_disconnect(self, handle):
        """
        Cleans up after a closed connection and notifies the others.
        Safe to call more than once for the same handle.
        """
        self.connections.discard(handle)
        identity = self.registry.unregister(handle)
        if identity is None:
            logging.info(f"Client {describe(handle)} disconnected but had no registered ID.")
            return
        logging.info(f"Unregistered client {describe(handle)} with ID '{identity}'")

        if not config.BROADCAST_PEER_LEFT:
            return
        others = list(self.connections)
        if config.DEBUG:
            logging.info(f"Broadcasting peer-left for '{identity}' to {len(others)} connection(s)")
        notice = {"identity": identity, "reason": protocol.REASON_DISCONNECTED}
        await asyncio.gather(*(send_json(other, protocol.EVT_PEER_LEFT, notice) for other in others))

    # --- Inbound Dispatch ---
    async def handle_message(self, handle, raw):
        """
        Parses one raw frame from `handle` and routes it to the matching handler.
        Structural problems are reported back to the sender; nothing malformed is forwarded.
        """
        try:
            message_type, payload = protocol.decode_message(raw)
        except ProtocolError as e:
            logging.warning(f"Malformed frame from {describe(handle)}: {e}")
            await self._send_error(handle, e.code, str(e))
            return

        handler = self._handlers.get(message_type)
        if handler is None:
            logging.warning(f"Unknown message type '{message_type}' from {describe(handle)}. Ignoring.")
            await self._send_error(handle, protocol.E_UNKNOWN_TYPE, f"Unknown message type '{message_type}'.")
            return
        await handler(handle, payload)

    async def _handle_register(self, handle, payload):
        await self.on_register(handle, payload.get("identity"))

    # --- Registration Logic ---
    async def on_register(self, handle, identity):
        """
        Binds `handle` to `identity` and acknowledges it.
        A previous holder of the same identity is evicted and told so.
        """
        if not protocol.is_valid_identity(identity):
            logging.warning(f"Invalid identity format {identity!r}. Denying request from {describe(handle)}.")
            await self._send_error(handle, protocol.E_INVALID_IDENTITY,
                                   "Identity must be 10 alphanumeric characters.")
            return

        evicted = self.registry.register(handle, identity)
        logging.info(f"Identity '{identity}' registered successfully for {describe(handle)}")
        if evicted is not None:
            await send_json(evicted, protocol.EVT_SUPERSEDED,
                            {"identity": identity, "reason": protocol.REASON_SUPERSEDED})
        await send_json(handle, protocol.EVT_REGISTER_ACK,
                        {"identity": identity, "serverTime": protocol.utc_timestamp()})

    # --- Forwarding Logic ---
    async def on_forward(self, handle, payload):
        """
        Validates a 'forward' envelope and delivers it.

        Checks, in order: structure, sender registration, `from` matching the registered
        identity (anti-spoofing), then target resolution.
        """
        try:
            envelope = protocol.parse_envelope(payload)
        except ProtocolError as e:
            logging.warning(f"Invalid envelope from {describe(handle)}: {e}")
            await self._send_error(handle, e.code, str(e))
            return
        await self._route(handle, envelope)

    async def on_accept_forward(self, handle, payload):
        """
        Handles 'accept-forward': an answer whose sender is implied by the connection.
        Only the 'answer' kind is allowed here.
        """
        sender = self.registry.identity_of(handle)
        if sender is None:
            await self._reject_unregistered(handle)
            return
        if payload.get("kind", protocol.SignalKind.ANSWER.value) != protocol.SignalKind.ANSWER.value:
            logging.warning(f"accept-forward from '{sender}' carried kind {payload.get('kind')!r}. Rejecting.")
            await self._send_error(handle, protocol.E_INVALID_ENVELOPE, "accept-forward only carries answers.")
            return
        await self.on_forward(handle, {
            "from": sender,
            "to": payload.get("to"),
            "kind": protocol.SignalKind.ANSWER.value,
            "payload": payload.get("payload"),
        })

    async def _route(self, handle, envelope):
        sender_id = self.registry.identity_of(handle)
        if sender_id is None:
            await self._reject_unregistered(handle)
            return
        if envelope.sender != sender_id:
            # Never forward: the connection is trying to speak for someone else.
            logging.warning(f"Identity mismatch from {describe(handle)}: registered as '{sender_id}', "
                            f"envelope claims '{envelope.sender}'. Not forwarded.")
            await self._send_error(handle, protocol.E_IDENTITY_MISMATCH,
                                   "Envelope 'from' does not match your registered identity.")
            return

        target_handle = self.registry.resolve(envelope.target)
        if target_handle is None:
            logging.warning(f"Target user '{envelope.target}' not found. Sending delivery-error to '{sender_id}'.")
            await self._send_delivery_error(handle, envelope.target)
            return

        if config.DEBUG:
            logging.info(f"Relaying '{envelope.kind.value}' from '{sender_id}' to '{envelope.target}'")
        delivered = await send_json(target_handle, protocol.EVT_DELIVER, {
            "from": envelope.sender,
            "kind": envelope.kind.value,
            "payload": envelope.payload,
            "relayTime": protocol.utc_timestamp(),
        })
        if not delivered:
            # Target vanished during the send attempt.
            await self._send_delivery_error(handle, envelope.target)

    # --- Error Replies (always to the originating connection only) ---
    async def _send_error(self, handle, code, reason):
        await send_json(handle, protocol.EVT_ERROR, {"code": code, "reason": reason})

    async def _send_delivery_error(self, handle, target_identity):
        await send_json(handle, protocol.EVT_DELIVERY_ERROR,
                        {"targetIdentity": target_identity, "reason": protocol.REASON_NOT_FOUND})

    async def _reject_unregistered(self, handle):
        logging.warning(f"Envelope from unregistered client {describe(handle)}. Ignoring.")
        await self._send_error(handle, protocol.E_NOT_REGISTERED, "Register an identity before sending envelopes.")

    # --- Monitoring ---
    def stats(self):
        return {"activeConnections": len(self.connections), "registeredUsers": len(self.registry)}
