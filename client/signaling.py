# client/signaling.py
# Client side of the relay connection.
# Responsibilities include:
# - Opening the WebSocket to the relay and registering this client's identity.
# - Sending 'forward' / 'accept-forward' envelopes on behalf of the session state machine.
# - Running the receive loop that hands each relay event, in order, to the session state machine.
# There is no automatic reconnect: losing the relay is reported once and the user reconnects by restarting.

import logging
import ssl

import websockets
import websockets.exceptions

from client import config
from common import protocol
from common.errors import ProtocolError, SignalingError


def build_client_ssl_context(url, verify=None):
    """
    SSL context for wss:// relay URLs, None for ws://.
    With verification disabled (self-signed local certificates) the hostname is not checked either.
    """
    if not url.startswith("wss://"):
        return None
    verify = config.SIGNALING_VERIFY_TLS if verify is None else verify
    ssl_context = ssl.create_default_context()
    if not verify:
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
    return ssl_context


class SignalingClient:
    """
    One registered connection to the relay.

    `handler` receives relay events; it needs the coroutines `handle_relay_message(type, payload)`
    and `on_signaling_lost()` (client.session.SessionMachine provides both).
    """

    def __init__(self, identity, url=None, handler=None):
        self.identity = identity
        self.url = url or config.SIGNALING_URL
        self.handler = handler
        self.registered = False
        self._ws = None

    @property
    def connected(self):
        return self._ws is not None

    async def connect(self):
        """
        Opens the relay connection and sends the register event.
        The acknowledgement arrives through the receive loop (see run()).

        Raises:
            SignalingError: If the relay cannot be reached.
        """
        logging.info(f"Connecting to relay at {self.url} as '{self.identity}'")
        try:
            self._ws = await websockets.connect(self.url, ssl=build_client_ssl_context(self.url))
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise SignalingError(f"Could not connect to relay at {self.url}: {e}") from e
        await self.send(protocol.EVT_REGISTER, {"identity": self.identity})

    async def send(self, message_type, payload):
        """
        Sends one signaling frame.

        Raises:
            SignalingError: If there is no open relay connection.
        """
        if self._ws is None:
            raise SignalingError("Not connected to the signaling server.")
        if config.DEBUG:
            logging.info(f"Sending '{message_type}' to relay")
        try:
            await self._ws.send(protocol.encode_message(message_type, payload))
        except websockets.exceptions.ConnectionClosed as e:
            raise SignalingError(f"Relay connection closed while sending '{message_type}'.") from e

    async def forward(self, target, kind, payload):
        await self.send(protocol.EVT_FORWARD, {
            "from": self.identity,
            "to": target,
            "kind": kind.value,
            "payload": payload,
        })

    async def accept_forward(self, target, payload):
        # The relay fills in 'from' from the registered identity of this connection.
        await self.send(protocol.EVT_ACCEPT_FORWARD, {"to": target, "payload": payload})

    async def dispatch(self, raw):
        """Decodes one relay frame and passes it to the handler, awaiting it to completion."""
        try:
            message_type, payload = protocol.decode_message(raw)
        except ProtocolError as e:
            logging.warning(f"Malformed frame from relay: {e}")
            return
        if message_type == protocol.EVT_REGISTER_ACK:
            self.registered = payload.get("identity") == self.identity
        elif message_type == protocol.EVT_SUPERSEDED:
            self.registered = False
        if self.handler is None:
            return
        try:
            await self.handler.handle_relay_message(message_type, payload)
        except Exception:
            # One failing event must not end the receive loop.
            logging.exception(f"Unexpected error handling relay event '{message_type}'")

    async def run(self):
        """Receive loop. Returns when the relay connection closes, after notifying the handler."""
        if self._ws is None:
            raise SignalingError("Not connected to the signaling server.")
        try:
            async for raw in self._ws:
                await self.dispatch(raw)
            logging.info("Relay closed the connection.")
        except websockets.exceptions.ConnectionClosedError as e:
            logging.warning(f"Relay connection lost: {e}")
        finally:
            self._ws = None
            self.registered = False
            if self.handler is not None:
                await self.handler.on_signaling_lost()

    async def close(self):
        if self._ws is not None:
            await self._ws.close()
