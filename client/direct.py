# client/direct.py
# SocketPeerConnection: a PeerConnection built on websockets.
#
# The offering peer listens on an ephemeral port and advertises one address hint per local address.
# The answering peer dials those hints and proves it is the intended peer by sending the random
# token carried in the offer; the first dial that completes the handshake becomes the channel.
# Application frames then travel as WebSocket text messages, end to end between the two peers.
#
#   offer  = {"type": "offer", "token": <str>, "tls": <bool>}
#   answer = {"type": "answer"}
#   hint   = {"host": <str>, "port": <int>, "candidate": "<host>:<port>"}

import asyncio
import json
import logging
import os
import secrets
import socket
import ssl

import websockets
import websockets.exceptions

from client import config
from client.channel import PeerConnection
from common.errors import ChannelError

HANDSHAKE_OK = {"ok": True}


def build_server_ssl_context():
    """Server-side context from the configured certificate, or None to run the listener without TLS."""
    if not config.DIRECT_ENABLE_SSL:
        return None
    if not (os.path.exists(config.CERT_FILE) and os.path.exists(config.KEY_FILE)):
        if config.DEBUG:
            logging.info("No certificate for the direct channel; listening without TLS.")
        return None
    try:
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(config.CERT_FILE, config.KEY_FILE)
        return ssl_context
    except (ssl.SSLError, OSError):
        logging.exception("Failed to load direct-channel certificate; listening without TLS.")
        return None


def build_dial_ssl_context():
    # Peers use self-signed certificates; the offer token authenticates the other side.
    ssl_context = ssl.create_default_context()
    ssl_context.check_hostname = False
    ssl_context.verify_mode = ssl.CERT_NONE
    return ssl_context


def discover_local_hosts():
    """Local IPv4 addresses to advertise, loopback last."""
    hosts = []
    try:
        hosts = [ip for ip in socket.gethostbyname_ex(socket.gethostname())[2] if not ip.startswith("127.")]
    except OSError as e:
        logging.warning(f"Could not resolve local addresses, advertising loopback only: {e}")
    hosts.append("127.0.0.1")
    return list(dict.fromkeys(hosts))


class SocketPeerConnection(PeerConnection):
    """
    Direct channel over a single WebSocket between the two peers.

    on_open fires only once both the local and the remote description are set and the
    token handshake has completed, so the session always sees the answer before the channel opens.
    """

    def __init__(self, listen_host=None, candidate_hosts=None, dial_timeout=None, enable_ssl=None):
        super().__init__()
        self.listen_host = listen_host or config.DIRECT_LISTEN_HOST
        self.candidate_hosts = candidate_hosts if candidate_hosts is not None else list(config.DIRECT_CANDIDATE_HOSTS)
        self.dial_timeout = config.DIRECT_DIAL_TIMEOUT_SECONDS if dial_timeout is None else dial_timeout
        self.enable_ssl = config.DIRECT_ENABLE_SSL if enable_ssl is None else enable_ssl

        self.local_description = None
        self._remote_description = None
        self._token = None
        self._tls = False
        self._server = None
        self._ws = None
        self._open = False
        self._closed = False
        self._close_fired = False
        # Set once both descriptions are known (or on close, to release waiting handlers).
        self._described = asyncio.Event()
        self._tasks = set()

    @property
    def remote_description(self):
        return self._remote_description

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _check_described(self):
        if self.local_description is not None and self._remote_description is not None:
            self._described.set()

    # --- Descriptions ---
    async def create_offer(self):
        if self._server is None:
            ssl_context = build_server_ssl_context() if self.enable_ssl else None
            self._tls = ssl_context is not None
            self._token = secrets.token_urlsafe(16)
            try:
                server = await websockets.serve(
                    self._accept,
                    self.listen_host,
                    0,
                    ssl=ssl_context,
                    max_size=config.DIRECT_MAX_FRAME_SIZE,
                )
            except OSError as e:
                raise ChannelError(f"Could not listen on {self.listen_host}: {e}") from e
            self._server = server
            if self._closed:
                # close() ran while the listener was starting and saw no server to stop.
                server.close()
                await server.wait_closed()
                raise ChannelError("Channel closed while creating the offer.")
        return {"type": "offer", "token": self._token, "tls": self._tls}

    async def create_answer(self):
        if self._remote_description is None:
            raise ChannelError("Cannot create an answer before the remote offer is set.")
        return {"type": "answer"}

    async def set_local_description(self, description):
        self.local_description = description
        if description.get("type") == "offer":
            self._spawn(self._gather())
        self._check_described()

    async def set_remote_description(self, description):
        if description.get("type") == "offer":
            token = description.get("token")
            if not isinstance(token, str) or not token:
                raise ChannelError("Offer carries no token.")
            self._token = token
            self._tls = bool(description.get("tls"))
        elif description.get("type") != "answer":
            raise ChannelError(f"Unsupported description type {description.get('type')!r}.")
        self._remote_description = description
        self._check_described()

    # --- Address Hints ---
    async def _gather(self):
        port = self._server.sockets[0].getsockname()[1]
        hosts = self.candidate_hosts or await asyncio.to_thread(discover_local_hosts)
        for host in hosts:
            if self._closed:
                return
            await self.on_ice_candidate({"host": host, "port": port, "candidate": f"{host}:{port}"})

    async def add_ice_candidate(self, candidate):
        if self._remote_description is None:
            raise ChannelError("Address hint received before the remote description.")
        if self._server is not None:
            # The listening side has nothing to dial.
            return
        host, port = candidate.get("host"), candidate.get("port")
        if not isinstance(host, str) or not isinstance(port, int):
            raise ChannelError(f"Malformed address hint {candidate!r}.")
        if self._ws is not None or self._closed:
            return
        self._spawn(self._dial(host, port))

    # --- Listening Side ---
    async def _accept(self, websocket):
        try:
            token = await asyncio.wait_for(websocket.recv(), self.dial_timeout)
        except (asyncio.TimeoutError, websockets.exceptions.ConnectionClosed):
            return
        if self._ws is not None or self._closed or not secrets.compare_digest(str(token), self._token):
            logging.warning(f"Refusing direct connection from {websocket.remote_address}")
            await websocket.close(code=1008, reason="Unexpected peer")
            return
        self._ws = websocket
        await websocket.send(json.dumps(HANDSHAKE_OK))
        await self._serve(websocket)

    # --- Dialing Side ---
    async def _dial(self, host, port):
        uri = f"{'wss' if self._tls else 'ws'}://{host}:{port}"
        try:
            websocket = await websockets.connect(
                uri,
                ssl=build_dial_ssl_context() if self._tls else None,
                max_size=config.DIRECT_MAX_FRAME_SIZE,
                open_timeout=self.dial_timeout,
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            if config.DEBUG:
                logging.info(f"Direct dial to {uri} failed: {e}")
            return
        try:
            await websocket.send(self._token)
            reply = json.loads(await asyncio.wait_for(websocket.recv(), self.dial_timeout))
        except (asyncio.TimeoutError, ValueError, websockets.exceptions.ConnectionClosed) as e:
            logging.warning(f"Direct handshake with {uri} failed: {e}")
            await websocket.close()
            return
        if reply != HANDSHAKE_OK or self._ws is not None or self._closed:
            await websocket.close()
            return
        self._ws = websocket
        await self._serve(websocket)

    # --- Both Sides ---
    async def _serve(self, websocket):
        await self._described.wait()
        if self._closed:
            await websocket.close()
            return
        self._open = True
        await self.on_open()
        reason = "closed by peer"
        try:
            async for text in websocket:
                await self.on_message(text)
        except websockets.exceptions.ConnectionClosedError as e:
            reason = f"connection lost: {e}"
        finally:
            self._open = False
            await self._fire_close(reason)

    async def _fire_close(self, reason):
        if self._close_fired:
            return
        self._close_fired = True
        await self.on_close(reason)

    async def send(self, text):
        if not self._open or self._ws is None:
            raise ChannelError("Direct channel is not open.")
        try:
            # Does not return until the transport's write buffer is back under its high-water mark.
            await self._ws.send(text)
        except websockets.exceptions.ConnectionClosed as e:
            raise ChannelError(f"Direct channel closed: {e}") from e

    async def drain(self):
        """
        Returns at once: send() is the backpressure gate on this channel.

        websockets suspends send() while the transport's write buffer is above its
        high-water mark, so a FileSender that has finished one send() never finds
        more than that buffer queued before its next chunk.
        """
        return None

    async def close(self):
        if self._closed:
            return
        self._closed = True
        # A local close is not reported back through on_close.
        self._close_fired = True
        self._open = False
        self._described.set()
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        if self._ws is not None:
            await self._ws.close()
        if self._server is not None:
            # Not awaiting wait_closed(): close() may run inside one of the server's own handlers.
            self._server.close()
