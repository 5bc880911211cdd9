# client/session.py
# The Session State Machine: one negotiation/session lifecycle per client process.
#
#   idle -> offering (we initiate) | offered (they initiate, awaiting local accept)
#        -> negotiating -> connected -> closed -> idle
#
# offering/offered/negotiating may close directly on failure, rejection or timeout.
# Every phase change goes through SessionMachine._transition, which consults ALLOWED_TRANSITIONS;
# anything else raises IllegalTransition instead of silently overwriting state.
#
# The machine is driven by three sources, all on one asyncio loop:
# - local user intents (request_connection, accept, reject, terminate, send_chat, send_file),
# - inbound relay events (handle_relay_message, called sequentially by the signaling client),
# - direct-channel callbacks (open, message, close, local address hints).
# Every await is a suspension point; after each one the code re-checks that the session it
# started with is still the current one before touching it.

import asyncio
import enum
import functools
import io
import logging
import mimetypes
import os
from dataclasses import dataclass, field

from client import config
from client.transfer import DEFAULT_MIME_TYPE, ChatEntry, FileReceiver, FileSender
from common import protocol
from common.errors import ChannelError, IllegalTransition, ProtocolError, SessionError, ShareError, TransferError
from common.frames import ChatFrame, FrameType, decode_frame, encode_frame
from common.protocol import SignalKind


class Phase(str, enum.Enum):
    IDLE = "idle"
    OFFERING = "offering"
    OFFERED = "offered"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"


class Role(str, enum.Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


ALLOWED_TRANSITIONS = {
    Phase.IDLE: {Phase.OFFERING, Phase.OFFERED},
    # offering -> offered only when simultaneous offers are resolved in the other peer's favour.
    Phase.OFFERING: {Phase.NEGOTIATING, Phase.OFFERED, Phase.CLOSED},
    Phase.OFFERED: {Phase.NEGOTIATING, Phase.CLOSED},
    Phase.NEGOTIATING: {Phase.CONNECTED, Phase.CLOSED},
    Phase.CONNECTED: {Phase.CLOSED},
    Phase.CLOSED: {Phase.IDLE},
}

# Phases in which the connection timer may run.
TIMED_PHASES = (Phase.OFFERING, Phase.NEGOTIATING)

# --- Close Reasons ---
REASON_TERMINATED = "terminated"
REASON_REJECTED = "rejected"
REASON_BUSY = "busy"
REASON_CANCELLED = "cancelled"
REASON_TIMEOUT = "timeout"
REASON_PEER_OFFLINE = "peer offline"
REASON_PEER_LEFT = "peer left"
REASON_CONNECTION_LOST = "connection lost"
REASON_NEGOTIATION_FAILED = "negotiation failed"
REASON_SUPERSEDED = "session replaced"
REASON_SIGNALING_LOST = "signaling lost"

# Reasons the remote side may put in a reject envelope, and what they mean locally.
_REMOTE_REJECT_REASONS = {
    REASON_REJECTED: REASON_REJECTED,
    REASON_BUSY: REASON_BUSY,
    REASON_CANCELLED: REASON_CANCELLED,
    REASON_TIMEOUT: REASON_TIMEOUT,
}

# --- UI Events ---
EV_PHASE = "phase"                      # phase, previous, identity
EV_NOTICE = "notice"                    # level ('info' | 'success' | 'warning' | 'error'), message
EV_REGISTERED = "registered"            # identity
EV_OFFERED = "offered"                  # identity
EV_CONNECTED = "connected"              # identity
EV_CLOSED = "closed"                    # identity, reason, error, retry
EV_CHAT = "chat"                        # entry
EV_PROGRESS = "progress"                # direction ('send' | 'receive'), file_name, percent
EV_FILE_SENT = "file-sent"              # file_name, file_size
EV_FILE_RECEIVED = "file-received"      # file
EV_TRANSFER_FAILED = "transfer-failed"  # direction, reason


@dataclass(frozen=True)
class UiEvent:
    kind: str
    data: dict


class PendingHintQueue:
    """
    Address hints that arrived before the remote description was set.
    Drained in arrival order exactly once; after seal() it can never be used again.
    """

    def __init__(self):
        self._hints = []
        self.sealed = False

    def push(self, hint):
        if self.sealed:
            raise SessionError("Address hint queue is sealed; apply hints directly.")
        self._hints.append(hint)

    def take_all(self):
        hints, self._hints = self._hints, []
        return hints

    def seal(self):
        self._hints = []
        self.sealed = True

    def __len__(self):
        return len(self._hints)


@dataclass
class Session:
    local_identity: str
    remote_identity: str
    role: Role
    phase: Phase = Phase.IDLE
    pending_hints: PendingHintQueue = field(default_factory=PendingHintQueue)
    channel: object = None
    pending_offer: dict = None
    timer: asyncio.TimerHandle = None
    receiver: FileReceiver = field(default_factory=FileReceiver)
    transcript: list = field(default_factory=list)
    sending: bool = False


class SessionMachine:
    """
    Client-side owner of the (at most one) active session.

    Args:
        local_identity (str): This client's registered identity.
        signaling: Object with a `connected` attribute and coroutines `forward(to, kind, payload)`
            and `accept_forward(to, payload)` (see client/signaling.py).
        peer_factory (callable): Returns a new client.channel.PeerConnection.
        on_event (callable): Receives every UiEvent; optional.
    """

    def __init__(self, local_identity, signaling, peer_factory, on_event=None,
                 connect_timeout=None, chunk_size=None, pacing=None, max_file_size=None):
        self.local_identity = local_identity
        self.signaling = signaling
        self.peer_factory = peer_factory
        self.on_event = on_event
        self.connect_timeout = config.CONNECT_TIMEOUT_SECONDS if connect_timeout is None else connect_timeout
        self.chunk_size = chunk_size or config.CHUNK_SIZE
        self.pacing = config.CHUNK_PACING_SECONDS if pacing is None else pacing
        self.max_file_size = max_file_size
        # Completed incoming files outlive the session they arrived in, until the user saves them.
        self.received_files = []
        self._session = None
        self._tasks = set()

        self._relay_handlers = {
            protocol.EVT_REGISTER_ACK: self._on_register_ack,
            protocol.EVT_DELIVER: self._on_deliver,
            protocol.EVT_DELIVERY_ERROR: self._on_delivery_error,
            protocol.EVT_PEER_LEFT: self._on_peer_left,
            protocol.EVT_SUPERSEDED: self._on_superseded,
            protocol.EVT_ERROR: self._on_relay_error,
        }
        self._envelope_handlers = {
            SignalKind.OFFER: self._on_offer,
            SignalKind.ANSWER: self._on_answer,
            SignalKind.ICE_CANDIDATE: self._on_remote_candidate,
            SignalKind.REJECT: self._on_reject,
        }
        self._frame_handlers = {
            FrameType.CHAT: self._on_chat_frame,
            FrameType.FILE_INFO: self._on_file_info_frame,
            FrameType.FILE_CHUNK: self._on_file_chunk_frame,
            FrameType.FILE_COMPLETE: self._on_file_complete_frame,
        }

    # --- Introspection ---
    @property
    def session(self):
        return self._session

    @property
    def phase(self):
        return self._session.phase if self._session is not None else Phase.IDLE

    @property
    def remote_identity(self):
        return self._session.remote_identity if self._session is not None else None

    @property
    def transcript(self):
        return list(self._session.transcript) if self._session is not None else []

    # --- Event Helpers ---
    def _emit(self, kind, **data):
        if self.on_event is not None:
            self.on_event(UiEvent(kind, data))

    def _notice(self, level, message):
        self._emit(EV_NOTICE, level=level, message=message)

    def _transition(self, session, new_phase):
        if new_phase not in ALLOWED_TRANSITIONS[session.phase]:
            raise IllegalTransition(session.phase, new_phase)
        previous, session.phase = session.phase, new_phase
        if config.DEBUG:
            logging.info(f"Session with '{session.remote_identity}': {previous.value} -> {new_phase.value}")
        self._emit(EV_PHASE, phase=new_phase, previous=previous, identity=session.remote_identity)

    def _is_current(self, session):
        return self._session is session and session.phase not in (Phase.CLOSED, Phase.IDLE)

    def _owns_offer(self, session, channel):
        """True while `session` is still our own outgoing attempt and `channel` still belongs to it."""
        return self._is_current(session) and session.role == Role.INITIATOR and session.channel is channel

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # --- Timer ---
    def _start_timer(self, session):
        self._cancel_timer(session)
        loop = asyncio.get_running_loop()
        session.timer = loop.call_later(self.connect_timeout, self._on_timer_fired, session)

    @staticmethod
    def _cancel_timer(session):
        if session.timer is not None:
            session.timer.cancel()
            session.timer = None

    def _on_timer_fired(self, session):
        session.timer = None
        if not self._is_current(session) or session.phase not in TIMED_PHASES:
            return
        logging.warning(f"Connection to '{session.remote_identity}' timed out after {self.connect_timeout}s "
                        f"in phase {session.phase.value}.")
        self._spawn(self._close(session, REASON_TIMEOUT, error=True, retry=True, notify_remote=REASON_TIMEOUT))

    # --- Channel Management ---
    def _allocate_channel(self, session):
        channel = self.peer_factory()
        channel.on_ice_candidate = functools.partial(self._on_local_candidate, session)
        channel.on_open = functools.partial(self._on_channel_open, session)
        channel.on_message = functools.partial(self._on_channel_message, session)
        channel.on_close = functools.partial(self._on_channel_close, session, channel)
        session.channel = channel
        return channel

    @staticmethod
    async def _release_channel(channel):
        try:
            await channel.close()
        except (ShareError, OSError) as e:
            logging.warning(f"Error while closing direct channel: {e}")

    async def _flush_hints(self, session):
        """Applies queued hints in arrival order, then seals the queue for the rest of the session."""
        while len(session.pending_hints):
            for hint in session.pending_hints.take_all():
                await self._apply_hint(session, hint)
                if not self._is_current(session):
                    return
        session.pending_hints.seal()

    @staticmethod
    async def _apply_hint(session, hint):
        try:
            await session.channel.add_ice_candidate(hint)
        except ChannelError as e:
            logging.warning(f"Could not apply address hint from '{session.remote_identity}': {e}")

    # --- Signaling Helpers ---
    async def _send_reject(self, target, reason):
        try:
            await self.signaling.forward(target, SignalKind.REJECT, {"reason": reason})
        except ShareError as e:
            logging.warning(f"Could not send reject ({reason}) to '{target}': {e}")

    # --- Local Intents ---
    async def request_connection(self, target):
        """
        Starts an outgoing session to `target` (idle -> offering).

        Returns:
            bool: False if a precondition failed or negotiation could not start (a notice explains why).
        """
        target = (target or "").strip()
        if not protocol.is_valid_identity(target):
            self._notice("error", "Please enter a valid 10-character peer ID.")
            return False
        if target == self.local_identity:
            self._notice("error", "Cannot connect to yourself.")
            return False
        if not self.signaling.connected:
            self._notice("error", "Not connected to the signaling server.")
            return False
        if self._session is not None:
            self._notice("error", f"Already {self.phase.value} with {self._session.remote_identity}.")
            return False

        session = Session(self.local_identity, target, Role.INITIATOR)
        self._session = session
        self._transition(session, Phase.OFFERING)
        self._start_timer(session)
        logging.info(f"Initiating connection to '{target}'")
        channel = self._allocate_channel(session)
        try:
            offer = await channel.create_offer()
            if not self._owns_offer(session, channel):
                await self._release_channel(channel)
                return False
            await self.signaling.forward(target, SignalKind.OFFER, offer)
            if not self._owns_offer(session, channel):
                await self._release_channel(channel)
                return False
            # Gathering starts here, so our hints always follow the offer on the wire.
            await channel.set_local_description(offer)
        except (ShareError, OSError) as e:
            if not self._owns_offer(session, channel):
                # The session moved on (hangup, glare) while the offer was being built.
                await self._release_channel(channel)
                return False
            logging.warning(f"Could not start connection to '{target}': {e}")
            await self._close(session, REASON_NEGOTIATION_FAILED, error=True, retry=True,
                              notify_remote=REASON_CANCELLED)
            return False
        return self._is_current(session) and session.channel is channel

    async def accept(self):
        """Accepts the pending incoming offer (offered -> negotiating)."""
        session = self._session
        if session is None or session.phase != Phase.OFFERED:
            self._notice("error", "There is no incoming connection request to accept.")
            return False
        self._transition(session, Phase.NEGOTIATING)
        self._start_timer(session)
        logging.info(f"Accepting connection from '{session.remote_identity}'")
        try:
            channel = self._allocate_channel(session)
            await channel.set_remote_description(session.pending_offer)
            session.pending_offer = None
            if not self._is_current(session):
                return False
            await self._flush_hints(session)
            if not self._is_current(session):
                return False
            answer = await channel.create_answer()
            await channel.set_local_description(answer)
            if not self._is_current(session):
                return False
            await self.signaling.accept_forward(session.remote_identity, answer)
        except (ShareError, OSError) as e:
            logging.warning(f"Failed to accept connection from '{session.remote_identity}': {e}")
            await self._close(session, REASON_NEGOTIATION_FAILED, error=True, notify_remote=REASON_CANCELLED)
            return False
        return self._is_current(session)

    async def reject(self):
        """Declines the pending incoming offer without ever opening transport resources."""
        session = self._session
        if session is None or session.phase != Phase.OFFERED:
            self._notice("error", "There is no incoming connection request to reject.")
            return False
        await self._close(session, REASON_REJECTED)
        await self._send_reject(session.remote_identity, REASON_REJECTED)
        return True

    async def terminate(self):
        """Ends the current session. A no-op when there is none."""
        session = self._session
        if session is None or session.phase in (Phase.CLOSED, Phase.IDLE):
            return
        if session.phase == Phase.OFFERED:
            await self.reject()
            return
        notify = REASON_CANCELLED if session.phase in TIMED_PHASES else None
        await self._close(session, REASON_TERMINATED, notify_remote=notify)

    async def send_chat(self, text):
        """Sends one chat line and records it in the session transcript."""
        session = self._session
        text = (text or "").strip()
        if session is None or session.phase != Phase.CONNECTED:
            self._notice("error", "Not connected to a peer.")
            return False
        if not text:
            return False
        frame = ChatFrame(text=text, timestamp=protocol.utc_timestamp())
        try:
            await session.channel.send(encode_frame(frame))
        except ChannelError as e:
            logging.warning(f"Chat message to '{session.remote_identity}' not sent: {e}")
            self._notice("error", "Message could not be sent.")
            return False
        entry = ChatEntry(sender="me", text=text, timestamp=frame.timestamp)
        session.transcript.append(entry)
        self._emit(EV_CHAT, entry=entry)
        return True

    async def send_file(self, path, mime_type=None):
        """Sends the file at `path` to the connected peer."""
        if not os.path.isfile(path):
            self._notice("error", f"No such file: {path}")
            return False
        mime_type = mime_type or mimetypes.guess_type(path)[0] or DEFAULT_MIME_TYPE
        with open(path, "rb") as source:
            return await self._send_stream(source, os.path.basename(path), os.path.getsize(path), mime_type)

    async def send_bytes(self, file_name, data, mime_type=DEFAULT_MIME_TYPE):
        """Sends an in-memory byte string as a file named `file_name`."""
        with io.BytesIO(data) as source:
            return await self._send_stream(source, file_name, len(data), mime_type)

    async def _send_stream(self, source, file_name, file_size, mime_type):
        session = self._session
        if session is None or session.phase != Phase.CONNECTED:
            self._notice("error", "No file selected or not connected.")
            return False
        if session.sending:
            self._notice("error", "A file transfer is already in progress.")
            return False

        last_percent = -1

        def progress(sent, total):
            nonlocal last_percent
            percent = sent * 100 // total
            if percent != last_percent:
                last_percent = percent
                self._emit(EV_PROGRESS, direction="send", file_name=file_name, percent=percent)

        session.sending = True
        sender = FileSender(session.channel, chunk_size=self.chunk_size, pacing=self.pacing, on_progress=progress)
        logging.info(f"Sending '{file_name}' ({file_size} bytes) to '{session.remote_identity}'")
        try:
            await sender.send(source, file_name, file_size, mime_type)
        except TransferError as e:
            self._transfer_failed(session, "send", e)
            return False
        except ChannelError as e:
            logging.warning(f"Sending '{file_name}' to '{session.remote_identity}' aborted: {e}")
            self._notice("error", "Failed to send file.")
            return False
        finally:
            session.sending = False
        if last_percent != 100:
            self._emit(EV_PROGRESS, direction="send", file_name=file_name, percent=100)
        self._emit(EV_FILE_SENT, file_name=file_name, file_size=file_size)
        self._notice("success", "File sent successfully!")
        return True

    # --- Inbound Relay Events ---
    async def handle_relay_message(self, message_type, payload):
        """Entry point for every event received from the relay, called one at a time in arrival order."""
        handler = self._relay_handlers.get(message_type)
        if handler is None:
            logging.warning(f"Ignoring unknown relay event '{message_type}'")
            return
        await handler(payload)

    async def on_signaling_lost(self):
        """The relay connection dropped. Sessions still negotiating cannot finish without it."""
        self._notice("error", "Disconnected from server.")
        session = self._session
        if session is not None and session.phase in (Phase.OFFERING, Phase.OFFERED, Phase.NEGOTIATING):
            await self._close(session, REASON_SIGNALING_LOST, error=True, retry=True)

    async def _on_register_ack(self, payload):
        identity = payload.get("identity")
        if identity != self.local_identity:
            logging.warning(f"Relay acknowledged identity {identity!r}, expected '{self.local_identity}'")
            self._notice("warning", "Registration acknowledgement did not match this client's ID.")
            return
        logging.info(f"Registered with relay as '{identity}' (server time {payload.get('serverTime')})")
        self._emit(EV_REGISTERED, identity=identity)

    async def _on_deliver(self, payload):
        sender = payload.get("from")
        body = payload.get("payload")
        try:
            kind = protocol.parse_kind(payload.get("kind"))
        except ProtocolError as e:
            logging.warning(f"Dropping delivered envelope from {sender!r}: {e}")
            return
        if not protocol.is_valid_identity(sender) or not isinstance(body, dict):
            logging.warning(f"Dropping malformed '{kind.value}' envelope from {sender!r}")
            return
        if config.DEBUG:
            logging.info(f"Received '{kind.value}' from '{sender}' (relay time {payload.get('relayTime')})")
        await self._envelope_handlers[kind](sender, body)

    async def _on_delivery_error(self, payload):
        target = payload.get("targetIdentity")
        logging.warning(f"Relay could not deliver to '{target}': {payload.get('reason')}")
        session = self._session
        if session is not None and session.remote_identity == target and session.phase in (
                Phase.OFFERING, Phase.OFFERED, Phase.NEGOTIATING):
            await self._close(session, REASON_PEER_OFFLINE, error=True, retry=True)
        else:
            self._notice("warning", f"Peer {target} is offline.")

    async def _on_peer_left(self, payload):
        identity = payload.get("identity")
        session = self._session
        if session is not None and session.remote_identity == identity:
            logging.info(f"Relay reports '{identity}' left")
            await self._close(session, REASON_PEER_LEFT, error=True)

    async def _on_superseded(self, payload):
        logging.warning(f"Identity '{payload.get('identity')}' was registered by another connection")
        self._notice("error", "This ID was registered from another connection.")
        session = self._session
        if session is not None:
            await self._close(session, REASON_SUPERSEDED, error=True)

    async def _on_relay_error(self, payload):
        code = payload.get("code")
        logging.warning(f"Relay error {code}: {payload.get('reason')}")
        self._notice("error", f"Connection error: {payload.get('reason') or code}")

    # --- Inbound Envelopes ---
    async def _on_offer(self, sender, offer):
        session = self._session
        if session is None:
            session = Session(self.local_identity, sender, Role.RESPONDER, pending_offer=offer)
            self._session = session
            self._transition(session, Phase.OFFERED)
            logging.info(f"Incoming connection request from '{sender}'")
            self._emit(EV_OFFERED, identity=sender)
            return

        if session.remote_identity != sender:
            # One session at a time; the active one is left untouched.
            logging.info(f"Rejecting offer from '{sender}': busy with '{session.remote_identity}'")
            await self._send_reject(sender, REASON_BUSY)
            return

        if session.phase == Phase.OFFERED:
            # A renewed offer replaces the old one; hints gathered for the old one are stale.
            session.pending_offer = offer
            session.pending_hints = PendingHintQueue()
        elif session.phase == Phase.OFFERING:
            await self._resolve_glare(session, offer)
        else:
            logging.info(f"Ignoring duplicate offer from '{sender}' in phase {session.phase.value}")

    async def _resolve_glare(self, session, offer):
        """
        Both sides offered to each other. The lexicographically smaller identity becomes the
        responder and accepts the other offer; the larger one keeps its own offer and ignores theirs.
        """
        if self.local_identity > session.remote_identity:
            logging.info(f"Simultaneous offers with '{session.remote_identity}'; keeping our offer")
            return
        logging.info(f"Simultaneous offers with '{session.remote_identity}'; answering theirs instead")
        self._cancel_timer(session)
        channel, session.channel = session.channel, None
        session.role = Role.RESPONDER
        session.pending_offer = offer
        session.pending_hints = PendingHintQueue()
        self._transition(session, Phase.OFFERED)
        if channel is not None:
            await self._release_channel(channel)
        if self._session is session and session.phase == Phase.OFFERED:
            await self.accept()

    async def _on_answer(self, sender, answer):
        session = self._session
        if (session is None or session.remote_identity != sender
                or session.role != Role.INITIATOR or session.phase != Phase.OFFERING):
            logging.info(f"Ignoring unexpected answer from '{sender}'")
            return
        self._transition(session, Phase.NEGOTIATING)
        try:
            await session.channel.set_remote_description(answer)
            if not self._is_current(session):
                return
            await self._flush_hints(session)
        except (ShareError, OSError) as e:
            logging.warning(f"Could not apply answer from '{sender}': {e}")
            await self._close(session, REASON_NEGOTIATION_FAILED, error=True, retry=True,
                              notify_remote=REASON_CANCELLED)

    async def _on_remote_candidate(self, sender, candidate):
        session = self._session
        if session is None or session.remote_identity != sender or not self._is_current(session):
            if config.DEBUG:
                logging.info(f"Ignoring stray address hint from '{sender}'")
            return
        if not session.pending_hints.sealed:
            session.pending_hints.push(candidate)
            return
        await self._apply_hint(session, candidate)

    async def _on_reject(self, sender, body):
        session = self._session
        if session is None or session.remote_identity != sender or not self._is_current(session):
            return
        reason = _REMOTE_REJECT_REASONS.get(body.get("reason"), REASON_REJECTED)
        logging.info(f"'{sender}' ended the negotiation: {reason}")
        await self._close(session, reason, retry=reason in (REASON_BUSY, REASON_TIMEOUT))

    # --- Direct Channel Callbacks ---
    async def _on_local_candidate(self, session, candidate):
        if not self._is_current(session):
            return
        try:
            await self.signaling.forward(session.remote_identity, SignalKind.ICE_CANDIDATE, candidate)
        except ShareError as e:
            logging.warning(f"Could not forward address hint to '{session.remote_identity}': {e}")

    async def _on_channel_open(self, session):
        if not self._is_current(session) or session.phase != Phase.NEGOTIATING:
            return
        self._cancel_timer(session)
        self._transition(session, Phase.CONNECTED)
        logging.info(f"Direct channel established with '{session.remote_identity}'")
        self._emit(EV_CONNECTED, identity=session.remote_identity)
        self._notice("success", "Connection established successfully!")

    async def _on_channel_close(self, session, channel, reason=""):
        if session.channel is not channel or not self._is_current(session):
            return
        logging.info(f"Direct channel with '{session.remote_identity}' closed: {reason or 'no reason given'}")
        await self._close(session, REASON_CONNECTION_LOST, error=True)

    async def _on_channel_message(self, session, text):
        if not self._is_current(session) or session.phase != Phase.CONNECTED:
            return
        try:
            frame = decode_frame(text)
        except ProtocolError as e:
            logging.warning(f"Malformed frame from '{session.remote_identity}': {e}")
            self._notice("warning", "Received a message that could not be read.")
            return
        await self._frame_handlers[frame.frame_type](session, frame)

    # --- Inbound Frames ---
    async def _on_chat_frame(self, session, frame):
        entry = ChatEntry(sender="peer", text=frame.text, timestamp=frame.timestamp)
        session.transcript.append(entry)
        self._emit(EV_CHAT, entry=entry)

    async def _on_file_info_frame(self, session, frame):
        if self.max_file_size is not None:
            session.receiver.max_file_size = self.max_file_size
        try:
            session.receiver.handle_info(frame)
        except TransferError as e:
            self._transfer_failed(session, "receive", e)
            return
        logging.info(f"Receiving '{frame.file_name}' ({frame.file_size} bytes, {frame.total_chunks} chunks) "
                     f"from '{session.remote_identity}'")
        self._emit(EV_PROGRESS, direction="receive", file_name=frame.file_name, percent=0)

    async def _on_file_chunk_frame(self, session, frame):
        state = session.receiver.state
        previous = len(state.chunks) * 100 // state.total_chunks if state and state.total_chunks else None
        try:
            received, total = session.receiver.handle_chunk(frame)
        except TransferError as e:
            self._transfer_failed(session, "receive", e)
            return
        percent = received * 100 // total
        if percent != previous:
            self._emit(EV_PROGRESS, direction="receive", file_name=state.file_name, percent=percent)

    async def _on_file_complete_frame(self, session, frame):
        try:
            received = session.receiver.handle_complete(frame)
        except TransferError as e:
            self._transfer_failed(session, "receive", e)
            return
        self.received_files.append(received)
        logging.info(f"Received '{received.name}' ({received.size} bytes) from '{session.remote_identity}'")
        self._emit(EV_PROGRESS, direction="receive", file_name=received.name, percent=100)
        self._emit(EV_FILE_RECEIVED, file=received)
        self._notice("success", "File received successfully!")

    def _transfer_failed(self, session, direction, error):
        logging.warning(f"Transfer ({direction}) with '{session.remote_identity}' failed: {error}")
        self._emit(EV_TRANSFER_FAILED, direction=direction, reason=str(error))
        self._notice("error", f"File transfer failed: {error}")

    # --- Closing ---
    async def _close(self, session, reason, error=False, retry=False, notify_remote=None):
        """
        Moves `session` to closed and back to idle, releasing everything it owns.
        Runs at most once per session; later calls are no-ops.

        Args:
            reason (str): One of the REASON_* constants, shown to the user.
            error (bool): True for failures (timeout, lost connection), False for clean endings.
            retry (bool): Whether the UI should offer to try again.
            notify_remote (str | None): If set, a reject envelope with this reason is sent to the peer.
        """
        if not self._is_current(session):
            return
        self._cancel_timer(session)
        self._transition(session, Phase.CLOSED)
        channel, session.channel = session.channel, None
        session.pending_offer = None
        session.pending_hints = PendingHintQueue()
        session.receiver.reset()
        session.transcript.clear()
        self._session = None
        self._transition(session, Phase.IDLE)

        log = logging.warning if error else logging.info
        log(f"Session with '{session.remote_identity}' closed: {reason}")
        self._emit(EV_CLOSED, identity=session.remote_identity, reason=reason, error=error, retry=retry)

        if channel is not None:
            await self._release_channel(channel)
        if notify_remote is not None:
            await self._send_reject(session.remote_identity, notify_remote)
