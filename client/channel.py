# client/channel.py
# The direct-channel capability consumed by the session state machine.
# The contract follows the WebRTC peer connection: descriptions and address hints are produced
# and consumed here, and the channel opens on its own once both sides have enough of them.
# Implementations: client/direct.py (WebSocket based) and the in-memory fakes used by the tests.

import abc


async def _ignore(*args):
    return None


class PeerConnection(abc.ABC):
    """
    One direct channel between two peers.

    Callbacks (assign coroutine functions; each is awaited, in order, by the implementation):
        on_ice_candidate(candidate: dict)  a local address hint to forward to the remote peer
        on_open()                          the channel is ready for application frames; only after
                                           both the local and the remote description are set
        on_message(text: str)              one frame received, in order
        on_close(reason: str)              the channel closed or failed; fired at most once and
                                           never after a local close()
    """

    def __init__(self):
        self.on_ice_candidate = _ignore
        self.on_open = _ignore
        self.on_message = _ignore
        self.on_close = _ignore

    @property
    @abc.abstractmethod
    def remote_description(self):
        """The remote description once set, else None."""

    @abc.abstractmethod
    async def create_offer(self):
        """Produces the local offer description (a JSON-serializable dict)."""

    @abc.abstractmethod
    async def create_answer(self):
        """Produces the local answer description; requires the remote offer to be set."""

    @abc.abstractmethod
    async def set_local_description(self, description):
        """Commits the local description; address-hint gathering starts here."""

    @abc.abstractmethod
    async def set_remote_description(self, description):
        """Applies the remote peer's description."""

    @abc.abstractmethod
    async def add_ice_candidate(self, candidate):
        """
        Applies one remote address hint.

        Raises:
            ChannelError: If no remote description has been set yet.
        """

    @abc.abstractmethod
    async def send(self, text):
        """Sends one application frame. Raises ChannelError if the channel is not open."""

    async def drain(self):
        """Waits until the channel's send buffer is below its low-water mark."""
        return None

    @abc.abstractmethod
    async def close(self):
        """Releases every resource. Idempotent."""
