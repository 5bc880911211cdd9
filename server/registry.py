# server/registry.py
# The Identity Registry: the relay's only shared mutable state.
# It keeps two dictionaries that must always agree with each other:
#   CLIENTS-style map      identity -> connection handle
#   CONNECTIONS-style map  connection handle -> identity
# Nothing outside this class reads or writes them. The relay runs on a single asyncio
# event loop and every method here runs to completion without awaiting, so no lock is needed.

import logging


class IdentityRegistry:
    """
    Bidirectional mapping between live connection handles and self-asserted identities.

    Invariant: for every identity `i` present, `identity_of(resolve(i)) == i`.
    """

    def __init__(self):
        # identity (str) -> handle (the WebSocket connection object).
        self._by_identity = {}
        # handle -> identity (str).
        self._by_handle = {}

    def register(self, handle, identity):
        """
        Binds `identity` to `handle`, evicting whichever connection held it before.

        If `handle` was already bound to a different identity, that old binding is dropped first,
        so a connection never owns more than one identity.

        Args:
            handle: The connection object registering.
            identity (str): The identity it claims (format is checked by the caller).

        Returns:
            The previously bound handle that lost `identity`, or None if there was none
            (including the idempotent case where `handle` already owned `identity`).
        """
        if self._by_identity.get(identity) is handle:
            return None  # Same pair again: nothing to change.

        # Drop this handle's old identity, if it had one.
        old_identity = self._by_handle.pop(handle, None)
        if old_identity is not None and self._by_identity.get(old_identity) is handle:
            del self._by_identity[old_identity]

        # Evict the connection currently holding the requested identity.
        evicted = self._by_identity.pop(identity, None)
        if evicted is not None:
            self._by_handle.pop(evicted, None)
            logging.info(f"Identity '{identity}' superseded by a new registration; evicting previous connection.")

        self._by_identity[identity] = handle
        self._by_handle[handle] = identity
        return evicted

    def resolve(self, identity):
        """Returns the handle registered for `identity`, or None."""
        return self._by_identity.get(identity)

    def identity_of(self, handle):
        """Returns the identity registered for `handle`, or None."""
        return self._by_handle.get(handle)

    def unregister(self, handle):
        """
        Removes whatever identity `handle` owns. Safe to call any number of times.

        Returns:
            str | None: The identity that was removed, or None if the handle owned nothing.
        """
        identity = self._by_handle.pop(handle, None)
        if identity is not None and self._by_identity.get(identity) is handle:
            del self._by_identity[identity]
        return identity

    def handles(self):
        """Snapshot list of all registered handles."""
        return list(self._by_handle)

    def identities(self):
        """Snapshot list of all registered identities."""
        return list(self._by_identity)

    def __len__(self):
        return len(self._by_identity)

    def __contains__(self, identity):
        return identity in self._by_identity
