"""
Per-signing-account serialization and nonce tracking.

Orders are independent, but batches signed by the same account are not:
two in-flight batches with the same nonce would conflict. Callers hold the
account lock from nonce reservation until the batch is confirmed or given up.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional, Set


NonceSource = Callable[[str, int], Awaitable[int]]


@dataclass
class NonceState:
    """Tracks nonce state for an account on a chain."""
    address: str
    chain_id: int
    confirmed_nonce: int                        # Last known on-chain
    pending_nonce: int                          # Next available for use
    reserved_nonces: Set[int] = field(default_factory=set)
    needs_resync: bool = False                  # Outcome of a batch is unknown
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class NonceManager:
    """
    Hands out nonces per ``(chain_id, account)``.

    - ``account_lock`` serializes whole submissions for one account
    - ``reserve`` / ``release`` / ``confirm`` track nonces within it
    - after a timeout the state is marked for resync, so the next
      reservation re-reads the chain instead of guessing
    """

    def __init__(self) -> None:
        self._states: Dict[str, NonceState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._account_locks: Dict[str, asyncio.Lock] = {}

    def _get_key(self, chain_id: int, address: str) -> str:
        return f"{chain_id}:{address.lower()}"

    def _get_lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def account_lock(self, address: str, chain_id: int) -> asyncio.Lock:
        """Lock that serializes submissions signed by ``address``."""
        key = self._get_key(chain_id, address)
        if key not in self._account_locks:
            self._account_locks[key] = asyncio.Lock()
        return self._account_locks[key]

    async def reserve(self, address: str, chain_id: int, fetch: NonceSource) -> int:
        """
        Reserve the next nonce for an account.

        Args:
            address: Signing account
            chain_id: The chain ID
            fetch: Reads the current on-chain nonce (used on first use and
                after a resync mark)

        Returns:
            The reserved nonce
        """
        key = self._get_key(chain_id, address)
        async with self._get_lock(key):
            state = self._states.get(key)
            if state is None or state.needs_resync:
                on_chain = await fetch(address, chain_id)
                if state is None:
                    state = NonceState(
                        address=address.lower(),
                        chain_id=chain_id,
                        confirmed_nonce=on_chain,
                        pending_nonce=on_chain,
                    )
                    self._states[key] = state
                else:
                    # The pending count already includes a batch still in the mempool
                    state.confirmed_nonce = on_chain
                    state.reserved_nonces = set()
                    state.pending_nonce = on_chain
                    state.needs_resync = False
                state.last_updated = datetime.now(timezone.utc)

            nonce = state.pending_nonce
            while nonce in state.reserved_nonces:
                nonce += 1

            state.reserved_nonces.add(nonce)
            state.pending_nonce = nonce + 1
            return nonce

    async def release(self, address: str, chain_id: int, nonce: int) -> None:
        """Give back a nonce that was never broadcast."""
        key = self._get_key(chain_id, address)
        async with self._get_lock(key):
            state = self._states.get(key)
            if state is None:
                return
            state.reserved_nonces.discard(nonce)
            if nonce == state.pending_nonce - 1:
                while state.pending_nonce > state.confirmed_nonce:
                    if state.pending_nonce - 1 not in state.reserved_nonces:
                        state.pending_nonce -= 1
                    else:
                        break

    async def confirm(self, address: str, chain_id: int, nonce: int) -> None:
        """Mark a nonce as consumed on-chain."""
        key = self._get_key(chain_id, address)
        async with self._get_lock(key):
            state = self._states.get(key)
            if state is None:
                return
            state.reserved_nonces.discard(nonce)
            if nonce >= state.confirmed_nonce:
                state.confirmed_nonce = nonce + 1

    async def mark_unknown(self, address: str, chain_id: int) -> None:
        """The last batch may or may not have landed; resync before reuse."""
        key = self._get_key(chain_id, address)
        async with self._get_lock(key):
            state = self._states.get(key)
            if state is not None:
                state.needs_resync = True

    def get_state(self, address: str, chain_id: int) -> Optional[NonceState]:
        return self._states.get(self._get_key(chain_id, address))


_nonce_manager: Optional[NonceManager] = None


def get_nonce_manager() -> NonceManager:
    """Get the singleton nonce manager instance."""
    global _nonce_manager
    if _nonce_manager is None:
        _nonce_manager = NonceManager()
    return _nonce_manager
