"""Per-signer nonce allocation."""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Tuple

from .rpc import RpcClient

logger = logging.getLogger(__name__)

SignerKey = Tuple[int, str]  # (chain_id, checksummed address)


class NonceManager:
    """
    Hands out nonces one signer at a time.

    A reservation holds the signer's lock until the transaction has been
    submitted, so concurrent transactions from one signer get consecutive
    nonces in submission order. Signers on different chains or with different
    addresses never wait for each other.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[SignerKey, threading.Lock] = {}
        self._next: Dict[SignerKey, int] = {}

    def _lock_for(self, key: SignerKey) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def reserve(self, client: RpcClient, chain_id: int, address: str) -> Iterator[int]:
        """
        Reserve the next nonce for a signer.

        The nonce is consumed only if the ``with`` block completes. If it
        raises, the cached value is dropped and the next reservation reads
        the pending transaction count from the node again.
        """
        key = (chain_id, address)
        with self._lock_for(key):
            nonce = self._next.get(key)
            if nonce is None:
                nonce = client.get_transaction_count(address, "pending")
                logger.debug("Nonce for %s on chain %d starts at %d", address, chain_id, nonce)
            try:
                yield nonce
            except BaseException:
                self._next.pop(key, None)
                raise
            self._next[key] = nonce + 1

    def peek(self, chain_id: int, address: str):
        """Next locally cached nonce for a signer, or None if not cached."""
        with self._guard:
            return self._next.get((chain_id, address))
