"""Bloom filters, including a ping-pong pair used for nonce reuse detection."""

from __future__ import annotations

import hashlib
import math


class BloomFilter:
    """A fixed-size Bloom filter sized for ``entries`` items at ``error`` rate."""

    def __init__(self, entries: int, error: float) -> None:
        if entries < 1:
            raise ValueError("entries must be at least 1")
        if not 0.0 < error < 1.0:
            raise ValueError("error must be between 0 and 1")
        self.entries = entries
        self.error = error
        bits_per_entry = -math.log(error) / (math.log(2) ** 2)
        self.bits = max(8, math.ceil(entries * bits_per_entry))
        self.hashes = max(1, math.ceil(math.log(2) * bits_per_entry))
        self._array = bytearray((self.bits + 7) // 8)

    def _positions(self, data: bytes):
        digest = hashlib.blake2b(bytes(data), digest_size=16).digest()
        h1 = int.from_bytes(digest[:8], "little")
        h2 = int.from_bytes(digest[8:], "little") | 1
        for i in range(self.hashes):
            yield (h1 + i * h2) % self.bits

    def __contains__(self, data: bytes) -> bool:
        return all(self._array[p >> 3] & (1 << (p & 7)) for p in self._positions(data))

    def add(self, data: bytes) -> bool:
        """Insert ``data``; return True if it already appeared to be present."""
        present = True
        for p in self._positions(data):
            mask = 1 << (p & 7)
            if not self._array[p >> 3] & mask:
                present = False
                self._array[p >> 3] |= mask
        return present


class PingPongBloom:
    """Two Bloom filters used in turn so that old entries eventually expire.

    Each half holds ``entries // 2`` items. When the active half fills up, the
    other half is cleared and becomes active.
    """

    def __init__(self, entries: int, error: float) -> None:
        self.entries = entries // 2
        self.error = error
        self._filters = [BloomFilter(self.entries, error), BloomFilter(self.entries, error)]
        self._counts = [0, 0]
        self._current = 0

    def check(self, data: bytes) -> bool:
        """True if ``data`` appears in either half."""
        return any(data in f for f in self._filters)

    def add(self, data: bytes) -> None:
        """Record ``data`` in the active half, rotating halves when it is full."""
        self._filters[self._current].add(data)
        self._counts[self._current] += 1
        if self._counts[self._current] >= self.entries:
            self._counts[self._current] = 0
            self._current ^= 1
            self._filters[self._current] = BloomFilter(self.entries, self.error)