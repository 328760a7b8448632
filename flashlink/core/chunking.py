"""
FlashLink Chunk Manager
Splits oversized payloads into sequenced chunks and reassembles them on the
receive side. Pending groups are keyed by transmission identity and expire.
"""

import logging
import math
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Hashable, List, Optional

from core.framing import MAX_CHUNK_SIZE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Chunk:
    sequence: int
    total: int
    data: bytes


def chunk_payload(payload: bytes, max_chunk_size: int = MAX_CHUNK_SIZE) -> List[Chunk]:
    """ceil(len / max) chunks; an empty payload gives one empty chunk."""
    if max_chunk_size <= 0:
        raise ValueError("max_chunk_size must be positive")
    payload = bytes(payload)
    total = max(1, math.ceil(len(payload) / max_chunk_size))
    return [Chunk(i, total, payload[i * max_chunk_size:(i + 1) * max_chunk_size])
            for i in range(total)]


def reassemble(chunks: List[Chunk]) -> Optional[bytes]:
    """Concatenated payload, or None while the set is incomplete or inconsistent."""
    if not chunks:
        return None
    total = chunks[0].total
    if any(c.total != total for c in chunks) or len(chunks) != total:
        return None
    ordered = sorted(chunks, key=lambda c: c.sequence)
    if [c.sequence for c in ordered] != list(range(total)):
        return None
    return b''.join(c.data for c in ordered)


class _PendingGroup:

    def __init__(self, total: int, now: float):
        self.total = total
        self.chunks: Dict[int, Chunk] = {}
        self.created = now
        self.last_seen = now


class ReassemblyBuffer:
    """
    Pending reassembly groups keyed by (type, transmission id).

    A group is dropped as soon as it completes, when it has been idle for
    longer than `timeout_s`, or when more than `max_groups` are pending
    (least recently touched first).
    """

    def __init__(self, timeout_s: float = 120.0, max_groups: int = 16,
                 clock: Callable[[], float] = time.monotonic):
        if timeout_s <= 0:
            raise ValueError("timeout_s must be positive")
        if max_groups < 1:
            raise ValueError("max_groups must be at least 1")
        self.timeout_s = timeout_s
        self.max_groups = max_groups
        self.clock = clock
        self._groups: "OrderedDict[Hashable, _PendingGroup]" = OrderedDict()
        self.expired = 0
        self.evicted = 0
        self.completed = 0

    def __len__(self) -> int:
        return len(self._groups)

    def __contains__(self, key) -> bool:
        return key in self._groups

    def add(self, key: Hashable, chunk: Chunk,
            now: Optional[float] = None) -> Optional[bytes]:
        """Store a chunk; return the reassembled payload once the group completes."""
        if now is None:
            now = self.clock()
        self.expire(now)

        if not 0 <= chunk.sequence < chunk.total:
            logger.warning("chunk %d/%d out of range for %s, dropped",
                           chunk.sequence, chunk.total, key)
            return None

        group = self._groups.get(key)
        if group is not None and group.total != chunk.total:
            # A fresh transmission reused the key with a different chunk count.
            logger.warning("chunk total changed %d -> %d for %s, restarting group",
                           group.total, chunk.total, key)
            del self._groups[key]
            group = None

        if group is None:
            group = _PendingGroup(chunk.total, now)
            self._groups[key] = group
            while len(self._groups) > self.max_groups:
                old_key, _ = self._groups.popitem(last=False)
                self.evicted += 1
                logger.warning("evicted pending group %s", old_key)

        group.chunks[chunk.sequence] = chunk  # duplicate replaces earlier copy
        group.last_seen = now
        self._groups.move_to_end(key)

        payload = reassemble(list(group.chunks.values()))
        if payload is None:
            logger.debug("group %s holds %d/%d chunks", key, len(group.chunks), group.total)
            return None

        del self._groups[key]
        self.completed += 1
        return payload

    def expire(self, now: Optional[float] = None) -> int:
        """Drop groups idle longer than the timeout. Returns how many were dropped."""
        if now is None:
            now = self.clock()
        stale = [k for k, g in self._groups.items() if now - g.last_seen > self.timeout_s]
        for key in stale:
            del self._groups[key]
            logger.info("pending group %s expired", key)
        self.expired += len(stale)
        return len(stale)

    def clear(self):
        self._groups.clear()

    def get_stats(self) -> dict:
        return {
            'pending_groups': len(self._groups),
            'completed': self.completed,
            'expired': self.expired,
            'evicted': self.evicted,
        }
