"""Time-bounded cache of compiled workflow graphs."""

from __future__ import annotations

import time
from typing import Callable, Dict, Optional, Tuple

from ..constants import DEFAULT_GRAPH_CACHE_TTL
from .graph import WorkflowGraph


class GraphCache:
    """Cache ``WorkflowGraph`` objects keyed by workflow id and version.

    Each version is cached on its own; the cache also remembers which version
    was the latest when it was stored, so lookups without a version return
    that one. Entries expire ``ttl`` seconds after they were stored. The
    cache is owned by whoever creates it and is emptied by :meth:`close`.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_GRAPH_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[Tuple[str, int], Tuple[float, WorkflowGraph]] = {}
        self._latest: Dict[str, int] = {}
        self._closed = False

    def get(self, workflow_id: str, version: Optional[int] = None) -> Optional[WorkflowGraph]:
        if version is None:
            version = self._latest.get(workflow_id)
            if version is None:
                return None
        key = (workflow_id, version)
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, graph = entry
        if self._clock() - stored_at >= self.ttl:
            del self._entries[key]
            return None
        return graph

    def put(self, workflow_id: str, graph: WorkflowGraph, latest: bool = True) -> None:
        if self._closed:
            return
        self._entries[(workflow_id, graph.version)] = (self._clock(), graph)
        if latest:
            self._latest[workflow_id] = graph.version

    def invalidate(self, workflow_id: str) -> None:
        self._latest.pop(workflow_id, None)
        for key in [k for k in self._entries if k[0] == workflow_id]:
            del self._entries[key]

    def evict_expired(self) -> int:
        now = self._clock()
        expired = [
            key for key, (stored_at, _) in self._entries.items() if now - stored_at >= self.ttl
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def close(self) -> None:
        self._entries.clear()
        self._latest.clear()
        self._closed = True

    def __len__(self) -> int:
        return len(self._entries)
