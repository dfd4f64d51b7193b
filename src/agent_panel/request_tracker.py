"""agent_panel.request_tracker

Ownership of in-flight chat requests.

Every prompt gets a client-assigned request id that is mapped to the agent it
was sent to. The backend may stream under a different response id; the two
are linked as soon as either side reveals the pairing. Aborted ids are
tombstoned for a while so late chunks can be recognised and dropped.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from .messages import RequestRecord, TokenUsage


_LOG = logging.getLogger("agent_panel.request_tracker")

# Backend convention: streamed answers are tagged `response-<requestId>`.
RESPONSE_ID_PREFIX = "response-"


class ExpiringIds:
    """Ids remembered for `ttl_s` seconds after they were added."""

    def __init__(self, *, clock: Callable[[], float] = time.time, ttl_s: float = 30.0) -> None:
        self._clock = clock
        self._ttl = float(ttl_s)
        self._until: dict[str, float] = {}

    def add(self, key: str) -> None:
        self._purge()
        self._until[str(key)] = self._clock() + self._ttl

    def __contains__(self, key: object) -> bool:
        self._purge()
        return str(key) in self._until

    def __len__(self) -> int:
        self._purge()
        return len(self._until)

    def _purge(self) -> None:
        now = self._clock()
        for key in [k for k, until in self._until.items() if until <= now]:
            del self._until[key]


class RequestTracker:
    def __init__(self, *, clock: Callable[[], float] = time.time, tombstone_ttl_s: float = 30.0) -> None:
        self._clock = clock
        self._ttl = float(tombstone_ttl_s)
        self._pending: set[str] = set()
        self._owners: dict[str, str] = {}
        self._records: dict[str, RequestRecord] = {}
        self._response_to_request: dict[str, str] = {}
        # request_id -> expiry
        self._tombstones: dict[str, float] = {}

    # ---- core contract ----

    def begin(self, request_id: str, agent_id: str) -> bool:
        rid = str(request_id)
        if rid in self._owners or rid in self._pending:
            return False
        self._pending.add(rid)
        self._owners[rid] = str(agent_id)
        self._records[rid] = RequestRecord(request_id=rid, agent_id=str(agent_id), start_time=self._clock())
        _LOG.info("request_begin request_id=%s agent_id=%s", rid, agent_id)
        return True

    def resolve(self, request_id: str | None) -> str | None:
        if not request_id:
            return None
        return self._owners.get(str(request_id))

    def end(self, request_id: str | None) -> None:
        if not request_id:
            return
        rid = str(request_id)
        was_pending = rid in self._pending
        self._pending.discard(rid)
        self._owners.pop(rid, None)
        if was_pending:
            _LOG.info("request_end request_id=%s", rid)

    def has_pending_for(self, agent_id: str | None) -> bool:
        if agent_id is None:
            return False
        return any(self._owners.get(rid) == agent_id for rid in self._pending)

    def pending_ids(self) -> set[str]:
        return set(self._pending)

    def is_pending(self, request_id: str | None) -> bool:
        return bool(request_id) and str(request_id) in self._pending

    def pending_for(self, agent_id: str | None) -> str | None:
        """The agent's in-flight request, if any (one per agent at a time)."""

        if agent_id is None:
            return None
        for rid in reversed(self._records):
            if rid in self._pending and self._owners.get(rid) == agent_id:
                return rid
        return None

    def latest_pending(self) -> str | None:
        """Most recently started request that is still in flight, for any agent."""

        for rid in reversed(self._records):
            if rid in self._pending:
                return rid
        return None

    # ---- request records ----

    def record(self, request_id: str | None) -> RequestRecord | None:
        if not request_id:
            return None
        return self._records.get(str(request_id))

    def discard_record(self, request_id: str | None) -> None:
        if not request_id:
            return
        rid = str(request_id)
        rec = self._records.pop(rid, None)
        # Links of aborted requests live on with the tombstone.
        if rec is not None and rec.response_id and rid not in self._tombstones:
            self._response_to_request.pop(rec.response_id, None)

    def latest_request_id(self) -> str | None:
        """Most recently started request that still has a record."""

        if not self._records:
            return None
        return max(self._records.values(), key=lambda r: r.start_time).request_id

    def set_token_usage(self, request_id: str | None, usage: TokenUsage) -> bool:
        rec = self.record(request_id)
        if rec is None:
            return False
        rec.token_usage = usage
        return True

    # ---- response id correlation ----

    def link_response(self, response_id: str, request_id: str) -> None:
        if not response_id or not request_id or response_id == request_id:
            return
        self._response_to_request.setdefault(str(response_id), str(request_id))
        rec = self._records.get(str(request_id))
        if rec is not None and rec.response_id is None:
            rec.response_id = str(response_id)

    def request_for_response(self, response_id: str | None) -> str | None:
        """Best known request id for a response id, without guessing."""

        if not response_id:
            return None
        rid = str(response_id)
        linked = self._response_to_request.get(rid)
        if linked is not None:
            return linked
        if rid in self._records or rid in self._tombstones:
            return rid
        if rid.startswith(RESPONSE_ID_PREFIX):
            candidate = rid[len(RESPONSE_ID_PREFIX) :]
            if candidate in self._records or candidate in self._tombstones:
                return candidate
        return None

    # ---- abort tombstones ----

    def tombstone(self, request_id: str) -> None:
        self._purge_tombstones()
        self._tombstones[str(request_id)] = self._clock() + self._ttl

    def is_tombstoned(self, request_or_response_id: str | None) -> bool:
        if not request_or_response_id:
            return False
        self._purge_tombstones()
        key = str(request_or_response_id)
        if key in self._tombstones:
            return True
        linked = self._response_to_request.get(key)
        return linked is not None and linked in self._tombstones

    def claim_tombstone(self, response_id: str) -> bool:
        """Attribute an unknown response id to the latest aborted, still-unlinked request.

        Used only when nothing else can own the chunk, so the aborted stream's
        tail is dropped instead of surfacing as a stray message.
        """

        self._purge_tombstones()
        linked_requests = set(self._response_to_request.values())
        candidates = [rid for rid in self._tombstones if rid not in linked_requests]
        if not candidates:
            return False
        rid = max(candidates, key=lambda r: self._tombstones[r])
        self._response_to_request[str(response_id)] = rid
        return True

    def _purge_tombstones(self) -> None:
        now = self._clock()
        expired = [rid for rid, until in self._tombstones.items() if until <= now]
        for rid in expired:
            self._tombstones.pop(rid, None)
            if rid not in self._records:
                self._forget_links(rid)

    def _forget_links(self, request_id: str) -> None:
        for resp, req in list(self._response_to_request.items()):
            if req == request_id:
                self._response_to_request.pop(resp, None)
