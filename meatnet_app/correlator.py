#!/usr/bin/env python3
"""
Request / Response Correlation

Outstanding requests are tracked in two spaces:

- DIRECT: keyed by link identity. A probe answers one request per message
  type at a time, so there is one pending slot per (type, link).
- MESH: keyed by the random 32-bit request ID carried in node frames.
  Responses match on the ID, but each (type, probe) still holds one slot: a
  new request to the same probe replaces the one in flight.

Every registration hands back a concurrent.futures.Future that completes
exactly once with a RequestResult: on response, on timeout (periodic sweep),
on link loss, or when a newer request takes its slot. Failures are results,
never exceptions.
"""

import logging
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from .models import (
    DEFAULT_DIRECT_REQUEST_TIMEOUT,
    DEFAULT_MESH_REQUEST_TIMEOUT,
    RequestSpace,
)


@dataclass
class RequestResult:
    """Outcome of a write or read request."""
    success: bool
    response: Any = None
    timed_out: bool = False
    reason: str = ""

    @classmethod
    def failure(cls, reason: str, timed_out: bool = False) -> "RequestResult":
        return cls(success=False, timed_out=timed_out, reason=reason)


@dataclass
class PendingRequest:
    space: RequestSpace
    msg_class: int
    key: Any
    issued_at: float
    future: Future
    link_id: Optional[str] = None
    slot: Any = None


PendingKey = Tuple[RequestSpace, int, Any]


def completed(result: RequestResult) -> Future:
    """A Future that is already resolved with result."""
    future: Future = Future()
    future.set_result(result)
    return future


class RequestCorrelator:
    """Matches responses to outstanding requests and expires the rest."""

    def __init__(
        self,
        clock: Callable[[], float],
        direct_timeout: float = DEFAULT_DIRECT_REQUEST_TIMEOUT,
        mesh_timeout: float = DEFAULT_MESH_REQUEST_TIMEOUT,
    ):
        self.logger = logging.getLogger("RequestCorrelator")
        self._clock = clock
        self._timeouts = {
            RequestSpace.DIRECT: direct_timeout,
            RequestSpace.MESH: mesh_timeout,
        }
        self._pending: Dict[PendingKey, PendingRequest] = {}
        # (space, class, slot) -> key of the live request holding that slot
        self._slots: Dict[PendingKey, PendingKey] = {}

        # Statistics
        self.resolved_count = 0
        self.timeout_count = 0

    def __len__(self) -> int:
        return len(self._pending)

    def register(
        self,
        space: RequestSpace,
        msg_class: int,
        key: Any,
        link_id: Optional[str] = None,
        slot: Any = None,
    ) -> Future:
        """
        Track a request that is about to be sent.

        An existing entry for the same (space, class, key), or for the same
        (space, class, slot) when a slot is given, is replaced and its future
        is completed as superseded.
        """
        pending_key = (space, int(msg_class), key)
        slot_key = (space, int(msg_class), slot) if slot is not None else None
        replaced = [pending_key]
        if slot_key is not None and slot_key in self._slots:
            replaced.append(self._slots[slot_key])
        for old_key in replaced:
            previous = self._remove(old_key)
            if previous is not None:
                self.logger.debug(
                    f"Superseding pending {space.value} request {msg_class:#04x} for {previous.key}"
                )
                self._complete(previous, RequestResult.failure("superseded"))

        future: Future = Future()
        self._pending[pending_key] = PendingRequest(
            space=space,
            msg_class=int(msg_class),
            key=key,
            issued_at=self._clock(),
            future=future,
            link_id=link_id if link_id is not None else (key if space == RequestSpace.DIRECT else None),
            slot=slot,
        )
        if slot_key is not None:
            self._slots[slot_key] = pending_key
        return future

    def resolve(self, space: RequestSpace, msg_class: int, key: Any, result: RequestResult) -> bool:
        """
        Complete and remove a pending request.

        Unknown or already-removed entries are ignored, which also drops
        duplicate responses relayed by several nodes.
        """
        pending = self._remove((space, int(msg_class), key))
        if pending is None:
            return False
        self.resolved_count += 1
        self._complete(pending, result)
        return True

    def is_pending(self, space: RequestSpace, msg_class: int, key: Any) -> bool:
        return (space, int(msg_class), key) in self._pending

    def sweep(self) -> int:
        """Fail every request older than its space's timeout."""
        now = self._clock()
        expired = [
            key for key, pending in self._pending.items()
            if now - pending.issued_at >= self._timeouts[pending.space]
        ]
        for key in expired:
            pending = self._remove(key)
            self.timeout_count += 1
            self.logger.info(
                f"[TIMEOUT] {pending.space.value} request {pending.msg_class:#04x} for {pending.key}"
            )
            self._complete(pending, RequestResult.failure("timeout", timed_out=True))
        return len(expired)

    def purge_link(self, link_id: str) -> int:
        """Fail every direct request outstanding on a lost link."""
        lost = [
            key for key, pending in self._pending.items()
            if pending.space == RequestSpace.DIRECT and pending.link_id == link_id
        ]
        for key in lost:
            self._complete(self._remove(key), RequestResult.failure("disconnected"))
        if lost:
            self.logger.info(f"Purged {len(lost)} pending request(s) for {link_id}")
        return len(lost)

    def _remove(self, pending_key: PendingKey) -> Optional[PendingRequest]:
        pending = self._pending.pop(pending_key, None)
        if pending is not None and pending.slot is not None:
            slot_key = (pending.space, pending.msg_class, pending.slot)
            if self._slots.get(slot_key) == pending_key:
                del self._slots[slot_key]
        return pending

    def _complete(self, pending: PendingRequest, result: RequestResult):
        if not pending.future.done():
            pending.future.set_result(result)
