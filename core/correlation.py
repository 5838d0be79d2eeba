"""figbridge — Correlation Table

Maps request id → PendingRequest. Owns the per-request timeout timer, so a
timer never outlives its entry.

Settle-exactly-once: every mutation runs synchronously on the event loop
thread. settle() pops the entry, cancels its timer and resolves the future
in one step with no await in between, so a reply racing an expiring timer
can only win once.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from core.errors import DuplicateRequestIdError, RequestTimeoutError
from models.models import Outcome, OutcomeKind, PendingRequest, RequestKind

logger = logging.getLogger("figbridge.correlation")


class CorrelationTable:
    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._pending: Dict[str, PendingRequest] = {}

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    # --- Registration ---

    def register(
        self,
        request_id: str,
        future: asyncio.Future,
        timeout: float,
        generation: int = 0,
        kind: RequestKind = RequestKind.EXECUTE,
    ) -> asyncio.TimerHandle:
        """Store a pending entry and schedule its timeout.

        Raises DuplicateRequestIdError if request_id is already pending.
        """
        if request_id in self._pending:
            raise DuplicateRequestIdError(
                f"Request id {request_id!r} is already pending"
            )
        loop = self._get_loop()
        entry = PendingRequest(
            request_id=request_id,
            kind=kind,
            future=future,
            timeout=timeout,
            generation=generation,
            submitted_at=loop.time(),
        )
        entry.timer_handle = loop.call_later(
            timeout, self.settle, request_id, Outcome.timeout()
        )
        self._pending[request_id] = entry
        return entry.timer_handle

    # --- Settlement ---

    def settle(
        self,
        request_id: str,
        outcome: Outcome,
        generation: Optional[int] = None,
    ) -> bool:
        """Resolve and remove one entry. Returns True if this call settled it.

        When generation is given, the entry must have been sent on that
        connection; replies from a superseded socket leave it untouched.
        """
        entry = self._pending.get(request_id)
        if entry is None:
            logger.debug(
                "Settle for unknown request %s (%s) ignored",
                request_id, outcome.kind.value,
            )
            return False

        if generation is not None and entry.generation != generation:
            logger.warning(
                "Request %s: reply from stale connection (gen %d, expected %d) dropped",
                request_id, generation, entry.generation,
            )
            return False

        del self._pending[request_id]
        if entry.timer_handle is not None:
            entry.timer_handle.cancel()
        self._resolve(entry, outcome)
        return True

    def fail_all(self, error: BaseException, generation: Optional[int] = None) -> int:
        """Fail every pending entry (or only those of one generation).

        Returns the number of entries settled.
        """
        if generation is None:
            targets: List[str] = list(self._pending)
        else:
            targets = [
                rid for rid, entry in self._pending.items()
                if entry.generation == generation
            ]
        outcome = Outcome.failure(error)
        settled = 0
        for request_id in targets:
            if self.settle(request_id, outcome):
                settled += 1
        if settled:
            logger.info("Failed %d pending request(s): %s", settled, error)
        return settled

    def _resolve(self, entry: PendingRequest, outcome: Outcome) -> None:
        future = entry.future
        if future.done():
            # Caller gave up (cancelled); the entry is reclaimed all the same
            logger.debug(
                "Request %s settled (%s) after caller stopped waiting",
                entry.request_id, outcome.kind.value,
            )
            return
        if outcome.kind is OutcomeKind.SUCCESS:
            future.set_result(outcome.result)
        elif outcome.kind is OutcomeKind.TIMEOUT:
            logger.warning(
                "Request %s (%s) timed out after %.3fs",
                entry.request_id, entry.kind.value, entry.timeout,
            )
            future.set_exception(RequestTimeoutError(entry.request_id, entry.timeout))
        else:
            future.set_exception(outcome.error)

    # --- Introspection ---

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)
