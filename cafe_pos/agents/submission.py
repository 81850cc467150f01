"""At-most-once submission of mutating store calls.

A `SubmissionAgent` collapses duplicate triggers of the same user action onto
one in-flight call (keyed by an idempotency key) and retries transient
transport failures with exponential backoff under a hard deadline.
"""

import asyncio
import hashlib
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
import structlog
from pydantic import BaseModel

from cafe_pos.config import settings
from cafe_pos.errors import RetriesExhausted, SubmissionTimeout, TransientTransportError

logger = structlog.get_logger(__name__)

Operation = Callable[[], Awaitable[Any]]

class RetryPolicy(BaseModel):
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0

    @classmethod
    def from_settings(cls):
        return cls(
            max_attempts=settings.SUBMIT_MAX_ATTEMPTS,
            initial_delay=settings.RETRY_INITIAL_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
            backoff_factor=settings.RETRY_BACKOFF_FACTOR,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return min(self.initial_delay * self.backoff_factor ** (attempt - 1), self.max_delay)

def is_retryable(error: BaseException) -> bool:
    if isinstance(error, TransientTransportError):
        return True
    # raw httpx network/timeout errors that escaped an agent
    if isinstance(error, (httpx.TransportError, asyncio.TimeoutError)):
        return True
    return False

async def retry_with_backoff(
    operation: Operation,
    policy: RetryPolicy | None = None,
    on_retry: Callable[[int, BaseException], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
):
    policy = policy or RetryPolicy()

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e):
                raise
            if attempt == policy.max_attempts:
                raise RetriesExhausted(attempt, e) from e

            delay = policy.delay_for(attempt)
            if on_retry is not None:
                on_retry(attempt, e)
            logger.info("submission_retry_scheduled", attempt=attempt, delay=delay, error=str(e))
            await sleep(delay)

def idempotency_key(scope: str, *parts: Any, nonce: str) -> str:
    """Stable key for one user action.

    The same parts and nonce always produce the same key; a new nonce is drawn
    per action so two distinct sales with identical carts never collide.
    """
    canonical = json.dumps([scope, parts, nonce], sort_keys=True, default=_jsonable, separators=(",", ":"))
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]
    return f"{scope}-{digest}"

def _jsonable(value: Any):
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return str(value)

@dataclass
class PendingSubmission:
    future: asyncio.Future
    created_at: float

class SubmissionDeduplicator:
    def __init__(self, ttl: float = 60.0, grace: float = 5.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.grace = grace
        self.clock = clock
        self._pending: dict[str, PendingSubmission] = {}

    async def submit(self, key: str, operation: Operation):
        now = self.clock()
        existing = self._pending.get(key)
        if existing is not None and now - existing.created_at < self.ttl:
            logger.info("submission_deduplicated", key=key)
            return await asyncio.shield(existing.future)

        self._clear_expired(now)

        task = asyncio.ensure_future(operation())
        entry = PendingSubmission(future=task, created_at=now)
        self._pending[key] = entry
        task.add_done_callback(lambda done: self._settle(key, entry, done))
        return await asyncio.shield(task)

    def _settle(self, key: str, entry: PendingSubmission, done: asyncio.Future) -> None:
        if done.cancelled() or done.exception() is not None:
            self._evict(key, entry)
            return
        # keep the resolved outcome around to absorb late double taps
        asyncio.get_running_loop().call_later(self.grace, self._evict, key, entry)

    def _evict(self, key: str, entry: PendingSubmission) -> None:
        if self._pending.get(key) is entry:
            del self._pending[key]

    def _clear_expired(self, now: float) -> None:
        for key, entry in list(self._pending.items()):
            if now - entry.created_at >= self.ttl:
                del self._pending[key]

    def is_pending(self, key: str) -> bool:
        entry = self._pending.get(key)
        return entry is not None and self.clock() - entry.created_at < self.ttl

    def clear(self, key: str) -> None:
        self._pending.pop(key, None)

    def clear_all(self) -> None:
        self._pending.clear()

    def __len__(self) -> int:
        return len(self._pending)

class SubmissionAgent:
    """Dedup, then retry, under one end-to-end deadline."""

    def __init__(
        self,
        deduplicator: SubmissionDeduplicator | None = None,
        policy: RetryPolicy | None = None,
        deadline: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.deduplicator = deduplicator or SubmissionDeduplicator(ttl=settings.DEDUP_TTL, grace=settings.DEDUP_GRACE)
        self.policy = policy or RetryPolicy.from_settings()
        self.deadline = settings.SUBMIT_DEADLINE if deadline is None else deadline
        self.sleep = sleep

    async def submit(self, key: str, operation: Operation, on_retry: Callable[[int, BaseException], None] | None = None):
        return await self.deduplicator.submit(key, lambda: self._attempt_chain(key, operation, on_retry))

    async def _attempt_chain(self, key: str, operation: Operation, on_retry):
        try:
            return await asyncio.wait_for(
                retry_with_backoff(operation, self.policy, on_retry=on_retry, sleep=self.sleep),
                timeout=self.deadline,
            )
        except asyncio.TimeoutError as e:
            logger.warning("submission_timed_out", key=key, deadline=self.deadline)
            raise SubmissionTimeout(self.deadline) from e
