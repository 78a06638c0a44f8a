import logging
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from database import session_scope
from errors import InvariantViolation, TransientStoreError
from models import ThrottleHit, ThrottleKey
from periods import utcnow
from recurrence import RecurringJob, RecurringTransactionProcessor


logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """At most ``limit`` acquisitions per key in any rolling ``period``.

    State lives in the store so every worker and process shares it. Each
    acquisition first writes the key row, which serializes concurrent
    acquirers for the same key before the window is counted.
    """

    def __init__(
        self,
        factory: Optional[sessionmaker] = None,
        *,
        limit: int = 10,
        period: timedelta = timedelta(minutes=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if limit < 1:
            raise ValueError("Rate limit must be at least 1")
        self.factory = factory
        self.limit = limit
        self.period = period
        self.clock = clock

    def acquire(self, key: str) -> Optional[float]:
        """Record a start and return None, or return seconds until a slot frees."""
        try:
            return self._take_slot(key)
        except OperationalError as exc:
            raise TransientStoreError(
                f"Store unavailable while throttling {key}"
            ) from exc

    def _take_slot(self, key: str) -> Optional[float]:
        now = self.clock()
        window_start = now - self.period
        with session_scope(self.factory) as session:
            self._lock_key(session, key, now)
            session.execute(
                delete(ThrottleHit).where(
                    ThrottleHit.key == key, ThrottleHit.started_at <= window_start
                )
            )
            hits = session.scalars(
                select(ThrottleHit.started_at)
                .where(ThrottleHit.key == key)
                .order_by(ThrottleHit.started_at)
            ).all()
            if len(hits) >= self.limit:
                oldest_blocking = hits[len(hits) - self.limit]
                return (oldest_blocking + self.period - now).total_seconds()
            session.add(ThrottleHit(key=key, started_at=now))
        return None

    def _lock_key(self, session: Session, key: str, now: datetime) -> None:
        touched = session.execute(
            update(ThrottleKey).where(ThrottleKey.key == key).values(touched_at=now)
        ).rowcount
        if touched:
            return
        try:
            with session.begin_nested():
                session.add(ThrottleKey(key=key, touched_at=now))
        except IntegrityError:
            session.execute(
                update(ThrottleKey).where(ThrottleKey.key == key).values(touched_at=now)
            )


@dataclass
class DispatchResult:
    triggered: int = 0
    processed: int = 0
    skipped: int = 0
    deferred: int = 0
    failed: list[tuple[RecurringJob, str]] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "triggered": self.triggered,
            "processed": self.processed,
            "skipped": self.skipped,
            "deferred": self.deferred,
            "failed": [
                {"transactionId": job.transaction_id, "userId": job.user_id, "error": err}
                for job, err in self.failed
            ],
        }


class ThrottledDispatcher:
    def __init__(
        self,
        processor: RecurringTransactionProcessor,
        limiter: SlidingWindowRateLimiter,
        *,
        max_workers: int = 4,
        retry_attempts: int = 3,
        retry_backoff_secs: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.processor = processor
        self.limiter = limiter
        self.max_workers = max_workers
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff_secs = retry_backoff_secs
        self.sleep = sleep

    def dispatch(self, jobs: Iterable[RecurringJob]) -> DispatchResult:
        pending = deque(jobs)
        result = DispatchResult(triggered=len(pending))
        deferred_once: set[RecurringJob] = set()
        futures: list[tuple[RecurringJob, Future]] = []
        # Keys whose limiter state could not be read; their jobs fail, others run.
        unavailable: dict[str, str] = {}

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="recurring"
        ) as pool:
            while pending:
                blocked: dict[str, float] = {}
                waiting: deque[RecurringJob] = deque()
                while pending:
                    job = pending.popleft()
                    key = job.throttle_key
                    if key in unavailable:
                        result.failed.append((job, unavailable[key]))
                        continue
                    wait = blocked.get(key)
                    if wait is None:
                        try:
                            wait = self._acquire(key)
                        except Exception as exc:
                            logger.exception(f"dispatch_throttle_failed: key={key}")
                            unavailable[key] = str(exc)
                            result.failed.append((job, str(exc)))
                            continue
                    if wait is None:
                        futures.append((job, pool.submit(self._run, job)))
                        continue
                    blocked[key] = wait
                    waiting.append(job)
                    deferred_once.add(job)
                if waiting:
                    delay = min(blocked.values())
                    logger.info(
                        f"dispatch_deferred: jobs={len(waiting)} keys={len(blocked)} "
                        f"wait_secs={delay:.1f}"
                    )
                    self.sleep(delay)
                pending = waiting

        violation: Optional[InvariantViolation] = None
        for job, future in futures:
            try:
                posting_id = future.result()
            except InvariantViolation as exc:
                logger.critical(
                    f"dispatch_invariant_violation: transaction_id={job.transaction_id} "
                    f"user_id={job.user_id} error={exc}"
                )
                result.failed.append((job, str(exc)))
                violation = violation or exc
                continue
            except Exception as exc:
                logger.exception(
                    f"dispatch_failed: transaction_id={job.transaction_id} "
                    f"user_id={job.user_id}"
                )
                result.failed.append((job, str(exc)))
                continue
            if posting_id is None:
                result.skipped += 1
            else:
                result.processed += 1

        result.deferred = len(deferred_once)
        logger.info(
            f"dispatch_done: triggered={result.triggered} processed={result.processed} "
            f"skipped={result.skipped} deferred={result.deferred} "
            f"failed={len(result.failed)}"
        )
        if violation is not None:
            raise violation
        return result

    def _retrying(self, label: str) -> Retrying:
        """Exponential backoff for ``TransientStoreError``; the last error is re-raised."""

        def log_retry(state: RetryCallState) -> None:
            logger.warning(
                f"dispatch_retry: {label} attempt={state.attempt_number} "
                f"wait_secs={state.next_action.sleep:.1f} "
                f"error={state.outcome.exception()}"
            )

        return Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff_secs),
            retry=retry_if_exception_type(TransientStoreError),
            sleep=self.sleep,
            before_sleep=log_retry,
            reraise=True,
        )

    def _acquire(self, key: str) -> Optional[float]:
        return self._retrying(f"key={key}")(self.limiter.acquire, key)

    def _run(self, job: RecurringJob) -> Optional[int]:
        return self._retrying(f"transaction_id={job.transaction_id}")(
            self.processor.process, job
        )
