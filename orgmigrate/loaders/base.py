"""Base loader: batched submission with per-record retry."""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..exceptions import FatalLoadError, TransientLoadError
from ..models.record import RowOutcome
from ..models.template import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class LoadItem:
    """A transformed record waiting to be written."""
    source_id: str
    payload: Dict[str, Any]


@dataclass
class LoadedRecord:
    """Final outcome for one record after all attempts."""
    source_id: str
    success: bool
    target_id: Optional[str] = None
    created: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None
    attempts: int = 1


@dataclass
class LoadResult:
    """Result of loading one batch."""
    object_type: str
    total_attempted: int = 0
    total_succeeded: int = 0
    total_failed: int = 0
    results: List[LoadedRecord] = field(default_factory=list)
    retry_delays: List[float] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def created_ids(self) -> List[str]:
        return [r.target_id for r in self.results if r.success and r.created and r.target_id]

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def add(self, record: LoadedRecord) -> None:
        self.results.append(record)
        if record.success:
            self.total_succeeded += 1
        else:
            self.total_failed += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "object_type": self.object_type,
            "total_attempted": self.total_attempted,
            "total_succeeded": self.total_succeeded,
            "total_failed": self.total_failed,
            "created_ids": self.created_ids,
            "retry_delays": self.retry_delays,
            "duration_seconds": self.duration_seconds,
        }


class BaseLoader(ABC):
    """
    Base class for loaders.

    Subclasses implement ``submit`` for one attempt; ``load_batch`` owns
    the retry loop. Rows the platform rejects with a retryable code are
    resent on their own; a whole-call transient failure resends every
    pending row when its code is in the policy's retryable set.
    Attempts never exceed ``retry_policy.max_attempts`` and the delay
    doubles after each attempt.
    """

    def __init__(
        self,
        object_type: str,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the loader.

        Args:
            object_type: Target object type
            retry_policy: Retry behaviour for transient failures
            sleep: Sleep function (injected in tests)
        """
        self.object_type = object_type
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep

    @abstractmethod
    def submit(self, items: List[LoadItem]) -> List[RowOutcome]:
        """
        Send one attempt for ``items``.

        Returns:
            One outcome per item, in the same order

        Raises:
            TransientLoadError: the whole call may be retried
            FatalLoadError: the whole call failed permanently
        """
        pass

    def load_batch(self, items: List[LoadItem]) -> LoadResult:
        """
        Load a batch, retrying transient failures per the retry policy.

        Args:
            items: Records to write

        Returns:
            LoadResult with one LoadedRecord per item
        """
        policy = self.retry_policy
        result = LoadResult(object_type=self.object_type, total_attempted=len(items))
        result.started_at = datetime.utcnow()

        pending = list(items)
        attempt = 0
        while pending:
            attempt += 1
            try:
                outcomes = self.submit(pending)
            except TransientLoadError as e:
                if not policy.is_retryable(e.error_code):
                    logger.error(
                        f"{self.object_type}: batch of {len(pending)} hit {e.error_code}, "
                        f"which the retry policy does not cover"
                    )
                    self._fail_pending(result, pending, e.message, e.error_code, attempt)
                    break
                if attempt < policy.max_attempts:
                    delay = policy.backoff_for(attempt)
                    logger.warning(
                        f"{self.object_type}: batch of {len(pending)} hit {e.error_code}; "
                        f"attempt {attempt}/{policy.max_attempts}, retrying in {delay:.1f}s"
                    )
                    result.retry_delays.append(delay)
                    self.sleep(delay)
                    continue
                message = f"Retries exhausted after {attempt} attempt(s): {e.message}"
                self._fail_pending(result, pending, message, e.error_code, attempt)
                break
            except FatalLoadError as e:
                logger.error(f"{self.object_type}: batch of {len(pending)} failed: {e.message}")
                self._fail_pending(result, pending, e.message, e.error_code, attempt)
                break

            if len(outcomes) != len(pending):
                # Rows can't be matched to results; earlier attempts' outcomes stand
                message = f"Platform returned {len(outcomes)} results for {len(pending)} rows"
                logger.error(f"{self.object_type}: {message}")
                self._fail_pending(result, pending, message, "RESULT_COUNT_MISMATCH", attempt)
                break

            retry_next = []
            for item, outcome in zip(pending, outcomes):
                if outcome.success:
                    result.add(LoadedRecord(
                        source_id=item.source_id,
                        success=True,
                        target_id=outcome.id,
                        created=outcome.created,
                        attempts=attempt,
                    ))
                elif policy.is_retryable(outcome.error_code) and attempt < policy.max_attempts:
                    retry_next.append(item)
                else:
                    message = outcome.error_message or "Load failed"
                    if policy.is_retryable(outcome.error_code):
                        message = f"Retries exhausted after {attempt} attempt(s): {message}"
                    result.add(LoadedRecord(
                        source_id=item.source_id,
                        success=False,
                        error=message,
                        error_code=outcome.error_code,
                        attempts=attempt,
                    ))

            pending = retry_next
            if pending:
                delay = policy.backoff_for(attempt)
                logger.info(
                    f"{self.object_type}: retrying {len(pending)} row(s) "
                    f"(attempt {attempt + 1}/{policy.max_attempts}) in {delay:.1f}s"
                )
                result.retry_delays.append(delay)
                self.sleep(delay)

        result.completed_at = datetime.utcnow()
        logger.debug(
            f"{self.object_type}: loaded {result.total_succeeded}/{result.total_attempted} "
            f"({result.total_failed} failed)"
        )
        return result

    @staticmethod
    def _fail_pending(
        result: LoadResult,
        pending: List[LoadItem],
        message: str,
        error_code: Optional[str],
        attempt: int,
    ) -> None:
        for item in pending:
            result.add(LoadedRecord(
                source_id=item.source_id,
                success=False,
                error=message,
                error_code=error_code,
                attempts=attempt,
            ))
