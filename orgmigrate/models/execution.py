"""Migration execution models."""

import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

from .template import MigrationTemplate, RetryPolicy


class ExternalIdStrategy(str, Enum):
    """How an org's external-id field was detected."""
    MANAGED = "managed"
    UNMANAGED = "unmanaged"
    FALLBACK = "fallback"


class StepStatus(str, Enum):
    """Outcome of a single step."""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class ExecutionStatus(str, Enum):
    """Aggregate outcome of a run."""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass(frozen=True)
class ExternalIdConfig:
    """
    External-id fields for one object type in one run.

    ``source_field`` keys extraction, ``target_field`` drives loads and is
    the join key. Both are resolved once per run and never change during it.
    """
    object_type: str
    source_field: str
    target_field: str
    source_strategy: ExternalIdStrategy
    target_strategy: ExternalIdStrategy

    @property
    def join_field(self) -> str:
        return self.target_field

    @property
    def is_cross_environment(self) -> bool:
        return self.source_field != self.target_field

    def to_dict(self) -> Dict[str, Any]:
        return {
            "object_type": self.object_type,
            "source_field": self.source_field,
            "target_field": self.target_field,
            "source_strategy": self.source_strategy.value,
            "target_strategy": self.target_strategy.value,
            "join_field": self.join_field,
            "cross_environment": self.is_cross_environment,
        }


@dataclass
class ExecutionConfig:
    """Knobs the caller can set per run."""
    batch_size: Optional[int] = None  # overrides each step's LoadSpec.batch_size
    concurrency: int = 1
    retry_policy: Optional[RetryPolicy] = None  # overrides each step's retry policy
    tolerate_partial_success: bool = True
    rollback_on_failure: bool = False
    bulk_threshold: Optional[int] = None
    deadline: Optional[float] = None  # epoch seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_size": self.batch_size,
            "concurrency": self.concurrency,
            "retry_policy": self.retry_policy.to_dict() if self.retry_policy else None,
            "tolerate_partial_success": self.tolerate_partial_success,
            "rollback_on_failure": self.rollback_on_failure,
            "bulk_threshold": self.bulk_threshold,
            "deadline": self.deadline,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionConfig":
        retry = data.get("retry_policy")
        return cls(
            batch_size=data.get("batch_size"),
            concurrency=data.get("concurrency", 1),
            retry_policy=RetryPolicy.from_dict(retry) if retry else None,
            tolerate_partial_success=data.get("tolerate_partial_success", True),
            rollback_on_failure=data.get("rollback_on_failure", False),
            bulk_threshold=data.get("bulk_threshold"),
            deadline=data.get("deadline"),
        )


@dataclass
class ExecutionProgress:
    """Progress snapshot handed to ``on_progress`` callbacks."""
    run_id: str
    step_index: int
    total_steps: int
    step_name: str
    phase: str  # extract, transform, load, completed
    records_processed: int = 0
    records_succeeded: int = 0
    records_failed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "step_index": self.step_index,
            "total_steps": self.total_steps,
            "step_name": self.step_name,
            "phase": self.phase,
            "records_processed": self.records_processed,
            "records_succeeded": self.records_succeeded,
            "records_failed": self.records_failed,
        }


@dataclass
class ExecutionContext:
    """Everything one run needs; assembled by the caller, discarded afterwards."""
    source_org_id: str
    target_org_id: str
    template: MigrationTemplate
    selected_ids: Dict[str, List[str]] = field(default_factory=dict)  # object type -> ids
    config: ExecutionConfig = field(default_factory=ExecutionConfig)
    external_ids: Optional[Dict[str, ExternalIdConfig]] = None  # resolved when None
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    cancel_event: threading.Event = field(default_factory=threading.Event)
    on_progress: Optional[Callable[[ExecutionProgress], None]] = None

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def should_stop(self) -> bool:
        """True once cancelled or past the deadline."""
        if self.cancel_event.is_set():
            return True
        deadline = self.config.deadline
        return deadline is not None and time.time() >= deadline

    @property
    def total_selected(self) -> int:
        return sum(len(ids) for ids in self.selected_ids.values())


class RecordMapping:
    """
    Source record id -> target record id for one run.

    A source id is mapped at most once; a later conflicting target id is
    rejected rather than overwriting the first.
    """

    def __init__(self):
        self._mapping: Dict[str, str] = {}
        self._by_step: Dict[str, List[str]] = {}

    def add(self, source_id: str, target_id: str, step_name: Optional[str] = None) -> bool:
        """
        Record a successful load.

        Returns:
            False if the source id was already mapped (the first entry is kept)
        """
        if source_id in self._mapping:
            return False
        self._mapping[source_id] = target_id
        if step_name:
            self._by_step.setdefault(step_name, []).append(source_id)
        return True

    def get(self, source_id: str) -> Optional[str]:
        return self._mapping.get(source_id)

    def source_ids_for_step(self, step_name: str) -> List[str]:
        return list(self._by_step.get(step_name, []))

    def __contains__(self, source_id: object) -> bool:
        return source_id in self._mapping

    def __len__(self) -> int:
        return len(self._mapping)

    def __iter__(self) -> Iterator[str]:
        return iter(self._mapping)

    def items(self):
        return self._mapping.items()

    def to_dict(self) -> Dict[str, str]:
        return dict(self._mapping)


@dataclass
class RecordError:
    """Per-record failure detail."""
    source_id: Optional[str]
    message: str
    error_code: str
    field: Optional[str] = None
    attempts: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "message": self.message,
            "error_code": self.error_code,
            "field": self.field,
            "attempts": self.attempts,
        }


@dataclass
class CreatedRecord:
    """A target record inserted by this run (candidate for rollback)."""
    step_name: str
    object_type: str
    target_id: str


@dataclass
class StepResult:
    """Outcome of one step."""
    step_name: str
    object_type: str
    status: StepStatus = StepStatus.SUCCESS
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[RecordError] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    message: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def add_error(self, error: RecordError) -> None:
        self.errors.append(error)
        self.failed += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_name": self.step_name,
            "object_type": self.object_type,
            "status": self.status.value,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": [e.to_dict() for e in self.errors],
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "message": self.message,
        }


@dataclass
class ExecutionResult:
    """Aggregate outcome of a run, handed back to the caller to persist."""
    run_id: str
    template_id: str
    source_org_id: str
    target_org_id: str
    status: ExecutionStatus = ExecutionStatus.FAILED
    step_results: List[StepResult] = field(default_factory=list)
    record_mapping: RecordMapping = field(default_factory=RecordMapping)
    external_ids: Dict[str, ExternalIdConfig] = field(default_factory=dict)
    created_records: List[CreatedRecord] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    halted_at: Optional[str] = None
    error: Optional[str] = None
    cancelled: bool = False
    requires_reconnect: bool = False
    rolled_back: int = 0

    @property
    def total_records(self) -> int:
        return sum(s.total for s in self.step_results)

    @property
    def successful_records(self) -> int:
        return sum(s.succeeded for s in self.step_results)

    @property
    def failed_records(self) -> int:
        return sum(s.failed for s in self.step_results)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def get_step(self, step_name: str) -> Optional[StepResult]:
        for step_result in self.step_results:
            if step_result.step_name == step_name:
                return step_result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "template_id": self.template_id,
            "source_org_id": self.source_org_id,
            "target_org_id": self.target_org_id,
            "status": self.status.value,
            "total_records": self.total_records,
            "successful_records": self.successful_records,
            "failed_records": self.failed_records,
            "steps": [s.to_dict() for s in self.step_results],
            "record_mapping": self.record_mapping.to_dict(),
            "external_ids": {k: v.to_dict() for k, v in self.external_ids.items()},
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "halted_at": self.halted_at,
            "error": self.error,
            "cancelled": self.cancelled,
            "requires_reconnect": self.requires_reconnect,
            "rolled_back": self.rolled_back,
        }
