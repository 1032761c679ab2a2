"""Data models for the migration engine."""

from .template import (
    EXTERNAL_ID_PLACEHOLDER,
    SELECTED_IDS_PLACEHOLDER,
    TransformKind,
    LoadOperation,
    Severity,
    RetryPolicy,
    ExtractSpec,
    FieldMapping,
    TransformSpec,
    LoadSpec,
    DataIntegrityCheck,
    DependencyCheck,
    PicklistCheck,
    ValidationSpec,
    ETLStep,
    MigrationTemplate,
)
from .execution import (
    ExternalIdStrategy,
    ExternalIdConfig,
    ExecutionConfig,
    ExecutionContext,
    ExecutionProgress,
    ExecutionResult,
    ExecutionStatus,
    RecordMapping,
    RecordError,
    CreatedRecord,
    StepResult,
    StepStatus,
)
from .record import (
    QueryResult,
    FieldDescribe,
    ObjectDescribe,
    PlatformErrorDetail,
    RowOutcome,
)
from .validation import ValidationIssue, ValidationResult
from .token import OrgCredentials, Token, TokenRecord

__all__ = [
    "EXTERNAL_ID_PLACEHOLDER",
    "SELECTED_IDS_PLACEHOLDER",
    "TransformKind",
    "LoadOperation",
    "Severity",
    "RetryPolicy",
    "ExtractSpec",
    "FieldMapping",
    "TransformSpec",
    "LoadSpec",
    "DataIntegrityCheck",
    "DependencyCheck",
    "PicklistCheck",
    "ValidationSpec",
    "ETLStep",
    "MigrationTemplate",
    "ExternalIdStrategy",
    "ExternalIdConfig",
    "ExecutionConfig",
    "ExecutionContext",
    "ExecutionProgress",
    "ExecutionResult",
    "ExecutionStatus",
    "RecordMapping",
    "RecordError",
    "CreatedRecord",
    "StepResult",
    "StepStatus",
    "QueryResult",
    "FieldDescribe",
    "ObjectDescribe",
    "PlatformErrorDetail",
    "RowOutcome",
    "ValidationIssue",
    "ValidationResult",
    "OrgCredentials",
    "Token",
    "TokenRecord",
]
