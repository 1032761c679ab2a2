"""Pydantic models for API requests and responses."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models.execution import ExecutionConfig
from ..models.template import RetryPolicy


class RetryPolicyRequest(BaseModel):
    max_attempts: int = Field(3, ge=1, le=10)
    backoff_seconds: float = Field(1.0, ge=0)
    retryable_codes: Optional[List[str]] = None

    def to_policy(self) -> RetryPolicy:
        data: Dict[str, Any] = {
            "max_attempts": self.max_attempts,
            "backoff_seconds": self.backoff_seconds,
        }
        if self.retryable_codes is not None:
            data["retryable_codes"] = self.retryable_codes
        return RetryPolicy.from_dict(data)


class ExecutionOptions(BaseModel):
    batch_size: Optional[int] = Field(None, ge=1, le=10000)
    concurrency: int = Field(1, ge=1, le=25)
    retry_policy: Optional[RetryPolicyRequest] = None
    tolerate_partial_success: bool = True
    rollback_on_failure: bool = False
    bulk_threshold: Optional[int] = Field(None, ge=1)

    def to_config(self) -> ExecutionConfig:
        return ExecutionConfig(
            batch_size=self.batch_size,
            concurrency=self.concurrency,
            retry_policy=self.retry_policy.to_policy() if self.retry_policy else None,
            tolerate_partial_success=self.tolerate_partial_success,
            rollback_on_failure=self.rollback_on_failure,
            bulk_threshold=self.bulk_threshold,
        )


class MigrationRequest(BaseModel):
    template_id: str
    source_org_id: str
    target_org_id: str
    selected_ids: Dict[str, List[str]] = Field(default_factory=dict)


class ExecuteRequest(MigrationRequest):
    options: ExecutionOptions = Field(default_factory=ExecutionOptions)
    skip_validation: bool = False


class CloneRequest(BaseModel):
    source_org_id: str
    target_org_id: str
    source_record_id: str
    object_type: str


class OAuthExchangeRequest(BaseModel):
    code: str
    code_verifier: str
    org_type: str = "production"


class AuthorizeResponse(BaseModel):
    authorization_url: str
    code_verifier: str
    state: str


class TemplateListResponse(BaseModel):
    templates: List[Dict[str, Any]]
    total: int
    categories: List[str] = Field(default_factory=list)
