"""Deletes records a run created in the target org."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from ..exceptions import PlatformError
from ..models.execution import CreatedRecord

logger = logging.getLogger(__name__)


@dataclass
class RollbackResult:
    """Outcome of a rollback."""
    deleted: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "deleted": self.deleted,
            "failed": self.failed,
            "errors": self.errors,
        }


class RollbackService:
    """
    Removes inserted records, newest step first so children go before parents.

    Only records the platform reported as created are touched; records
    that an upsert updated in place are left alone.
    """

    def __init__(self, client):
        self.client = client

    def rollback(self, org_id: str, created: Sequence[CreatedRecord]) -> RollbackResult:
        """
        Delete created records.

        Args:
            org_id: Target org
            created: Records created by the run, in creation order

        Returns:
            RollbackResult with per-record failures
        """
        result = RollbackResult()
        if not created:
            return result

        groups: List[List[CreatedRecord]] = []
        for record in created:
            if groups and groups[-1][0].step_name == record.step_name:
                groups[-1].append(record)
            else:
                groups.append([record])

        for group in reversed(groups):
            step_name, object_type = group[0].step_name, group[0].object_type
            ids = [r.target_id for r in group]
            try:
                outcomes = self.client.delete_records(org_id, ids)
            except PlatformError as e:
                logger.error(f"Rollback of {len(ids)} {object_type} record(s) from {step_name} failed: {e.message}")
                result.failed += len(ids)
                result.errors.extend(
                    {"target_id": i, "object_type": object_type, "error": e.message} for i in ids
                )
                continue

            for target_id, outcome in zip(ids, outcomes):
                if outcome.success:
                    result.deleted += 1
                else:
                    result.failed += 1
                    result.errors.append({
                        "target_id": target_id,
                        "object_type": object_type,
                        "error": outcome.error_message,
                        "error_code": outcome.error_code,
                    })

        logger.info(f"Rollback on org {org_id}: {result.deleted} deleted, {result.failed} failed")
        return result
