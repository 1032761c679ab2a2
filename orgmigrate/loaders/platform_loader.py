"""Loader writing to a target org through the platform client."""

import logging
import time
from typing import Callable, List, Optional

from ..models.record import RowOutcome
from ..models.template import LoadOperation, RetryPolicy
from .base import BaseLoader, LoadItem

logger = logging.getLogger(__name__)


class PlatformLoader(BaseLoader):
    """
    Writes records to one object type in one org.

    Uses the bulk ingest path when ``use_bulk`` is set, otherwise the
    synchronous collections path.
    """

    def __init__(
        self,
        client,
        org_id: str,
        object_type: str,
        operation: LoadOperation,
        external_id_field: Optional[str],
        use_bulk: bool = False,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the loader.

        Args:
            client: PlatformClient
            org_id: Target org
            object_type: Target object type
            operation: insert, update or upsert
            external_id_field: Resolved target external-id field
            use_bulk: Submit through bulk ingest jobs
            retry_policy: Retry behaviour for transient failures
            sleep: Sleep function (injected in tests)
        """
        super().__init__(object_type, retry_policy, sleep)
        self.client = client
        self.org_id = org_id
        self.operation = operation
        self.external_id_field = external_id_field
        self.use_bulk = use_bulk

    def submit(self, items: List[LoadItem]) -> List[RowOutcome]:
        records = [item.payload for item in items]
        if self.use_bulk:
            return self.client.bulk_load(
                self.org_id, self.object_type, self.operation, records, self.external_id_field
            )
        return self.client.load_records(
            self.org_id, self.object_type, self.operation, records, self.external_id_field
        )
