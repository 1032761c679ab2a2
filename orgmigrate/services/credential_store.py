"""Credential store adapters."""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from ..models.token import OrgCredentials, TokenRecord

logger = logging.getLogger(__name__)


class CredentialStore(ABC):
    """
    Persists OAuth credentials per org.

    Encryption at rest is the concrete store's concern; the engine only sees
    plaintext values in memory.
    """

    @abstractmethod
    def get_credentials(self, org_id: str) -> Optional[OrgCredentials]:
        """Return credentials for an org, or None if it was never connected."""
        pass

    @abstractmethod
    def save_credentials(self, org_id: str, token_record: TokenRecord) -> None:
        """Persist the current token state for an org."""
        pass

    @abstractmethod
    def list_org_ids(self) -> List[str]:
        pass

    def load_record(self, org_id: str) -> Optional[TokenRecord]:
        """
        Full token state for an org.

        Stores that only keep the bare credentials get a fresh record with
        no refresh history.
        """
        credentials = self.get_credentials(org_id)
        if credentials is None:
            return None
        return TokenRecord.from_credentials(org_id, credentials)


class InMemoryCredentialStore(CredentialStore):
    """Process-local store, used by tests and short-lived tools."""

    def __init__(self, records: Optional[Dict[str, TokenRecord]] = None):
        self._records: Dict[str, TokenRecord] = dict(records or {})
        self._lock = threading.Lock()
        self.save_count = 0

    def get_credentials(self, org_id: str) -> Optional[OrgCredentials]:
        record = self.load_record(org_id)
        if record is None:
            return None
        return OrgCredentials(
            access_token=record.access_token,
            refresh_token=record.refresh_token,
            instance_url=record.instance_url,
            org_type=record.org_type,
            expires_at=record.expires_at,
        )

    def load_record(self, org_id: str) -> Optional[TokenRecord]:
        with self._lock:
            record = self._records.get(org_id)
            return TokenRecord.from_dict(record.to_dict()) if record else None

    def save_credentials(self, org_id: str, token_record: TokenRecord) -> None:
        with self._lock:
            self._records[org_id] = TokenRecord.from_dict(token_record.to_dict())
            self.save_count += 1

    def list_org_ids(self) -> List[str]:
        with self._lock:
            return list(self._records)


class JsonFileCredentialStore(CredentialStore):
    """
    Stores token records in a single JSON file keyed by org id.

    Writes go to a temp file and are renamed into place.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, Dict]:
        if not self.path.exists():
            return {}
        with open(self.path, "r") as f:
            return json.load(f)

    def _write(self, data: Dict[str, Dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)

    def get_credentials(self, org_id: str) -> Optional[OrgCredentials]:
        record = self.load_record(org_id)
        if record is None:
            return None
        return OrgCredentials(
            access_token=record.access_token,
            refresh_token=record.refresh_token,
            instance_url=record.instance_url,
            org_type=record.org_type,
            expires_at=record.expires_at,
        )

    def load_record(self, org_id: str) -> Optional[TokenRecord]:
        with self._lock:
            data = self._read().get(org_id)
        if data is None:
            return None
        data.setdefault("org_id", org_id)
        return TokenRecord.from_dict(data)

    def save_credentials(self, org_id: str, token_record: TokenRecord) -> None:
        with self._lock:
            data = self._read()
            data[org_id] = token_record.to_dict()
            self._write(data)
        logger.debug(f"Saved credentials for org {org_id}")

    def list_org_ids(self) -> List[str]:
        with self._lock:
            return list(self._read())
