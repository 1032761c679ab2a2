import re
import threading
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest

from orgmigrate.config import EngineSettings
from orgmigrate.exceptions import AuthError, FatalLoadError
from orgmigrate.models.execution import ExternalIdConfig, ExternalIdStrategy
from orgmigrate.models.record import (
    FieldDescribe,
    ObjectDescribe,
    PlatformErrorDetail,
    QueryResult,
    RowOutcome,
)
from orgmigrate.models.template import (
    EXTERNAL_ID_PLACEHOLDER,
    ETLStep,
    ExtractSpec,
    FieldMapping,
    LoadOperation,
    LoadSpec,
    MigrationTemplate,
    RetryPolicy,
    TransformKind,
    TransformSpec,
)
from orgmigrate.models.token import TokenRecord
from orgmigrate.services.credential_store import InMemoryCredentialStore
from orgmigrate.services.oauth import TokenResponse

SOURCE_ORG = "00D000000000001AAA"
TARGET_ORG = "00D000000000002AAA"

EXT_FIELD = "External_Id__c"

_FROM = re.compile(r"\bFROM\s+(\w+)", re.IGNORECASE)
_IN = re.compile(r"([\w.]+)\s+IN\s+\(((?:\s*'[^']*'\s*,?)+)\)")
_EQ = re.compile(r"([\w.]+)\s+=\s+'([^']*)'")
_NE = re.compile(r"([\w.]+)\s+!=\s+'([^']*)'")


def rid(prefix: str, n: int) -> str:
    """An 18-character record id."""
    return f"{prefix}{n:012d}AAA"


def make_describe(name: str, fields: Dict[str, Any]) -> ObjectDescribe:
    """``fields`` maps name -> type string or a FieldDescribe."""
    described = {}
    for field_name, spec in fields.items():
        if isinstance(spec, FieldDescribe):
            described[field_name] = spec
        else:
            described[field_name] = FieldDescribe(name=field_name, type=spec)
    return ObjectDescribe(name=name, fields=described)


def _value(row: Dict[str, Any], path: str) -> Any:
    value: Any = row
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


class FakePlatformClient:
    """
    In-memory stand-in for PlatformClient.

    Records live per (org, object type). Queries understand ``FROM``,
    quoted ``IN`` lists, ``=`` and ``!=`` against string literals; other
    conditions are ignored.
    """

    def __init__(self, max_concurrency: int = 5):
        self.max_concurrency = max_concurrency
        self.records: Dict[tuple, List[Dict[str, Any]]] = defaultdict(list)
        self.describes: Dict[tuple, ObjectDescribe] = {}

        self.queries: List[tuple] = []
        self.load_calls: List[tuple] = []
        self.bulk_calls: List[tuple] = []
        self.deleted: List[str] = []
        self.probed: List[str] = []

        self.query_errors: Dict[str, Exception] = {}  # substring -> error
        self.query_overrides: Dict[str, List[Dict[str, Any]]] = {}  # substring -> rows
        self.probe_errors: Dict[str, Exception] = {}
        self.load_errors: List[Exception] = []  # raised one per load call
        self.permanent_failures: Dict[str, str] = {}  # key value -> error code
        self.flaky: Dict[str, List[str]] = {}  # key value -> codes for successive attempts
        self.on_load = None

        self._lock = threading.Lock()
        self._counter = 0

    # Setup helpers

    def add_describe(self, org_id: str, object_type: str, fields: Dict[str, Any]) -> ObjectDescribe:
        described = make_describe(object_type, fields)
        self.describes[(org_id, object_type)] = described
        return described

    def add_record(self, org_id: str, object_type: str, record: Dict[str, Any]) -> Dict[str, Any]:
        self.records[(org_id, object_type)].append(dict(record))
        return record

    def target_records(self, object_type: str) -> List[Dict[str, Any]]:
        return self.records[(TARGET_ORG, object_type)]

    # Client surface

    def probe(self, org_id: str) -> Dict[str, Any]:
        self.probed.append(org_id)
        if org_id in self.probe_errors:
            raise self.probe_errors[org_id]
        return {"DailyApiRequests": {"Max": 15000, "Remaining": 14000}}

    def describe(self, org_id: str, object_type: str) -> ObjectDescribe:
        described = self.describes.get((org_id, object_type))
        if described is None:
            raise FatalLoadError(f"{object_type} not found", error_code="NOT_FOUND", status_code=404)
        return described

    def query(self, org_id: str, soql: str) -> QueryResult:
        self.queries.append((org_id, soql))
        for fragment, error in self.query_errors.items():
            if fragment in soql:
                raise error
        for fragment, rows in self.query_overrides.items():
            if fragment in soql:
                return QueryResult(records=[dict(r) for r in rows], total_size=len(rows))

        object_type = _FROM.search(soql).group(1)
        where = soql.split(" WHERE ", 1)[1] if " WHERE " in soql else ""
        in_conditions = [
            (field, [v.strip().strip("'") for v in values.split(",") if v.strip()])
            for field, values in _IN.findall(where)
        ]
        eq_conditions = _EQ.findall(where)
        ne_conditions = _NE.findall(where)

        rows = []
        for row in self.records[(org_id, object_type)]:
            if any(str(_value(row, f)) not in values for f, values in in_conditions):
                continue
            if any(str(_value(row, f)) != v for f, v in eq_conditions):
                continue
            if any(str(_value(row, f)) == v for f, v in ne_conditions):
                continue
            rows.append(dict(row))
        if " LIMIT 1" in soql:
            rows = rows[:1]
        return QueryResult(records=rows, total_size=len(rows))

    def load_records(self, org_id, object_type, operation, records, external_id_field=None) -> List[RowOutcome]:
        with self._lock:
            self.load_calls.append((org_id, object_type, operation, [dict(r) for r in records], external_id_field))
        return self._write(org_id, object_type, operation, records, external_id_field)

    def bulk_load(self, org_id, object_type, operation, records, external_id_field=None) -> List[RowOutcome]:
        with self._lock:
            self.bulk_calls.append((org_id, object_type, operation, [dict(r) for r in records], external_id_field))
        return self._write(org_id, object_type, operation, records, external_id_field)

    def delete_records(self, org_id: str, record_ids) -> List[RowOutcome]:
        outcomes = []
        with self._lock:
            for index, record_id in enumerate(record_ids):
                self.deleted.append(record_id)
                for key, rows in self.records.items():
                    if key[0] == org_id:
                        rows[:] = [r for r in rows if r.get("Id") != record_id]
                outcomes.append(RowOutcome(index=index, success=True, id=record_id))
        return outcomes

    def _write(self, org_id, object_type, operation, records, external_id_field) -> List[RowOutcome]:
        if self.on_load is not None:
            self.on_load(object_type, records)
        with self._lock:
            if self.load_errors:
                raise self.load_errors.pop(0)

            outcomes = []
            for index, record in enumerate(records):
                key = record.get("Id") if operation == LoadOperation.UPDATE else record.get(external_id_field)
                key = str(key)

                code = self.permanent_failures.get(key)
                if code is None and self.flaky.get(key):
                    code = self.flaky[key].pop(0)
                if code:
                    outcomes.append(RowOutcome(
                        index=index,
                        success=False,
                        errors=[PlatformErrorDetail(code=code, message=f"{code} on {key}")],
                    ))
                    continue

                outcomes.append(self._store(org_id, object_type, operation, index, record, external_id_field))
            return outcomes

    def _store(self, org_id, object_type, operation, index, record, external_id_field) -> RowOutcome:
        rows = self.records[(org_id, object_type)]
        existing = None
        if operation == LoadOperation.UPDATE:
            existing = next((r for r in rows if r.get("Id") == record.get("Id")), None)
        elif operation == LoadOperation.UPSERT:
            existing = next((r for r in rows if r.get(external_id_field) == record.get(external_id_field)), None)

        if existing is not None:
            existing.update(record)
            return RowOutcome(index=index, success=True, id=existing["Id"], created=False)

        self._counter += 1
        new_id = rid("a9Z", self._counter)
        rows.append(dict(record, Id=new_id))
        return RowOutcome(index=index, success=True, id=new_id, created=True)


class FakeOAuthClient:
    """Returns queued responses (or raises queued errors) for refresh calls."""

    def __init__(self):
        self.responses: List[Any] = []
        self.refresh_calls: List[tuple] = []
        self.exchange_calls: List[tuple] = []

    def refresh(self, org_type: str, refresh_token: str) -> TokenResponse:
        self.refresh_calls.append((org_type, refresh_token))
        if not self.responses:
            raise AuthError("Token request failed: invalid_grant", error_code="invalid_grant", status_code=400)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def exchange_code(self, org_type: str, code: str, code_verifier: str) -> TokenResponse:
        self.exchange_calls.append((org_type, code, code_verifier))
        return token_response("exchanged-access", refresh_token="exchanged-refresh")


def token_response(access_token: str, refresh_token: Optional[str] = None, lifetime: int = 7200) -> TokenResponse:
    issued_at = datetime.utcnow()
    return TokenResponse(
        access_token=access_token,
        instance_url="https://example.my.salesforce.com",
        refresh_token=refresh_token,
        issued_at=issued_at,
        expires_at=issued_at + timedelta(seconds=lifetime),
    )


def token_record(org_id: str, expires_in: int = 3600, refresh_token: Optional[str] = "refresh-1") -> TokenRecord:
    return TokenRecord(
        org_id=org_id,
        access_token=f"access-{org_id}",
        refresh_token=refresh_token,
        instance_url="https://example.my.salesforce.com",
        expires_at=datetime.utcnow() + timedelta(seconds=expires_in),
    )


def ext_config(object_type: str, source_field: str = EXT_FIELD, target_field: str = EXT_FIELD) -> ExternalIdConfig:
    return ExternalIdConfig(
        object_type=object_type,
        source_field=source_field,
        target_field=target_field,
        source_strategy=ExternalIdStrategy.FALLBACK,
        target_strategy=ExternalIdStrategy.FALLBACK,
    )


def simple_step(
    name: str,
    object_type: str,
    dependencies=(),
    lookups: Optional[Dict[str, str]] = None,
    optional: bool = False,
    operation: LoadOperation = LoadOperation.UPSERT,
    batch_size: int = 200,
    retry: Optional[RetryPolicy] = None,
    parent_step: Optional[str] = None,
    parent_field: Optional[str] = None,
    required_lookups: bool = True,
    validation=None,
) -> ETLStep:
    """A step copying Name and mapping each ``lookups`` field onto ``lookup_object``."""
    mappings = [
        FieldMapping("Id", EXTERNAL_ID_PLACEHOLDER),
        FieldMapping("Name", "Name"),
    ]
    for field_name, lookup_object in (lookups or {}).items():
        mappings.append(FieldMapping(
            field_name,
            field_name,
            kind=TransformKind.LOOKUP,
            required=required_lookups,
            options={"lookup_object": lookup_object},
        ))
    columns = ["Id", "Name"] + list(lookups or {})
    if parent_field and parent_field not in columns:
        columns.append(parent_field)
    select = ", ".join(columns)
    if parent_step:
        query = f"SELECT {select}, {{externalIdField}} FROM {object_type}"
    else:
        query = f"SELECT {select}, {{externalIdField}} FROM {object_type} WHERE Id IN ({{selectedRecordIds}})"
    return ETLStep(
        name=name,
        dependencies=tuple(dependencies),
        optional=optional,
        extract=ExtractSpec(
            object_type=object_type,
            query=query,
            parent_step=parent_step,
            parent_field=parent_field,
        ),
        transform=TransformSpec(field_mappings=tuple(mappings)),
        load=LoadSpec(
            object_type=object_type,
            operation=operation,
            batch_size=batch_size,
            retry=retry or RetryPolicy(max_attempts=3, backoff_seconds=0.5),
        ),
        validation=validation,
    )


def make_template(*steps: ETLStep, template_id: str = "test-template") -> MigrationTemplate:
    return MigrationTemplate(id=template_id, name="Test Template", steps=tuple(steps))


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        client_id="test-client",
        bulk_threshold=1000,
        large_selection_threshold=5,
        max_request_retries=2,
        request_backoff_seconds=0.1,
    )


@pytest.fixture
def client() -> FakePlatformClient:
    return FakePlatformClient()


@pytest.fixture
def oauth() -> FakeOAuthClient:
    return FakeOAuthClient()


@pytest.fixture
def credential_store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore({
        SOURCE_ORG: token_record(SOURCE_ORG),
        TARGET_ORG: token_record(TARGET_ORG),
    })


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    return sleeps.append
