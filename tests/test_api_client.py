import json
import threading
import time

import pytest
import requests

from conftest import TARGET_ORG
from orgmigrate.config import EngineSettings
from orgmigrate.exceptions import AuthError, ConnectivityError, FatalLoadError, TransientLoadError
from orgmigrate.models.template import LoadOperation
from orgmigrate.models.token import Token
from orgmigrate.services.api_client import (
    OrgRateLimiter,
    PlatformClient,
    ResponseKind,
    classify_response,
    correlate_bulk_results,
    records_to_csv,
)

INSTANCE = "https://example.my.salesforce.com"


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=None, headers=None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else json.dumps(body)
        self.headers = headers or {}

    def json(self):
        if self._body is None:
            raise ValueError("No JSON body")
        return self._body


class FakeSession:
    """Replays queued responses; an exception in the queue is raised."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "headers": dict(headers or {}), **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        pass


class StubTokens:
    def __init__(self):
        self.version = 1
        self.refreshes = 0

    def get_valid_token(self, org_id):
        return Token(org_id=org_id, access_token=f"token-{self.version}", instance_url=INSTANCE)

    def force_refresh(self, org_id):
        self.refreshes += 1
        self.version += 1
        return self.get_valid_token(org_id)


@pytest.fixture
def api_settings():
    return EngineSettings(
        max_request_retries=2,
        request_backoff_seconds=0.1,
        max_requests_per_second=0,
        collection_chunk_size=2,
        bulk_poll_interval=1.0,
    )


@pytest.fixture
def tokens():
    return StubTokens()


def make_client(tokens, api_settings, sleeps, *responses):
    session = FakeSession(*responses)
    return PlatformClient(tokens, api_settings, session=session, sleep=sleeps.append), session


# Response classification

@pytest.mark.parametrize("status, body, kind, code", [
    (200, {}, ResponseKind.SUCCESS, None),
    (401, [{"errorCode": "INVALID_SESSION_ID", "message": "Session expired"}], ResponseKind.AUTH, "INVALID_SESSION_ID"),
    (403, [{"errorCode": "INVALID_SESSION_ID", "message": "x"}], ResponseKind.AUTH, "INVALID_SESSION_ID"),
    (429, None, ResponseKind.TRANSIENT, "HTTP_429"),
    (503, "Service Unavailable", ResponseKind.TRANSIENT, "HTTP_503"),
    (403, [{"errorCode": "REQUEST_LIMIT_EXCEEDED", "message": "x"}], ResponseKind.TRANSIENT, "REQUEST_LIMIT_EXCEEDED"),
    (400, [{"errorCode": "UNABLE_TO_LOCK_ROW", "message": "x"}], ResponseKind.TRANSIENT, "UNABLE_TO_LOCK_ROW"),
    (400, [{"errorCode": "INVALID_FIELD", "message": "No such column"}], ResponseKind.FATAL, "INVALID_FIELD"),
    (404, {"error": "not_found", "error_description": "gone"}, ResponseKind.FATAL, "not_found"),
])
def test_classify_response(status, body, kind, code):
    classified_kind, classified_code, _ = classify_response(status, body)
    assert classified_kind == kind
    assert classified_code == code


# Bulk helpers

def test_records_to_csv_marks_nulls_and_booleans():
    text = records_to_csv([
        {"External_Id__c": "s1", "Name": "One", "Active__c": True},
        {"External_Id__c": "s2", "Name": None, "Rate__c": 1.5},
    ])

    assert text.splitlines() == [
        "External_Id__c,Name,Active__c,Rate__c",
        "s1,One,true,#N/A",
        "s2,#N/A,#N/A,1.5",
    ]


def test_correlate_bulk_results_by_key():
    records = [{"External_Id__c": "s1"}, {"External_Id__c": "s2"}, {"External_Id__c": "s3"}]
    successful = "sf__Id,sf__Created,External_Id__c\na01000000000001AAA,true,s1\n"
    failed = 'sf__Id,sf__Error,External_Id__c\n,"REQUIRED_FIELD_MISSING:Required fields are missing: [Name]",s3\n'

    outcomes = correlate_bulk_results(records, "External_Id__c", successful, failed)

    assert [o.index for o in outcomes] == [0, 1, 2]
    assert outcomes[0].success and outcomes[0].created
    assert outcomes[0].id == "a01000000000001AAA"
    assert outcomes[1].error_code == "BULK_RESULT_MISSING"
    assert outcomes[2].error_code == "REQUIRED_FIELD_MISSING"
    assert outcomes[2].error_message == "Required fields are missing: [Name]"


# Rate limiter

class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def test_limiter_spaces_requests_and_honours_pause():
    clock = FakeClock()
    limiter = OrgRateLimiter(2, 2.0, sleep=clock.sleep, clock=clock)

    for _ in range(3):
        with limiter.slot():
            pass
    assert clock.sleeps == [0.5, 0.5]

    limiter.pause(3.0)
    with limiter.slot():
        pass
    assert clock.sleeps[-1] == pytest.approx(3.0)


def test_limiter_caps_concurrency():
    limiter = OrgRateLimiter(2, 0)

    def work():
        with limiter.slot():
            time.sleep(0.02)

    threads = [threading.Thread(target=work) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert 1 <= limiter.peak_in_flight <= 2


# Client request loop

def test_query_follows_pagination_and_strips_attributes(tokens, api_settings):
    sleeps = []
    client, session = make_client(
        tokens, api_settings, sleeps,
        FakeResponse(body={
            "totalSize": 2,
            "done": False,
            "nextRecordsUrl": "/services/data/v61.0/query/01g-2000",
            "records": [{"attributes": {"type": "Thing__c"}, "Id": "a1", "Parent__r": {"attributes": {}, "Name": "P"}}],
        }),
        FakeResponse(body={"totalSize": 2, "done": True, "records": [{"attributes": {}, "Id": "a2"}]}),
    )

    result = client.query(TARGET_ORG, "SELECT Id FROM Thing__c")

    assert result.records == [{"Id": "a1", "Parent__r": {"Name": "P"}}, {"Id": "a2"}]
    assert result.total_size == 2
    assert session.calls[0]["url"] == f"{INSTANCE}/services/data/v61.0/query"
    assert session.calls[0]["params"] == {"q": "SELECT Id FROM Thing__c"}
    assert session.calls[1]["url"] == f"{INSTANCE}/services/data/v61.0/query/01g-2000"
    assert session.calls[0]["headers"]["Authorization"] == "Bearer token-1"


def test_rejected_token_is_refreshed_once(tokens, api_settings):
    sleeps = []
    client, session = make_client(
        tokens, api_settings, sleeps,
        FakeResponse(401, [{"errorCode": "INVALID_SESSION_ID", "message": "Session expired"}]),
        FakeResponse(body={"DailyApiRequests": {}}),
    )

    client.probe(TARGET_ORG)

    assert tokens.refreshes == 1
    assert session.calls[1]["headers"]["Authorization"] == "Bearer token-2"


def test_second_rejection_raises_auth_error(tokens, api_settings):
    sleeps = []
    rejected = [{"errorCode": "INVALID_SESSION_ID", "message": "Session expired"}]
    client, _ = make_client(tokens, api_settings, sleeps, FakeResponse(401, rejected), FakeResponse(401, rejected))

    with pytest.raises(AuthError) as exc_info:
        client.probe(TARGET_ORG)

    assert exc_info.value.org_id == TARGET_ORG
    assert tokens.refreshes == 1


def test_transient_reads_retry_with_backoff(tokens, api_settings):
    sleeps = []
    client, session = make_client(
        tokens, api_settings, sleeps,
        FakeResponse(503, "Service Unavailable"),
        FakeResponse(503, "Service Unavailable"),
        FakeResponse(body={"name": "Thing__c", "fields": [{"name": "Id", "type": "id"}]}),
    )

    described = client.describe(TARGET_ORG, "Thing__c")

    assert described.has_field("Id")
    assert sleeps == [pytest.approx(0.1), pytest.approx(0.2)]
    assert len(session.calls) == 3


def test_transient_reads_give_up_after_max_retries(tokens, api_settings):
    sleeps = []
    client, _ = make_client(tokens, api_settings, sleeps, *[FakeResponse(503, "Busy") for _ in range(3)])

    with pytest.raises(TransientLoadError) as exc_info:
        client.probe(TARGET_ORG)

    assert exc_info.value.status_code == 503
    assert len(sleeps) == 2


def test_network_errors_raise_connectivity_error(tokens, api_settings):
    sleeps = []
    client, _ = make_client(tokens, api_settings, sleeps, *[requests.ConnectionError("refused") for _ in range(3)])

    with pytest.raises(ConnectivityError):
        client.probe(TARGET_ORG)


def test_fatal_response_raises_immediately(tokens, api_settings):
    sleeps = []
    client, _ = make_client(
        tokens, api_settings, sleeps,
        FakeResponse(400, [{"errorCode": "MALFORMED_QUERY", "message": "unexpected token"}]),
    )

    with pytest.raises(FatalLoadError) as exc_info:
        client.query(TARGET_ORG, "SELECT FROM")

    assert exc_info.value.error_code == "MALFORMED_QUERY"
    assert sleeps == []


def test_load_transient_error_is_left_to_caller(tokens, api_settings):
    sleeps = []
    client, session = make_client(tokens, api_settings, sleeps, FakeResponse(503, "Busy"))

    with pytest.raises(TransientLoadError):
        client.load_records(TARGET_ORG, "Thing__c", LoadOperation.UPSERT, [{"External_Id__c": "s1"}], "External_Id__c")

    assert len(session.calls) == 1


def test_load_rate_limit_is_retried_after_retry_after(tokens, api_settings):
    sleeps = []
    client, session = make_client(
        tokens, api_settings, sleeps,
        FakeResponse(429, None, text="Too many", headers={"Retry-After": "2"}),
        FakeResponse(body=[{"id": "a01000000000001AAA", "success": True, "created": True, "errors": []}]),
    )

    outcomes = client.load_records(
        TARGET_ORG, "Thing__c", LoadOperation.UPSERT, [{"External_Id__c": "s1"}], "External_Id__c"
    )

    assert outcomes[0].success
    assert 2.0 in sleeps
    assert len(session.calls) == 2


def test_upsert_targets_external_id_endpoint_in_chunks(tokens, api_settings):
    sleeps = []
    ok = {"id": "a01000000000001AAA", "success": True, "created": False, "errors": []}
    rejected = {"success": False, "errors": [{"statusCode": "DUPLICATE_VALUE", "message": "dup", "fields": ["Name"]}]}
    client, session = make_client(
        tokens, api_settings, sleeps,
        FakeResponse(body=[ok, rejected]),
        FakeResponse(body=[ok]),
    )
    records = [{"External_Id__c": f"s{n}", "Name": f"Thing {n}"} for n in range(3)]

    outcomes = client.load_records(TARGET_ORG, "Thing__c", LoadOperation.UPSERT, records, "External_Id__c")

    assert [o.index for o in outcomes] == [0, 1, 2]
    assert outcomes[1].error_code == "DUPLICATE_VALUE"
    first = session.calls[0]
    assert first["method"] == "PATCH"
    assert first["url"].endswith("/composite/sobjects/Thing__c/External_Id__c")
    assert first["json"]["allOrNone"] is False
    assert first["json"]["records"][0]["attributes"] == {"type": "Thing__c"}
    assert len(session.calls[1]["json"]["records"]) == 1


def test_insert_marks_rows_created(tokens, api_settings):
    sleeps = []
    client, session = make_client(
        tokens, api_settings, sleeps,
        FakeResponse(body=[{"id": "a01000000000001AAA", "success": True, "errors": []}]),
    )

    outcomes = client.load_records(TARGET_ORG, "Thing__c", LoadOperation.INSERT, [{"Name": "x"}])

    assert outcomes[0].created
    assert session.calls[0]["method"] == "POST"


def test_upsert_without_external_id_field_is_fatal(tokens, api_settings):
    client, _ = make_client(tokens, api_settings, [])

    with pytest.raises(FatalLoadError):
        client.load_records(TARGET_ORG, "Thing__c", LoadOperation.UPSERT, [{"Name": "x"}])


def test_bulk_load_runs_a_job(tokens, api_settings):
    sleeps = []
    client, session = make_client(
        tokens, api_settings, sleeps,
        FakeResponse(body={"id": "7500000001"}),
        FakeResponse(201, text=""),
        FakeResponse(body={"state": "UploadComplete"}),
        FakeResponse(body={"state": "InProgress"}),
        FakeResponse(body={"state": "JobComplete"}),
        FakeResponse(text="sf__Id,sf__Created,External_Id__c\na01000000000001AAA,true,s1\n"),
        FakeResponse(text='sf__Id,sf__Error,External_Id__c\n,"INVALID_FIELD:bad",s2\n'),
    )
    records = [{"External_Id__c": "s1", "Name": "One"}, {"External_Id__c": "s2", "Name": "Two"}]

    outcomes = client.bulk_load(TARGET_ORG, "Thing__c", LoadOperation.UPSERT, records, "External_Id__c")

    assert outcomes[0].success and outcomes[0].created
    assert outcomes[1].error_code == "INVALID_FIELD"
    assert session.calls[0]["json"]["externalIdFieldName"] == "External_Id__c"
    assert session.calls[1]["data"].decode("utf-8").startswith("External_Id__c,Name\n")
    assert sleeps == [1.0]


def test_bulk_job_failure_is_fatal(tokens, api_settings):
    client, _ = make_client(
        tokens, api_settings, [],
        FakeResponse(body={"id": "7500000001"}),
        FakeResponse(201, text=""),
        FakeResponse(body={"state": "UploadComplete"}),
        FakeResponse(body={"state": "Failed", "errorMessage": "InvalidBatch"}),
    )

    with pytest.raises(FatalLoadError, match="InvalidBatch"):
        client.bulk_load(TARGET_ORG, "Thing__c", LoadOperation.INSERT, [{"External_Id__c": "s1"}], "External_Id__c")


def test_identity_is_cached_per_token(tokens, api_settings):
    client, session = make_client(tokens, api_settings, [], FakeResponse(body={"user_id": "005"}))

    assert client.identity(TARGET_ORG) == {"user_id": "005"}
    assert client.identity(TARGET_ORG) == {"user_id": "005"}
    assert len(session.calls) == 1
