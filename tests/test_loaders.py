import pytest

from conftest import EXT_FIELD, TARGET_ORG, FakePlatformClient
from orgmigrate.exceptions import FatalLoadError, TransientLoadError
from orgmigrate.loaders.base import LoadItem
from orgmigrate.loaders.platform_loader import PlatformLoader
from orgmigrate.models.template import LoadOperation, RetryPolicy

OBJECT = "Thing__c"


def _items(*source_ids):
    return [LoadItem(source_id=s, payload={EXT_FIELD: s, "Name": f"Thing {s}"}) for s in source_ids]


def _loader(client, fake_sleep, policy=None, use_bulk=False):
    return PlatformLoader(
        client,
        TARGET_ORG,
        OBJECT,
        LoadOperation.UPSERT,
        EXT_FIELD,
        use_bulk=use_bulk,
        retry_policy=policy or RetryPolicy(max_attempts=3, backoff_seconds=1.0),
        sleep=fake_sleep,
    )


def test_all_rows_succeed_first_time(client, fake_sleep, sleeps):
    result = _loader(client, fake_sleep).load_batch(_items("s1", "s2"))

    assert result.total_succeeded == 2
    assert result.total_failed == 0
    assert len(result.created_ids) == 2
    assert sleeps == []
    assert len(client.load_calls) == 1


def test_retryable_row_is_resent_alone(client, fake_sleep, sleeps):
    client.flaky["s2"] = ["UNABLE_TO_LOCK_ROW"]

    result = _loader(client, fake_sleep).load_batch(_items("s1", "s2", "s3"))

    assert result.total_succeeded == 3
    assert [len(call[3]) for call in client.load_calls] == [3, 1]
    retried = next(r for r in result.results if r.source_id == "s2")
    assert retried.attempts == 2
    assert sleeps == [1.0]


def test_retries_never_exceed_max_attempts_and_backoff_grows(client, fake_sleep, sleeps):
    client.flaky["s1"] = ["UNABLE_TO_LOCK_ROW"] * 10

    result = _loader(client, fake_sleep, RetryPolicy(max_attempts=4, backoff_seconds=0.5)).load_batch(_items("s1"))

    assert len(client.load_calls) == 4
    assert result.total_failed == 1
    failed = result.results[0]
    assert failed.attempts == 4
    assert failed.error_code == "UNABLE_TO_LOCK_ROW"
    assert "Retries exhausted" in failed.error
    assert sleeps == [0.5, 1.0, 2.0]
    assert all(a <= b for a, b in zip(sleeps, sleeps[1:]))


def test_non_retryable_row_fails_immediately(client, fake_sleep, sleeps):
    client.permanent_failures["s1"] = "FIELD_CUSTOM_VALIDATION_EXCEPTION"

    result = _loader(client, fake_sleep).load_batch(_items("s1", "s2"))

    assert result.total_succeeded == 1
    failed = next(r for r in result.results if not r.success)
    assert failed.error_code == "FIELD_CUSTOM_VALIDATION_EXCEPTION"
    assert failed.attempts == 1
    assert len(client.load_calls) == 1
    assert sleeps == []


def test_transient_batch_error_retries_whole_batch(client, fake_sleep, sleeps):
    client.load_errors.append(TransientLoadError("Server busy", error_code="SERVER_UNAVAILABLE", status_code=503))

    result = _loader(client, fake_sleep).load_batch(_items("s1", "s2"))

    assert result.total_succeeded == 2
    assert len(client.load_calls) == 2
    assert result.retry_delays == [1.0]


def test_transient_batch_error_exhausts_attempts(client, fake_sleep, sleeps):
    client.load_errors.extend(
        TransientLoadError("Server busy", error_code="SERVER_UNAVAILABLE") for _ in range(5)
    )

    result = _loader(client, fake_sleep, RetryPolicy(max_attempts=2, backoff_seconds=1.0)).load_batch(_items("s1", "s2"))

    assert len(client.load_calls) == 2
    assert result.total_failed == 2
    assert {r.attempts for r in result.results} == {2}
    assert sleeps == [1.0]


def test_fatal_batch_error_fails_every_row(client, fake_sleep, sleeps):
    client.load_errors.append(FatalLoadError("Bad request", error_code="INVALID_FIELD"))

    result = _loader(client, fake_sleep).load_batch(_items("s1", "s2"))

    assert result.total_failed == 2
    assert {r.error_code for r in result.results} == {"INVALID_FIELD"}
    assert sleeps == []


def test_bulk_path_uses_bulk_load(client, fake_sleep):
    _loader(client, fake_sleep, use_bulk=True).load_batch(_items("s1"))

    assert len(client.bulk_calls) == 1
    assert client.load_calls == []


def test_result_count_mismatch_is_fatal(fake_sleep):
    class ShortClient(FakePlatformClient):
        def load_records(self, *args, **kwargs):
            return super().load_records(*args, **kwargs)[:1]

    result = _loader(ShortClient(), fake_sleep).load_batch(_items("s1", "s2"))

    assert result.total_failed == 2
    assert {r.error_code for r in result.results} == {"RESULT_COUNT_MISMATCH"}
    assert "results for 2 rows" in result.results[0].error


def test_result_count_mismatch_on_retry_keeps_earlier_successes(fake_sleep, sleeps):
    class ShortOnRetryClient(FakePlatformClient):
        def load_records(self, *args, **kwargs):
            outcomes = super().load_records(*args, **kwargs)
            return outcomes if len(self.load_calls) == 1 else []

    client = ShortOnRetryClient()
    client.flaky["s2"] = ["UNABLE_TO_LOCK_ROW"]

    result = _loader(client, fake_sleep).load_batch(_items("s1", "s2"))

    assert result.total_succeeded == 1
    assert result.total_failed == 1
    loaded = next(r for r in result.results if r.source_id == "s1")
    assert loaded.success and loaded.target_id
    failed = next(r for r in result.results if r.source_id == "s2")
    assert failed.error_code == "RESULT_COUNT_MISMATCH"
    assert failed.attempts == 2
    assert sleeps == [1.0]


def test_transient_batch_error_outside_policy_is_not_retried(client, fake_sleep, sleeps):
    client.load_errors.extend(
        TransientLoadError("Server busy", error_code="SERVER_UNAVAILABLE", status_code=503) for _ in range(2)
    )
    policy = RetryPolicy(max_attempts=3, backoff_seconds=1.0, retryable_codes=frozenset({"UNABLE_TO_LOCK_ROW"}))

    result = _loader(client, fake_sleep, policy).load_batch(_items("s1", "s2"))

    assert len(client.load_calls) == 1
    assert result.total_failed == 2
    assert {r.error_code for r in result.results} == {"SERVER_UNAVAILABLE"}
    assert {r.attempts for r in result.results} == {1}
    assert sleeps == []


@pytest.mark.parametrize("code", ["NETWORK_ERROR", "HTTP_503"])
def test_network_and_server_errors_retry_by_default(client, fake_sleep, sleeps, code):
    client.load_errors.append(TransientLoadError("Unreachable", error_code=code))

    result = _loader(client, fake_sleep).load_batch(_items("s1"))

    assert result.total_succeeded == 1
    assert sleeps == [1.0]


@pytest.mark.parametrize("attempt, expected", [(1, 2.0), (2, 4.0), (3, 8.0)])
def test_backoff_doubles(attempt, expected):
    assert RetryPolicy(backoff_seconds=2.0).backoff_for(attempt) == expected
