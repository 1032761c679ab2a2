"""Rate-limited client for the platform's query, describe and load endpoints."""

import csv
import io
import logging
import re
import threading
import time
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import EngineSettings
from ..exceptions import AuthError, ConnectivityError, FatalLoadError, TransientLoadError
from ..models.record import ObjectDescribe, PlatformErrorDetail, QueryResult, RowOutcome
from ..models.template import LoadOperation
from ..utils.soql import chunked, validate_field_name, validate_object_name
from .session_cache import SessionCache
from .token_manager import TokenManager

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_CODES = frozenset({
    "REQUEST_LIMIT_EXCEEDED",
    "CONCURRENT_REQUEST_LIMIT_EXCEEDED",
    "SERVER_UNAVAILABLE",
    "REQUEST_TIMEOUT",
    "UNABLE_TO_LOCK_ROW",
})
RATE_LIMIT_CODES = frozenset({"REQUEST_LIMIT_EXCEEDED", "CONCURRENT_REQUEST_LIMIT_EXCEEDED"})
AUTH_ERROR_CODES = frozenset({"INVALID_SESSION_ID", "TOKEN_EXPIRED", "INVALID_AUTH_HEADER"})
TRANSIENT_STATUSES = frozenset({429, 502, 503, 504})

BULK_NULL = "#N/A"
BULK_FINAL_STATES = ("JobComplete", "Failed", "Aborted")

_LIMIT_INFO_PATTERN = re.compile(r"api-usage=(\d+)/(\d+)")


class ResponseKind(str, Enum):
    """Classification of a platform response."""
    SUCCESS = "success"
    TRANSIENT = "transient"
    FATAL = "fatal"
    AUTH = "auth"


def classify_response(status_code: int, body: Any) -> Tuple[ResponseKind, Optional[str], str]:
    """
    Classify a response.

    Returns:
        (kind, platform error code, message)
    """
    if status_code < 400:
        return ResponseKind.SUCCESS, None, ""

    code, message = _first_error(body)
    code = code or f"HTTP_{status_code}"

    if status_code == 401 or code in AUTH_ERROR_CODES:
        return ResponseKind.AUTH, code, message
    if status_code in TRANSIENT_STATUSES or code in TRANSIENT_ERROR_CODES:
        return ResponseKind.TRANSIENT, code, message
    return ResponseKind.FATAL, code, message


def _first_error(body: Any) -> Tuple[Optional[str], str]:
    if isinstance(body, list) and body and isinstance(body[0], dict):
        entry = body[0]
        return entry.get("errorCode") or entry.get("statusCode"), entry.get("message", "")
    if isinstance(body, dict):
        return body.get("errorCode") or body.get("error"), body.get("message") or body.get("error_description", "")
    return None, str(body or "")[:500]


def _strip_attributes(value: Any) -> Any:
    """Drop the ``attributes`` metadata the query endpoint adds to every row."""
    if isinstance(value, dict):
        return {k: _strip_attributes(v) for k, v in value.items() if k != "attributes"}
    if isinstance(value, list):
        return [_strip_attributes(v) for v in value]
    return value


class OrgRateLimiter:
    """Concurrency ceiling plus minimum request spacing for one org."""

    def __init__(
        self,
        max_concurrent: int,
        max_requests_per_second: float,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_concurrent = max_concurrent
        self._semaphore = threading.BoundedSemaphore(max_concurrent)
        self._interval = 1.0 / max_requests_per_second if max_requests_per_second > 0 else 0.0
        self._lock = threading.Lock()
        self._next_slot = 0.0
        self._paused_until = 0.0
        self._in_flight = 0
        self.peak_in_flight = 0
        self.sleep = sleep
        self.clock = clock

    def pause(self, seconds: float) -> None:
        """Hold back new requests for ``seconds`` (rate-limit signal)."""
        with self._lock:
            self._paused_until = max(self._paused_until, self.clock() + seconds)

    def _wait_turn(self) -> None:
        with self._lock:
            now = self.clock()
            start = max(now, self._next_slot, self._paused_until)
            self._next_slot = start + self._interval
        wait = start - now
        if wait > 0:
            self.sleep(wait)

    @contextmanager
    def slot(self) -> Iterator[None]:
        self._semaphore.acquire()
        try:
            with self._lock:
                self._in_flight += 1
                self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
            self._wait_turn()
            yield
        finally:
            with self._lock:
                self._in_flight -= 1
            self._semaphore.release()


class PlatformClient:
    """
    Client for one platform (all connected orgs) with per-org rate limiting.

    Supports:
    - SOQL query with pagination
    - Object describe
    - Synchronous collection loads (insert / update / upsert) and deletes
    - Bulk ingest jobs for large volumes
    - Connectivity probe and cached identity lookups
    - Refresh-and-retry once on authentication failure
    - Backoff on rate-limit and transient responses
    """

    def __init__(
        self,
        token_manager: TokenManager,
        settings: Optional[EngineSettings] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the client.

        Args:
            token_manager: Source of access tokens per org
            settings: Engine settings (rate ceilings, retries, API version)
            session: Custom requests session
            sleep: Sleep function (injected in tests)
        """
        self.tokens = token_manager
        self.settings = settings or EngineSettings()
        self.sleep = sleep
        self._session = session or self._create_session()
        self._limiters: Dict[str, OrgRateLimiter] = {}
        self._limiters_lock = threading.Lock()
        self._identity_cache = SessionCache(
            ttl_seconds=self.settings.identity_cache_ttl,
            max_size=self.settings.identity_cache_max_size,
        )

    def _create_session(self) -> requests.Session:
        """Create a pooled session; status-based retries are handled by the classifier."""
        session = requests.Session()
        retries = Retry(
            total=self.settings.max_request_retries,
            connect=self.settings.max_request_retries,
            read=0,
            status_forcelist=[],
            backoff_factor=self.settings.request_backoff_seconds,
        )
        adapter = HTTPAdapter(
            max_retries=retries,
            pool_maxsize=max(self.settings.max_concurrent_per_org, 10),
        )
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    @property
    def api_path(self) -> str:
        return f"/services/data/v{self.settings.api_version}"

    def limiter(self, org_id: str) -> OrgRateLimiter:
        with self._limiters_lock:
            limiter = self._limiters.get(org_id)
            if limiter is None:
                limiter = OrgRateLimiter(
                    self.settings.max_concurrent_per_org,
                    self.settings.max_requests_per_second,
                    sleep=self.sleep,
                )
                self._limiters[org_id] = limiter
            return limiter

    @property
    def max_concurrency(self) -> int:
        return self.settings.max_concurrent_per_org

    def close(self) -> None:
        self._session.close()
        self._identity_cache.clear()

    # Core request loop

    def request(
        self,
        org_id: str,
        method: str,
        path: str,
        retry_transient: bool = True,
        **kwargs: Any,
    ) -> requests.Response:
        """
        Send a request to an org.

        Args:
            org_id: Org to call
            method: HTTP method
            path: Path under the instance URL, or an absolute URL
            retry_transient: Retry transient failures here; when False only
                rate-limit responses are retried and other transient errors
                are raised for the caller's own retry policy
            **kwargs: Passed to ``requests.Session.request``

        Returns:
            The successful response

        Raises:
            AuthError: still rejected after one refresh, or reconnect required
            TransientLoadError / ConnectivityError: retries exhausted
            FatalLoadError: non-retryable response
        """
        attempt = 0
        refreshed = False

        while True:
            token = self.tokens.get_valid_token(org_id)
            url = path if path.startswith("http") else f"{token.instance_url}{path}"
            headers = dict(kwargs.pop("headers", None) or {})
            headers["Authorization"] = f"Bearer {token.access_token}"
            headers.setdefault("Accept", "application/json")

            response = None
            network_error: Optional[Exception] = None
            with self.limiter(org_id).slot():
                try:
                    response = self._session.request(
                        method, url, headers=headers, timeout=self.settings.timeout, **kwargs
                    )
                except (requests.ConnectionError, requests.Timeout) as e:
                    network_error = e
            kwargs["headers"] = {k: v for k, v in headers.items() if k != "Authorization"}

            if network_error is not None:
                kind, code, message = ResponseKind.TRANSIENT, "NETWORK_ERROR", type(network_error).__name__
                retry_after = None
            else:
                self._observe_limits(org_id, response)
                kind, code, message = classify_response(response.status_code, _safe_json(response))
                retry_after = _retry_after(response)

            if kind == ResponseKind.SUCCESS:
                return response

            if kind == ResponseKind.AUTH:
                if refreshed:
                    raise AuthError(
                        f"Org {org_id} rejected refreshed credentials: {message}",
                        org_id=org_id,
                        error_code=code,
                        status_code=response.status_code,
                    )
                logger.info(f"Access token rejected for org {org_id} ({code}); refreshing once")
                self.tokens.force_refresh(org_id)
                refreshed = True
                continue

            if kind == ResponseKind.FATAL:
                raise FatalLoadError(
                    f"{method} {path} failed: {code} {message}".strip(),
                    error_code=code,
                    status_code=response.status_code,
                    org_id=org_id,
                )

            rate_limited = code in RATE_LIMIT_CODES or (response is not None and response.status_code == 429)
            attempt += 1
            if attempt > self.settings.max_request_retries or not (retry_transient or rate_limited):
                status = response.status_code if response is not None else None
                error_cls = ConnectivityError if network_error is not None else TransientLoadError
                raise error_cls(
                    f"{method} {path} failed after {attempt} attempt(s): {code} {message}".strip(),
                    error_code=code,
                    status_code=status,
                    org_id=org_id,
                )

            delay = retry_after if retry_after is not None else (
                self.settings.request_backoff_seconds * (2 ** (attempt - 1))
            )
            if rate_limited:
                self.limiter(org_id).pause(delay)
            logger.warning(
                f"Transient {code} from org {org_id} on {method} {path}; "
                f"retry {attempt}/{self.settings.max_request_retries} in {delay:.1f}s"
            )
            self.sleep(delay)

    def _observe_limits(self, org_id: str, response: requests.Response) -> None:
        """Slow down when the org's reported API usage is near its daily cap."""
        info = response.headers.get("Sforce-Limit-Info") if response is not None else None
        if not info:
            return
        match = _LIMIT_INFO_PATTERN.search(info)
        if not match:
            return
        used, limit = int(match.group(1)), int(match.group(2))
        if limit and used / limit >= self.settings.api_usage_warning_ratio:
            logger.warning(f"Org {org_id} API usage at {used}/{limit}; throttling")
            self.limiter(org_id).pause(self.settings.request_backoff_seconds)

    # Read operations

    def query(self, org_id: str, soql: str) -> QueryResult:
        """
        Run a SOQL query, following pagination.

        Args:
            org_id: Org to query
            soql: Concrete query string

        Returns:
            QueryResult with all rows (``attributes`` removed)
        """
        response = self.request(org_id, "GET", f"{self.api_path}/query", params={"q": soql})
        data = response.json()
        result = QueryResult(total_size=data.get("totalSize", 0))
        result.records.extend(_strip_attributes(data.get("records", [])))

        while not data.get("done", True) and data.get("nextRecordsUrl"):
            response = self.request(org_id, "GET", data["nextRecordsUrl"])
            data = response.json()
            result.records.extend(_strip_attributes(data.get("records", [])))

        logger.debug(f"Query on org {org_id} returned {len(result.records)} row(s)")
        return result

    def describe(self, org_id: str, object_type: str) -> ObjectDescribe:
        """Describe an object type's fields in an org."""
        validate_object_name(object_type)
        response = self.request(org_id, "GET", f"{self.api_path}/sobjects/{object_type}/describe")
        return ObjectDescribe.from_api(response.json())

    def probe(self, org_id: str) -> Dict[str, Any]:
        """Lightweight read proving the org is reachable with current credentials."""
        response = self.request(org_id, "GET", f"{self.api_path}/limits")
        return response.json()

    def identity(self, org_id: str) -> Dict[str, Any]:
        """User/org identity for the current token, cached for a few minutes."""
        token = self.tokens.get_valid_token(org_id)
        cached = self._identity_cache.get(token.access_token)
        if cached is not None:
            return cached
        response = self.request(org_id, "GET", "/services/oauth2/userinfo")
        identity = response.json()
        self._identity_cache.set(token.access_token, identity)
        return identity

    # Write operations

    def load_records(
        self,
        org_id: str,
        object_type: str,
        operation: LoadOperation,
        records: Sequence[Dict[str, Any]],
        external_id_field: Optional[str] = None,
    ) -> List[RowOutcome]:
        """
        Write records through the synchronous collections endpoint.

        Transient failures of the whole call are raised (after rate-limit
        backoff) so the caller's retry policy decides what to resend.

        Returns:
            One RowOutcome per input record, in input order
        """
        validate_object_name(object_type)
        base = f"{self.api_path}/composite/sobjects"
        if operation == LoadOperation.UPSERT:
            if not external_id_field:
                raise FatalLoadError("Upsert requires an external id field", error_code="MISSING_EXTERNAL_ID")
            method, path = "PATCH", f"{base}/{object_type}/{validate_field_name(external_id_field)}"
        elif operation == LoadOperation.UPDATE:
            method, path = "PATCH", base
        else:
            method, path = "POST", base

        outcomes: List[RowOutcome] = []
        for chunk in chunked(list(records), self.settings.collection_chunk_size):
            payload = {
                "allOrNone": False,
                "records": [dict(r, attributes={"type": object_type}) for r in chunk],
            }
            response = self.request(org_id, method, path, retry_transient=False, json=payload)
            offset = len(outcomes)
            for i, row in enumerate(response.json()):
                outcome = RowOutcome.from_api(offset + i, row)
                if operation == LoadOperation.INSERT and outcome.success:
                    outcome.created = True
                outcomes.append(outcome)

        return outcomes

    def delete_records(self, org_id: str, record_ids: Sequence[str]) -> List[RowOutcome]:
        """Delete records by id, 200 per call."""
        outcomes: List[RowOutcome] = []
        for chunk in chunked(list(record_ids), self.settings.collection_chunk_size):
            response = self.request(
                org_id,
                "DELETE",
                f"{self.api_path}/composite/sobjects",
                params={"ids": ",".join(chunk), "allOrNone": "false"},
            )
            offset = len(outcomes)
            outcomes.extend(RowOutcome.from_api(offset + i, row) for i, row in enumerate(response.json()))
        return outcomes

    def bulk_load(
        self,
        org_id: str,
        object_type: str,
        operation: LoadOperation,
        records: Sequence[Dict[str, Any]],
        external_id_field: Optional[str] = None,
    ) -> List[RowOutcome]:
        """
        Write records through a bulk ingest job.

        Results are matched back to input rows by the key column: the
        external id field for insert/upsert, ``Id`` for update.

        Returns:
            One RowOutcome per input record, in input order
        """
        validate_object_name(object_type)
        key_field = "Id" if operation == LoadOperation.UPDATE else external_id_field
        if not key_field:
            raise FatalLoadError("Bulk load requires a key field", error_code="MISSING_EXTERNAL_ID")

        job_body = {
            "object": object_type,
            "operation": operation.value,
            "contentType": "CSV",
            "lineEnding": "LF",
            "columnDelimiter": "COMMA",
        }
        if operation == LoadOperation.UPSERT:
            job_body["externalIdFieldName"] = external_id_field

        jobs_path = f"{self.api_path}/jobs/ingest"
        job = self.request(org_id, "POST", jobs_path, retry_transient=False, json=job_body).json()
        job_id = job["id"]
        job_path = f"{jobs_path}/{job_id}"
        logger.info(f"Created bulk {operation.value} job {job_id} for {len(records)} {object_type} row(s)")

        self.request(
            org_id,
            "PUT",
            f"{job_path}/batches",
            retry_transient=False,
            data=records_to_csv(records).encode("utf-8"),
            headers={"Content-Type": "text/csv"},
        )
        self.request(org_id, "PATCH", job_path, json={"state": "UploadComplete"})

        state = self._wait_for_job(org_id, job_path)
        if state["state"] != "JobComplete":
            raise FatalLoadError(
                f"Bulk job {job_id} ended in state {state['state']}: {state.get('errorMessage', '')}".strip(),
                error_code="BULK_JOB_FAILED",
                org_id=org_id,
            )

        successful = self.request(org_id, "GET", f"{job_path}/successfulResults/", headers={"Accept": "text/csv"})
        failed = self.request(org_id, "GET", f"{job_path}/failedResults/", headers={"Accept": "text/csv"})
        return correlate_bulk_results(records, key_field, successful.text, failed.text)

    def _wait_for_job(self, org_id: str, job_path: str) -> Dict[str, Any]:
        waited = 0.0
        while True:
            state = self.request(org_id, "GET", job_path).json()
            if state.get("state") in BULK_FINAL_STATES:
                return state
            if waited >= self.settings.bulk_timeout:
                self.request(org_id, "PATCH", job_path, json={"state": "Aborted"})
                raise FatalLoadError(
                    f"Bulk job {job_path.rsplit('/', 1)[-1]} did not finish within {self.settings.bulk_timeout}s",
                    error_code="BULK_JOB_TIMEOUT",
                    org_id=org_id,
                )
            self.sleep(self.settings.bulk_poll_interval)
            waited += self.settings.bulk_poll_interval


def records_to_csv(records: Sequence[Dict[str, Any]]) -> str:
    """Serialize rows for a bulk job; ``None`` becomes the bulk null marker."""
    columns: List[str] = []
    for record in records:
        for key in record:
            if key not in columns:
                columns.append(key)

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns, lineterminator="\n")
    writer.writeheader()
    for record in records:
        row = {}
        for column in columns:
            value = record.get(column)
            if value is None:
                row[column] = BULK_NULL
            elif isinstance(value, bool):
                row[column] = "true" if value else "false"
            else:
                row[column] = value
        writer.writerow(row)
    return buffer.getvalue()


def correlate_bulk_results(
    records: Sequence[Dict[str, Any]],
    key_field: str,
    successful_csv: str,
    failed_csv: str,
) -> List[RowOutcome]:
    """Match bulk result rows back to the submitted records by key value."""
    positions: Dict[str, List[int]] = {}
    for index, record in enumerate(records):
        positions.setdefault(str(record.get(key_field)), []).append(index)

    outcomes: Dict[int, RowOutcome] = {}

    def _take(key: str) -> Optional[int]:
        queue = positions.get(key)
        return queue.pop(0) if queue else None

    for row in csv.DictReader(io.StringIO(successful_csv or "")):
        index = _take(str(row.get(key_field)))
        if index is None:
            continue
        outcomes[index] = RowOutcome(
            index=index,
            success=True,
            id=row.get("sf__Id") or None,
            created=(row.get("sf__Created", "").lower() == "true"),
        )

    for row in csv.DictReader(io.StringIO(failed_csv or "")):
        index = _take(str(row.get(key_field)))
        if index is None:
            continue
        raw_error = row.get("sf__Error", "") or "UNKNOWN_ERROR"
        code, _, message = raw_error.partition(":")
        outcomes[index] = RowOutcome(
            index=index,
            success=False,
            errors=[PlatformErrorDetail(code=code.strip(), message=(message or raw_error).strip())],
        )

    result = []
    for index in range(len(records)):
        result.append(outcomes.get(index) or RowOutcome(
            index=index,
            success=False,
            errors=[PlatformErrorDetail(code="BULK_RESULT_MISSING", message="No result row returned for record")],
        ))
    return result


def _safe_json(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _retry_after(response: requests.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None
