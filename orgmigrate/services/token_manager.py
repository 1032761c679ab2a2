"""Per-org OAuth token lifecycle: caching, refresh-on-demand and background refresh."""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..config import EngineSettings
from ..exceptions import AuthError, MigrationError, PlatformError
from ..models.token import Token, TokenRecord
from .credential_store import CredentialStore
from .oauth import OAuthClient, TokenResponse

logger = logging.getLogger(__name__)


class TokenManager:
    """
    Owns one TokenRecord per org.

    Supports:
    - Returning a cached token while it is outside the safety margin
    - Synchronous refresh when a token is near expiry or rejected (401)
    - Background refresh of tokens nearing expiry for every known org
    - Suspending refresh after repeated failures until a new grant arrives
    - Health reporting without exposing token values

    Records are mutated only under the manager's lock; refreshes for one
    org are serialized by a per-org lock so concurrent callers share one
    exchange.
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        oauth_client: OAuthClient,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = credential_store
        self.oauth = oauth_client
        self.settings = settings or EngineSettings()
        self.clock = clock

        self._records: Dict[str, TokenRecord] = {}
        self._lock = threading.Lock()
        self._refresh_locks: Dict[str, threading.Lock] = {}

        self._scheduler: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # Token access

    def get_valid_token(self, org_id: str) -> Token:
        """
        Get a usable access token for an org.

        Args:
            org_id: Connected org identifier

        Returns:
            Token; ``stale`` is set when a refresh just failed but the
            previous token is still being handed out

        Raises:
            AuthError: org not connected, or reconnect required
        """
        with self._lock:
            record = self._load(org_id)
            if record.requires_reconnect:
                raise self._reconnect_error(record)
            if not record.expires_within(self.settings.refresh_margin_seconds, self.clock()):
                return record.to_token()

        return self._refresh(org_id, force=False)

    def force_refresh(self, org_id: str) -> Token:
        """Refresh regardless of expiry; used after the platform rejects a token."""
        with self._lock:
            record = self._load(org_id)
            if record.requires_reconnect:
                raise self._reconnect_error(record)
        return self._refresh(org_id, force=True)

    def _load(self, org_id: str) -> TokenRecord:
        """Cached record, falling back to the store. Caller holds the lock."""
        record = self._records.get(org_id)
        if record is None:
            record = self.store.load_record(org_id)
            if record is None:
                raise AuthError(f"Org {org_id} is not connected", org_id=org_id, requires_reconnect=True)
            self._records[org_id] = record
        return record

    def _refresh_lock(self, org_id: str) -> threading.Lock:
        with self._lock:
            return self._refresh_locks.setdefault(org_id, threading.Lock())

    def _refresh(self, org_id: str, force: bool) -> Token:
        with self._refresh_lock(org_id):
            with self._lock:
                record = self._load(org_id)
                if record.requires_reconnect:
                    raise self._reconnect_error(record)
                # Another caller may have refreshed while we waited
                if not force and not record.expires_within(self.settings.refresh_margin_seconds, self.clock()):
                    return record.to_token()
                refresh_token = record.refresh_token
                org_type = record.org_type
                record.last_refresh_attempt = self.clock()

            if not refresh_token:
                return self._record_failure(org_id, "NO_REFRESH_TOKEN", force)

            try:
                response = self.oauth.refresh(org_type, refresh_token)
            except PlatformError as e:
                return self._record_failure(org_id, e.error_code, force)

            return self._record_success(org_id, response)

    def _record_success(self, org_id: str, response: TokenResponse) -> Token:
        with self._lock:
            record = self._records[org_id]
            now = self.clock()
            record.access_token = response.access_token
            if response.instance_url:
                record.instance_url = response.instance_url
            if response.refresh_token:
                record.refresh_token = response.refresh_token
            record.expires_at = response.expires_at or now + timedelta(
                seconds=self.settings.default_token_lifetime_seconds
            )
            record.last_refresh_success = now
            record.consecutive_failures = 0
            record.last_error = None
            token = record.to_token()
            snapshot = TokenRecord.from_dict(record.to_dict())

        self.store.save_credentials(org_id, snapshot)
        logger.info(f"Refreshed token for org {org_id} (expires {snapshot.expires_at.isoformat()})")
        return token

    def _record_failure(self, org_id: str, error_code: Optional[str], force: bool) -> Token:
        threshold = self.settings.failure_threshold
        with self._lock:
            record = self._records[org_id]
            record.consecutive_failures += 1
            record.last_error = error_code or "REFRESH_FAILED"
            failures = record.consecutive_failures
            if failures >= threshold:
                record.requires_reconnect = True
            snapshot = TokenRecord.from_dict(record.to_dict())

        self.store.save_credentials(org_id, snapshot)

        if snapshot.requires_reconnect:
            logger.error(
                f"Token refresh for org {org_id} failed {failures} times in a row "
                f"({snapshot.last_error}); org requires reconnect"
            )
            raise self._reconnect_error(snapshot)

        warning = (
            f"Token refresh failed for org {org_id} ({snapshot.last_error}), "
            f"attempt {failures}/{threshold}"
        )
        logger.warning(warning)

        if force or not snapshot.access_token:
            raise AuthError(warning, org_id=org_id, error_code=snapshot.last_error)
        return snapshot.to_token(stale=True, warning=warning)

    @staticmethod
    def _reconnect_error(record: TokenRecord) -> AuthError:
        return AuthError(
            f"Org {record.org_id} requires reconnect: automatic token refresh is suspended",
            org_id=record.org_id,
            requires_reconnect=True,
            error_code="RECONNECT_REQUIRED",
        )

    # Grants

    def register_grant(self, org_id: str, response: TokenResponse, org_type: str = "production") -> TokenRecord:
        """
        Store a fresh OAuth grant, clearing any reconnect state.

        Args:
            org_id: Org the grant belongs to
            response: Parsed token endpoint response
            org_type: production or sandbox

        Returns:
            The new token record
        """
        now = self.clock()
        record = TokenRecord(
            org_id=org_id,
            access_token=response.access_token,
            refresh_token=response.refresh_token,
            instance_url=response.instance_url,
            org_type=org_type,
            expires_at=response.expires_at or now + timedelta(seconds=self.settings.default_token_lifetime_seconds),
            last_refresh_success=now,
            connected_at=now,
        )
        with self._lock:
            self._records[org_id] = record
            snapshot = TokenRecord.from_dict(record.to_dict())
        self.store.save_credentials(org_id, snapshot)
        logger.info(f"Registered new grant for org {org_id} ({org_type})")
        return snapshot

    def exchange_authorization_code(
        self,
        org_id: str,
        code: str,
        code_verifier: str,
        org_type: str = "production",
    ) -> TokenRecord:
        """Complete a PKCE authorization-code exchange and register the grant."""
        response = self.oauth.exchange_code(org_type, code, code_verifier)
        return self.register_grant(org_id, response, org_type)

    def forget(self, org_id: str) -> None:
        """Drop the cached record (the store keeps its copy)."""
        with self._lock:
            self._records.pop(org_id, None)

    # Background refresh

    def known_org_ids(self) -> List[str]:
        with self._lock:
            cached = list(self._records)
        ids = list(cached)
        for org_id in self.store.list_org_ids():
            if org_id not in ids:
                ids.append(org_id)
        return ids

    def refresh_due_tokens(self) -> Dict[str, bool]:
        """
        Refresh every token that will enter the safety margin before the
        next scheduler tick.

        Returns:
            org id -> whether the refresh succeeded, for orgs that were due
        """
        lookahead = self.settings.refresh_margin_seconds + self.settings.refresh_interval_seconds
        results: Dict[str, bool] = {}

        for org_id in self.known_org_ids():
            with self._lock:
                try:
                    record = self._load(org_id)
                except AuthError:
                    continue
                if record.requires_reconnect:
                    continue
                due = record.expires_within(lookahead, self.clock())
            if not due:
                continue

            try:
                self._refresh(org_id, force=True)
                results[org_id] = True
            except MigrationError as e:
                logger.warning(f"Scheduled refresh failed for org {org_id}: {e.code}")
                results[org_id] = False

        if results:
            logger.info(
                f"Scheduled refresh: {sum(results.values())}/{len(results)} due tokens refreshed"
            )
        return results

    def start_scheduler(self, interval_seconds: Optional[float] = None) -> None:
        """Start the background refresh thread (idempotent)."""
        if self._scheduler and self._scheduler.is_alive():
            return
        interval = interval_seconds or self.settings.refresh_interval_seconds
        self._stop_event.clear()
        self._scheduler = threading.Thread(
            target=self._run_scheduler,
            args=(interval,),
            name="token-refresh",
            daemon=True,
        )
        self._scheduler.start()
        logger.info(f"Token refresh scheduler started (every {interval}s)")

    def stop_scheduler(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._scheduler:
            self._scheduler.join(timeout)
            self._scheduler = None
        logger.info("Token refresh scheduler stopped")

    def _run_scheduler(self, interval: float) -> None:
        while not self._stop_event.is_set():
            try:
                self.refresh_due_tokens()
            except Exception:
                logger.exception("Token refresh cycle failed")
            self._stop_event.wait(interval)

    # Reporting

    def health_report(self) -> Dict[str, Any]:
        """Totals plus per-org metadata; never token values."""
        details = []
        for org_id in self.known_org_ids():
            with self._lock:
                try:
                    record = self._load(org_id)
                except AuthError:
                    continue
                details.append(record.health())

        require_reconnect = sum(1 for d in details if d["requires_reconnect"])
        unhealthy = sum(1 for d in details if d["requires_reconnect"] or d["consecutive_failures"] > 0)
        return {
            "generated_at": self.clock().isoformat(),
            "total_orgs": len(details),
            "healthy_orgs": len(details) - unhealthy,
            "unhealthy_orgs": unhealthy,
            "require_reconnect": require_reconnect,
            "details": details,
        }
