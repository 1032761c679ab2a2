"""Error taxonomy for the migration engine."""

from typing import Any, Dict, Optional


class MigrationError(Exception):
    """Base class for every error raised by the engine."""

    code = "MIGRATION_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.message,
        }


class ConfigurationError(MigrationError):
    """Malformed template or settings; raised before any I/O."""

    code = "CONFIGURATION_ERROR"


class SchemaError(MigrationError):
    """No qualifying external-identifier field for an object type."""

    code = "SCHEMA_ERROR"

    def __init__(self, message: str, org_id: Optional[str] = None, object_type: Optional[str] = None):
        super().__init__(message)
        self.org_id = org_id
        self.object_type = object_type


class PlatformError(MigrationError):
    """An error reported by (or while talking to) the external platform."""

    code = "PLATFORM_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
        org_id: Optional[str] = None,
    ):
        super().__init__(message, code=error_code)
        self.error_code = error_code or self.code
        self.status_code = status_code
        self.org_id = org_id

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["status_code"] = self.status_code
        data["org_id"] = self.org_id
        return data


class TransientLoadError(PlatformError):
    """Retryable failure: rate limit, lock contention, timeout, 5xx."""

    code = "TRANSIENT_ERROR"


class ConnectivityError(TransientLoadError):
    """The org could not be reached."""

    code = "CONNECTIVITY_ERROR"


class FatalLoadError(PlatformError):
    """Non-retryable failure (validation, permission, not found) or exhausted retries."""

    code = "FATAL_ERROR"


class AuthError(PlatformError):
    """
    Expired or invalid credentials.

    ``requires_reconnect`` is set once automatic refresh has been suspended
    for the org and a new OAuth grant is needed.
    """

    code = "AUTH_ERROR"

    def __init__(
        self,
        message: str,
        org_id: Optional[str] = None,
        requires_reconnect: bool = False,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, error_code=error_code, status_code=status_code, org_id=org_id)
        self.requires_reconnect = requires_reconnect

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["requires_reconnect"] = self.requires_reconnect
        return data


class DependencyUnresolved(MigrationError):
    """A lookup references a source record that has no target counterpart."""

    code = "DEPENDENCY_UNRESOLVED"

    def __init__(self, source_id: str, field: str, referenced_id: str):
        super().__init__(
            f"Record {source_id}: lookup {field} references {referenced_id}, "
            f"which has not been migrated to the target org"
        )
        self.source_id = source_id
        self.field = field
        self.referenced_id = referenced_id


class RecordTransformError(MigrationError):
    """A single record could not be transformed (e.g. missing required value)."""

    code = "TRANSFORM_ERROR"

    def __init__(self, message: str, field: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message, code=code)
        self.field = field


class ValidationError(MigrationError):
    """Pre-flight validation produced at least one error-severity issue."""

    code = "VALIDATION_FAILED"

    def __init__(self, result: Any, message: Optional[str] = None):
        errors = result.errors if result is not None else []
        super().__init__(message or f"Pre-flight validation failed with {len(errors)} error(s)")
        self.result = result

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.result is not None:
            data["validation"] = self.result.to_dict()
        return data
