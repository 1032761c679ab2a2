"""Service layer for the migration engine."""

from .api_client import PlatformClient, OrgRateLimiter, classify_response
from .cloning import CloneResult, CloningService
from .credential_store import CredentialStore, InMemoryCredentialStore, JsonFileCredentialStore
from .execution_engine import ExecutionEngine
from .external_id import ExternalIdResolver
from .oauth import OAuthClient, TokenResponse
from .rollback import RollbackResult, RollbackService
from .session_cache import SessionCache
from .template_registry import TemplateRegistry, resolve_execution_order, validate_template
from .token_manager import TokenManager
from .transformer import TransformEngine
from .validator import ValidationEngine

__all__ = [
    "PlatformClient",
    "OrgRateLimiter",
    "classify_response",
    "CloneResult",
    "CloningService",
    "CredentialStore",
    "InMemoryCredentialStore",
    "JsonFileCredentialStore",
    "ExecutionEngine",
    "ExternalIdResolver",
    "OAuthClient",
    "TokenResponse",
    "RollbackResult",
    "RollbackService",
    "SessionCache",
    "TemplateRegistry",
    "resolve_execution_order",
    "validate_template",
    "TokenManager",
    "TransformEngine",
    "ValidationEngine",
]
