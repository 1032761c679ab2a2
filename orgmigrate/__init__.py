"""
Org Migration Engine

Template-driven migration of structured business records between two
instances ("orgs") of a multi-tenant CRM platform.

Supports:
- Declarative multi-step migration templates with dependency ordering
- Managed / unmanaged namespace detection for cross-org external ids
- Pre-flight validation (connectivity, existence, dependencies, picklists)
- Batched loads with retry, partial-success tolerance and rollback
- Long-lived OAuth credentials with background refresh
- Rate-limited platform access per org
- Ad hoc single-record cloning
"""

__version__ = "0.1.0"
