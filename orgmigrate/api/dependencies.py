"""Shared FastAPI dependencies."""

import threading
from typing import Optional

from ..orchestrator import ServiceContainer, build_container

_container: Optional[ServiceContainer] = None
_lock = threading.Lock()


def get_container() -> ServiceContainer:
    """The process-wide services, built on first use."""
    global _container
    with _lock:
        if _container is None:
            _container = build_container()
        return _container


def set_container(container: Optional[ServiceContainer]) -> None:
    """Install (or clear) the services used by the routes."""
    global _container
    with _lock:
        _container = container
