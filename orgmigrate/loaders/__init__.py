"""Loaders for writing records to a target org."""

from .base import BaseLoader, LoadItem, LoadedRecord, LoadResult
from .platform_loader import PlatformLoader

__all__ = ["BaseLoader", "LoadItem", "LoadedRecord", "LoadResult", "PlatformLoader"]
