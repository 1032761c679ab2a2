"""Extractors for reading records from a source org."""

from .query_extractor import ExtractionResult, QueryExtractor

__all__ = ["ExtractionResult", "QueryExtractor"]
