"""Utility modules."""

from stageflow.utils.normalization import normalize_email, normalize_name, normalize_phone
from stageflow.utils.pagination import PaginationParams, get_pagination, page_count

__all__ = [
    # Normalization
    "normalize_email",
    "normalize_name",
    "normalize_phone",
    # Pagination
    "PaginationParams",
    "get_pagination",
    "page_count",
]
