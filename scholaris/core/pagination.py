"""
Page/limit handling for list endpoints.
"""

import math
from typing import Any, Dict, Tuple

from .exceptions import ValidationError

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


def page_window(page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> Tuple[int, int]:
    """Validate 1-based ``page``/``limit`` and return (skip, limit)."""
    if page < 1:
        raise ValidationError("page must be at least 1", details={"field": "page"})
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", details={"field": "limit"})
    return (page - 1) * limit, limit


def pagination(page: int, limit: int, total: int) -> Dict[str, Any]:
    return {
        'page': page,
        'limit': limit,
        'totalPages': math.ceil(total / limit) if limit else 0,
        'totalDocs': total,
    }
