"""
Pagination

Applies page/limit to a SQLAlchemy query and reports the page metadata
the list endpoints return.
"""
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class Page:
    """One page of a query result."""
    items: List[Any] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def offset(self) -> int:
        return page_offset(self.page, self.limit)

    def to_dict(self) -> Dict[str, int]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "total_pages": self.total_pages,
        }


def page_offset(page: int, limit: int) -> int:
    """Row offset of the first item on a 1-based page."""
    return (max(page, 1) - 1) * limit


def paginate(query, page: int = 1, limit: int = 20) -> Page:
    """
    Count the query, then fetch the requested slice.

    Ordering is the caller's responsibility; apply order_by before calling.
    """
    page = max(page, 1)
    total = query.order_by(None).count()
    items = query.offset(page_offset(page, limit)).limit(limit).all()
    return Page(items=items, total=total, page=page, limit=limit)
