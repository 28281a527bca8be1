"""
Tests for the shared pagination helper.
"""
import pytest
from unittest.mock import MagicMock

from app.services.pagination import Page, page_offset, paginate


class TestPage:

    @pytest.mark.parametrize("total,limit,expected", [
        (0, 20, 0),
        (1, 20, 1),
        (20, 20, 1),
        (21, 20, 2),
        (95, 10, 10),
    ])
    def test_total_pages(self, total, limit, expected):
        assert Page(total=total, limit=limit).total_pages == expected

    def test_offset(self):
        assert page_offset(1, 20) == 0
        assert page_offset(3, 20) == 40
        assert page_offset(0, 20) == 0

    def test_to_dict(self):
        page = Page(items=["a"], total=41, page=2, limit=20)
        assert page.to_dict() == {"page": 2, "limit": 20, "total": 41, "total_pages": 3}


class TestPaginate:

    def test_applies_offset_and_limit(self):
        query = MagicMock()
        query.order_by.return_value.count.return_value = 45
        query.offset.return_value.limit.return_value.all.return_value = ["x", "y"]

        page = paginate(query, page=3, limit=10)

        query.order_by.assert_called_once_with(None)
        query.offset.assert_called_once_with(20)
        query.offset.return_value.limit.assert_called_once_with(10)
        assert page.items == ["x", "y"]
        assert page.total == 45
        assert page.total_pages == 5

    def test_page_below_one_is_clamped(self):
        query = MagicMock()
        query.order_by.return_value.count.return_value = 0
        query.offset.return_value.limit.return_value.all.return_value = []

        page = paginate(query, page=0, limit=10)

        query.offset.assert_called_once_with(0)
        assert page.page == 1
