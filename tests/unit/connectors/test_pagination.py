"""Unit tests for the Link-header pagination walker."""

import time
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from dora_sync.connectors.pagination import parse_next_link, walk_pages

BASE = "https://api.github.com"


def _mock_response(json_data, link: str | None = None) -> Mock:
    resp = Mock(spec=httpx.Response)
    resp.status_code = 200
    resp.json.return_value = json_data
    resp.headers = {"X-RateLimit-Reset": str(int(time.time()) + 3600)}
    if link:
        resp.headers["Link"] = link
    return resp


def _next(url: str) -> str:
    return f'<{url}>; rel="next", <{BASE}/repos/o/r/commits?page=9>; rel="last"'


# -- parse_next_link -----------------------------------------------------


class TestParseNextLink:
    def test_extracts_next(self):
        header = _next(f"{BASE}/repos/o/r/commits?page=2")
        assert parse_next_link(header, BASE) == f"{BASE}/repos/o/r/commits?page=2"

    def test_next_not_first_entry(self):
        header = (
            f'<{BASE}/x?page=1>; rel="prev", <{BASE}/x?page=3>; rel="next"'
        )
        assert parse_next_link(header, BASE) == f"{BASE}/x?page=3"

    def test_no_next(self):
        header = f'<{BASE}/x?page=1>; rel="first", <{BASE}/x?page=1>; rel="prev"'
        assert parse_next_link(header, BASE) is None

    @pytest.mark.parametrize("header", [None, "", "garbage", "<no-close; rel=\"next\""])
    def test_missing_or_malformed(self, header):
        assert parse_next_link(header, BASE) is None

    def test_rejects_foreign_host(self):
        header = '<https://evil.example.com/steal?page=2>; rel="next"'
        assert parse_next_link(header, BASE) is None

    def test_rejects_prefix_lookalike_host(self):
        header = '<https://api.github.com.evil.example/x?page=2>; rel="next"'
        assert parse_next_link(header, BASE) is None


# -- walk_pages ----------------------------------------------------------


class TestWalkPages:
    @pytest.mark.asyncio
    async def test_three_pages_three_requests(self):
        """Each page is requested exactly once and items concatenate in order."""
        fetch = AsyncMock(
            side_effect=[
                _mock_response([{"n": 1}, {"n": 2}], _next(f"{BASE}/items?page=2")),
                _mock_response([{"n": 3}], _next(f"{BASE}/items?page=3")),
                _mock_response([{"n": 4}]),
            ]
        )

        items = await walk_pages(fetch, "/items", {"per_page": "100"}, base_url=BASE)

        assert [i["n"] for i in items] == [1, 2, 3, 4]
        assert fetch.await_count == 3
        assert fetch.await_args_list[0].args == ("/items", {"per_page": "100"})
        # Later pages carry their parameters inside the link
        assert fetch.await_args_list[1].args == ("/items?page=2", None)
        assert fetch.await_args_list[2].args == ("/items?page=3", None)

    @pytest.mark.asyncio
    async def test_single_page(self):
        fetch = AsyncMock(return_value=_mock_response([{"n": 1}]))

        items = await walk_pages(fetch, "/items", base_url=BASE)

        assert items == [{"n": 1}]
        fetch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_items_key(self):
        fetch = AsyncMock(
            return_value=_mock_response({"total_count": 2, "workflow_runs": [{"id": 1}, {"id": 2}]})
        )

        items = await walk_pages(fetch, "/runs", base_url=BASE, items_key="workflow_runs")

        assert items == [{"id": 1}, {"id": 2}]

    @pytest.mark.asyncio
    async def test_object_body_without_items_key(self):
        fetch = AsyncMock(return_value=_mock_response({"message": "hi"}))
        assert await walk_pages(fetch, "/x", base_url=BASE) == []

    @pytest.mark.asyncio
    async def test_stop_when_ends_walk(self):
        """The first out-of-window item and everything after it are dropped."""
        fetch = AsyncMock(
            side_effect=[
                _mock_response([{"n": 5}, {"n": 4}], _next(f"{BASE}/items?page=2")),
                _mock_response([{"n": 3}, {"n": 1}, {"n": 2}], _next(f"{BASE}/items?page=3")),
                _mock_response([{"n": 0}]),
            ]
        )

        items = await walk_pages(
            fetch, "/items", base_url=BASE, stop_when=lambda item: item["n"] < 3
        )

        assert [i["n"] for i in items] == [5, 4, 3]
        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_max_pages_guard(self):
        fetch = AsyncMock(
            return_value=_mock_response([{"n": 1}], _next(f"{BASE}/items?page=2"))
        )

        items = await walk_pages(fetch, "/items", base_url=BASE, max_pages=3)

        assert len(items) == 3
        assert fetch.await_count == 3

    @pytest.mark.asyncio
    async def test_failed_page_aborts_walk(self):
        """No partial result: the fetch error propagates."""
        fetch = AsyncMock(
            side_effect=[
                _mock_response([{"n": 1}], _next(f"{BASE}/items?page=2")),
                RuntimeError("page 2 failed"),
            ]
        )

        with pytest.raises(RuntimeError, match="page 2 failed"):
            await walk_pages(fetch, "/items", base_url=BASE)

    @pytest.mark.asyncio
    async def test_foreign_next_link_ends_walk(self):
        fetch = AsyncMock(
            return_value=_mock_response(
                [{"n": 1}], '<https://evil.example.com/x?page=2>; rel="next"'
            )
        )

        items = await walk_pages(fetch, "/items", base_url=BASE)

        assert items == [{"n": 1}]
        fetch.assert_awaited_once()
