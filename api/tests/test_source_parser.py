import asyncio
from datetime import date, datetime, timezone

import httpx

from obitwatch.services.source import (
    SourceBucket,
    SourceClient,
    buckets_to_scan,
    local_today,
    parse_source_page,
    source_url,
)

PAGE = """
<html><body>
<h3>1</h3>
<ul>
  <li><a href="/wiki/Jane_Doe" title="Jane Doe">Jane Doe</a>, 88, American actress (<i>Example Show</i>).<sup>[1]</sup></li>
  <li><a href="/w/index.php?title=Pat_O%27Brien&amp;action=edit&amp;redlink=1">Pat O'Brien</a>, 71, Irish hurler.</li>
  <li><a href="/wiki/John_Roe">John Roe</a>, British politician.</li>
  <li>Unlinked Person, 50, footballer.</li>
  <li><a href="https://example.com/x">External</a>, 40, writer.</li>
</ul>
</body></html>
"""


def test_parse_source_page_extracts_well_formed_entries() -> None:
    records = parse_source_page(PAGE)

    assert records == [
        {
            "name": "Jane Doe",
            "external_id": "Jane_Doe",
            "link_kind": "resolvable",
            "age": 88,
            "description": "American actress (Example Show)",
            "cause": None,
        },
        {
            "name": "Pat O'Brien",
            "external_id": "Pat_O%27Brien",
            "link_kind": "unresolved_stub",
            "age": 71,
            "description": "Irish hurler",
            "cause": None,
        },
    ]


def test_parse_source_page_empty_html() -> None:
    assert parse_source_page("") == []


def test_buckets_include_previous_month_during_lookback() -> None:
    assert buckets_to_scan(date(2025, 1, 3), lookback_days=5) == [
        SourceBucket(2025, 1),
        SourceBucket(2024, 12),
    ]
    assert buckets_to_scan(date(2025, 1, 6), lookback_days=5) == [SourceBucket(2025, 1)]


def test_local_today_uses_configured_timezone() -> None:
    now = datetime(2025, 3, 1, 3, 0, tzinfo=timezone.utc)
    assert local_today("America/New_York", now) == date(2025, 2, 28)


def test_source_url_formats_month_name() -> None:
    template = "https://en.wikipedia.org/wiki/Deaths_in_{month_name}_{year}"
    assert source_url(template, SourceBucket(2025, 3)) == "https://en.wikipedia.org/wiki/Deaths_in_March_2025"


def test_fetch_bucket_retries_server_errors() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        assert request.headers["User-Agent"] == "obitwatch-test"
        if len(calls) == 1:
            return httpx.Response(503)
        return httpx.Response(200, text=PAGE)

    async def _fetch() -> list[dict]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            source = SourceClient(
                url_template="https://example.org/{year}/{month}",
                user_agent="obitwatch-test",
                backoff_seconds=0.0,
                client=client,
            )
            return await source.fetch_bucket(SourceBucket(2025, 3))

    records = asyncio.run(_fetch())
    assert len(calls) == 2
    assert calls[0] == "https://example.org/2025/3"
    assert [record["external_id"] for record in records] == ["Jane_Doe", "Pat_O%27Brien"]


def test_fetch_bucket_treats_missing_page_as_empty() -> None:
    async def _fetch() -> list[dict]:
        transport = httpx.MockTransport(lambda request: httpx.Response(404))
        async with httpx.AsyncClient(transport=transport) as client:
            source = SourceClient(url_template="https://example.org/{year}", user_agent="ua", client=client)
            return await source.fetch_bucket(SourceBucket(2025, 3))

    assert asyncio.run(_fetch()) == []
