import httpx
import pytest
import respx

from webpilot.errors import SearchError
from webpilot.search import BRAVE_URL, DUCKDUCKGO_URL, SearchClient, parse_duckduckgo


RESULTS_HTML = """
<html><body>
  <div class="result results_links">
    <h2><a class="result__a" href="//duckduckgo.com/l/?uddg=https%3A%2F%2Fdocs.test%2Fguide%3Fpage%3D2&rut=x">Guide, page 2</a></h2>
    <a class="result__snippet">Everything about <b>boots</b></a>
  </div>
  <div class="result results_links">
    <h2><a class="result__a" href="https://plain.test/">Plain link</a></h2>
  </div>
  <div class="result results_links">
    <h2><a class="result__a" href="/relative">Relative link</a></h2>
  </div>
</body></html>
"""


def test_parse_duckduckgo_unwraps_redirects_and_skips_relative_links():
    results = parse_duckduckgo(RESULTS_HTML)
    assert [r.url for r in results] == ["https://docs.test/guide?page=2", "https://plain.test/"]
    assert results[0].title == "Guide, page 2"
    assert results[0].snippet == "Everything about boots"
    assert results[1].snippet is None


def test_parse_duckduckgo_respects_limit():
    assert len(parse_duckduckgo(RESULTS_HTML, limit=1)) == 1
    assert parse_duckduckgo("") == []


@pytest.mark.asyncio
@respx.mock
async def test_duckduckgo_is_the_default_provider():
    route = respx.get(DUCKDUCKGO_URL).mock(return_value=httpx.Response(200, text=RESULTS_HTML))
    search = SearchClient()
    try:
        results = await search.search("  hiking boots ")
    finally:
        await search.close()

    assert route.called
    assert route.calls[0].request.url.params["q"] == "hiking boots"
    assert len(results) == 2


@pytest.mark.asyncio
async def test_blank_query_does_not_hit_the_network():
    search = SearchClient(client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))))
    assert await search.search("   ") == []
    await search.close()


@pytest.mark.asyncio
@respx.mock
async def test_brave_results_use_the_api_key():
    route = respx.get(BRAVE_URL).mock(
        return_value=httpx.Response(
            200,
            json={
                "web": {
                    "results": [
                        {"title": "Boots", "url": "https://shop.test/boots", "description": "Best <strong>boots</strong>"},
                        {"title": "No url"},
                        {"url": "https://shop.test/untitled"},
                    ]
                }
            },
        )
    )
    search = SearchClient(provider="Brave", api_key="secret", max_results=5)
    try:
        results = await search.search("boots")
    finally:
        await search.close()

    request = route.calls[0].request
    assert request.headers["X-Subscription-Token"] == "secret"
    assert request.url.params["count"] == "5"
    assert [r.url for r in results] == ["https://shop.test/boots", "https://shop.test/untitled"]
    assert results[0].snippet == "Best boots"
    assert results[1].title == "Untitled"


@pytest.mark.asyncio
@respx.mock
async def test_brave_failure_falls_back_to_duckduckgo():
    respx.get(BRAVE_URL).mock(return_value=httpx.Response(429))
    ddg = respx.get(DUCKDUCKGO_URL).mock(return_value=httpx.Response(200, text=RESULTS_HTML))
    search = SearchClient(provider="brave", api_key="secret")
    try:
        results = await search.search("boots")
    finally:
        await search.close()

    assert ddg.called
    assert results[0].url == "https://docs.test/guide?page=2"


@pytest.mark.asyncio
@respx.mock
async def test_brave_without_key_uses_duckduckgo():
    brave = respx.get(BRAVE_URL).mock(return_value=httpx.Response(200, json={}))
    respx.get(DUCKDUCKGO_URL).mock(return_value=httpx.Response(200, text=RESULTS_HTML))
    search = SearchClient(provider="brave")
    try:
        results = await search.search("boots")
    finally:
        await search.close()

    assert not brave.called
    assert len(results) == 2


@pytest.mark.asyncio
@respx.mock
async def test_duckduckgo_outage_raises_search_error():
    respx.get(DUCKDUCKGO_URL).mock(side_effect=httpx.ConnectError("offline"))
    search = SearchClient()
    with pytest.raises(SearchError, match="offline"):
        await search.search("boots")
    await search.close()
