import asyncio

import httpx
import pytest

from pydrel import Collection, FetchError, Fetcher, HttpFetcher, RelationalModel
from pydrel import settings
from pydrel.fetch import resolve_fetcher


def mock_fetcher(handler, **kwargs):
    return HttpFetcher(base_url="http://api.test", transport=httpx.MockTransport(handler), **kwargs)


def test_http_fetcher_decodes_json_and_sends_headers():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["token"] = request.headers.get("x-token")
        return httpx.Response(200, json={"id": 1, "title": "Hello"})

    fetcher = mock_fetcher(handler, headers={"X-Token": "secret"})

    assert asyncio.run(fetcher.fetch("/articles/1")) == {"id": 1, "title": "Hello"}
    assert seen == {"path": "/articles/1", "token": "secret"}


def test_http_fetcher_defaults():
    fetcher = HttpFetcher()
    assert fetcher.timeout == settings.DEFAULT_FETCH_TIMEOUT
    assert fetcher.transport is None
    assert isinstance(fetcher, Fetcher)


@pytest.mark.parametrize(
    "handler",
    [
        lambda request: httpx.Response(500, text="boom"),
        lambda request: httpx.Response(404),
    ],
)
def test_http_fetcher_status_errors(handler):
    with pytest.raises(FetchError) as excinfo:
        asyncio.run(mock_fetcher(handler).fetch("/articles/1"))
    assert isinstance(excinfo.value.__cause__, httpx.HTTPStatusError)


def test_http_fetcher_transport_errors():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(FetchError) as excinfo:
        asyncio.run(mock_fetcher(handler).fetch("/articles/1"))
    assert isinstance(excinfo.value.__cause__, httpx.ConnectError)


def test_resolve_fetcher_order():
    explicit, on_model, on_class = HttpFetcher(), HttpFetcher(), HttpFetcher()

    class Owner:
        fetcher = on_class

    class Model:
        fetcher = None

    assert resolve_fetcher(explicit, Owner) is explicit
    assert resolve_fetcher(None, Model, None, Owner) is on_class

    Model.fetcher = on_model
    assert resolve_fetcher(None, Model, Owner) is on_model

    with pytest.raises(FetchError):
        resolve_fetcher(None, None, object())


def test_model_fetch_uses_class_level_fetcher():
    def handler(request):
        return httpx.Response(200, json={"id": 1, "title": "Hello"})

    class Article(RelationalModel):
        url_root = "/articles"
        fetcher = mock_fetcher(handler)

    article = Article({"id": 1})
    assert asyncio.run(article.fetch()) is article
    assert article.get("title") == "Hello"


def test_collection_fetch():
    def handler(request):
        assert request.url.path == "/articles"
        return httpx.Response(200, json=[{"id": 1}, {"id": 2}])

    class Article(RelationalModel):
        pass

    articles = Collection(model=Article, url="/articles")
    asyncio.run(articles.fetch(fetcher=mock_fetcher(handler)))

    assert articles.pluck("id") == [1, 2]
    assert Article.find(2) is articles.get(2)
