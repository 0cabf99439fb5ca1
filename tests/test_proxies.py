from models import ResponseShape
from proxies import DEFAULT_STRATEGIES, build_registry, default_registry

FEED_URL = "https://www.aade.gr/rss?lang=el&type=news"


def test_default_order():
    assert [strategy.name for strategy in default_registry()] == [
        "rss2json", "allorigins", "thingproxy", "corsproxy", "cors-sh", "jsonp-afeld", "direct",
    ]


def test_default_registry_is_a_copy():
    registry = default_registry()
    registry.pop()
    assert len(DEFAULT_STRATEGIES) == 7


def test_build_registry_follows_given_order():
    names = [strategy.name for strategy in build_registry(["Direct", "allorigins", "direct"])]
    assert names == ["direct", "allorigins"]


def test_build_registry_ignores_unknown_names():
    assert [strategy.name for strategy in build_registry(["nope", "corsproxy"])] == ["corsproxy"]


def test_build_registry_falls_back_to_default():
    assert build_registry([]) == default_registry()
    assert build_registry(["nope"]) == default_registry()


def test_urls_are_percent_encoded():
    registry = {strategy.name: strategy for strategy in default_registry()}

    rss2json = registry["rss2json"].build_request(FEED_URL)
    assert rss2json.url == (
        "https://api.rss2json.com/v1/api.json?rss_url="
        "https%3A%2F%2Fwww.aade.gr%2Frss%3Flang%3Del%26type%3Dnews"
    )
    assert registry["rss2json"].response_shape == ResponseShape.JSON_RSS2JSON
    assert registry["allorigins"].build_request(FEED_URL).url.startswith("https://api.allorigins.win/get?url=https%3A%2F%2F")
    assert registry["allorigins"].response_shape == ResponseShape.JSON_WRAPPED_XML


def test_direct_and_cors_sh_use_raw_url():
    registry = {strategy.name: strategy for strategy in default_registry()}
    assert registry["direct"].build_request(FEED_URL).url == FEED_URL
    assert registry["cors-sh"].build_request(FEED_URL).url == f"https://proxy.cors.sh/{FEED_URL}"


def test_relay_requests_carry_browser_headers():
    request = build_registry(["thingproxy"])[0].build_request(FEED_URL)
    assert "User-Agent" in request.headers
    assert "el" in request.headers["Accept-Language"]
