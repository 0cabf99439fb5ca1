#!/usr/bin/env python3
"""
Registry of proxy strategies used to reach feed URLs.

Most Greek tax sites do not send CORS headers and some block non-browser
clients, so a feed is retrieved through a list of public relays before
trying the origin directly. Each strategy only knows how to build its request
and which ResponseShape it answers with; the fetcher decides ordering.
"""

from typing import Dict, List, Optional, Sequence
from urllib.parse import quote

from config import config, get_logger
from models import ProxyStrategy, RequestDescriptor, ResponseShape

logger = get_logger("proxies")

JSON_HEADERS = {
    "Accept": "application/json",
}


def browser_headers() -> Dict[str, str]:
    """Headers that make generic relays and origins treat us like a browser."""
    return {
        "User-Agent": config.USER_AGENT,
        "Accept": "application/rss+xml, application/xml, text/xml, application/json, */*",
        "Accept-Language": "en-US,en;q=0.9,el;q=0.8",
        "Cache-Control": "no-cache",
    }


def _encoded(url: str) -> str:
    return quote(url, safe="")


def _rss2json(url: str) -> RequestDescriptor:
    return RequestDescriptor(f"https://api.rss2json.com/v1/api.json?rss_url={_encoded(url)}", dict(JSON_HEADERS))


def _allorigins(url: str) -> RequestDescriptor:
    return RequestDescriptor(f"https://api.allorigins.win/get?url={_encoded(url)}", dict(JSON_HEADERS))


def _thingproxy(url: str) -> RequestDescriptor:
    return RequestDescriptor(f"https://thingproxy.freeboard.io/fetch/{_encoded(url)}", browser_headers())


def _corsproxy(url: str) -> RequestDescriptor:
    return RequestDescriptor(f"https://corsproxy.io/?{_encoded(url)}", browser_headers())


def _cors_sh(url: str) -> RequestDescriptor:
    # cors.sh expects the target verbatim as the path
    return RequestDescriptor(f"https://proxy.cors.sh/{url}", browser_headers())


def _jsonp_afeld(url: str) -> RequestDescriptor:
    return RequestDescriptor(f"https://jsonp.afeld.me/?url={_encoded(url)}", browser_headers())


def _direct(url: str) -> RequestDescriptor:
    return RequestDescriptor(url, browser_headers())


DEFAULT_STRATEGIES: List[ProxyStrategy] = [
    ProxyStrategy("rss2json", _rss2json, ResponseShape.JSON_RSS2JSON),
    ProxyStrategy("allorigins", _allorigins, ResponseShape.JSON_WRAPPED_XML),
    ProxyStrategy("thingproxy", _thingproxy, ResponseShape.RAW_TEXT),
    ProxyStrategy("corsproxy", _corsproxy, ResponseShape.RAW_TEXT),
    ProxyStrategy("cors-sh", _cors_sh, ResponseShape.RAW_TEXT),
    ProxyStrategy("jsonp-afeld", _jsonp_afeld, ResponseShape.RAW_TEXT),
    ProxyStrategy("direct", _direct, ResponseShape.RAW_XML),
]

STRATEGIES_BY_NAME: Dict[str, ProxyStrategy] = {strategy.name: strategy for strategy in DEFAULT_STRATEGIES}


def default_registry() -> List[ProxyStrategy]:
    return list(DEFAULT_STRATEGIES)


def build_registry(names: Optional[Sequence[str]] = None) -> List[ProxyStrategy]:
    """Return strategies in the order given by name.

    Unknown names are logged and ignored; duplicates keep their first
    position. An empty or fully unknown list yields the default registry.
    """
    if not names:
        return default_registry()

    registry: List[ProxyStrategy] = []
    seen = set()
    for name in names:
        key = str(name).strip().lower()
        strategy = STRATEGIES_BY_NAME.get(key)
        if strategy is None:
            logger.warning(f"Unknown proxy strategy '{name}' ignored")
            continue
        if key in seen:
            continue
        seen.add(key)
        registry.append(strategy)

    if not registry:
        logger.warning("No known proxy strategies configured, using default order")
        return default_registry()
    return registry
