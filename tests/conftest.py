import json
from typing import Any, List, Tuple
from urllib.parse import quote

import pytest

from models import ProxyStrategy, RequestDescriptor, ResponseShape
from utils import BackoffHelper


SAMPLE_RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:dc="http://purl.org/dc/elements/1.1/">
  <channel>
    <title>AADE</title>
    <item>
      <title><![CDATA[Νέα προθεσμία για το Ε9]]></title>
      <link>https://www.aade.gr/news/1</link>
      <description>&lt;p&gt;Παράταση &amp;amp; διευκρινίσεις&lt;/p&gt;</description>
      <pubDate>Wed, 18 Oct 2023 14:30:00 +0000</pubDate>
      <dc:creator>Γραφείο Τύπου</dc:creator>
      <category>Φορολογία</category>
    </item>
    <item>
      <title>ΦΠΑ: νέες οδηγίες</title>
      <link>https://www.aade.gr/news/2</link>
      <description>Οδηγίες για την εφαρμογή του ΦΠΑ</description>
      <pubDate>Tue, 17 Oct 2023 09:00:00 +0300</pubDate>
    </item>
    <item>
      <title>myDATA ενημέρωση</title>
      <guid>https://www.aade.gr/news/3</guid>
      <description>Ενημέρωση για το myDATA</description>
      <pubDate>Mon, 16 Oct 2023 08:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>
"""


class FakeResponse:
    """Just enough of aiohttp.ClientResponse for the fetch paths."""

    def __init__(self, status: int = 200, body: Any = b"", headers=None):
        self.status = status
        if isinstance(body, (dict, list)):
            body = json.dumps(body)
        self._body = body.encode("utf-8") if isinstance(body, str) else body
        self.headers = headers or {}

    async def read(self) -> bytes:
        return self._body

    async def text(self) -> str:
        return self._body.decode("utf-8", errors="replace")

    async def json(self, content_type=None):
        return json.loads(self._body.decode("utf-8"))

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class _RaisingContext:
    def __init__(self, error: BaseException):
        self.error = error

    async def __aenter__(self):
        raise self.error

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Mimics aiohttp.ClientSession.get(); the first route whose fragment is
    contained in the requested URL decides the outcome."""

    def __init__(self, routes: List[Tuple[str, Any]]):
        self.routes = routes
        self.calls: List[Tuple[str, dict]] = []
        self.closed = False

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        for fragment, outcome in self.routes:
            if fragment in url:
                if isinstance(outcome, BaseException):
                    return _RaisingContext(outcome)
                return outcome
        return FakeResponse(404, b"not found")

    async def close(self):
        self.closed = True


def make_strategy(name: str, shape: ResponseShape) -> ProxyStrategy:
    return ProxyStrategy(
        name=name,
        build_request=lambda url: RequestDescriptor(f"https://{name}.proxy.test/?url={quote(url, safe='')}", {}),
        response_shape=shape,
    )


@pytest.fixture
def no_backoff() -> BackoffHelper:
    return BackoffHelper(base_delay=0, max_delay=0)


@pytest.fixture
def sample_rss() -> str:
    return SAMPLE_RSS
