#!/usr/bin/env python3
"""
Turn a raw proxy response into canonical Article records.

The body may be rss2json JSON, an allorigins-style JSON envelope around the
feed XML, or the feed itself (RSS 2.0 or Atom), frequently with bad
ampersands, stray bytes around the document or unclosed tags. XML is parsed
strictly with ElementTree first, then leniently with BeautifulSoup, and
finally once more strictly after an automatic repair pass.
"""

from datetime import datetime, timezone
from html.entities import html5
from typing import Any, Iterable, List, Optional
from urllib.parse import urljoin
from xml.etree import ElementTree
import json
import re

from bs4 import BeautifulSoup, NavigableString, Tag

from config import config, get_logger
from errors import MalformedFeedError, UpstreamFormatError
from models import Article, RawFetchResult, ResponseShape
from telemetry import trace_span
from utils import (
    article_identity,
    clean_text,
    estimate_reading_time,
    format_timestamp,
    try_parse_timestamp,
)

logger = get_logger("normalizer")

UNTITLED = "Χωρίς τίτλο"

CONTROL_CHARS_RE = re.compile(r'[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]')
BARE_AMPERSAND_RE = re.compile(r'&(?!(?:amp|lt|gt|quot|apos|#\d+|#x[0-9a-fA-F]+);)')
XML_DECL_RE = re.compile(r'^\s*<\?xml[^>]*\?>', re.I)
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'
OPAQUE_SECTION_RE = re.compile(r'(<!\[CDATA\[.*?\]\]>|<!--.*?-->)', re.S)
TAG_TOKEN_RE = re.compile(r'<(/?)([A-Za-z_][\w:.\-]*)((?:[^>"\']|"[^"]*"|\'[^\']*\')*?)(/?)>')
NAMED_ENTITY_RE = re.compile(r'&([A-Za-z][A-Za-z0-9]*);')
# Namespace prefixes on tag and attribute names; items are validated out of context
PREFIXED_NAME_RE = re.compile(r'(</?|\s)([A-Za-z_][\w.\-]*):(?=[A-Za-z_])')
XML_ENTITIES = frozenset({"amp", "lt", "gt", "quot", "apos"})

JSON_ENVELOPE_FIELDS = ("contents", "body", "data")

# Field lookups, in priority order, by lowercased local tag name
DESCRIPTION_FIELDS = ("description", "summary", "content", "encoded")
DATE_FIELDS = ("pubdate", "published", "updated", "date")
AUTHOR_FIELDS = ("author", "creator")


def local_name(tag: Any) -> str:
    """Lowercased tag name without namespace URI or prefix."""
    if not isinstance(tag, str):
        return ''
    return tag.rsplit('}', 1)[-1].rsplit(':', 1)[-1].lower()


def clean_xml(text: str) -> str:
    """Strip noise around the document and fix characters XML parsers reject."""
    text = text.lstrip('\ufeff')
    start = text.find('<')
    end = text.rfind('>')
    if start == -1 or end < start:
        raise MalformedFeedError("Document contains no markup")
    text = CONTROL_CHARS_RE.sub('', text[start:end + 1])
    text = NAMED_ENTITY_RE.sub(_decode_html_entity, text)
    return BARE_AMPERSAND_RE.sub('&amp;', text)


def _decode_html_entity(match: re.Match) -> str:
    """Replace an HTML named entity (&raquo;, &euro;) with its character."""
    name = match.group(1)
    if name in XML_ENTITIES:
        return match.group(0)
    value = html5.get(f"{name};")
    if value is None or any(char in value for char in '<>&"\''):
        return match.group(0)
    return value


def _with_utf8_declaration(text: str) -> str:
    return XML_DECLARATION + XML_DECL_RE.sub('', text, count=1)


def repair_xml(text: str) -> str:
    """Close unclosed tags, drop stray closing tags and ensure a declaration."""
    stack: List[str] = []
    output: List[str] = []

    def _close_tag(match: re.Match) -> str:
        is_closing, name, _attrs, self_closing = match.groups()
        key = name.lower()
        if self_closing:
            return match.group(0)
        if not is_closing:
            stack.append(name)
            return match.group(0)
        lowered = [open_name.lower() for open_name in stack]
        if key not in lowered:
            return ''
        closers = []
        while stack:
            open_name = stack.pop()
            if open_name.lower() == key:
                closers.append(f"</{open_name}>")
                break
            closers.append(f"</{open_name}>")
        return ''.join(closers)

    for index, segment in enumerate(OPAQUE_SECTION_RE.split(XML_DECL_RE.sub('', text, count=1))):
        if index % 2:
            output.append(segment)
        else:
            output.append(TAG_TOKEN_RE.sub(_close_tag, segment))
    output.extend(f"</{name}>" for name in reversed(stack))
    return _with_utf8_declaration(''.join(output))


def _parse_strict(text: str) -> ElementTree.Element:
    return ElementTree.fromstring(_with_utf8_declaration(text).encode('utf-8'))


def _well_formed_items(text: str, tag: str) -> List[bool]:
    """For each opening of `tag` in document order, whether its own markup parses.

    An item's span runs from its opening tag to the first closing tag before
    the next opening. Items with no such closing tag, or whose span fails a
    strict parse (an unclosed <title>, say), are reported as malformed.
    """
    openings = [m.start() for m in re.finditer(rf'<{tag}(?=[\s>/])', text, re.I)]
    closings = [(m.start(), m.end()) for m in re.finditer(rf'</{tag}\s*>', text, re.I)]
    flags = []
    for index, start in enumerate(openings):
        stop = openings[index + 1] if index + 1 < len(openings) else len(text)
        end = next((close_end for close_start, close_end in closings if start < close_start < stop), None)
        if end is None:
            flags.append(False)
            continue
        try:
            ElementTree.fromstring(PREFIXED_NAME_RE.sub(r'\1\2_', text[start:end]))
        except ElementTree.ParseError:
            flags.append(False)
        else:
            flags.append(True)
    return flags


class _ElementItem:
    """Field access over an ElementTree item/entry element."""

    def __init__(self, element: ElementTree.Element):
        self.element = element

    def _children(self, name: str) -> Iterable[ElementTree.Element]:
        return (child for child in self.element if local_name(child.tag) == name)

    def text(self, *names: str) -> str:
        for name in names:
            for child in self._children(name):
                value = ''.join(child.itertext()).strip()
                if value:
                    return value
        return ''

    def attr(self, name: str, attribute: str) -> str:
        for child in self._children(name):
            for key, value in child.attrib.items():
                if local_name(key) == attribute and value and value.strip():
                    return value.strip()
        return ''

    def atom_link(self) -> str:
        links = list(self._children('link'))
        for child in links:
            if child.get('rel', 'alternate') == 'alternate' and child.get('href'):
                return child.get('href').strip()
        for child in links:
            if child.get('href'):
                return child.get('href').strip()
        return ''

    def author(self) -> str:
        for name in AUTHOR_FIELDS:
            for child in self._children(name):
                for sub in child:
                    if local_name(sub.tag) == 'name' and (sub.text or '').strip():
                        return sub.text.strip()
                value = ''.join(child.itertext()).strip()
                if value:
                    return value
        return ''


class _SoupItem:
    """Field access over a BeautifulSoup (html.parser) item/entry tag."""

    def __init__(self, element: Tag):
        self.element = element

    def _children(self, name: str) -> Iterable[Tag]:
        return (
            child for child in self.element.children
            if isinstance(child, Tag) and local_name(child.name) == name
        )

    def text(self, *names: str) -> str:
        for name in names:
            for child in self._children(name):
                value = child.get_text().strip()
                if not value and name == 'link':
                    value = self._void_link_text(child)
                if value:
                    return value
        return ''

    @staticmethod
    def _void_link_text(child: Tag) -> str:
        # html.parser treats <link> as void, leaving the URL as the next sibling
        sibling = child.next_sibling
        if isinstance(sibling, NavigableString):
            return str(sibling).strip()
        return ''

    def attr(self, name: str, attribute: str) -> str:
        for child in self._children(name):
            for key, value in child.attrs.items():
                if local_name(key) == attribute and isinstance(value, str) and value.strip():
                    return value.strip()
        return ''

    def atom_link(self) -> str:
        links = list(self._children('link'))
        for child in links:
            if child.get('rel') in (None, ['alternate'], 'alternate') and child.get('href'):
                return child.get('href').strip()
        for child in links:
            if child.get('href'):
                return child.get('href').strip()
        return ''

    def author(self) -> str:
        for name in AUTHOR_FIELDS:
            for child in self._children(name):
                nested = next(
                    (sub for sub in child.children if isinstance(sub, Tag) and local_name(sub.name) == 'name'),
                    None,
                )
                if nested is not None and nested.get_text().strip():
                    return nested.get_text().strip()
                value = child.get_text().strip()
                if value:
                    return value
        return ''


def _select_items(elements: List[Any], name_of) -> List[Any]:
    items = [element for element in elements if name_of(element) == 'item']
    if not items:
        items = [element for element in elements if name_of(element) == 'entry']
    return items


def _parse_document(text: str) -> List[Any]:
    """Return item accessors for a cleaned XML document.

    Raises:
        MalformedFeedError: if strict, lenient and repaired parsing all fail
    """
    try:
        root = _parse_strict(text)
        return [_ElementItem(item) for item in _select_items(list(root.iter()), lambda e: local_name(e.tag))]
    except ElementTree.ParseError as e:
        logger.debug(f"Strict XML parse failed ({e}), trying lenient parser")

    soup = BeautifulSoup(text, 'html.parser')
    items = _select_items(soup.find_all(True), lambda e: local_name(e.name))
    if items:
        tag = local_name(items[0].name)
        flags = _well_formed_items(text, tag)
        if len(flags) != len(items):
            flags = [True] * len(items)
        kept = [_SoupItem(item) for item, well_formed in zip(items, flags) if well_formed]
        skipped = len(items) - len(kept)
        if skipped:
            logger.warning(f"Skipped {skipped} malformed <{tag}> element(s)")
        return kept

    logger.debug("Lenient parse found no items, attempting repair")
    try:
        root = _parse_strict(repair_xml(text))
    except ElementTree.ParseError as e:
        raise MalformedFeedError(f"Unrecoverable XML: {e}") from e
    return [_ElementItem(item) for item in _select_items(list(root.iter()), lambda e: local_name(e.tag))]


def _absolute_link(link: str, source_url: str) -> str:
    if not link or link.startswith(('http://', 'https://')):
        return link
    try:
        resolved = urljoin(source_url, link)
    except ValueError:
        return link
    return resolved if resolved.startswith(('http://', 'https://')) else link


def build_article(
    *,
    title: Optional[str],
    description: Optional[str],
    link: Optional[str],
    date_value: Optional[str],
    author: Optional[str] = None,
    category: Optional[str] = None,
    source_url: str = '',
    feed_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Article:
    """Assemble an Article from extracted field values."""
    now = now or datetime.now(timezone.utc)
    clean_title = clean_text(title) or UNTITLED
    clean_description = clean_text(description)
    clean_link = _absolute_link(clean_text(link), source_url)
    published = try_parse_timestamp(date_value)
    return Article(
        id=article_identity(clean_title, clean_link, published),
        title=clean_title,
        description=clean_description,
        link=clean_link,
        published_at=published or format_timestamp(now),
        source_feed_id=feed_id,
        fetched_at=format_timestamp(now),
        author=clean_text(author),
        category=clean_text(category),
        reading_time=estimate_reading_time(clean_description, config.READING_SPEED_WPM),
    )


def _article_from_item(item, source_url: str, feed_id: Optional[str], now: datetime) -> Article:
    return build_article(
        title=item.text('title'),
        description=item.text(*DESCRIPTION_FIELDS),
        link=item.text('link') or item.text('guid') or item.atom_link(),
        date_value=item.text(*DATE_FIELDS),
        author=item.author(),
        category=item.text('category') or item.attr('category', 'term'),
        source_url=source_url,
        feed_id=feed_id,
        now=now,
    )


def parse_xml_feed(text: str, source_url: str, feed_id: Optional[str] = None, now: Optional[datetime] = None) -> List[Article]:
    """Parse RSS/Atom text into articles, skipping items that fail."""
    now = now or datetime.now(timezone.utc)
    articles: List[Article] = []
    for item in _parse_document(clean_xml(unwrap_outer_cdata(text))):
        try:
            articles.append(_article_from_item(item, source_url, feed_id, now))
        except (AttributeError, TypeError, ValueError, KeyError) as e:
            logger.warning(f"Skipping unparseable item in {source_url}: {e}")
    return articles


def unwrap_outer_cdata(text: str) -> str:
    """Some relays wrap the whole document in a CDATA section."""
    stripped = text.strip()
    if stripped.startswith('<![CDATA[') and stripped.endswith(']]>'):
        return stripped[len('<![CDATA['):-len(']]>')]
    return text


def _first_category(value: Any) -> str:
    if isinstance(value, list):
        return str(value[0]) if value else ''
    return str(value) if value else ''


def parse_rss2json(payload: Any, source_url: str, feed_id: Optional[str] = None, now: Optional[datetime] = None) -> List[Article]:
    """Articles from an rss2json response ``{"status": "ok", "items": [...]}``."""
    if not isinstance(payload, dict) or payload.get('status') != 'ok' or not isinstance(payload.get('items'), list):
        message = payload.get('message') if isinstance(payload, dict) else None
        raise UpstreamFormatError(f"Unexpected rss2json payload for {source_url}: {message or 'missing status/items'}")

    now = now or datetime.now(timezone.utc)
    articles: List[Article] = []
    for entry in payload['items']:
        if not isinstance(entry, dict):
            logger.warning(f"Skipping non-object rss2json item in {source_url}")
            continue
        try:
            articles.append(build_article(
                title=entry.get('title'),
                description=entry.get('description') or entry.get('content'),
                link=entry.get('link') or entry.get('guid'),
                date_value=entry.get('pubDate') or entry.get('published'),
                author=entry.get('author'),
                category=_first_category(entry.get('categories')),
                source_url=source_url,
                feed_id=feed_id,
                now=now,
            ))
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Skipping unparseable rss2json item in {source_url}: {e}")
    return articles


def _load_json(body: str, strategy_name: str) -> Any:
    try:
        return json.loads(body)
    except json.JSONDecodeError as e:
        raise UpstreamFormatError(f"{strategy_name} returned invalid JSON: {e}") from e
    except RecursionError as e:
        raise UpstreamFormatError(f"{strategy_name} returned JSON nested too deeply") from e


def _unwrap_envelope(payload: Any, fields: Iterable[str], strategy_name: str) -> str:
    if isinstance(payload, dict):
        for name in fields:
            value = payload.get(name)
            if isinstance(value, str) and value.strip():
                return value
    raise UpstreamFormatError(f"{strategy_name} returned JSON without feed contents")


@trace_span(
    "normalizer.normalize",
    tracer_name="normalizer",
    attr_from_args=lambda raw, source_url, feed_id=None, now=None: {
        "feed.url": source_url,
        "feed.id": feed_id,
        "proxy.strategy": raw.strategy_name,
        "proxy.response_shape": raw.response_shape.value,
    },
)
def normalize(raw: RawFetchResult, source_url: str, feed_id: Optional[str] = None, now: Optional[datetime] = None) -> List[Article]:
    """Normalize a raw fetch result into articles.

    Raises:
        UpstreamFormatError: the body does not match the declared response shape
        MalformedFeedError: the XML could not be recovered
    """
    shape = raw.response_shape
    if shape == ResponseShape.JSON_RSS2JSON:
        return parse_rss2json(_load_json(raw.body, raw.strategy_name), source_url, feed_id, now)

    if shape == ResponseShape.JSON_WRAPPED_XML:
        payload = _load_json(raw.body, raw.strategy_name)
        return parse_xml_feed(_unwrap_envelope(payload, ("contents",), raw.strategy_name), source_url, feed_id, now)

    body = raw.body
    if shape == ResponseShape.RAW_TEXT and 'json' in (raw.content_type or '').lower():
        payload = _load_json(body, raw.strategy_name)
        body = _unwrap_envelope(payload, JSON_ENVELOPE_FIELDS, raw.strategy_name)

    return parse_xml_feed(body, source_url, feed_id, now)
