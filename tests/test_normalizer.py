import json
from datetime import datetime, timezone

import pytest

from errors import MalformedFeedError, UpstreamFormatError
from models import RawFetchResult, ResponseShape
from normalizer import UNTITLED, clean_xml, normalize, parse_xml_feed, repair_xml

FEED_URL = "https://www.aade.gr/deltia-typou-anakoinoseis?format=rss"
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def raw(body, shape=ResponseShape.RAW_XML, content_type="application/rss+xml"):
    if isinstance(body, (dict, list)):
        body = json.dumps(body)
    return RawFetchResult(
        strategy_name="test",
        response_shape=shape,
        http_status=200,
        content_type=content_type,
        body=body,
    )


def test_rss_items_are_normalized(sample_rss):
    articles = normalize(raw(sample_rss), FEED_URL, "aade", now=NOW)

    assert [a.title for a in articles] == ["Νέα προθεσμία για το Ε9", "ΦΠΑ: νέες οδηγίες", "myDATA ενημέρωση"]
    first = articles[0]
    assert first.description == "Παράταση & διευκρινίσεις"
    assert first.link == "https://www.aade.gr/news/1"
    assert first.published_at == "2023-10-18T14:30:00.000Z"
    assert first.author == "Γραφείο Τύπου"
    assert first.category == "Φορολογία"
    assert first.source_feed_id == "aade"
    assert first.fetched_at == "2024-05-01T12:00:00.000Z"
    assert not (first.read or first.bookmarked or first.archived)
    assert articles[1].published_at == "2023-10-17T06:00:00.000Z"
    # link falls back to guid
    assert articles[2].link == "https://www.aade.gr/news/3"


def test_identity_is_stable_across_fetches(sample_rss):
    first = normalize(raw(sample_rss), FEED_URL, now=NOW)
    second = normalize(raw(sample_rss), FEED_URL, now=datetime(2024, 6, 1, tzinfo=timezone.utc))
    assert [a.id for a in first] == [a.id for a in second]
    assert len({a.id for a in first}) == 3


def test_undated_items_keep_identity_across_fetches():
    body = "<rss><channel><item><title>Χωρίς ημερομηνία</title><link>https://x.gr/1</link></item></channel></rss>"
    first = normalize(raw(body), FEED_URL, now=NOW)
    second = normalize(raw(body), FEED_URL, now=datetime(2025, 1, 1, tzinfo=timezone.utc))
    assert first[0].id == second[0].id
    assert first[0].published_at == "2024-05-01T12:00:00.000Z"


def test_atom_entries():
    body = """<?xml version="1.0" encoding="utf-8"?>
    <feed xmlns="http://www.w3.org/2005/Atom">
      <title>Νομοθεσία</title>
      <entry>
        <title type="html">Νέος νόμος &lt;b&gt;4987/2022&lt;/b&gt;</title>
        <link rel="alternate" href="https://law.example.gr/4987"/>
        <id>tag:law.example.gr,2022:4987</id>
        <updated>2022-11-20T10:00:00Z</updated>
        <summary>Κώδικας Φορολογικής Διαδικασίας</summary>
        <author><name>Υπουργείο Οικονομικών</name><email>info@example.gr</email></author>
        <category term="law"/>
      </entry>
    </feed>"""
    [article] = normalize(raw(body), FEED_URL, now=NOW)
    assert article.title == "Νέος νόμος 4987/2022"
    assert article.link == "https://law.example.gr/4987"
    assert article.published_at == "2022-11-20T10:00:00.000Z"
    assert article.description == "Κώδικας Φορολογικής Διαδικασίας"
    assert article.author == "Υπουργείο Οικονομικών"
    assert article.category == "law"


def test_unclosed_item_is_skipped():
    body = """<rss><channel>
      <item><title>Καλό άρθρο</title><link>https://x.gr/good</link>
        <pubDate>Wed, 18 Oct 2023 14:30:00 +0000</pubDate></item>
      <item><title>Σπασμένο άρθρο</title><link>https://x.gr/broken</link>
    </channel></rss>"""
    articles = normalize(raw(body), FEED_URL, now=NOW)
    assert len(articles) == 1
    assert articles[0].title == "Καλό άρθρο"
    assert articles[0].link == "https://x.gr/good"
    assert articles[0].published_at == "2023-10-18T14:30:00.000Z"


def test_item_with_unclosed_child_is_skipped():
    body = ("<rss><channel>"
            "<item><title>Α</title><link>https://x.gr/a</link></item>"
            "<item><title>Β<link>https://x.gr/b</link></item>"
            "</channel></rss>")
    articles = parse_xml_feed(body, FEED_URL, now=NOW)
    assert [(a.title, a.link) for a in articles] == [("Α", "https://x.gr/a")]


def test_namespaced_children_survive_item_validation():
    body = ("<rss><channel>"
            "<item><title>Α</title><link>https://x.gr/a</link><dc:creator>ΑΑΔΕ</dc:creator></item>"
            "<item><title>Β</title><link>https://x.gr/b</link>"
            "</channel></rss>")
    [article] = parse_xml_feed(body, FEED_URL, now=NOW)
    assert article.author == "ΑΑΔΕ"


def test_html_named_entities_are_decoded():
    body = "<rss><channel><item><title>Νέα &raquo; ΑΑΔΕ &euro; &amp; ΦΠΑ</title>" \
           "<link>https://x.gr/1</link></item></channel></rss>"
    [article] = normalize(raw(body), FEED_URL, now=NOW)
    assert article.title == "Νέα » ΑΑΔΕ € & ΦΠΑ"


def test_unknown_entities_are_kept_as_text():
    assert clean_xml("<a>&bogus; &lt;</a>") == "<a>&amp;bogus; &lt;</a>"


def test_bare_ampersands_and_noise_are_tolerated():
    body = "\ufeffgarbage before <rss><channel><item><title>Μισθοί & συντάξεις</title>" \
           "<link>https://x.gr/?a=1&b=2</link></item></channel></rss> trailing"
    [article] = normalize(raw(body), FEED_URL, now=NOW)
    assert article.title == "Μισθοί & συντάξεις"
    assert article.link == "https://x.gr/?a=1&b=2"


def test_missing_title_gets_placeholder():
    body = "<rss><channel><item><link>https://x.gr/1</link></item></channel></rss>"
    [article] = normalize(raw(body), FEED_URL, now=NOW)
    assert article.title == UNTITLED


def test_relative_links_resolve_against_feed_url():
    body = "<rss><channel><item><title>T</title><link>/news/42</link></item></channel></rss>"
    [article] = normalize(raw(body), FEED_URL, now=NOW)
    assert article.link == "https://www.aade.gr/news/42"


def test_well_formed_document_without_items_is_empty():
    assert normalize(raw("<rss><channel><title>Empty</title></channel></rss>"), FEED_URL) == []


def test_document_without_markup_is_malformed():
    with pytest.raises(MalformedFeedError):
        normalize(raw("just some text"), FEED_URL)


def test_repair_closes_unclosed_tags():
    repaired = repair_xml("<rss><channel><title>x</channel></rss>")
    assert repaired.startswith('<?xml version="1.0" encoding="UTF-8"?>')
    assert "<title>x</title></channel></rss>" in repaired


def test_repair_leaves_cdata_untouched():
    repaired = repair_xml("<a><b><![CDATA[<c>]]></b>")
    assert "<![CDATA[<c>]]>" in repaired
    assert repaired.endswith("</b></a>")


def test_clean_xml_removes_control_characters():
    assert clean_xml("<a>x\x01y</a>") == "<a>xy</a>"


def test_rss2json_payload():
    payload = {
        "status": "ok",
        "items": [
            {
                "title": "Ηλεκτρονική τιμολόγηση",
                "pubDate": "2023-10-18 14:30:00",
                "link": "https://x.gr/e-invoice",
                "guid": "https://x.gr/e-invoice",
                "author": "ΑΑΔΕ",
                "description": "<p>Οδηγός</p>",
                "categories": ["Τιμολόγια", "myDATA"],
            },
            {"title": "Χωρίς σύνδεσμο", "guid": "https://x.gr/guid-only", "content": "Περιεχόμενο"},
        ],
    }
    articles = normalize(raw(payload, ResponseShape.JSON_RSS2JSON, "application/json"), FEED_URL, now=NOW)
    assert len(articles) == 2
    assert articles[0].published_at == "2023-10-18T14:30:00.000Z"
    assert articles[0].description == "Οδηγός"
    assert articles[0].category == "Τιμολόγια"
    assert articles[1].link == "https://x.gr/guid-only"
    assert articles[1].description == "Περιεχόμενο"


@pytest.mark.parametrize("payload", [
    {"status": "error", "message": "rss_url is invalid"},
    {"status": "ok"},
    ["not", "an", "object"],
])
def test_rss2json_unexpected_payload(payload):
    with pytest.raises(UpstreamFormatError):
        normalize(raw(payload, ResponseShape.JSON_RSS2JSON, "application/json"), FEED_URL)


def test_rss2json_invalid_json():
    with pytest.raises(UpstreamFormatError):
        normalize(raw("<html>blocked</html>", ResponseShape.JSON_RSS2JSON, "text/html"), FEED_URL)


def test_deeply_nested_json_is_an_upstream_format_error():
    body = "[" * 100000 + "]" * 100000
    with pytest.raises(UpstreamFormatError, match="nested too deeply"):
        normalize(raw(body, ResponseShape.JSON_RSS2JSON, "application/json"), FEED_URL)


def test_allorigins_envelope(sample_rss):
    envelope = {"contents": sample_rss, "status": {"http_code": 200}}
    articles = normalize(raw(envelope, ResponseShape.JSON_WRAPPED_XML, "application/json"), FEED_URL)
    assert len(articles) == 3


def test_allorigins_without_contents():
    with pytest.raises(UpstreamFormatError):
        normalize(raw({"status": {"http_code": 404}}, ResponseShape.JSON_WRAPPED_XML), FEED_URL)


def test_raw_text_with_json_content_type_is_unwrapped(sample_rss):
    articles = normalize(raw({"body": sample_rss}, ResponseShape.RAW_TEXT, "application/json; charset=utf-8"), FEED_URL)
    assert len(articles) == 3


def test_raw_text_as_xml(sample_rss):
    articles = normalize(raw(sample_rss, ResponseShape.RAW_TEXT, "text/plain"), FEED_URL)
    assert len(articles) == 3


def test_parse_xml_feed_accepts_declared_non_utf8_encoding():
    body = '<?xml version="1.0" encoding="windows-1253"?><rss><channel><item><title>Ε9</title></item></channel></rss>'
    [article] = parse_xml_feed(body, FEED_URL, now=NOW)
    assert article.title == "Ε9"
