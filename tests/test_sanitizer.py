from datetime import datetime, timezone

import pytest

from utils import (
    BackoffHelper,
    article_identity,
    clean_text,
    estimate_reading_time,
    parse_timestamp,
    try_parse_timestamp,
)


def test_clean_text_strips_tags_and_decodes_ampersand():
    assert clean_text("<b>Φόρος &amp; ΦΠΑ</b>") == "Φόρος & ΦΠΑ"


def test_clean_text_does_not_double_decode():
    assert clean_text("a &amp;lt; b") == "a &lt; b"


def test_clean_text_unwraps_cdata_and_collapses_whitespace():
    raw = "<![CDATA[  <p>Νέα\n\n  ρύθμιση</p>&nbsp;για &quot;ΕΝΦΙΑ&quot; &#39;24 ]]>"
    assert clean_text(raw) == "Νέα ρύθμιση για \"ΕΝΦΙΑ\" '24"


@pytest.mark.parametrize("value", [None, "", "   ", "<br/>"])
def test_clean_text_empty_inputs(value):
    assert clean_text(value) == ""


def test_parse_timestamp_rfc2822():
    assert parse_timestamp("Wed, 18 Oct 2023 14:30:00 +0000") == "2023-10-18T14:30:00.000Z"


def test_parse_timestamp_converts_offsets_to_utc():
    assert parse_timestamp("Tue, 17 Oct 2023 09:00:00 +0300") == "2023-10-17T06:00:00.000Z"


def test_parse_timestamp_iso_with_milliseconds():
    assert parse_timestamp("2023-10-18T14:30:00.250+02:00") == "2023-10-18T12:30:00.250Z"


def test_parse_timestamp_naive_is_utc():
    assert parse_timestamp("2023-10-18 14:30:00") == "2023-10-18T14:30:00.000Z"


def test_parse_timestamp_day_first_format():
    assert parse_timestamp("18/10/2023") == "2023-10-18T00:00:00.000Z"


def test_parse_timestamp_garbage_falls_back_to_now():
    before = datetime.now(timezone.utc)
    result = parse_timestamp("not a date")
    parsed = datetime.strptime(result, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)
    assert abs((parsed - before).total_seconds()) < 1


def test_parse_timestamp_uses_supplied_now():
    now = datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc)
    assert parse_timestamp(None, now=now) == "2024-01-02T03:04:05.678Z"


def test_try_parse_timestamp_returns_none_for_garbage():
    assert try_parse_timestamp("σύντομα") is None
    assert try_parse_timestamp("") is None


def test_estimate_reading_time():
    assert estimate_reading_time("", 200) == 0
    assert estimate_reading_time("λέξη " * 200, 200) == 1
    assert estimate_reading_time("λέξη " * 201, 200) == 2


def test_article_identity_is_deterministic_and_normalized():
    first = article_identity("  <b>ΦΠΑ</b> νέα ", "https://example.gr/a ", "2023-10-18T14:30:00.000Z")
    second = article_identity("φπα νέα", "https://example.gr/a", "2023-10-18T14:30:00.000Z")
    assert first == second
    assert first.startswith("article-")


def test_article_identity_differs_by_link_and_date():
    base = article_identity("Τίτλος", "https://example.gr/a", "2023-10-18T14:30:00.000Z")
    assert base != article_identity("Τίτλος", "https://example.gr/b", "2023-10-18T14:30:00.000Z")
    assert base != article_identity("Τίτλος", "https://example.gr/a", "2023-10-19T14:30:00.000Z")


def test_backoff_is_linear_and_bounded():
    helper = BackoffHelper(base_delay=1.0, max_delay=3.0)
    assert [helper.calculate_delay(attempt) for attempt in range(5)] == [1.0, 2.0, 3.0, 3.0, 3.0]
