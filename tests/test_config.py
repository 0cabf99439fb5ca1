import os

from config import VALID_SORT_ORDERS, config, get_logger, read_yaml_file


def test_parse_feed_entry_with_all_fields():
    source = config._parse_feed_entry("aade", {
        "url": " https://www.aade.gr/rss ",
        "name": "ΑΑΔΕ",
        "category": "government",
        "priority": "HIGH",
        "enabled": False,
        "color": "#1e40af",
        "backend_id": 1,
    })
    assert source.id == "aade"
    assert source.url == "https://www.aade.gr/rss"
    assert source.display_name == "ΑΑΔΕ"
    assert source.category == "government"
    assert source.priority == "high"
    assert source.enabled is False
    assert source.backend_id == "1"


def test_parse_feed_entry_defaults():
    source = config._parse_feed_entry("forin", {"url": "https://www.forin.gr/rss"})
    assert source.display_name == "forin"
    assert source.category == "news"
    assert source.priority == "medium"
    assert source.enabled is True
    assert source.backend_id is None


def test_parse_feed_entry_rejects_invalid_entries():
    assert config._parse_feed_entry("a", None) is None
    assert config._parse_feed_entry("b", {"name": "no url"}) is None
    assert config._parse_feed_entry("c", {"url": "ftp://example.gr/feed"}) is None


def test_unknown_priority_falls_back_to_medium():
    assert config._parse_feed_entry("d", {"url": "https://d.gr/rss", "priority": "urgent"}).priority == "medium"


def test_bundled_feeds_file_is_loaded():
    ids = [source.id for source in config.FEED_SOURCES]
    assert "aade" in ids
    assert config.PROXY_ORDER[0] == "rss2json"
    assert "government" in config.CATEGORIES


def test_config_summary_and_defaults():
    summary = config.get_config_summary()
    assert summary["feed_count"] == len(config.FEED_SOURCES)
    assert config.DEFAULT_SORT in VALID_SORT_ORDERS


def test_logger_namespace():
    assert get_logger("fetcher").name == "GreekTaxNews.fetcher"


def test_numeric_settings_fall_back_on_bad_values(monkeypatch):
    monkeypatch.setenv("HTTP_TIMEOUT", "soon")
    assert config._number("HTTP_TIMEOUT", 20, 1) == 20
    monkeypatch.setenv("HTTP_TIMEOUT", "0")
    assert config._number("HTTP_TIMEOUT", 20, 1) == 20
    monkeypatch.setenv("BACKOFF_BASE_SECONDS", "0.5")
    assert config._number("BACKOFF_BASE_SECONDS", 1.0, 0.0, float) == 0.5


def test_read_yaml_file_handles_missing_and_broken_files(tmp_path):
    broken = tmp_path / "broken.yaml"
    broken.write_text("feeds: [unclosed", encoding="utf-8")
    assert read_yaml_file(str(tmp_path / "missing.yaml"), 1024, "feeds") is None
    assert read_yaml_file(str(broken), 1024, "feeds") is None
    assert read_yaml_file(str(broken), 4, "feeds") is None


def test_secrets_file_entries_are_applied(tmp_path, monkeypatch):
    secrets = tmp_path / "secrets.yaml"
    secrets.write_text("environment:\n  GTN_TEST_SECRET: 42\n", encoding="utf-8")
    monkeypatch.setenv("SECRETS_FILE", str(secrets))
    monkeypatch.delenv("GTN_TEST_SECRET", raising=False)
    try:
        config._apply_secrets_file()
        assert os.environ["GTN_TEST_SECRET"] == "42"
    finally:
        os.environ.pop("GTN_TEST_SECRET", None)


def test_reload_feed_sources(tmp_path, monkeypatch):
    feeds = tmp_path / "feeds.yaml"
    feeds.write_text(
        "proxies: [direct]\n"
        "feeds:\n"
        "  taxheaven:\n"
        "    url: https://www.taxheaven.gr/rss\n"
        "    name: Taxheaven\n",
        encoding="utf-8",
    )
    original = config.FEEDS_CONFIG_PATH
    monkeypatch.setattr(config, "FEEDS_CONFIG_PATH", str(feeds))
    try:
        config.reload_feed_sources()
        assert [source.id for source in config.FEED_SOURCES] == ["taxheaven"]
        assert config.PROXY_ORDER == ["direct"]
    finally:
        config.FEEDS_CONFIG_PATH = original
        config.reload_feed_sources()


def test_category_label_uses_configured_icon_and_label(monkeypatch):
    monkeypatch.setattr(config, "CATEGORIES", {"law": {"label": "Νομοθεσία", "icon": "⚖️"}, "bare": {}})
    assert config.category_label("law") == "⚖️ Νομοθεσία"
    assert config.category_label("bare") == "bare"
    assert config.category_label("unknown") == "unknown"
