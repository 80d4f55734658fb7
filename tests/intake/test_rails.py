from pathlib import Path

import pytest
from pydantic import ValidationError

from ledger.intake.rails import CrawlRails, load_catalog, with_env_overrides


class TestCrawlRails:
    def test_defaults(self):
        rails = CrawlRails()
        assert rails.max_items_per_run == 20
        assert rails.max_per_feed_per_run == 5
        assert rails.max_requests_per_host_per_minute == 30
        assert rails.min_delay == 0.75
        assert rails.fetch_timeout == 15.0
        assert rails.max_html_snapshot_bytes == 5 * 1024 * 1024
        assert rails.max_pdf_bytes == 25 * 1024 * 1024
        assert "ftc.gov" in rails.allowed_domains
        assert "utm_source" in rails.strip_query_params

    def test_lists_become_frozensets(self):
        rails = CrawlRails(allowed_domains=["FTC.gov", "sec.gov"], strip_query_params=["utm_source"])
        assert rails.allowed_domains == frozenset({"ftc.gov", "sec.gov"})
        assert isinstance(rails.strip_query_params, frozenset)

    def test_to_dict_sorted(self):
        d = CrawlRails(allowed_domains=["sec.gov", "ftc.gov"]).to_dict()
        assert d["allowed_domains"] == ["ftc.gov", "sec.gov"]


class TestEnvOverrides:
    def test_overrides_applied(self):
        rails = with_env_overrides(
            CrawlRails(),
            {"INTAKE_MAX_ITEMS_PER_RUN": "50", "INTAKE_MAX_PER_FEED_PER_RUN": "7", "INTAKE_FETCH_TIMEOUT_MS": "2000"},
        )
        assert rails.max_items_per_run == 50
        assert rails.max_per_feed_per_run == 7
        assert rails.fetch_timeout_ms == 2000

    @pytest.mark.parametrize("value", ["abc", "0", "-5", "", "1.5"])
    def test_invalid_values_ignored(self, value):
        rails = with_env_overrides(CrawlRails(), {"INTAKE_MAX_ITEMS_PER_RUN": value})
        assert rails.max_items_per_run == 20

    def test_other_fields_not_overridable(self):
        rails = with_env_overrides(CrawlRails(), {"INTAKE_MAX_PDF_BYTES": "10", "MAX_ITEMS_PER_RUN": "3"})
        assert rails == CrawlRails()

    def test_base_untouched(self):
        base = CrawlRails()
        with_env_overrides(base, {"INTAKE_MAX_ITEMS_PER_RUN": "99"})
        assert base.max_items_per_run == 20

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("INTAKE_FETCH_TIMEOUT_MS", "1234")
        assert with_env_overrides(CrawlRails()).fetch_timeout_ms == 1234


class TestCatalog:
    def test_packaged_catalog(self):
        catalog = load_catalog()
        ids = [f.id for f in catalog.feeds]
        assert "ftc_press_releases" in ids
        assert "cfpb_newsroom" in ids
        assert "cfpb_newsroom" not in [f.id for f in catalog.enabled_feeds()]
        assert catalog.rails.max_items_per_run == 20

    def test_enabled_feeds_filter(self):
        catalog = load_catalog()
        assert [f.id for f in catalog.enabled_feeds(["sec_litigation", "cfpb_newsroom"])] == ["sec_litigation"]

    def test_custom_path(self, tmp_path: Path):
        path = tmp_path / "feeds.yaml"
        path.write_text(
            "rails:\n  max_items_per_run: 3\n  allowed_domains: [example.gov]\n"
            "feeds:\n  - id: one\n    publisher: EX\n    name: One\n    url: https://example.gov/rss\n"
        )
        catalog = load_catalog(path)
        assert catalog.rails.max_items_per_run == 3
        assert catalog.rails.allowed_domains == frozenset({"example.gov"})
        assert catalog.feeds[0].per_feed_cap is None
        assert catalog.feeds[0].enabled

    def test_unknown_rails_field(self, tmp_path: Path):
        path = tmp_path / "feeds.yaml"
        path.write_text("rails:\n  max_items: 3\nfeeds: []\n")
        with pytest.raises(ValueError, match="max_items"):
            load_catalog(path)

    def test_invalid_feed_cap(self, tmp_path: Path):
        path = tmp_path / "feeds.yaml"
        path.write_text(
            "feeds:\n  - id: one\n    publisher: EX\n    name: One\n    url: https://example.gov/rss\n"
            "    per_feed_cap: 0\n"
        )
        with pytest.raises(ValidationError):
            load_catalog(path)
