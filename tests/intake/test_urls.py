import hashlib

from ledger.constants import STRIP_QUERY_PARAMS
from ledger.intake.urls import canonicalize_url, dedupe_key, effective_date, is_allowed_domain, parse_pub_date


class TestCanonicalizeUrl:
    def test_lowercases_scheme_and_host(self):
        assert canonicalize_url("HTTPS://WWW.FTC.GOV/News/Item") == "https://www.ftc.gov/News/Item"

    def test_strips_tracking_params_and_sorts(self):
        url = "https://www.ftc.gov/news/item/?utm_source=rss&b=2&a=1#section"
        assert canonicalize_url(url, STRIP_QUERY_PARAMS) == "https://www.ftc.gov/news/item?a=1&b=2#section"

    def test_tracking_variants_collapse(self):
        plain = canonicalize_url("https://www.sec.gov/news/press-release/2025-1", STRIP_QUERY_PARAMS)
        tracked = canonicalize_url(
            "https://www.sec.gov/news/press-release/2025-1/?utm_campaign=x&fbclid=abc", STRIP_QUERY_PARAMS
        )
        assert plain == tracked

    def test_strip_is_case_sensitive(self):
        assert canonicalize_url("https://ftc.gov/a?UTM_SOURCE=x", {"utm_source"}) == "https://ftc.gov/a?UTM_SOURCE=x"

    def test_repeated_names_keep_order(self):
        assert canonicalize_url("https://ftc.gov/a?b=2&a=1&a=0") == "https://ftc.gov/a?a=1&a=0&b=2"

    def test_blank_values_kept(self):
        assert canonicalize_url("https://ftc.gov/a?y=1&x=") == "https://ftc.gov/a?x=&y=1"

    def test_root_path(self):
        assert canonicalize_url("https://ftc.gov/") == "https://ftc.gov/"
        assert canonicalize_url("https://ftc.gov") == "https://ftc.gov/"

    def test_all_trailing_slashes_removed(self):
        assert canonicalize_url("https://ftc.gov/a//") == "https://ftc.gov/a"

    def test_not_a_url_returned_unchanged(self):
        assert canonicalize_url("not a url") == "not a url"
        assert canonicalize_url("/relative/path") == "/relative/path"

    def test_idempotent(self):
        once = canonicalize_url("HTTP://Example.GOV/x/?z=1&utm_term=q", STRIP_QUERY_PARAMS)
        assert canonicalize_url(once, STRIP_QUERY_PARAMS) == once


class TestAllowedDomain:
    def test_exact_and_subdomain(self):
        assert is_allowed_domain("https://sec.gov/x", {"sec.gov"})
        assert is_allowed_domain("https://www.sec.gov/x", {"sec.gov"})

    def test_label_boundary(self):
        assert not is_allowed_domain("https://notsec.gov/x", {"sec.gov"})
        assert not is_allowed_domain("https://sec.gov.example.com/x", {"sec.gov"})

    def test_case_and_trailing_dot(self):
        assert is_allowed_domain("https://WWW.SEC.GOV./x", {"sec.gov"})

    def test_scheme_must_be_http(self):
        assert not is_allowed_domain("ftp://sec.gov/x", {"sec.gov"})
        assert not is_allowed_domain("sec.gov/x", {"sec.gov"})

    def test_empty_allow_list(self):
        assert not is_allowed_domain("https://sec.gov/x", set())


class TestDedupeKey:
    def test_sha256_of_url_and_date(self):
        key = dedupe_key("https://ftc.gov/a", "2025-01-06T15:30:00.000Z")
        assert key == hashlib.sha256(b"https://ftc.gov/a|2025-01-06T15:30:00.000Z").hexdigest()
        assert len(key) == 64

    def test_date_changes_key(self):
        assert dedupe_key("https://ftc.gov/a", "2025-01-06") != dedupe_key("https://ftc.gov/a", "2025-01-07")


class TestDates:
    def test_rfc822(self):
        assert effective_date("Mon, 06 Jan 2025 15:30:00 GMT") == "2025-01-06T15:30:00.000Z"

    def test_rfc822_offset_normalized_to_utc(self):
        assert effective_date("Mon, 06 Jan 2025 10:30:00 -0500") == "2025-01-06T15:30:00.000Z"

    def test_iso(self):
        assert effective_date("2025-01-06T15:30:00Z") == "2025-01-06T15:30:00.000Z"

    def test_missing_date_is_stable(self):
        assert effective_date(None) == ""
        assert effective_date("   ") == ""

    def test_unparseable_date_used_verbatim(self):
        assert effective_date(" sometime last week ") == "sometime last week"

    def test_parse_pub_date_naive_is_utc(self):
        parsed = parse_pub_date("2025-01-06T15:30:00")
        assert parsed.utcoffset().total_seconds() == 0
        assert parsed.hour == 15
