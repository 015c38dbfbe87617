import pytest
import requests
from bs4 import BeautifulSoup

from extraction_worker.core.errors import ErrorKind
from extraction_worker.vendors import site_scraper
from extraction_worker.vendors.site_scraper import SiteScraper, SiteScrapeError

ROOT_HTML = """
<html><body>
  <h1>Kopi Senja</h1>
  <p>Coffee and pastries. Call +1 415-555-0100 or write to hello@kopisenja.example.</p>
  <a href="/about-us">About</a>
  <a href="/menu">Our Menu</a>
  <a href="https://www.instagram.com/kopisenja/">Instagram</a>
  <a href="https://facebook.com/kopisenja">Facebook</a>
  <a href="https://elsewhere.example/contact">Partner</a>
  <a href="mailto:Bookings@KopiSenja.example?subject=hi">Email</a>
  <script>var hidden = "secret@tracker.example";</script>
</body></html>
"""

ABOUT_HTML = """
<html><body>
  <p>We are a family-run cafe roasting our own beans since 1990.</p>
  <form id="contact-form" action="/send"></form>
</body></html>
"""


class DummyResponse:
    def __init__(self, url, status_code=200, text="", content_type="text/html; charset=utf-8"):
        self.url = url
        self.status_code = status_code
        self.text = text
        self.headers = {"Content-Type": content_type}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code}", response=self)


class DummySession:
    def __init__(self, routes):
        self.routes = routes
        self.headers = {}
        self.requested = []
        self.closed = False

    def get(self, url, timeout=None, allow_redirects=True):
        self.requested.append(url)
        route = self.routes.get(url)
        if route is None:
            return DummyResponse(url, status_code=404)
        if isinstance(route, Exception):
            raise route
        return route

    def close(self):
        self.closed = True


def _scraper(routes, **kwargs):
    return SiteScraper(
        "kopisenja.example",
        session=DummySession(routes),
        default_region="US",
        sleep=lambda seconds: None,
        **kwargs,
    )


def test_sanitize_website():
    assert site_scraper.sanitize_website("example.com") == "https://example.com/"
    assert site_scraper.sanitize_website("http://example.com/a?b=1#c") == "http://example.com/a"
    assert site_scraper.sanitize_website("  ") is None


def test_extract_helpers():
    assert site_scraper.extract_emails("Mail A@B.com or logo@2x.png") == ["a@b.com"]
    assert site_scraper.extract_phones("Call 415-555-0100", default_region="US") == ["+14155550100"]
    assert site_scraper.normalize_phone("not a phone") is None


def test_extract_social_links_normalises_urls():
    soup = BeautifulSoup(ROOT_HTML, "html.parser")
    socials = site_scraper.extract_social_links(soup, "https://kopisenja.example/")
    assert socials == {
        "instagram": ["https://www.instagram.com/kopisenja"],
        "facebook": ["https://facebook.com/kopisenja"],
    }


def test_summarize_text_truncates_on_word_boundary():
    summary = site_scraper.summarize_text("word " * 100, max_length=20)
    assert summary.endswith("...")
    assert len(summary) <= 23


def test_scrape_aggregates_pages():
    routes = {
        "https://kopisenja.example/": DummyResponse("https://kopisenja.example/", text=ROOT_HTML),
        "https://kopisenja.example/about-us": DummyResponse("https://kopisenja.example/about-us", text=ABOUT_HTML),
        "https://kopisenja.example/menu": DummyResponse("https://kopisenja.example/menu", text="<p>Menu</p>"),
    }
    with _scraper(routes) as scraper:
        result = scraper.scrape()
        session = scraper.session

    assert result["pages_crawled"] == 3
    assert "hello@kopisenja.example" in result["emails"]
    assert "bookings@kopisenja.example" in result["emails"]
    assert "secret@tracker.example" not in result["emails"]
    assert "+14155550100" in result["phones"]
    assert result["socials"]["instagram"] == ["https://www.instagram.com/kopisenja"]
    assert result["menu_link"] == "https://kopisenja.example/menu"
    assert result["contact_form_url"] == "https://kopisenja.example/send"
    assert result["about_summary"].startswith("We are a family-run cafe")
    assert "Coffee and pastries" in result["website_text"]
    assert "https://elsewhere.example/contact" not in session.requested
    assert session.closed is True


def test_scrape_respects_robots():
    routes = {
        "https://kopisenja.example/robots.txt": DummyResponse(
            "https://kopisenja.example/robots.txt", text="User-agent: *\nDisallow: /", content_type="text/plain"
        ),
    }
    result = _scraper(routes).scrape()
    assert result == {"website": "https://kopisenja.example/", "pages_crawled": 0}


def test_unreachable_root_is_transient():
    routes = {"https://kopisenja.example/": requests.ConnectionError("refused")}
    with pytest.raises(SiteScrapeError) as excinfo:
        _scraper(routes).scrape()
    assert excinfo.value.kind is ErrorKind.TRANSIENT


def test_missing_root_is_invalid_input():
    with pytest.raises(SiteScrapeError) as excinfo:
        _scraper({}).scrape()
    assert excinfo.value.kind is ErrorKind.INVALID_INPUT


def test_failed_subpage_is_skipped():
    routes = {
        "https://kopisenja.example/": DummyResponse("https://kopisenja.example/", text=ROOT_HTML),
        "https://kopisenja.example/about-us": requests.Timeout("slow"),
    }
    result = _scraper(routes).scrape()
    assert result["pages_crawled"] == 1


def test_invalid_website_rejected():
    with pytest.raises(ValueError):
        SiteScraper("   ")
