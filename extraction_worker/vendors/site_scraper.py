"""Website scraping for public contact details and descriptive text."""

from __future__ import annotations

import logging
import random
import re
import time
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from urllib import robotparser
from urllib.parse import urljoin, urlparse, urlunparse

import phonenumbers
import requests
from bs4 import BeautifulSoup

from extraction_worker.core.errors import ErrorKind, StepError

logger = logging.getLogger(__name__)

USER_AGENT = "DirectoryExtractionBot/1.0 (+https://directory.example/contact)"
REQUEST_TIMEOUT = 10
REQUEST_DELAY_RANGE = (1.0, 2.0)
MAX_PAGES_PER_DOMAIN = 4
MAX_TEXT_CHARS = 20000
SOCIAL_HOSTS = {
    "instagram": ("instagram.com", "instagr.am"),
    "facebook": ("facebook.com", "fb.com"),
    "twitter": ("twitter.com", "x.com"),
    "tiktok": ("tiktok.com",),
    "youtube": ("youtube.com", "youtu.be"),
    "linkedin": ("linkedin.com",),
}
CRAWL_PATH_CANDIDATES = (
    "/contact",
    "/contact-us",
    "/about",
    "/about-us",
    "/menu",
    "/our-story",
)
CONTACT_KEYWORDS = ("contact", "reach us", "get in touch")
ABOUT_KEYWORDS = ("about", "our-story", "story")
MENU_KEYWORDS = ("menu", "food", "dining")

EMAIL_REGEX = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
PHONE_CANDIDATE_REGEX = re.compile(r"\+?\d[\d\s().\-]{6,}")


class SiteScrapeError(StepError):
    """Raised when a website cannot be scraped at all."""


class PlaywrightRenderer:
    """Renders JavaScript-heavy pages in headless Chromium (``render`` extra)."""

    def __init__(self, timeout_ms: int = 15000) -> None:
        self._playwright = None
        self._browser = None
        self._timeout_ms = timeout_ms

    def _ensure_browser(self) -> None:
        if self._playwright is None:
            from playwright.sync_api import sync_playwright

            self._playwright = sync_playwright().start()
            self._browser = self._playwright.chromium.launch(headless=True)

    def render(self, url: str) -> Tuple[str, str]:
        self._ensure_browser()
        page = self._browser.new_page()
        try:
            page.goto(url, wait_until="networkidle", timeout=self._timeout_ms)
            return page.url, page.content()
        finally:
            page.close()

    def close(self) -> None:
        if self._browser is not None:
            self._browser.close()
            self._browser = None
        if self._playwright is not None:
            self._playwright.stop()
            self._playwright = None


def sanitize_website(raw_url: Optional[str]) -> Optional[str]:
    """Normalise raw website strings into absolute https URLs."""
    if not raw_url or not raw_url.strip():
        return None

    url = raw_url.strip()
    parsed = urlparse(url, scheme="https")
    if not parsed.netloc:
        parsed = urlparse(f"https://{url}")
    if not parsed.netloc:
        return None

    path = parsed.path or "/"
    if not path.startswith("/"):
        path = f"/{path}"
    return urlunparse(parsed._replace(path=path, fragment="", query=""))


def fetch_url(session: requests.Session, url: str, *, timeout: int = REQUEST_TIMEOUT) -> Tuple[str, BeautifulSoup]:
    """Fetch an HTML page; raises ``requests`` errors and ValueError for non-HTML content."""
    response = session.get(url, timeout=timeout, allow_redirects=True)
    response.raise_for_status()
    content_type = response.headers.get("Content-Type", "").lower()
    if "text/html" not in content_type:
        raise ValueError(f"non-HTML content at {url} ({content_type})")
    return response.url, BeautifulSoup(response.text, "html.parser")


def extract_emails(text: str) -> List[str]:
    candidates = {match.group(0).lower() for match in EMAIL_REGEX.finditer(text or "")}
    return sorted(email for email in candidates if not email.endswith((".png", ".jpg", ".webp")))


def normalize_phone(raw: str, default_region: Optional[str] = None) -> Optional[str]:
    """E.164 form of ``raw`` or None when it isn't a possible number."""
    try:
        parsed = phonenumbers.parse(raw, default_region)
    except phonenumbers.NumberParseException:
        return None
    if not phonenumbers.is_possible_number(parsed):
        return None
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def extract_phones(text: str, default_region: Optional[str] = None) -> List[str]:
    if not text:
        return []
    found: Set[str] = set()
    for raw in PHONE_CANDIDATE_REGEX.findall(text):
        normalized = normalize_phone(raw.strip(), default_region)
        if normalized:
            found.add(normalized)
    return sorted(found)


def extract_social_links(soup: BeautifulSoup, base_url: str) -> Dict[str, List[str]]:
    results: Dict[str, Set[str]] = {platform: set() for platform in SOCIAL_HOSTS}
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href:
            continue
        parsed = urlparse(urljoin(base_url, href))
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            continue
        host = parsed.netloc.lower()
        for platform, allowed_hosts in SOCIAL_HOSTS.items():
            if any(host == allowed or host.endswith(f".{allowed}") for allowed in allowed_hosts):
                results[platform].add(urlunparse(("https", parsed.netloc, parsed.path.rstrip("/"), "", "", "")))
    return {platform: sorted(links) for platform, links in results.items() if links}


def find_menu_link(soup: BeautifulSoup, base_url: str) -> Optional[str]:
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        label = anchor.get_text(" ", strip=True).lower()
        target = urljoin(base_url, href)
        if any(keyword in href.lower() or keyword in label for keyword in MENU_KEYWORDS):
            return target
    return None


def _needs_js_render(soup: BeautifulSoup) -> bool:
    if len(soup.get_text(" ", strip=True)) > 200:
        return False
    if soup.find(attrs={"data-page": True}):
        return True
    root = soup.find(id=re.compile("(app|root|__next)", re.IGNORECASE))
    return bool(root and not root.get_text(strip=True))


def summarize_text(text: str, *, max_length: int = 320) -> Optional[str]:
    cleaned = re.sub(r"\s+", " ", text or "").strip()
    if not cleaned:
        return None
    if len(cleaned) <= max_length:
        return cleaned
    truncated = cleaned[: max_length + 1]
    last_space = truncated.rfind(" ")
    if last_space > 0:
        truncated = truncated[:last_space]
    return f"{truncated.rstrip('. ')}..."


def _visible_text(soup: BeautifulSoup) -> str:
    for tag in soup(["script", "style", "noscript", "svg"]):
        tag.decompose()
    return soup.get_text(" ", strip=True)


class SiteScraper:
    """Crawl a handful of same-domain pages and aggregate what they expose."""

    def __init__(
        self,
        website: str,
        *,
        default_region: Optional[str] = None,
        use_js_renderer: bool = False,
        session: Optional[requests.Session] = None,
        max_pages: int = MAX_PAGES_PER_DOMAIN,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        sanitized = sanitize_website(website)
        if not sanitized:
            raise ValueError("A valid website URL is required for scraping")

        self.root_url = sanitized
        parsed = urlparse(self.root_url)
        self.domain = parsed.netloc.lower().removeprefix("www.")
        self.default_region = default_region
        self.max_pages = max_pages
        self._sleep = sleep
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)
        self.session.headers.setdefault("Accept", "text/html,application/xhtml+xml")
        self.session.headers.setdefault("Accept-Language", "en-US,en;q=0.9")

        self._robots = self._load_robot_rules(parsed)
        self.use_js_renderer = use_js_renderer
        self._js_renderer: Optional[PlaywrightRenderer] = None

    def _load_robot_rules(self, parsed_url) -> Optional[robotparser.RobotFileParser]:
        robots_url = urlunparse((parsed_url.scheme, parsed_url.netloc, "/robots.txt", "", "", ""))
        try:
            response = self.session.get(robots_url, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as exc:
            logger.debug("Unable to read robots.txt from %s: %s", robots_url, exc)
            return None
        if response.status_code != 200:
            return None
        parser = robotparser.RobotFileParser()
        parser.parse(response.text.splitlines())
        return parser

    def _is_same_domain(self, url: str) -> bool:
        netloc = urlparse(url).netloc
        return not netloc or netloc.lower().removeprefix("www.") == self.domain

    def _is_allowed(self, url: str) -> bool:
        if not self._robots:
            return True
        allowed = self._robots.can_fetch(USER_AGENT, url)
        if not allowed:
            logger.info("Robots.txt disallows %s", url)
        return allowed

    def _candidate_urls(self, base_url: str, soup: BeautifulSoup) -> List[str]:
        seen: Set[str] = set()
        ordered: List[str] = []
        for anchor in soup.find_all("a", href=True):
            absolute = urljoin(base_url, anchor["href"].strip())
            if not self._is_same_domain(absolute):
                continue
            parsed = urlparse(absolute)
            path = parsed.path.lower()
            if any(candidate in path for candidate in CRAWL_PATH_CANDIDATES):
                normalized = urlunparse((parsed.scheme, parsed.netloc, parsed.path, "", "", ""))
                if normalized not in seen:
                    seen.add(normalized)
                    ordered.append(normalized)
        return ordered

    def _find_contact_form(self, page_url: str, soup: BeautifulSoup) -> Optional[str]:
        for form in soup.find_all("form"):
            classes = form.get("class") or []
            descriptor = " ".join([form.get("id", ""), form.get("name", ""), " ".join(classes)]).lower()
            action = (form.get("action") or "").strip()
            if any(keyword in descriptor or keyword in action.lower() for keyword in CONTACT_KEYWORDS):
                return urljoin(page_url, action) if action else page_url
        return None

    def _link_values(self, soup: BeautifulSoup, scheme: str) -> List[str]:
        values = []
        for anchor in soup.find_all("a", href=True):
            href = anchor["href"].strip()
            if href.lower().startswith(f"{scheme}:"):
                value = href.split(":", 1)[1].split("?")[0].strip()
                if value:
                    values.append(value)
        return values

    def _fetch_with_js(self, url: str) -> Optional[Tuple[str, BeautifulSoup]]:
        if self._js_renderer is None:
            self._js_renderer = PlaywrightRenderer(timeout_ms=REQUEST_TIMEOUT * 1000)
        try:
            final_url, html = self._js_renderer.render(url)
        except Exception as exc:  # noqa: BLE001
            logger.warning("JS rendering failed for %s, disabling renderer: %s", url, exc)
            self.use_js_renderer = False
            return None
        return final_url, BeautifulSoup(html, "html.parser")

    def _fetch(self, url: str) -> Tuple[str, BeautifulSoup]:
        final_url, soup = fetch_url(self.session, url)
        if self.use_js_renderer and _needs_js_render(soup):
            rendered = self._fetch_with_js(final_url)
            if rendered:
                return rendered
        return final_url, soup

    def scrape(self) -> Dict[str, Any]:
        """Crawl the site; raises ``SiteScrapeError`` only when the home page is unreachable."""
        if not self._is_allowed(self.root_url):
            logger.info("Robots disallows root path for %s; nothing scraped", self.domain)
            return {"website": self.root_url, "pages_crawled": 0}

        queue: List[str] = [self.root_url]
        visited: Set[str] = set()
        texts: List[str] = []
        emails: Set[str] = set()
        phones: Set[str] = set()
        socials: Dict[str, Set[str]] = defaultdict(set)
        menu_link: Optional[str] = None
        contact_form_url: Optional[str] = None
        about_summary: Optional[str] = None

        while queue and len(visited) < self.max_pages:
            url = queue.pop(0)
            if not self._is_allowed(url):
                continue
            if visited:
                self._sleep(random.uniform(*REQUEST_DELAY_RANGE))
            try:
                final_url, soup = self._fetch(url)
            except (requests.RequestException, ValueError) as exc:
                if url == self.root_url:
                    raise self._root_error(exc) from exc
                logger.warning("Failed to fetch %s: %s", url, exc)
                continue
            if final_url in visited:
                continue
            visited.add(final_url)

            socials_here = extract_social_links(soup, final_url)
            menu_link = menu_link or find_menu_link(soup, final_url)
            contact_form_url = contact_form_url or self._find_contact_form(final_url, soup)
            candidates = self._candidate_urls(final_url, soup)
            for value in self._link_values(soup, "mailto"):
                emails.add(value.lower())
            for value in self._link_values(soup, "tel"):
                phones.update(extract_phones(value, self.default_region))

            text = _visible_text(soup)
            texts.append(text)
            emails.update(extract_emails(text))
            phones.update(extract_phones(text, self.default_region))
            for platform, links in socials_here.items():
                socials[platform].update(links)
            if not about_summary and any(keyword in urlparse(final_url).path.lower() for keyword in ABOUT_KEYWORDS):
                about_summary = summarize_text(text)

            for candidate in candidates:
                if len(visited) + len(queue) >= self.max_pages:
                    break
                if candidate not in visited and candidate not in queue:
                    queue.append(candidate)

        website_text = " ".join(texts)[:MAX_TEXT_CHARS]
        return {
            "website": self.root_url,
            "pages_crawled": len(visited),
            "website_text": website_text,
            "about_summary": about_summary or summarize_text(texts[0] if texts else ""),
            "emails": sorted(emails),
            "phones": sorted(phones),
            "socials": {platform: sorted(links) for platform, links in socials.items() if links},
            "menu_link": menu_link,
            "contact_form_url": contact_form_url,
        }

    def _root_error(self, exc: Exception) -> SiteScrapeError:
        if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
            return SiteScrapeError(ErrorKind.TRANSIENT, f"{self.root_url} unreachable: {exc}")
        if isinstance(exc, requests.HTTPError) and exc.response is not None and exc.response.status_code >= 500:
            return SiteScrapeError(ErrorKind.TRANSIENT, f"{self.root_url} returned {exc.response.status_code}")
        return SiteScrapeError(ErrorKind.INVALID_INPUT, f"{self.root_url} could not be scraped: {exc}")

    def close(self) -> None:
        self.session.close()
        if self._js_renderer:
            self._js_renderer.close()
            self._js_renderer = None

    def __enter__(self) -> "SiteScraper":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
