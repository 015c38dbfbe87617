"""Website scraping and social profile discovery."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional
from urllib.parse import urlparse

from extraction_worker.etl.transform import compact
from extraction_worker.models import JobContext, StepMetrics, StepResult
from extraction_worker.steps.base import BaseAdapter
from extraction_worker.vendors import serp_reviews
from extraction_worker.vendors.site_scraper import SOCIAL_HOSTS, SiteScraper

logger = logging.getLogger(__name__)

SOCIAL_PLATFORMS = ("instagram", "facebook", "twitter", "tiktok")
SEARCH_COST_USD = 0.01
# Paths that belong to the platform itself rather than a profile.
_NON_PROFILE_PATHS = ("/sharer", "/share", "/intent", "/explore", "/p/", "/reel/", "/hashtag", "/watch")


class WebScrapeAdapter(BaseAdapter):
    name = "web_scrape"

    def __init__(
        self,
        *,
        default_region: Optional[str] = None,
        use_js_renderer: bool = False,
        scraper_factory: Callable[..., SiteScraper] = SiteScraper,
    ) -> None:
        self.default_region = default_region
        self.use_js_renderer = use_js_renderer
        self.scraper_factory = scraper_factory

    def applies(self, ctx: JobContext) -> bool:
        return bool(ctx.get("website"))

    def execute(self, ctx: JobContext) -> StepResult:
        website = ctx.get("website")
        with self.scraper_factory(
            website, default_region=self.default_region, use_js_renderer=self.use_js_renderer
        ) as scraper:
            data = scraper.scrape()
        update = compact(
            {
                "website_text": data.get("website_text"),
                "about_summary": data.get("about_summary"),
                "emails": data.get("emails"),
                "phones": data.get("phones"),
                "socials": data.get("socials"),
                "menu_link": data.get("menu_link"),
                "contact_form_url": data.get("contact_form_url"),
            }
        )
        logger.info("Scraped %d pages from %s", data.get("pages_crawled", 0), website)
        return StepResult(update=update, metrics=StepMetrics(items=int(data.get("pages_crawled") or 0)))


def profile_platform(url: str) -> Optional[str]:
    """Platform name when ``url`` looks like a profile page on a known social network."""
    parsed = urlparse(url)
    host = parsed.netloc.lower()
    path = parsed.path.lower()
    if not path.strip("/") or any(path.startswith(prefix) for prefix in _NON_PROFILE_PATHS):
        return None
    for platform in SOCIAL_PLATFORMS:
        if any(host == allowed or host.endswith(f".{allowed}") for allowed in SOCIAL_HOSTS[platform]):
            return platform
    return None


class SocialMediaSearchAdapter(BaseAdapter):
    """Social profiles from scraped links, topped up by one web search when some are missing."""

    name = "social_media_search"

    def __init__(self, serpapi_api_key: Optional[str], search: Callable[..., list] = serp_reviews.web_search) -> None:
        self.serpapi_api_key = serpapi_api_key
        self.search = search

    def execute(self, ctx: JobContext) -> StepResult:
        found: Dict[str, str] = {}
        for links in (ctx.get("socials") or {}).values():
            for link in links:
                platform = profile_platform(link)
                if platform and platform not in found:
                    found[platform] = link

        missing = [platform for platform in SOCIAL_PLATFORMS if platform not in found]
        cost = 0.0
        if missing and self.serpapi_api_key:
            location = ctx.get("city") or ctx.get("area") or ""
            query = f"\"{ctx.get('name')}\" {location} " + " OR ".join(missing)
            for result in self.search(query, self.serpapi_api_key):
                platform = profile_platform(result["link"])
                if platform in missing and platform not in found:
                    found[platform] = result["link"]
            cost = SEARCH_COST_USD
        elif missing:
            logger.info("SERPAPI_API_KEY not set; using scraped social links only for %s", ctx.entity_id)

        return StepResult(update=found, metrics=StepMetrics(cost_usd=cost, items=len(found)))
