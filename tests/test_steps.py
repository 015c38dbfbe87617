from datetime import datetime, timezone

import pytest

from extraction_worker.core.config import Settings
from extraction_worker.core.errors import ErrorKind, StepError
from extraction_worker.models import EntityRecord, EntityType, Job, JobContext
from extraction_worker.pipeline.orchestrator import Orchestrator
from extraction_worker.pipeline.registry import REGISTRIES, all_step_names
from extraction_worker.steps import build_adapters
from extraction_worker.steps.ai import AIEnhancementAdapter, AISentimentAdapter
from extraction_worker.steps.categories import CategoryMatchingAdapter, find_category, match_categories
from extraction_worker.steps.images import ImageExtractionAdapter
from extraction_worker.steps.places import ProviderFetchAdapter
from extraction_worker.steps.reviews import ReviewFetchAdapter, merge_reviews
from extraction_worker.steps.scoring import ScoreCalculationAdapter
from extraction_worker.steps.web import SocialMediaSearchAdapter, WebScrapeAdapter, profile_platform
from extraction_worker.vendors import google_places
from fakes import InMemoryEntityStore, ScriptedAdapter, adapters_for


def make_ctx(fields=None, entity_type=EntityType.RESTAURANT, outputs=None):
    record = EntityRecord(
        id="ent-1",
        entity_type=entity_type,
        external_place_id="place-1",
        slug="kopi-senja",
        name="Kopi Senja",
        fields=dict(fields or {}),
    )
    return JobContext.build(
        record, search_query=None, outputs=outputs or {}, started_at=datetime.now(timezone.utc)
    )


class DummyAIClient:
    def __init__(self, reply):
        self.reply = reply
        self.calls = []

    def analyze_sentiment(self, entity_type, name, reviews):
        self.calls.append(("sentiment", entity_type, name, list(reviews)))
        return dict(self.reply)

    def enhance_content(self, entity_type, name, facts, website_text=None, reviews=()):
        self.calls.append(("enhance", entity_type, name, facts, website_text))
        return dict(self.reply)


def test_build_adapters_covers_every_registry_step(store):
    adapters = build_adapters(Settings(database_url=""), store)
    assert set(all_step_names()) <= set(adapters)
    for registry in REGISTRIES.values():
        for name in registry.step_names:
            assert adapters[name].name == name


def test_provider_fetch_maps_details(monkeypatch):
    calls = {}

    def fake_details(place_id, api_key, session=None):
        calls["args"] = (place_id, api_key)
        return {"name": "Kopi Senja", "rating": 4.4, "user_ratings_total": 12, "website": "https://kopi.example"}

    monkeypatch.setattr(google_places, "place_details", fake_details)

    result = ProviderFetchAdapter("gkey").execute(make_ctx({"city": "Bandung"}))

    assert calls["args"] == ("place-1", "gkey")
    assert result.update["website"] == "https://kopi.example"
    assert result.update["city"] == "Bandung"
    assert result.metrics.cost_usd == pytest.approx(0.017)


def test_provider_fetch_without_key_is_fatal():
    with pytest.raises(StepError) as excinfo:
        ProviderFetchAdapter("").execute(make_ctx())
    assert excinfo.value.kind is ErrorKind.FATAL


def test_web_scrape_applies_only_with_website():
    adapter = WebScrapeAdapter()
    assert adapter.applies(make_ctx()) is False
    assert adapter.applies(make_ctx({"website": "https://kopi.example"})) is True


def test_web_scrape_uses_scraper_and_compacts_result():
    opened = {}

    class DummyScraper:
        def __init__(self, website, default_region=None, use_js_renderer=False):
            opened["args"] = (website, default_region, use_js_renderer)

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            opened["closed"] = True

        def scrape(self):
            return {"pages_crawled": 2, "emails": ["a@kopi.example"], "phones": [], "menu_link": None}

    adapter = WebScrapeAdapter(default_region="ID", scraper_factory=DummyScraper)
    result = adapter.execute(make_ctx({"website": "https://kopi.example"}))

    assert opened == {"args": ("https://kopi.example", "ID", False), "closed": True}
    assert result.update == {"emails": ["a@kopi.example"]}
    assert result.metrics.items == 2


def test_profile_platform():
    assert profile_platform("https://www.instagram.com/kopisenja") == "instagram"
    assert profile_platform("https://instagram.com/p/abc123") is None
    assert profile_platform("https://facebook.com/") is None
    assert profile_platform("https://x.com/kopisenja") == "twitter"
    assert profile_platform("https://youtube.com/kopisenja") is None


def test_social_search_prefers_scraped_links_and_searches_for_missing():
    queries = []

    def fake_search(query, api_key):
        queries.append(query)
        return [
            {"link": "https://instagram.com/impostor"},
            {"link": "https://www.tiktok.com/@kopisenja"},
            {"link": "https://facebook.com/sharer/sharer.php"},
        ]

    ctx = make_ctx({"city": "Bandung", "socials": {"instagram": ["https://instagram.com/kopisenja"]}})
    result = SocialMediaSearchAdapter("skey", search=fake_search).execute(ctx)

    assert result.update == {
        "instagram": "https://instagram.com/kopisenja",
        "tiktok": "https://www.tiktok.com/@kopisenja",
    }
    assert queries == ['"Kopi Senja" Bandung facebook OR twitter OR tiktok']
    assert result.metrics.cost_usd == pytest.approx(0.01)


def test_social_search_without_key_uses_scraped_links_only():
    def fail_search(query, api_key):
        raise AssertionError("search must not be called")

    ctx = make_ctx({"socials": {"facebook": ["https://facebook.com/kopisenja"]}})
    result = SocialMediaSearchAdapter("", search=fail_search).execute(ctx)

    assert result.update == {"facebook": "https://facebook.com/kopisenja"}


def test_merge_reviews_drops_duplicates():
    merged = merge_reviews(
        [{"author": "Ana", "text": "Great"}, {"author": "Bo", "text": "Ok"}],
        [{"author": "ana ", "text": "Great"}, {"author": None, "text": "Anonymous"}],
    )
    assert [review["text"] for review in merged] == ["Great", "Ok", "Anonymous"]


def test_review_fetch_merges_provider_reviews():
    calls = {}

    def fake_fetch(place_id, api_key, max_reviews):
        calls["args"] = (place_id, api_key, max_reviews)
        return [{"author": "Ana", "text": "Great", "rating": 5}]

    ctx = make_ctx({"provider_reviews": [{"author": "Cy", "text": "Cozy", "rating": 4}]})
    result = ReviewFetchAdapter("skey", max_reviews=10, fetch=fake_fetch).execute(ctx)

    assert calls["args"] == ("place-1", "skey", 10)
    assert [review["author"] for review in result.update["reviews"]] == ["Ana", "Cy"]
    assert result.update["review_count_fetched"] == 2


def test_review_fetch_without_key_is_fatal():
    with pytest.raises(StepError) as excinfo:
        ReviewFetchAdapter(None).execute(make_ctx())
    assert excinfo.value.kind is ErrorKind.FATAL


class DummyImageStore:
    def __init__(self, failures=()):
        self.failures = dict(failures)
        self.copied = []

    def copy(self, source_url, key):
        if key in self.failures:
            raise self.failures[key]
        self.copied.append((source_url, key))
        return f"https://cdn.example/{key}.jpg"


def test_image_extraction_copies_photos_and_skips_failures():
    store = DummyImageStore(failures={"restaurant/ent-1/01": StepError(ErrorKind.INVALID_INPUT, "not an image")})
    adapter = ImageExtractionAdapter("gkey", store, max_images=3)
    ctx = make_ctx({"photo_references": ["r0", "r1", "r2", "r3"]})

    result = adapter.execute(ctx)

    assert [image["position"] for image in result.update["images"]] == [0, 2]
    assert result.update["hero_image"] == "https://cdn.example/restaurant/ent-1/00.jpg"
    assert "key=gkey" in store.copied[0][0]


def test_image_extraction_all_failures_raise_last_error():
    error = StepError(ErrorKind.TRANSIENT, "store down")
    store = DummyImageStore(failures={"restaurant/ent-1/00": error})
    with pytest.raises(StepError) as excinfo:
        ImageExtractionAdapter("gkey", store).execute(make_ctx({"photo_references": ["r0"]}))
    assert excinfo.value is error


def test_image_extraction_without_store_keeps_keyless_urls():
    adapter = ImageExtractionAdapter("gkey", None)
    ctx = make_ctx({"photo_references": ["r0"]})

    assert adapter.applies(ctx) is True
    assert adapter.applies(make_ctx()) is False
    result = adapter.execute(ctx)
    assert "key=" not in result.update["hero_image"]


def test_ai_sentiment_applies_only_with_review_text():
    adapter = AISentimentAdapter(DummyAIClient({}))
    assert adapter.applies(make_ctx({"reviews": [{"rating": 5}]})) is False
    assert adapter.applies(make_ctx({"provider_reviews": [{"text": "Nice"}]})) is True


def test_ai_sentiment_stores_summary_and_modifiers():
    client = DummyAIClient(
        {
            "summary": "Loved the coffee",
            "overall": "positive",
            "positives": ["coffee", " "],
            "negatives": "not a list",
            "modifiers": {"food": 0.4},
            "_cost_usd": 0.002,
        }
    )
    result = AISentimentAdapter(client).execute(make_ctx({"reviews": [{"text": "Great coffee"}]}))

    assert result.update["review_sentiment"] == {
        "summary": "Loved the coffee",
        "overall": "positive",
        "positives": ["coffee"],
    }
    assert result.update["sentiment_modifiers"] == {"food": 0.4}
    assert result.metrics.cost_usd == 0.002


def test_ai_enhancement_builds_facts_and_filters_faqs():
    client = DummyAIClient(
        {
            "description": "A cozy cafe.",
            "faqs": [{"question": "Wifi?", "answer": "Yes"}, {"question": "No answer"}],
            "suggested_categories": ["Cafe", "Coffee Shop"],
        }
    )
    ctx = make_ctx({"city": "Bandung", "price_level": 2, "website_text": "Home page", "emails": ["x@y.z"]})

    result = AIEnhancementAdapter(client).execute(ctx)

    _, entity_type, name, facts, website_text = client.calls[0]
    assert (entity_type, name, website_text) == ("restaurant", "Kopi Senja", "Home page")
    assert facts == {"city": "Bandung", "price_level": 2}
    assert result.update["faqs"] == [{"question": "Wifi?", "answer": "Yes"}]
    assert result.update["suggested_categories"] == ["Cafe", "Coffee Shop"]
    assert "ai_enhanced_at" in result.update


def test_ai_enhancement_with_empty_reply_writes_nothing():
    result = AIEnhancementAdapter(DummyAIClient({})).execute(make_ctx())
    assert result.update == {}


CATEGORIES = [
    {"id": "c1", "name": "Cafe", "slug": "cafe"},
    {"id": "c2", "name": "Coffee Shop", "slug": "coffee-shop"},
    {"id": "c3", "name": "Indonesian", "slug": "indonesian"},
]


def test_find_category_strategies():
    assert find_category("cafe", CATEGORIES)["id"] == "c1"
    assert find_category("Coffee-Shop", CATEGORIES)["id"] == "c2"
    assert find_category("Authentic Indonesian Food", CATEGORIES)["id"] == "c3"
    assert find_category("Spaceport", CATEGORIES) is None
    assert find_category("  ", CATEGORIES) is None


def test_match_categories_deduplicates():
    assert match_categories(["Cafe", "cafe", "Coffee Shop"], CATEGORIES) == ["c1", "c2"]


def test_category_matching_uses_primary_type():
    store = InMemoryEntityStore(categories={EntityType.RESTAURANT: CATEGORIES})
    ctx = make_ctx({"suggested_categories": ["Indonesian"], "primary_type": "coffee_shop"})

    result = CategoryMatchingAdapter(store).execute(ctx)

    assert result.update == {"category_ids": ["c3", "c2"], "primary_category_id": "c3"}


def test_category_matching_no_match_writes_nothing():
    store = InMemoryEntityStore(categories={EntityType.RESTAURANT: CATEGORIES})
    result = CategoryMatchingAdapter(store).execute(make_ctx({"suggested_categories": ["Spaceport"]}))
    assert result.update == {}


def test_score_calculation_adds_timestamp():
    result = ScoreCalculationAdapter().execute(make_ctx({"google_rating": 4.0, "google_review_count": 10}))

    assert result.update["overall_score"] == pytest.approx(8.0)
    assert result.update["total_review_count"] == 10
    assert "last_rated_at" in result.update
    assert result.metrics.items == 1


def test_sentiment_runs_on_resume_after_reviews_arrive(store):
    client = DummyAIClient({"summary": "Cosy", "overall": "positive", "modifiers": {"service": 0.3}})
    adapters = adapters_for(
        EntityType.RESTAURANT,
        review_fetch=ScriptedAdapter(
            "review_fetch",
            [
                StepError(ErrorKind.INVALID_INPUT, "reviews page changed"),
                {"reviews": [{"text": "Cosy corner", "rating": 5}]},
            ],
        ),
        ai_sentiment=AISentimentAdapter(client),
    )
    orchestrator = Orchestrator(store, adapters, default_timeout=None, sleep=lambda _: None)
    record = store.add(EntityType.RESTAURANT, "p1")
    job = Job(entity_id=record.id, entity_type=EntityType.RESTAURANT, external_place_id="p1")
    try:
        orchestrator.run(job)
        progress = store.raw(record.id).progress
        assert progress["review_fetch"]["status"] == "failed"
        assert progress["ai_sentiment"]["status"] == "skipped"

        orchestrator.run(job)
    finally:
        orchestrator.close()

    saved = store.raw(record.id)
    assert saved.progress["review_fetch"]["status"] == "completed"
    assert saved.progress["ai_sentiment"]["status"] == "completed"
    assert saved.fields["sentiment_modifiers"] == {"service": 0.3}
    assert len(client.calls) == 1
