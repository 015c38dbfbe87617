import json

import pytest

from extraction_worker.core.errors import ErrorKind
from extraction_worker.vendors.ai_client import AIClient, AIClientError


class DummyResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = text

    def json(self):
        return self._payload


class DummySession:
    def __init__(self, response):
        self.response = response
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        return self.response


def _completion(content, usage=None):
    return DummyResponse(
        payload={
            "choices": [{"message": {"content": content}}],
            "usage": usage or {"prompt_tokens": 1000, "completion_tokens": 500},
        }
    )


def test_complete_json_parses_reply_and_costs_call():
    session = DummySession(_completion(json.dumps({"summary": "Loved it"})))
    client = AIClient("key", session=session)

    result = client.complete_json("system", "user", max_tokens=100)

    assert result["summary"] == "Loved it"
    assert result["_cost_usd"] == pytest.approx(0.00015 + 0.0003)
    call = session.calls[0]
    assert call["headers"]["Authorization"] == "Bearer key"
    assert call["json"]["response_format"] == {"type": "json_object"}
    assert call["json"]["messages"][0] == {"role": "system", "content": "system"}


def test_missing_key_is_fatal():
    client = AIClient("", session=DummySession(_completion("{}")))
    with pytest.raises(AIClientError) as excinfo:
        client.complete_json("s", "u")
    assert excinfo.value.kind is ErrorKind.FATAL


@pytest.mark.parametrize(
    "status, kind",
    [(429, ErrorKind.QUOTA_EXCEEDED), (401, ErrorKind.FATAL), (502, ErrorKind.TRANSIENT), (400, ErrorKind.INVALID_INPUT)],
)
def test_http_errors_are_classified(status, kind):
    client = AIClient("key", session=DummySession(DummyResponse(status_code=status, text="nope")))
    with pytest.raises(AIClientError) as excinfo:
        client.complete_json("s", "u")
    assert excinfo.value.kind is kind


@pytest.mark.parametrize("content", ["not json", "[1, 2]"])
def test_unusable_replies_are_transient(content):
    client = AIClient("key", session=DummySession(_completion(content)))
    with pytest.raises(AIClientError) as excinfo:
        client.complete_json("s", "u")
    assert excinfo.value.kind is ErrorKind.TRANSIENT


def test_missing_choices_is_transient():
    client = AIClient("key", session=DummySession(DummyResponse(payload={"choices": []})))
    with pytest.raises(AIClientError):
        client.complete_json("s", "u")


def test_unknown_model_costs_nothing():
    client = AIClient("key", model="local-llm", session=DummySession(_completion("{}")))
    assert client.complete_json("s", "u")["_cost_usd"] == 0.0


def test_analyze_sentiment_prompt_includes_reviews():
    session = DummySession(_completion(json.dumps({"overall": "positive"})))
    client = AIClient("key", session=session)

    client.analyze_sentiment("mall", "Grand Mall", [{"rating": 5, "text": "Huge\nand clean"}, {"rating": 1}])

    messages = session.calls[0]["json"]["messages"]
    assert "shopping mall" in messages[0]["content"]
    assert "- (5/5) Huge and clean" in messages[1]["content"]
    assert "(1/5)" not in messages[1]["content"]


def test_enhance_content_truncates_website_text():
    session = DummySession(_completion(json.dumps({"description": "d"})))
    client = AIClient("key", session=session)

    client.enhance_content("hotel", "Inn", {"city": "Bali"}, website_text="x" * 10000)

    user = session.calls[0]["json"]["messages"][1]["content"]
    assert '"city": "Bali"' in user
    assert "x" * 6000 in user
    assert "x" * 6001 not in user
