import json

import httpx
import pytest

from delivery_hub.services.area_classifier import (
    UNKNOWN,
    AreaName,
    LlmAreaClassifier,
    parse_classification,
    strip_code_fences,
)
from delivery_hub.services.http_client import HubHttpClient
from tests.fixtures_seed import no_sleep


BATCH = [AreaName(id="1", name="Majorstuen"), AreaName(id="2", name="Nordnes")]


def _answer(items) -> dict:
    return {"choices": [{"message": {"content": json.dumps(items)}}]}


def _classifier(handler, **kw) -> LlmAreaClassifier:
    http = HubHttpClient(transport=httpx.MockTransport(handler))
    return LlmAreaClassifier(http=http, url="https://ai.test/v1/chat/completions", api_key="k", model="m", sleep=no_sleep, **kw)


def test_strip_code_fences():
    assert strip_code_fences('```json\n[{"id": "1"}]\n```') == '[{"id": "1"}]'
    assert strip_code_fences("[]") == "[]"


def test_parse_fills_missing_items_with_fallback():
    content = '```json\n[{"id": 1, "city": "Oslo", "district": "Frogner", "area": "Majorstuen"}]\n```'

    [oslo, missing] = parse_classification(content, BATCH)

    assert (oslo.city, oslo.district, oslo.area) == ("Oslo", "Frogner", "Majorstuen")
    assert not oslo.is_fallback
    assert missing.is_fallback
    assert (missing.city, missing.district, missing.area) == (UNKNOWN, UNKNOWN, "Nordnes")


def test_parse_accepts_legacy_id_key_and_defaults_district_to_city():
    [a, _] = parse_classification('[{"navio_id": "1", "city": "Oslo"}]', BATCH)
    assert (a.city, a.district, a.area) == ("Oslo", "Oslo", "Majorstuen")


def test_parse_rejects_non_list():
    with pytest.raises(ValueError):
        parse_classification('{"id": "1"}', BATCH)


@pytest.mark.asyncio
async def test_classify_batches_and_sends_bearer_auth():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        requests.append((request.headers["authorization"], body))
        areas = json.loads(body["messages"][1]["content"].split("Input areas (id and name):\n", 1)[1].split("\n\n", 1)[0])
        return httpx.Response(200, json=_answer([
            {"id": a["id"], "city": "Oslo", "district": "Frogner", "area": a["name"]} for a in areas
        ]))

    classifier = _classifier(handler, batch_size=1)
    result = await classifier.classify(BATCH)
    await classifier.aclose()

    assert len(requests) == 2
    assert requests[0][0] == "Bearer k"
    assert requests[0][1]["model"] == "m"
    assert [r.area for r in result] == ["Majorstuen", "Nordnes"]
    assert not any(r.is_fallback for r in result)


@pytest.mark.asyncio
async def test_rate_limit_waits_and_resends_same_batch():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(429, json={"error": "rate limited"})
        return httpx.Response(200, json=_answer([
            {"id": "1", "city": "Oslo", "district": "Frogner", "area": "Majorstuen"},
            {"id": "2", "city": "Bergen", "district": "Bergenhus", "area": "Nordnes"},
        ]))

    classifier = _classifier(handler, rate_limit_max_waits=5)
    result = await classifier.classify(BATCH)

    assert len(calls) == 3
    assert [r.city for r in result] == ["Oslo", "Bergen"]


@pytest.mark.asyncio
async def test_exhausted_rate_limit_degrades_to_fallback():
    classifier = _classifier(lambda request: httpx.Response(429, json={}), rate_limit_max_waits=2)
    result = await classifier.classify(BATCH)
    assert all(r.is_fallback for r in result)


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(500, json={"error": "boom"}),
    httpx.Response(200, json={"choices": []}),
    httpx.Response(200, json={"choices": [{"message": {"content": "not json"}}]}),
])
async def test_failed_or_unparsable_batch_degrades_to_fallback(response):
    classifier = _classifier(lambda request: response)
    result = await classifier.classify(BATCH)
    assert [r.original for r in result] == ["Majorstuen", "Nordnes"]
    assert all(r.is_fallback for r in result)


@pytest.mark.asyncio
async def test_rate_limit_honours_retry_after():
    delays = []
    calls = []

    async def record_sleep(seconds):
        delays.append(seconds)

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(429, json={}, headers={"Retry-After": "2"})
        return httpx.Response(200, json=_answer([{"id": "1", "city": "Oslo"}, {"id": "2", "city": "Bergen"}]))

    http = HubHttpClient(transport=httpx.MockTransport(handler))
    classifier = LlmAreaClassifier(http=http, url="https://ai.test/v1/chat/completions", api_key="k", model="m", sleep=record_sleep)
    result = await classifier.classify(BATCH)

    assert delays == [2.0]
    assert [r.city for r in result] == ["Oslo", "Bergen"]
