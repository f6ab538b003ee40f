from __future__ import annotations
import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from delivery_hub.core.config import settings
from delivery_hub.services.http_client import HubHttpClient


log = logging.getLogger(__name__)

UNKNOWN = "Unknown"

_CODE_FENCE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)

SYSTEM_PROMPT = "You are a geography expert. Return only valid JSON, no markdown formatting or explanation."

USER_PROMPT = """Given these delivery area names from a service provider in {country}, classify each into:
1. City (municipality or major city)
2. District (borough, administrative area or neighbourhood group)
3. Area (specific neighbourhood or postal area)

Rules:
- Use official boroughs as districts where the city has them
- If unsure of the district, use the city name as district
- Preserve the original name as the area name

Input areas (id and name):
{areas}

Return ONLY a JSON array with this structure:
[{{"original": "Skillebekk", "id": "123", "city": "Oslo", "district": "Frogner", "area": "Skillebekk"}}]"""


@dataclass(frozen=True)
class AreaName:
    id: str
    name: str


@dataclass(frozen=True)
class ClassifiedArea:
    id: str
    original: str
    city: str
    district: str
    area: str

    @property
    def is_fallback(self) -> bool:
        return self.city == UNKNOWN and self.district == UNKNOWN


class AreaClassifier(Protocol):
    async def classify(self, areas: list[AreaName]) -> list[ClassifiedArea]:
        ...


def fallback(areas: list[AreaName]) -> list[ClassifiedArea]:
    return [ClassifiedArea(id=a.id, original=a.name, city=UNKNOWN, district=UNKNOWN, area=a.name) for a in areas]


def strip_code_fences(content: str) -> str:
    return _CODE_FENCE.sub("", content).strip()


def parse_classification(content: str, batch: list[AreaName]) -> list[ClassifiedArea]:
    """
    Parse the model answer for one batch. Raises ValueError when the answer is
    not a JSON list. Items the model dropped or mangled get the fallback.
    """
    parsed = json.loads(strip_code_fences(content))
    if not isinstance(parsed, list):
        raise ValueError("classification answer is not a JSON array")

    by_id: dict[str, dict[str, Any]] = {}
    for item in parsed:
        if not isinstance(item, dict):
            continue
        raw_id = item.get("id", item.get("navio_id"))
        if raw_id is not None:
            by_id[str(raw_id)] = item

    out: list[ClassifiedArea] = []
    for a in batch:
        item = by_id.get(a.id)
        city = str(item.get("city") or "").strip() if item else ""
        if not item or not city:
            out.extend(fallback([a]))
            continue
        out.append(ClassifiedArea(
            id=a.id,
            original=a.name,
            city=city,
            district=str(item.get("district") or city).strip(),
            area=str(item.get("area") or a.name).strip(),
        ))
    return out


class LlmAreaClassifier:
    """
    Classifies flat area names into city/district/area through an
    OpenAI-compatible chat-completions gateway.

    Batches are sent one at a time. A 429 waits and resends the same batch a
    bounded number of times; anything else that goes wrong degrades that batch
    to Unknown/Unknown/<name> instead of failing the import.
    """

    def __init__(
        self,
        *,
        http: HubHttpClient | None = None,
        url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        batch_size: int | None = None,
        rate_limit_wait_seconds: float | None = None,
        rate_limit_max_waits: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._http = http or HubHttpClient(timeout_seconds=60.0)
        self._url = url or settings.ai_gateway_url
        key = api_key if api_key is not None else settings.ai_api_key.get_secret_value()
        self._headers = {"Authorization": f"Bearer {key}", "Content-Type": "application/json"}
        self._model = model or settings.ai_model
        self.batch_size = max(1, batch_size or settings.ai_batch_size)
        self._wait = rate_limit_wait_seconds if rate_limit_wait_seconds is not None else settings.ai_rate_limit_wait_seconds
        self._max_waits = rate_limit_max_waits if rate_limit_max_waits is not None else settings.ai_rate_limit_max_waits
        self._sleep = sleep

    async def aclose(self) -> None:
        await self._http.aclose()

    def _body(self, batch: list[AreaName]) -> dict:
        areas = json.dumps([{"id": a.id, "name": a.name} for a in batch], ensure_ascii=False)
        return {
            "model": self._model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": USER_PROMPT.format(country=settings.ai_country_hint, areas=areas)},
            ],
        }

    async def _classify_batch(self, batch: list[AreaName], *, batch_no: int) -> list[ClassifiedArea]:
        waits = 0
        while True:
            result = await self._http.post_json(url=self._url, headers=self._headers, json_body=self._body(batch))
            if result.status_code == 429 and waits < self._max_waits:
                waits += 1
                wait = result.retry_after_seconds if result.retry_after_seconds is not None else self._wait
                log.info("classifier: batch %d rate limited, waiting %.1fs (%d/%d)", batch_no, wait, waits, self._max_waits)
                await self._sleep(wait)
                continue
            break

        if not result.ok:
            log.warning("classifier: batch %d failed (%s), using fallback", batch_no, result.error_code)
            return fallback(batch)

        try:
            content = result.detail["choices"][0]["message"]["content"] or ""
            return parse_classification(content, batch)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            log.warning("classifier: batch %d unparsable answer (%s), using fallback", batch_no, e)
            return fallback(batch)

    async def classify(self, areas: list[AreaName]) -> list[ClassifiedArea]:
        out: list[ClassifiedArea] = []
        total = (len(areas) + self.batch_size - 1) // self.batch_size
        for n, start in enumerate(range(0, len(areas), self.batch_size), start=1):
            batch = areas[start:start + self.batch_size]
            log.info("classifier: batch %d/%d (%d areas)", n, total, len(batch))
            out.extend(await self._classify_batch(batch, batch_no=n))
        return out


def get_classifier() -> LlmAreaClassifier:
    return LlmAreaClassifier()
