from __future__ import annotations
import logging
from typing import Any, Protocol

from pydantic import ValidationError

from delivery_hub.core.config import settings
from delivery_hub.core.errors import ExternalFetchError
from delivery_hub.schemas.provider import ProviderCity, ProviderServiceArea
from delivery_hub.services.http_client import HubHttpClient, HttpResult


log = logging.getLogger(__name__)


class CoverageProvider(Protocol):
    async def fetch_cities(self) -> list[ProviderCity]:
        ...

    async def fetch_service_areas(self) -> list[ProviderServiceArea]:
        ...


def extract_items(detail: dict[str, Any]) -> list[dict]:
    # provider responses come as [...], {"results": [...]} or {"data": [...]}
    for key in ("results", "data"):
        value = detail.get(key)
        if isinstance(value, list):
            return value
    raise ExternalFetchError(
        "unknown provider response structure",
        details=[{"keys": sorted(detail.keys())[:20]}],
    )


def _raise_for_result(result: HttpResult, *, what: str) -> None:
    if result.ok:
        return
    log.warning("provider: %s failed status=%s code=%s", what, result.status_code, result.error_code)
    raise ExternalFetchError(
        f"provider {what} failed: {result.error_message or result.error_code}",
        status=result.status_code,
        retryable=result.retryable,
        details=[{"error_code": result.error_code, "status": result.status_code}],
    )


class HttpCoverageProvider:
    """
    Coverage provider over HTTP (token auth).

    Any failure surfaces as ExternalFetchError; no retry happens here, a delta
    check fails fast and the caller decides whether to try again.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_token: str | None = None,
        http: HubHttpClient | None = None,
    ):
        self._base_url = (base_url or settings.provider_base_url).rstrip("/")
        token = api_token if api_token is not None else settings.provider_api_token.get_secret_value()
        self._http = http or HubHttpClient(timeout_seconds=settings.provider_timeout_seconds)
        self._headers = {"Authorization": f"Token {token}", "Content-Type": "application/json"}

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _get_items(self, path: str, *, what: str) -> list[dict]:
        result = await self._http.get_json(url=f"{self._base_url}{path}", headers=self._headers)
        _raise_for_result(result, what=what)
        return extract_items(result.detail)

    async def fetch_cities(self) -> list[ProviderCity]:
        items = await self._get_items(settings.provider_cities_path, what="cities fetch")
        try:
            cities = [ProviderCity.model_validate(i) for i in items]
        except ValidationError as e:
            raise ExternalFetchError(f"malformed city payload: {e.error_count()} errors", details=e.errors(include_url=False)[:10]) from e
        log.info("provider: fetched %d cities", len(cities))
        return cities

    async def fetch_service_areas(self) -> list[ProviderServiceArea]:
        items = await self._get_items(settings.provider_service_areas_path, what="service areas fetch")
        areas: list[ProviderServiceArea] = []
        skipped = 0
        for item in items:
            # one broken record must not sink the discovery run
            try:
                areas.append(ProviderServiceArea.model_validate(item))
            except ValidationError:
                skipped += 1
        if skipped:
            log.warning("provider: skipped %d malformed service areas", skipped)
        log.info("provider: fetched %d service areas", len(areas))
        return areas


def get_provider() -> HttpCoverageProvider:
    return HttpCoverageProvider()
