from __future__ import annotations
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Any, Mapping

import httpx

from delivery_hub.models.base import utcnow

RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class HttpResult:
    ok: bool
    status_code: int | None
    detail: dict[str, Any]

    error_code: str | None = None
    error_message: str | None = None
    retryable: bool = False

    elapsed_ms: int | None = None
    retry_after: str | None = None

    @property
    def retry_after_seconds(self) -> float | None:
        # Retry-After is either delta-seconds or an HTTP date
        if not self.retry_after:
            return None
        try:
            return max(0.0, float(self.retry_after))
        except ValueError:
            pass
        try:
            when = parsedate_to_datetime(self.retry_after)
        except (TypeError, ValueError):
            return None
        return max(0.0, (when - utcnow()).total_seconds())


def _cap_text(s: str, *, max_chars: int) -> str:
    if len(s) <= max_chars:
        return s
    return s[:max_chars] + f"...(truncated, {len(s)} chars)"


def _read_body(resp: httpx.Response, *, max_chars: int) -> tuple[dict[str, Any], bool]:
    """
    Returns (detail, is_json). Top-level JSON lists are wrapped as {"data": [...]}
    so callers always get a dict; the provider answers with bare lists on some
    endpoints.
    """
    content_type = (resp.headers.get("content-type") or "").lower()
    if "application/json" in content_type or content_type.endswith("+json"):
        try:
            parsed = resp.json()
        except ValueError:
            return {"raw": _cap_text(resp.text, max_chars=max_chars)}, False
        return (parsed if isinstance(parsed, dict) else {"data": parsed}), True
    return {"raw": _cap_text(resp.text, max_chars=max_chars), "content_type": content_type or None}, False


class HubHttpClient:
    """
    Thin JSON client shared by the coverage provider and the AI gateway.

    One pooled AsyncClient per instance. Never retries and never raises for
    transport or HTTP failures: everything comes back as an HttpResult with a
    retryable flag, and the caller picks the policy (delta checks fail fast,
    the classifier waits out 429s). `transport` lets tests plug in an
    httpx.MockTransport.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 20.0,
        max_response_body_chars: int = 20_000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._max_body = max_response_body_chars
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds), transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HubHttpClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def request_json(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
        json_body: Any = None,
    ) -> HttpResult:
        try:
            resp = await self._client.request(method, url, headers=dict(headers or {}), params=dict(params or {}), json=json_body)
        except httpx.TimeoutException as e:
            return HttpResult(False, None, {"error": "timeout"}, error_code="TIMEOUT", error_message=str(e), retryable=True)
        except httpx.RequestError as e:
            # DNS, refused connection, TLS
            return HttpResult(False, None, {"error": "request_error"}, error_code="REQUEST_ERROR", error_message=str(e), retryable=True)

        detail, is_json = _read_body(resp, max_chars=self._max_body)
        elapsed_ms = int(resp.elapsed.total_seconds() * 1000) if resp.elapsed else None

        if resp.is_success:
            if not is_json:
                return HttpResult(
                    False, resp.status_code, detail,
                    error_code="MALFORMED_RESPONSE", error_message="expected a JSON body", elapsed_ms=elapsed_ms,
                )
            return HttpResult(True, resp.status_code, detail, elapsed_ms=elapsed_ms)

        return HttpResult(
            False,
            resp.status_code,
            detail,
            error_code=f"HTTP_{resp.status_code}",
            error_message=f"HTTP {resp.status_code}",
            retryable=resp.status_code in RETRYABLE_STATUSES,
            elapsed_ms=elapsed_ms,
            retry_after=resp.headers.get("retry-after") or None,
        )

    async def get_json(self, *, url: str, headers: Mapping[str, str] | None = None, params: Mapping[str, str] | None = None) -> HttpResult:
        return await self.request_json("GET", url, headers=headers, params=params)

    async def post_json(self, *, url: str, headers: Mapping[str, str] | None = None, json_body: Any = None) -> HttpResult:
        return await self.request_json("POST", url, headers=headers, json_body=json_body)
