from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

import httpx
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from .cache import TTLCache, url_hash
from .config import PAGESPEED_TTL_S, Settings
from .errors import ExternalServiceError
from .models import ApiKey

logger = logging.getLogger(__name__)

PAGESPEED_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
SAFE_BROWSING_URL = "https://safebrowsing.googleapis.com/v4/threatMatches:find"
RDAP_URL = "https://rdap.org/domain/{domain}"
IP_API_URL = "http://ip-api.com/json/{ip}"
IP_API_FIELDS = "status,message,country,regionName,city,zip,isp,org,as,query"

PAGESPEED_SERVICE = "pagespeed"
SAFE_BROWSING_SERVICE = "safe_browsing"

_PAGESPEED_METRICS = {
    "first-contentful-paint": "FCP",
    "largest-contentful-paint": "LCP",
    "interactive": "TTI",
    "cumulative-layout-shift": "CLS",
    "total-blocking-time": "TBT",
}

# Connection-level failures worth retrying. Read errors after the request
# went out are not retried.
_RETRYABLE_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)

# Raised while summarizing a JSON body that parsed but has an unexpected shape.
_MALFORMED_PAYLOAD = (ValueError, TypeError, KeyError, IndexError, AttributeError)


def _server_error(res: httpx.Response) -> bool:
    return res.status_code >= 500


def _last_outcome(state: RetryCallState) -> httpx.Response:
    # Out of attempts: hand back the last response or raise the last error.
    return state.outcome.result()


class RetryingClient:
    """httpx.Client wrapper that retries connection failures and 5xx answers.

    Retry number ``n`` (1-based) waits ``base_delay_ms * 2**(n-1)`` first.
    After ``max_retries`` the last response is returned (or the last
    connection error raised).
    """

    def __init__(
        self,
        *,
        timeout: httpx.Timeout | float = 60.0,
        headers: dict[str, str] | None = None,
        max_retries: int = 3,
        base_delay_ms: int = 2000,
        sleep: Callable[[float], None] = time.sleep,
        transport: httpx.BaseTransport | None = None,
        follow_redirects: bool = True,
    ):
        self._client = httpx.Client(
            timeout=timeout,
            headers=headers,
            follow_redirects=follow_redirects,
            verify=True,
            transport=transport,
        )
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self._sleep = sleep

    def _retrying(self, method: str, url: str) -> Retrying:
        def log_retry(state: RetryCallState) -> None:
            outcome = state.outcome
            if outcome.failed:
                reason = outcome.exception().__class__.__name__
            else:
                reason = f"HTTP {outcome.result().status_code}"
            logger.warning(
                "%s %s failed (%s); retry %d in %dms",
                method, url, reason, state.attempt_number, int(state.next_action.sleep * 1000),
            )

        return Retrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.base_delay_ms / 1000),
            retry=retry_if_exception_type(_RETRYABLE_ERRORS) | retry_if_result(_server_error),
            sleep=self._sleep,
            before_sleep=log_retry,
            retry_error_callback=_last_outcome,
        )

    def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        return self._retrying(method, url)(self._client.request, method, url, **kwargs)

    def get(self, url: str, **kwargs) -> httpx.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs) -> httpx.Response:
        return self.request("POST", url, **kwargs)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "RetryingClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class ApiKeyPool:
    """Usage-ordered key rotation: always hand out the least used active key."""

    def __init__(self, keys: Iterable[ApiKey] = ()):
        self._lock = threading.Lock()
        self._keys: list[ApiKey] = list(keys)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ApiKeyPool":
        keys = [ApiKey(service_name=PAGESPEED_SERVICE, key_material=k) for k in settings.pagespeed_keys]
        keys += [ApiKey(service_name=SAFE_BROWSING_SERVICE, key_material=k) for k in settings.safe_browsing_keys]
        return cls(keys)

    def acquire(self, service_name: str) -> ApiKey | None:
        with self._lock:
            candidates = [k for k in self._keys if k.service_name == service_name and k.active]
            if not candidates:
                return None
            # min() keeps the first of equal counts, so ties rotate in declaration order.
            key = min(candidates, key=lambda k: k.usage_count)
            key.usage_count += 1
            return key.model_copy()

    def keys(self, service_name: str | None = None) -> list[ApiKey]:
        with self._lock:
            return [k.model_copy() for k in self._keys if service_name is None or k.service_name == service_name]


def unavailable(service: str, message: str) -> dict[str, Any]:
    return {
        "error": True,
        "unavailable": True,
        "service": service,
        "message": "Performance analysis unavailable" if service == PAGESPEED_SERVICE else f"{service} unavailable",
        "user_message": "We couldn't retrieve this data at this time. Please try again later.",
        "technical_details": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "retry_suggestion": True,
    }


def _format_bytes(n: float) -> str:
    if n <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    i = min(int(math.floor(math.log(n, 1024))), len(units) - 1)
    return f"{round(n / (1024 ** i), 2)} {units[i]}"


def _audit_impact(audit: dict[str, Any]) -> str:
    items = (audit.get("details") or {}).get("items") or []
    wasted_ms = sum(float(i.get("wastedMs") or 0) for i in items if isinstance(i, dict))
    wasted_bytes = sum(float(i.get("wastedBytes") or 0) for i in items if isinstance(i, dict))
    if wasted_ms > 0:
        return f"Potential savings of {int(wasted_ms)}ms"
    if wasted_bytes > 0:
        return f"Reduce by {_format_bytes(wasted_bytes)}"
    if audit.get("numericValue") is not None:
        return f"{round(float(audit['numericValue']), 2)} {audit.get('numericUnit') or 'units'} improvement possible"
    impact = (1 - float(audit.get("score") or 0)) * 100
    if impact >= 40:
        return "High impact"
    if impact >= 20:
        return "Moderate impact"
    return "Low impact"


def _format_metric(value: float, metric: str) -> str:
    if metric == "cumulative-layout-shift":
        return f"{value:.2f}"
    if metric == "largest-contentful-paint":
        return f"{value / 1000:.2f}s"
    return f"{value:,.0f}ms"


def score_class(score: float) -> str:
    if score >= 90:
        return "Excellent"
    if score >= 50:
        return "Needs Improvement"
    return "Poor"


def summarize_pagespeed(data: dict[str, Any]) -> dict[str, Any]:
    lighthouse = data.get("lighthouseResult") or {}
    categories = lighthouse.get("categories") or {}
    audits = lighthouse.get("audits") or {}

    score = round(float((categories.get("performance") or {}).get("score") or 0) * 100, 1)
    category_scores = {
        name: round(float((categories.get(name) or {}).get("score") or 0) * 100, 1)
        for name in ("accessibility", "seo")
    }

    metrics: dict[str, Any] = {}
    for audit_id, label in _PAGESPEED_METRICS.items():
        audit = audits.get(audit_id) or {}
        value = float(audit.get("numericValue") or 0)
        metrics[label] = {
            "value": value,
            "unit": "ms",
            "display_value": _format_metric(value, audit_id),
            "score": audit.get("score"),
        }

    diagnostics: list[dict[str, Any]] = []
    for audit in audits.values():
        if not isinstance(audit, dict) or audit.get("score") is None or not audit.get("details"):
            continue
        details = audit["details"]
        if float(audit["score"]) < 0.9 and details.get("type") == "opportunity":
            items = details.get("items") or []
            diagnostics.append({
                "title": audit.get("title") or "Unknown Audit",
                "description": audit.get("description") or "",
                "impact": _audit_impact(audit),
                "recommendation": (items[0].get("recommendation") if items and isinstance(items[0], dict) else None),
            })

    return {
        "score": score,
        "score_class": score_class(score),
        "category_scores": category_scores,
        "metrics": metrics,
        "diagnostics": diagnostics,
        "version": lighthouse.get("lighthouseVersion"),
    }


def _parse_rdap_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def summarize_rdap(data: dict[str, Any]) -> dict[str, Any]:
    events: dict[str, str] = {}
    for e in data.get("events") or []:
        action = str(e.get("eventAction") or "").lower()
        if action and e.get("eventDate") and action not in events:
            events[action] = e["eventDate"]

    registrar = None
    for entity in data.get("entities") or []:
        if "registrar" in (entity.get("roles") or []):
            vcard = entity.get("vcardArray") or []
            for prop in (vcard[1] if len(vcard) > 1 else []):
                if prop and prop[0] == "fn":
                    registrar = prop[3]
                    break
            registrar = registrar or entity.get("handle")
            break

    created = _parse_rdap_date(events.get("registration"))
    expires = _parse_rdap_date(events.get("expiration"))
    now = datetime.now(timezone.utc)
    age_days = int((now - created).total_seconds() // 86400) if created else None
    expires_in_days = int((expires - now).total_seconds() // 86400) if expires else None

    return {
        "domain": data.get("ldhName"),
        "registrar": registrar,
        "created": events.get("registration"),
        "expires": events.get("expiration"),
        "last_changed": events.get("last changed"),
        "age_days": age_days if age_days is None or age_days >= 0 else None,
        "expires_in_days": expires_in_days,
        "nameservers": sorted(
            str(ns.get("ldhName")).lower() for ns in data.get("nameservers") or [] if ns.get("ldhName")
        ),
        "status": list(data.get("status") or []),
    }


class ExternalServiceGateway:
    """Single entry point for the slow third-party APIs.

    Every public method returns a dict. Failures come back as an
    ``unavailable`` payload, never as an exception.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        keys: ApiKeyPool | None = None,
        client: RetryingClient | None = None,
        cache: TTLCache | None = None,
    ):
        self.settings = settings or Settings()
        self.keys = keys if keys is not None else ApiKeyPool.from_settings(self.settings)
        self.client = client or RetryingClient(
            timeout=httpx.Timeout(self.settings.pagespeed_timeout_s, connect=20.0),
            headers={"user-agent": self.settings.fetch_user_agent},
            max_retries=self.settings.max_retries,
            base_delay_ms=self.settings.retry_base_delay_ms,
        )
        self.cache = cache if cache is not None else TTLCache(PAGESPEED_TTL_S)

    def _get_json(self, service: str, method: str, url: str, **kwargs) -> dict[str, Any]:
        try:
            res = self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ExternalServiceError(service, f"request failed: {e}") from e
        if res.status_code < 200 or res.status_code >= 300:
            raise ExternalServiceError(service, f"HTTP {res.status_code}")
        try:
            data = res.json()
        except ValueError as e:
            raise ExternalServiceError(service, "invalid JSON response") from e
        if not isinstance(data, dict):
            raise ExternalServiceError(service, "unexpected response shape")
        return data

    # PageSpeed Insights

    def _run_pagespeed(self, url: str, strategy: str, key: str) -> dict[str, Any]:
        params = [
            ("url", url),
            ("strategy", strategy),
            ("category", "PERFORMANCE"),
            ("category", "ACCESSIBILITY"),
            ("category", "SEO"),
            ("key", key),
        ]
        data = self._get_json(PAGESPEED_SERVICE, "GET", PAGESPEED_URL, params=params)
        return summarize_pagespeed(data)

    def pagespeed(self, url: str) -> dict[str, Any]:
        cache_key = f"pagespeed_{url_hash(url)}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        key = self.keys.acquire(PAGESPEED_SERVICE)
        if key is None:
            return unavailable(PAGESPEED_SERVICE, "no active API key configured")

        try:
            with ThreadPoolExecutor(max_workers=2) as pool:
                mobile = pool.submit(self._run_pagespeed, url, "mobile", key.key_material)
                desktop = pool.submit(self._run_pagespeed, url, "desktop", key.key_material)
                result = {
                    "url": url,
                    "mobile": mobile.result(),
                    "desktop": desktop.result(),
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
        except ExternalServiceError as e:
            logger.warning("PageSpeed unavailable for %s: %s", url, e)
            return unavailable(PAGESPEED_SERVICE, str(e))
        except _MALFORMED_PAYLOAD as e:
            logger.warning("PageSpeed returned a malformed payload for %s: %r", url, e)
            return unavailable(PAGESPEED_SERVICE, f"malformed response: {e!r}")

        self.cache.put(cache_key, result)
        return result

    # Safe Browsing

    def safe_browsing(self, url: str) -> dict[str, Any]:
        key = self.keys.acquire(SAFE_BROWSING_SERVICE)
        if key is None:
            return unavailable(SAFE_BROWSING_SERVICE, "no active API key configured")

        body = {
            "client": {"clientId": "SEOAnalyzerTool", "clientVersion": "1.0"},
            "threatInfo": {
                "threatTypes": ["MALWARE", "SOCIAL_ENGINEERING"],
                "platformTypes": ["ANY_PLATFORM"],
                "threatEntryTypes": ["URL"],
                "threatEntries": [{"url": url}],
            },
        }
        try:
            data = self._get_json(
                SAFE_BROWSING_SERVICE, "POST", SAFE_BROWSING_URL, params={"key": key.key_material}, json=body
            )
        except ExternalServiceError as e:
            logger.warning("Safe Browsing unavailable for %s: %s", url, e)
            return unavailable(SAFE_BROWSING_SERVICE, str(e))

        matches = data.get("matches") or []
        if not isinstance(matches, list):
            return unavailable(SAFE_BROWSING_SERVICE, "malformed response: matches is not a list")
        return {
            "status": "unsafe" if matches else "safe",
            "threats": sorted({str(m.get("threatType")) for m in matches if isinstance(m, dict)}),
            "matches": len(matches),
        }

    # RDAP

    def rdap(self, domain: str) -> dict[str, Any]:
        domain = domain.lower()
        if domain.startswith("www."):
            domain = domain[len("www."):]
        try:
            data = self._get_json(
                "rdap", "GET", RDAP_URL.format(domain=domain),
                headers={"accept": "application/rdap+json, application/json"},
            )
            return summarize_rdap(data)
        except ExternalServiceError as e:
            logger.warning("RDAP unavailable for %s: %s", domain, e)
            return unavailable("rdap", str(e))
        except _MALFORMED_PAYLOAD as e:
            logger.warning("RDAP returned a malformed payload for %s: %r", domain, e)
            return unavailable("rdap", f"malformed response: {e!r}")

    # IP geolocation

    def ip_geolocation(self, ip: str) -> dict[str, Any]:
        try:
            data = self._get_json("ip-api", "GET", IP_API_URL.format(ip=ip), params={"fields": IP_API_FIELDS})
        except ExternalServiceError as e:
            logger.warning("IP geolocation unavailable for %s: %s", ip, e)
            return unavailable("ip-api", str(e))
        if data.get("status") != "success":
            return unavailable("ip-api", str(data.get("message") or "lookup failed"))
        return {
            "ip": data.get("query") or ip,
            "country": data.get("country"),
            "region": data.get("regionName"),
            "city": data.get("city"),
            "zip": data.get("zip"),
            "isp": data.get("isp"),
            "org": data.get("org"),
            "as": data.get("as"),
        }

    def close(self) -> None:
        self.client.close()
