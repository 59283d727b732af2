from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterable
from urllib.parse import urlparse

import httpx

from .config import Settings
from .errors import UnreachableError
from .models import ResolvedSite
from .normalizer import label_count

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeOutcome:
    candidate: str
    ok: bool
    effective_url: str | None = None
    redirect_count: int = 0
    status_code: int | None = None
    error: str | None = None


Prober = Callable[[str], ProbeOutcome]


def candidate_urls(hostname: str) -> list[str]:
    hosts = [hostname]
    # Long subdomain chains are assumed to already be canonical.
    if label_count(hostname) <= 2:
        hosts.append(f"www.{hostname}")

    out: list[str] = []
    for scheme in ("https", "http"):
        for host in hosts:
            url = f"{scheme}://{host}"
            if url not in out:
                out.append(url)
    return out


class HttpProber:
    """GET a candidate URL and report whether it answered with 2xx/3xx."""

    def __init__(self, settings: Settings | None = None, transport: httpx.BaseTransport | None = None):
        self._settings = settings or Settings()
        self._transport = transport

    def __call__(self, url: str) -> ProbeOutcome:
        s = self._settings
        try:
            with httpx.Client(
                timeout=httpx.Timeout(s.probe_timeout_s, connect=s.probe_timeout_s),
                follow_redirects=True,
                max_redirects=s.probe_max_redirects,
                verify=True,
                headers={"user-agent": s.probe_user_agent},
                transport=self._transport,
            ) as client:
                res = client.get(url)
        except httpx.HTTPError as e:
            logger.debug("probe %s failed: %s", url, e)
            return ProbeOutcome(candidate=url, ok=False, error=str(e) or e.__class__.__name__)

        ok = 200 <= res.status_code < 400
        return ProbeOutcome(
            candidate=url,
            ok=ok,
            effective_url=str(res.url),
            redirect_count=len(res.history),
            status_code=res.status_code,
            error=None if ok else f"HTTP {res.status_code}",
        )


def _site_from_outcome(hostname: str, outcome: ProbeOutcome) -> ResolvedSite:
    effective = (outcome.effective_url or outcome.candidate).rstrip("/")
    host = (urlparse(effective).hostname or "").lower()
    return ResolvedSite(
        hostname=hostname,
        accessible_url=effective,
        uses_https=effective.lower().startswith("https://"),
        uses_www=host.startswith("www."),
        redirect_count=outcome.redirect_count,
    )


def rank_key(site: ResolvedSite) -> tuple[bool, bool, int, str]:
    # https first, then non-www, then fewer redirects. The URL only breaks exact ties.
    return (not site.uses_https, site.uses_www, site.redirect_count, site.accessible_url)


def select_best(hostname: str, outcomes: Iterable[ProbeOutcome]) -> ResolvedSite:
    by_url: dict[str, ResolvedSite] = {}
    attempted: list[str] = []
    for outcome in outcomes:
        attempted.append(outcome.candidate)
        if not outcome.ok:
            continue
        site = _site_from_outcome(hostname, outcome)
        seen = by_url.get(site.accessible_url)
        if seen is None or site.redirect_count < seen.redirect_count:
            by_url[site.accessible_url] = site

    if not by_url:
        raise UnreachableError(hostname, attempted)
    return min(by_url.values(), key=rank_key)


def resolve(hostname: str, prober: Prober | None = None, settings: Settings | None = None) -> ResolvedSite:
    """Probe every scheme/www variant concurrently and pick the best working URL."""
    prober = prober or HttpProber(settings)
    candidates = candidate_urls(hostname)

    with ThreadPoolExecutor(max_workers=len(candidates)) as pool:
        outcomes = list(pool.map(_safe_probe(prober), candidates))

    for o in outcomes:
        logger.debug("probe %s ok=%s status=%s redirects=%s", o.candidate, o.ok, o.status_code, o.redirect_count)

    site = select_best(hostname, outcomes)
    logger.info("resolved %s -> %s", hostname, site.accessible_url)
    return site


def _safe_probe(prober: Prober) -> Prober:
    def run(url: str) -> ProbeOutcome:
        try:
            return prober(url)
        except Exception as e:
            logger.warning("probe %s raised %s", url, e)
            return ProbeOutcome(candidate=url, ok=False, error=str(e))

    return run
