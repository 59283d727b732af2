from __future__ import annotations

import logging
import math
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable

from .cache import InMemoryReportStore, KeyedLocks, ReportStore, report_key
from .config import Settings
from .errors import AnalysisError, CheckExecutionError
from .fetcher import ContentFetcher, ensure_live_page
from .gateway import ExternalServiceGateway
from .models import CheckResult, FetchedPage, Report, ReportScore, ResolvedSite
from .normalizer import normalize
from .registry import Check, CheckRegistry, SharedServices, default_registry
from .resolver import resolve

logger = logging.getLogger(__name__)


class AnalysisState(str, Enum):
    RESOLVING = "Resolving"
    FETCHING = "Fetching"
    CHECKING = "Checking"
    SCORING = "Scoring"
    CACHED = "Cached"
    FAILED = "Failed"


@dataclass(frozen=True)
class AnalyzeOptions:
    force_refresh: bool = False
    skip_protocol_checks: bool = False


def score_results(results: Iterable[CheckResult]) -> ReportScore:
    statuses = [r.status for r in results]
    passed = statuses.count("passed")
    improve = statuses.count("improve")
    errors = statuses.count("error")
    total = passed + improve + errors
    # Half-up rounding, so 62.5 becomes 63.
    percent = int(math.floor(passed / total * 100 + 0.5)) if total else 0
    return ReportScore(passed_count=passed, improve_count=improve, error_count=errors, percent=percent)


def error_result(check_id: str, exc: BaseException) -> CheckResult:
    return CheckResult(
        check_id=check_id,
        status="error",
        payload={"exception_message": str(exc), "exception_type": exc.__class__.__name__},
        message="This check could not be completed.",
    )


def timeout_result(check_id: str) -> CheckResult:
    return CheckResult(
        check_id=check_id,
        status="error",
        payload={"reason": "timeout"},
        message="This check did not finish in time.",
    )


class Analyzer:
    """Runs the whole pipeline for one domain and caches the resulting report.

    Collaborators are injectable so the pipeline can be driven without a
    network: ``resolver`` maps a hostname to a ResolvedSite, ``fetcher_factory``
    builds a fresh fetcher per run, ``services_factory`` builds what network
    checks need for one run.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        registry: CheckRegistry | None = None,
        store: ReportStore | None = None,
        gateway: ExternalServiceGateway | None = None,
        resolver: Callable[[str], ResolvedSite] | None = None,
        fetcher_factory: Callable[[], ContentFetcher] | None = None,
        services_factory: Callable[[], SharedServices | None] | None = None,
        on_state: Callable[[str, AnalysisState], None] | None = None,
    ):
        self.settings = settings or Settings()
        self.registry = registry if registry is not None else default_registry()
        self.store = store if store is not None else InMemoryReportStore()
        self._gateway = gateway
        self._resolver = resolver or (lambda hostname: resolve(hostname, settings=self.settings))
        self._fetcher_factory = fetcher_factory or (lambda: ContentFetcher(self.settings))
        self._services_factory = services_factory or self._default_services
        self._on_state = on_state
        self._locks = KeyedLocks()

    @property
    def gateway(self) -> ExternalServiceGateway:
        # Built lazily so the PageSpeed sub-cache is shared by every run of this analyzer.
        if self._gateway is None:
            self._gateway = ExternalServiceGateway(self.settings)
        return self._gateway

    def _default_services(self) -> SharedServices:
        return SharedServices.create(self.settings, self.gateway)

    def _enter(self, hostname: str, state: AnalysisState) -> None:
        logger.info("%s: %s", hostname, state.value)
        if self._on_state is not None:
            self._on_state(hostname, state)

    def _resolve(self, hostname: str, options: AnalyzeOptions) -> ResolvedSite:
        if options.skip_protocol_checks:
            return ResolvedSite(
                hostname=hostname,
                accessible_url=f"https://{hostname}",
                uses_https=True,
                uses_www=False,
                redirect_count=0,
            )
        return self._resolver(hostname)

    def analyze(self, domain: str, options: AnalyzeOptions | None = None) -> Report:
        options = options or AnalyzeOptions()
        hostname = domain

        try:
            hostname = normalize(domain)
            self._enter(hostname, AnalysisState.RESOLVING)
            site = self._resolve(hostname, options)
            key = report_key(site.accessible_url)

            cached = None if options.force_refresh else self.store.get(key)
            if cached is not None:
                self._enter(hostname, AnalysisState.CACHED)
                return cached

            with self._locks.hold(key):
                # Another caller may have finished the same site while we waited.
                cached = None if options.force_refresh else self.store.get(key)
                if cached is None:
                    report = self._run(hostname, site)
                    self.store.put(key, report)
                else:
                    report = cached
        except AnalysisError as e:
            logger.warning("%s: analysis failed: %s", hostname, e)
            self._enter(hostname, AnalysisState.FAILED)
            raise

        self._enter(hostname, AnalysisState.CACHED)
        return report

    def _run(self, hostname: str, site: ResolvedSite) -> Report:
        fetcher = self._fetcher_factory()
        services = self._services_factory()
        try:
            self._enter(hostname, AnalysisState.FETCHING)
            page = ensure_live_page(fetcher.fetch(site.accessible_url))

            self._enter(hostname, AnalysisState.CHECKING)
            results, timings, warnings = self.run_checks(page, services)

            self._enter(hostname, AnalysisState.SCORING)
            return Report(
                hostname=hostname,
                resolved_site=site,
                generated_at=datetime.now(timezone.utc).isoformat(),
                results=results,
                score=score_results(results.values()),
                timings_ms=timings,
                warnings=warnings,
            )
        finally:
            if services is not None:
                services.close()
            fetcher.close()

    def run_checks(
        self, page: FetchedPage, services: SharedServices | None
    ) -> tuple[dict[str, CheckResult], dict[str, int], list[str]]:
        checks = list(self.registry)
        results: dict[str, CheckResult] = {}
        timings: dict[str, int] = {}
        warnings: list[str] = []
        started: dict[str, float] = {}

        def timed(check: Check) -> CheckResult:
            started[check.check_id] = time.monotonic()
            try:
                return check.run(page, services)
            finally:
                timings[check.check_id] = int((time.monotonic() - started[check.check_id]) * 1000)

        def collect(fut: Future, check_id: str) -> None:
            try:
                results[check_id] = fut.result()
            except Exception as e:
                err = CheckExecutionError(check_id, e)
                logger.exception("check failed: %s", err)
                results[check_id] = error_result(check_id, e)

        def expire(check_id: str, why: str) -> None:
            results[check_id] = timeout_result(check_id)
            warnings.append(f"{check_id}: {why}")
            logger.warning("check %s timed out (%s)", check_id, why)

        limits = {c.check_id: c.timeout_s or self.settings.check_timeout_s for c in checks}

        pool = ThreadPoolExecutor(max_workers=max(1, self.settings.check_workers))
        try:
            futures = {pool.submit(timed, c): c.check_id for c in checks}
            pending = set(futures)
            deadline = time.monotonic() + self.settings.run_deadline_s

            while pending and time.monotonic() < deadline:
                done, pending = wait(pending, timeout=min(0.25, deadline - time.monotonic()), return_when=FIRST_COMPLETED)
                for fut in done:
                    collect(fut, futures[fut])

                now = time.monotonic()
                for fut in list(pending):
                    check_id = futures[fut]
                    t0 = started.get(check_id)
                    if t0 is not None and now - t0 > limits[check_id]:
                        pending.discard(fut)
                        fut.cancel()
                        expire(check_id, f"exceeded {limits[check_id]:g}s check timeout")

            for fut in pending:
                if fut.done():
                    collect(fut, futures[fut])
                else:
                    fut.cancel()
                    expire(futures[fut], f"still pending at the {self.settings.run_deadline_s:g}s run deadline")
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        ordered = {c.check_id: results[c.check_id] for c in checks}
        return ordered, {c.check_id: timings[c.check_id] for c in checks if c.check_id in timings}, warnings
