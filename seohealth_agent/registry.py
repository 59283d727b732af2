from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator
from urllib.parse import urlparse

import dns.resolver
import httpx
from bs4 import BeautifulSoup
from dns.exception import DNSException

from .config import Settings
from .gateway import ExternalServiceGateway
from .models import CheckResult, CheckStatus, FetchedPage

logger = logging.getLogger(__name__)

DNS_RECORD_TYPES = ("A", "AAAA", "MX", "TXT", "NS", "CNAME", "SOA", "CAA", "SRV", "PTR")


class DnsLookup:
    """Thin dnspython wrapper. A missing record set is an empty list, not an error."""

    def __init__(self, timeout_s: float = 5.0, resolver: dns.resolver.Resolver | None = None):
        self._resolver = resolver or dns.resolver.Resolver()
        self._resolver.lifetime = timeout_s
        self._resolver.timeout = timeout_s

    def records(self, name: str, record_type: str) -> list[str]:
        try:
            answer = self._resolver.resolve(name, record_type)
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer, dns.resolver.NoNameservers):
            return []
        return [rdata.to_text() for rdata in answer]

    def all_records(self, name: str, record_types: tuple[str, ...] = DNS_RECORD_TYPES) -> tuple[dict[str, list[str]], list[str]]:
        found: dict[str, list[str]] = {}
        failures: list[str] = []
        for rtype in record_types:
            try:
                found[rtype] = self.records(name, rtype)
            except DNSException as e:
                logger.debug("DNS %s lookup for %s failed: %s", rtype, name, e)
                found[rtype] = []
                failures.append(rtype)
        return found, failures


@dataclass
class SharedServices:
    """Capabilities handed to checks that need the network."""

    settings: Settings
    http: httpx.Client
    dns: DnsLookup
    gateway: ExternalServiceGateway

    @classmethod
    def create(
        cls,
        settings: Settings,
        gateway: ExternalServiceGateway,
        transport: httpx.BaseTransport | None = None,
    ) -> "SharedServices":
        http = httpx.Client(
            timeout=settings.secondary_timeout_s,
            follow_redirects=True,
            headers={"user-agent": settings.fetch_user_agent},
            transport=transport,
        )
        return cls(
            settings=settings,
            http=http,
            dns=DnsLookup(settings.dns_timeout_s),
            gateway=gateway,
        )

    def close(self) -> None:
        self.http.close()


@dataclass(frozen=True)
class Finding:
    status: CheckStatus
    payload: dict[str, Any] = field(default_factory=dict)
    message: str = ""


CheckFn = Callable[[FetchedPage, "SharedServices | None"], Finding]


@dataclass(frozen=True)
class Check:
    check_id: str
    fn: CheckFn
    # Overrides Settings.check_timeout_s for slow checks; the run deadline still applies.
    timeout_s: float | None = None

    def run(self, page: FetchedPage, services: SharedServices | None = None) -> CheckResult:
        finding = self.fn(page, services)
        return CheckResult(
            check_id=self.check_id,
            status=finding.status,
            payload=finding.payload,
            message=finding.message,
        )


class CheckRegistry:
    def __init__(self):
        self._checks: dict[str, Check] = {}

    def register(self, check_id: str, timeout_s: float | None = None) -> Callable[[CheckFn], CheckFn]:
        def deco(fn: CheckFn) -> CheckFn:
            self.add(Check(check_id, fn, timeout_s))
            return fn

        return deco

    def add(self, check: Check) -> None:
        if check.check_id in self._checks:
            raise ValueError(f"Check '{check.check_id}' is already registered.")
        self._checks[check.check_id] = check

    def ids(self) -> list[str]:
        return list(self._checks)

    def get(self, check_id: str) -> Check:
        return self._checks[check_id]

    def __iter__(self) -> Iterator[Check]:
        return iter(list(self._checks.values()))

    def __len__(self) -> int:
        return len(self._checks)

    def __contains__(self, check_id: str) -> bool:
        return check_id in self._checks


def collector(target: list[Check]) -> Callable[..., Callable[[CheckFn], CheckFn]]:
    """Decorator factory used by check modules to list their checks in order."""

    def register(check_id: str, timeout_s: float | None = None) -> Callable[[CheckFn], CheckFn]:
        def deco(fn: CheckFn) -> CheckFn:
            target.append(Check(check_id, fn, timeout_s))
            return fn

        return deco

    return register


def default_registry() -> CheckRegistry:
    from . import checks_page, checks_site

    registry = CheckRegistry()
    for check in (*checks_page.CHECKS, *checks_site.CHECKS):
        registry.add(check)
    return registry


# Helpers shared by the check modules.

def soup_of(page: FetchedPage) -> BeautifulSoup:
    return BeautifulSoup(page.html, "html.parser")


def origin_of(url: str) -> str:
    p = urlparse(url)
    return f"{p.scheme}://{p.netloc}"


def host_of(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


def require(services: SharedServices | None) -> SharedServices:
    if services is None:
        raise RuntimeError("This check needs network services.")
    return services
