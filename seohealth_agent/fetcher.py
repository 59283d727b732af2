from __future__ import annotations

import logging
import re
import socket
import ssl
import threading
import time
from typing import Callable
from urllib.parse import urljoin, urlsplit

import httpx

from .config import Settings
from .errors import FetchError, ParkedOrExpiredError
from .gateway import RetryingClient
from .models import FetchedPage

logger = logging.getLogger(__name__)

# (html, headers, status_code). Empty html means "try the next strategy".
FetchOutcome = tuple[str, httpx.Headers, int | None]
Strategy = Callable[[str], FetchOutcome]

_EMPTY: FetchOutcome = ("", httpx.Headers(), None)

MIN_PAGE_BYTES = 300

PARKING_PHRASES = (
    "domain is parked",
    "buy this domain",
    "this domain is for sale",
    "godaddy placeholder",
    "sedoparking.com",
    "coming soon",
    "domain default page",
    "under construction",
    "page not found",
    "snapnames.com",
    "namecheap parking",
    "domain has expired",
    "renew your domain",
)

_CHARSET_RE = re.compile(r"charset=([\w-]+)", re.IGNORECASE)


def _decode(body: bytes, content_type: str | None) -> str:
    charset = "utf-8"
    m = _CHARSET_RE.search(content_type or "")
    if m:
        charset = m.group(1)
    try:
        return body.decode(charset, errors="replace")
    except LookupError:
        return body.decode("utf-8", errors="replace")


def split_raw_response(raw: bytes) -> tuple[int | None, httpx.Headers, bytes]:
    """Split a raw HTTP/1.x response into status, header multimap and body."""
    header_size = raw.find(b"\r\n\r\n")
    if header_size < 0:
        return None, httpx.Headers(), b""
    head = raw[:header_size].decode("iso-8859-1")
    body = raw[header_size + 4:]

    lines = head.split("\r\n")
    status = None
    parts = lines[0].split(" ", 2)
    if len(parts) >= 2 and parts[1].isdigit():
        status = int(parts[1])

    pairs: list[tuple[str, str]] = []
    for line in lines[1:]:
        if ":" not in line:
            continue
        name, value = line.split(":", 1)
        pairs.append((name.strip(), value.strip()))
    return status, httpx.Headers(pairs), body


class RawSocketStrategy:
    """Last resort: plain socket (TLS when https), HTTP/1.0, manual redirects."""

    def __init__(self, settings: Settings):
        self._settings = settings

    def _exchange(self, url: str, deadline: float) -> bytes:
        parts = urlsplit(url)
        host = parts.hostname or ""
        https = parts.scheme == "https"
        port = parts.port or (443 if https else 80)
        path = parts.path or "/"
        if parts.query:
            path += "?" + parts.query

        request = (
            f"GET {path} HTTP/1.0\r\n"
            f"Host: {host}\r\n"
            f"User-Agent: {self._settings.fetch_user_agent}\r\n"
            "Accept: text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8\r\n"
            "Accept-Encoding: identity\r\n"
            "Connection: close\r\n\r\n"
        ).encode("ascii", errors="ignore")

        timeout = max(0.1, deadline - time.monotonic())
        with socket.create_connection((host, port), timeout=timeout) as sock:
            if https:
                ctx = ssl.create_default_context()
                with ctx.wrap_socket(sock, server_hostname=host) as ssock:
                    return self._send_and_read(ssock, request, deadline)
            return self._send_and_read(sock, request, deadline)

    @staticmethod
    def _send_and_read(sock: socket.socket, request: bytes, deadline: float) -> bytes:
        sock.sendall(request)
        chunks: list[bytes] = []
        while True:
            if time.monotonic() > deadline:
                raise TimeoutError("raw fetch exceeded its time budget")
            chunk = sock.recv(65536)
            if not chunk:
                break
            chunks.append(chunk)
        return b"".join(chunks)

    def __call__(self, url: str) -> FetchOutcome:
        s = self._settings
        deadline = time.monotonic() + s.raw_fetch_timeout_s
        current = url
        for _ in range(s.raw_fetch_max_redirects + 1):
            status, headers, body = split_raw_response(self._exchange(current, deadline))
            if status is None:
                return _EMPTY
            location = headers.get("location")
            if 300 <= status < 400 and location:
                current = urljoin(current, location)
                continue
            if status >= 400:
                return _EMPTY
            return _decode(body, headers.get("content-type")), headers, status
        return _EMPTY


class ContentFetcher:
    """Fetch a page through an ordered chain of transports.

    One instance lives for one analysis run; results are memoized per URL so
    checks asking for the same page again do not hit the network.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client: RetryingClient | None = None,
        transport: httpx.BaseTransport | None = None,
        strategies: list[tuple[str, Strategy]] | None = None,
    ):
        self.settings = settings or Settings()
        self._transport = transport
        self._client = client
        self._memo: dict[str, FetchedPage] = {}
        self._lock = threading.Lock()
        self.strategies = strategies if strategies is not None else [
            ("retrying", self._retrying_get),
            ("simple", self._simple_get),
            ("raw", RawSocketStrategy(self.settings)),
        ]

    def _headers(self) -> dict[str, str]:
        return {
            "user-agent": self.settings.fetch_user_agent,
            "accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        }

    def _retrying_get(self, url: str) -> FetchOutcome:
        if self._client is None:
            s = self.settings
            self._client = RetryingClient(
                timeout=httpx.Timeout(s.fetch_timeout_s, connect=s.fetch_connect_timeout_s),
                headers={**self._headers(), "accept-encoding": "gzip, deflate"},
                max_retries=s.max_retries,
                base_delay_ms=s.retry_base_delay_ms,
                transport=self._transport,
            )
        res = self._client.get(url)
        if res.status_code >= 400:
            return _EMPTY
        return res.text, res.headers, res.status_code

    def _simple_get(self, url: str) -> FetchOutcome:
        with httpx.Client(
            timeout=self.settings.simple_fetch_timeout_s,
            follow_redirects=True,
            verify=True,
            headers=self._headers(),
            transport=self._transport,
        ) as client:
            res = client.get(url)
        if res.status_code >= 400:
            return _EMPTY
        return res.text, res.headers, res.status_code

    def fetch(self, url: str) -> FetchedPage:
        with self._lock:
            hit = self._memo.get(url)
        if hit is not None:
            return hit

        for name, strategy in self.strategies:
            started = time.perf_counter()
            try:
                html, headers, status = strategy(url)
            except Exception as e:
                logger.warning("fetch %s via %s failed: %s", url, name, e)
                continue
            if not html or not html.strip():
                logger.info("fetch %s via %s returned no content", url, name)
                continue

            page = FetchedPage(
                url=url,
                html=html,
                headers=headers,
                status_code=status,
                strategy=name,
                elapsed_s=round(time.perf_counter() - started, 3),
            )
            with self._lock:
                self._memo[url] = page
            return page

        raise FetchError(url)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()


def parking_reason(html: str) -> str | None:
    if len(html.encode("utf-8")) < MIN_PAGE_BYTES:
        return f"page body is under {MIN_PAGE_BYTES} bytes"
    lowered = html.lower()
    for phrase in PARKING_PHRASES:
        if phrase in lowered:
            return f"page contains '{phrase}'"
    return None


def ensure_live_page(page: FetchedPage) -> FetchedPage:
    reason = parking_reason(page.html)
    if reason:
        raise ParkedOrExpiredError(page.url, reason)
    return page
