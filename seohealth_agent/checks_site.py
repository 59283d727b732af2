from __future__ import annotations

import socket
import ssl
import time
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urljoin, urlparse

import httpx

from .models import FetchedPage
from .registry import (
    DNS_RECORD_TYPES,
    Check,
    Finding,
    SharedServices,
    collector,
    host_of,
    origin_of,
    require,
    soup_of,
)

CHECKS: list[Check] = []
check = collector(CHECKS)


def _bare_host(url: str) -> str:
    host = host_of(url)
    return host[len("www."):] if host.startswith("www.") else host


# DNS

REQUIRED_DNS_RECORDS = ("A", "NS", "MX", "TXT")


@check("dns_records")
def dns_records(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    svc = require(services)
    domain = _bare_host(page.url)
    records, failures = svc.dns.all_records(domain, DNS_RECORD_TYPES)
    missing = [t for t in REQUIRED_DNS_RECORDS if not records.get(t)]
    payload = {"domain": domain, "records": records, "missing": missing, "lookup_failures": failures}
    if not missing:
        return Finding("passed", payload, "A, NS, MX and TXT records are all present.")
    return Finding("improve", payload, f"Missing DNS records: {', '.join(missing)}.")


@check("spf_record")
def spf_record(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    svc = require(services)
    domain = _bare_host(page.url)
    txt = [r.strip('"').replace('" "', "") for r in svc.dns.records(domain, "TXT")]
    spf = [r for r in txt if r.lower().startswith("v=spf1")]
    if spf:
        return Finding("passed", {"records": spf}, "SPF record found.")
    return Finding("improve", {"records": []}, "No SPF record; add one to protect the domain from email spoofing.")


@check("ip_info")
def ip_info(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    svc = require(services)
    host = host_of(page.url)
    addresses = svc.dns.records(host, "A")
    if not addresses:
        return Finding("improve", {"ip": None, "geolocation": None}, "The host has no A record.")
    ip = addresses[0]
    geo = svc.gateway.ip_geolocation(ip)
    if geo.get("unavailable"):
        return Finding("improve", {"ip": ip, "geolocation": geo}, f"Server IP is {ip}; location lookup unavailable.")
    where = ", ".join(x for x in (geo.get("city"), geo.get("country")) if x)
    return Finding("passed", {"ip": ip, "geolocation": geo}, f"Server IP is {ip} ({where}).")


# TLS

SSL_EXPIRY_WARNING_DAYS = 14


def tls_certificate(hostname: str, timeout_s: float) -> dict[str, Any]:
    ctx = ssl.create_default_context()
    with socket.create_connection((hostname, 443), timeout=timeout_s) as sock:
        with ctx.wrap_socket(sock, server_hostname=hostname) as ssock:
            cert = ssock.getpeercert()

    info: dict[str, Any] = {"supported": True, "issuer": None, "subject": None, "not_after": None, "days_to_expiry": None}
    if cert:
        info["issuer"] = ", ".join("=".join(x) for rdn in cert.get("issuer", ()) for x in rdn)
        info["subject"] = ", ".join("=".join(x) for rdn in cert.get("subject", ()) for x in rdn)
        not_after = cert.get("notAfter")
        info["not_after"] = not_after
        if not_after:
            dt = datetime.strptime(not_after, "%b %d %H:%M:%S %Y %Z").replace(tzinfo=timezone.utc)
            info["days_to_expiry"] = int((dt - datetime.now(timezone.utc)).total_seconds() // 86400)
    return info


@check("ssl_certificate")
def ssl_certificate(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    svc = require(services)
    host = host_of(page.url)
    try:
        info = tls_certificate(host, svc.settings.secondary_timeout_s)
    except (OSError, ssl.SSLError) as e:
        return Finding("error", {"supported": False, "reason": str(e)}, "No valid SSL certificate could be verified.")

    days = info["days_to_expiry"]
    if days is not None and days < SSL_EXPIRY_WARNING_DAYS:
        return Finding("improve", info, f"The SSL certificate expires in {days} days.")
    return Finding("passed", info, "The site has a valid SSL certificate.")


# robots.txt and sitemap

def parse_robots(text: str) -> dict[str, Any]:
    """Group robots.txt directives by user agent."""
    groups: list[dict[str, Any]] = []
    sitemaps: list[str] = []
    current: dict[str, Any] | None = None
    last_was_agent = False

    for raw in text.splitlines():
        line = raw.split("#", 1)[0].strip()
        if ":" not in line:
            continue
        field, value = (x.strip() for x in line.split(":", 1))
        field = field.lower()

        if field == "user-agent":
            if current is None or not last_was_agent:
                current = {"user_agents": [], "allow": [], "disallow": [], "crawl_delay": None}
                groups.append(current)
            current["user_agents"].append(value)
            last_was_agent = True
            continue

        last_was_agent = False
        if field == "sitemap":
            sitemaps.append(value)
        elif current is None:
            continue
        elif field == "allow":
            current["allow"].append(value)
        elif field == "disallow":
            current["disallow"].append(value)
        elif field == "crawl-delay":
            try:
                current["crawl_delay"] = float(value)
            except ValueError:
                pass

    return {"groups": groups, "sitemaps": sitemaps}


def analyze_robots(parsed: dict[str, Any]) -> list[str]:
    warnings = []
    for group in parsed["groups"]:
        agents = ", ".join(group["user_agents"])
        if "/" in group["disallow"]:
            warnings.append(f"User-agent {agents} is blocked from the whole site.")
        delay = group["crawl_delay"]
        if delay is not None and delay > 10:
            warnings.append(f"Crawl-delay of {delay:g}s for {agents} slows down indexing.")
    if not parsed["sitemaps"]:
        warnings.append("No sitemap is declared in robots.txt.")
    return warnings


@check("robots_txt")
def robots_txt(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    svc = require(services)
    url = urljoin(origin_of(page.url), "/robots.txt")
    res = svc.http.get(url)
    if res.status_code != 200 or not res.text.strip():
        return Finding("improve", {"found": False, "url": url, "status": res.status_code}, "No robots.txt file found.")

    parsed = parse_robots(res.text)
    warnings = analyze_robots(parsed)
    disallowed = sorted({d for g in parsed["groups"] for d in g["disallow"] if d})
    payload = {"found": True, "url": url, **parsed, "disallowed": disallowed, "warnings": warnings}
    if warnings:
        return Finding("improve", payload, " ".join(warnings))
    return Finding("passed", payload, "robots.txt is present and well formed.")


def _local(tag: str) -> str:
    return tag.split("}")[-1] if "}" in tag else tag


def parse_sitemap(xml_text: str) -> tuple[list[str], list[str]]:
    """Return (child sitemaps, page urls); empty lists for unparsable XML."""
    child_maps: list[str] = []
    page_urls: list[str] = []
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError:
        return child_maps, page_urls

    kind = _local(root.tag)
    wanted = {"sitemapindex": ("sitemap", child_maps), "urlset": ("url", page_urls)}.get(kind)
    if wanted is None:
        return child_maps, page_urls
    entry_tag, out = wanted
    for child in root:
        if _local(child.tag) != entry_tag:
            continue
        for loc in child:
            if _local(loc.tag) == "loc" and (loc.text or "").strip():
                out.append(loc.text.strip())
    return child_maps, page_urls


@check("xml_sitemap")
def xml_sitemap(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    svc = require(services)
    url = urljoin(origin_of(page.url), "/sitemap.xml")
    res = svc.http.get(url, headers={"accept": "application/xml,text/xml;q=0.9,*/*;q=0.8"})
    if res.status_code != 200:
        return Finding("improve", {"found": False, "url": url, "status": res.status_code}, "No sitemap.xml found.")

    child_maps, page_urls = parse_sitemap(res.text)
    payload = {"found": True, "url": url, "url_count": len(page_urls), "child_sitemaps": child_maps[:50]}
    if not child_maps and not page_urls:
        return Finding("improve", {**payload, "valid": False}, "sitemap.xml exists but lists no URLs.")
    return Finding("passed", {**payload, "valid": True}, "sitemap.xml found.")


# Server behaviour

@check("gzip")
def gzip_compression(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    # Headers of the primary fetch, which sent Accept-Encoding: gzip, deflate.
    encoding = page.headers.get("content-encoding", "").lower()
    payload = {"content_encoding": encoding or None, "strategy": page.strategy}
    if encoding in ("gzip", "deflate", "br"):
        return Finding("passed", payload, f"The page is served compressed ({encoding}).")
    return Finding("improve", payload, "Enable gzip or brotli compression.")


TTFB_GOOD_S = 0.8


@check("ttfb")
def ttfb(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    svc = require(services)
    start = time.perf_counter()
    with svc.http.stream("GET", page.url) as res:
        elapsed = time.perf_counter() - start
        status = res.status_code
    seconds = round(elapsed, 3)
    payload = {"seconds": seconds, "status": status}
    if seconds < TTFB_GOOD_S:
        return Finding("passed", payload, f"Time to first byte is {seconds}s.")
    return Finding("improve", payload, f"Time to first byte is {seconds}s; aim for under {TTFB_GOOD_S}s.")


@check("www_redirect")
def www_redirect(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    svc = require(services)
    parsed = urlparse(page.url)
    host = (parsed.hostname or "").lower()
    other = host[len("www."):] if host.startswith("www.") else f"www.{host}"
    variant = f"{parsed.scheme}://{other}"
    try:
        res = svc.http.get(variant)
    except httpx.HTTPError as e:
        return Finding("improve", {"variant": variant, "final_url": None, "reason": str(e)},
                       f"{other} does not respond; point it at {host}.")

    final_host = (res.url.host or "").lower()
    payload = {"variant": variant, "final_url": str(res.url), "status": res.status_code}
    if final_host == host:
        return Finding("passed", payload, f"{other} redirects to {host}.")
    return Finding("improve", payload, f"{other} does not redirect to {host}; pick one canonical host.")


@check("ip_canonicalization")
def ip_canonicalization(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    svc = require(services)
    host = _bare_host(page.url)
    addresses = svc.dns.records(host_of(page.url), "A")
    if not addresses:
        return Finding("improve", {"ip": None, "host": host, "redirect_host": None}, "The host has no A record.")
    ip = addresses[0]
    try:
        res = svc.http.get(f"http://{ip}/", follow_redirects=False)
    except httpx.HTTPError as e:
        return Finding("improve", {"ip": ip, "host": host, "redirect_host": None, "reason": str(e)},
                       f"{ip} does not answer HTTP requests; redirect it to {host}.")

    location = res.headers.get("location", "")
    target = host_of(urljoin(f"http://{ip}/", location)) if location else ""
    redirect_host = target[len("www."):] if target.startswith("www.") else target
    payload = {"ip": ip, "host": host, "status": res.status_code, "redirect_host": redirect_host or None}
    if redirect_host == host:
        return Finding("passed", payload, f"{ip} redirects to {host}.")
    return Finding("improve", payload, f"{ip} does not redirect to {host}; duplicate content may be indexed under the IP.")


@check("custom_404")
def custom_404(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    svc = require(services)
    url = urljoin(origin_of(page.url), f"/non-existent-page-{int(time.time())}")
    res = svc.http.get(url)
    body = res.text
    custom = res.status_code == 404 and "not found" not in body.lower()[:2000] and "404" not in body[:2000]
    payload = {"url": url, "status": res.status_code, "custom": custom, "length": len(body)}
    if res.status_code != 404:
        return Finding("improve", payload, f"Missing pages answer with HTTP {res.status_code} instead of 404.")
    if custom:
        return Finding("passed", payload, "The site serves a custom 404 page.")
    return Finding("improve", payload, "The site uses a default 404 page.")


@check("favicon")
def favicon(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    soup = soup_of(page)
    for link in soup.find_all("link", href=True):
        rel = [r.lower() for r in (link.get("rel") or [])]
        if "icon" in rel:
            return Finding("passed", {"source": "link", "href": link["href"]}, "Favicon declared in the page.")

    svc = require(services)
    url = urljoin(origin_of(page.url), "/favicon.ico")
    res = svc.http.get(url)
    if res.status_code == 200 and res.content:
        return Finding("passed", {"source": "favicon.ico", "href": url}, "Favicon served at /favicon.ico.")
    return Finding("improve", {"source": None, "href": None}, "No favicon found.")


@check("ads_txt")
def ads_txt(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    svc = require(services)
    url = urljoin(origin_of(page.url), "/ads.txt")
    res = svc.http.get(url)
    if res.status_code != 200:
        return Finding("improve", {"found": False, "url": url, "valid_lines": 0}, "No ads.txt file found.")
    valid = 0
    for line in res.text.splitlines():
        line = line.split("#", 1)[0].strip()
        if line and len([p for p in line.split(",") if p.strip()]) >= 2:
            valid += 1
    payload = {"found": True, "url": url, "valid_lines": valid}
    if valid:
        return Finding("passed", payload, f"ads.txt lists {valid} authorized seller record(s).")
    return Finding("improve", payload, "ads.txt exists but has no valid records.")


# External services

@check("safe_browsing")
def safe_browsing(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    result = require(services).gateway.safe_browsing(page.url)
    if result.get("unavailable"):
        return Finding("error", result, "Safe Browsing status is unavailable.")
    if result["status"] == "safe":
        return Finding("passed", result, "No malware or phishing reported by Google Safe Browsing.")
    return Finding("error", result, f"Google Safe Browsing flags this site: {', '.join(result['threats'])}.")


# One slow PSI call plus the retry waits.
PAGESPEED_CHECK_TIMEOUT_S = 90.0


@check("pagespeed", timeout_s=PAGESPEED_CHECK_TIMEOUT_S)
def pagespeed(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    result = require(services).gateway.pagespeed(page.url)
    if result.get("unavailable"):
        return Finding("error", result, result.get("user_message") or "Performance analysis unavailable.")
    mobile = result["mobile"]["score"]
    desktop = result["desktop"]["score"]
    msg = f"Mobile performance {mobile}, desktop {desktop}."
    if mobile >= 90:
        return Finding("passed", result, msg)
    if mobile >= 50:
        return Finding("improve", result, msg)
    return Finding("error", result, msg)


@check("domain_registration")
def domain_registration(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    result = require(services).gateway.rdap(_bare_host(page.url))
    if result.get("unavailable"):
        return Finding("error", result, "Domain registration data is unavailable.")
    age = result.get("age_days")
    expires_in = result.get("expires_in_days")
    notes = []
    if age is not None and age < 365:
        notes.append(f"The domain is only {age} days old.")
    if expires_in is not None and expires_in <= 30:
        notes.append(f"The domain expires in {expires_in} days.")
    if notes:
        return Finding("improve", result, " ".join(notes))
    return Finding("passed", result, "Domain registration looks healthy.")
