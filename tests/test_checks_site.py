import unittest
from unittest.mock import MagicMock, patch

import dns.exception
import dns.resolver
import httpx

from seohealth_agent import checks_site as cs
from seohealth_agent.config import Settings
from seohealth_agent.models import FetchedPage
from seohealth_agent.registry import DnsLookup, SharedServices, default_registry

ROBOTS = """
# comment line
User-agent: Googlebot
User-agent: Bingbot
Disallow: /private/
Allow: /private/open
Crawl-delay: 20

User-agent: *
Disallow: /tmp/  # trailing comment
Disallow:

Sitemap: https://example.com/sitemap.xml
"""

URLSET = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>https://example.com/</loc></url>
  <url><loc> https://example.com/about </loc></url>
  <url><lastmod>2024-01-01</lastmod></url>
</urlset>"""

SITEMAP_INDEX = """<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <sitemap><loc>https://example.com/posts.xml</loc></sitemap>
</sitemapindex>"""


def page(html="<html></html>", url="https://example.com", headers=None):
    return FetchedPage(url=url, html=html, headers=httpx.Headers(headers or {}))


def services(handler=None, dns_lookup=None, gateway=None):
    http = httpx.Client(
        transport=httpx.MockTransport(handler or (lambda r: httpx.Response(404))),
        follow_redirects=True,
    )
    return SharedServices(
        settings=Settings(),
        http=http,
        dns=dns_lookup or MagicMock(),
        gateway=gateway or MagicMock(),
    )


def routes(table):
    """Serve fixed responses by path; anything else is a 404."""

    def handler(request):
        return table.get(request.url.path, httpx.Response(404))

    return handler


class TestRobots(unittest.TestCase):
    def test_groups_agents_and_collects_sitemaps(self):
        parsed = cs.parse_robots(ROBOTS)
        self.assertEqual(len(parsed["groups"]), 2)
        first, second = parsed["groups"]
        self.assertEqual(first["user_agents"], ["Googlebot", "Bingbot"])
        self.assertEqual(first["disallow"], ["/private/"])
        self.assertEqual(first["allow"], ["/private/open"])
        self.assertEqual(first["crawl_delay"], 20.0)
        self.assertEqual(second["disallow"], ["/tmp/", ""])
        self.assertEqual(parsed["sitemaps"], ["https://example.com/sitemap.xml"])

    def test_warnings(self):
        warnings = cs.analyze_robots(cs.parse_robots("User-agent: *\nDisallow: /\n"))
        self.assertEqual(len(warnings), 2)
        self.assertIn("blocked from the whole site", warnings[0])
        self.assertIn("No sitemap", warnings[1])
        self.assertIn("Crawl-delay of 20s", cs.analyze_robots(cs.parse_robots(ROBOTS))[0])

    def test_check_reports_disallowed_paths(self):
        svc = services(routes({"/robots.txt": httpx.Response(200, text="User-agent: *\nDisallow: /tmp/\nSitemap: /s.xml\n")}))
        result = cs.robots_txt(page(), svc)
        self.assertEqual(result.status, "passed")
        self.assertEqual(result.payload["disallowed"], ["/tmp/"])
        self.assertEqual(result.payload["url"], "https://example.com/robots.txt")

    def test_missing_file(self):
        result = cs.robots_txt(page(), services())
        self.assertEqual((result.status, result.payload["found"]), ("improve", False))


class TestSitemap(unittest.TestCase):
    def test_urlset(self):
        self.assertEqual(cs.parse_sitemap(URLSET), ([], ["https://example.com/", "https://example.com/about"]))

    def test_index(self):
        self.assertEqual(cs.parse_sitemap(SITEMAP_INDEX), (["https://example.com/posts.xml"], []))

    def test_garbage(self):
        self.assertEqual(cs.parse_sitemap("<html><body>nope"), ([], []))
        self.assertEqual(cs.parse_sitemap("<feed></feed>"), ([], []))

    def test_check(self):
        svc = services(routes({"/sitemap.xml": httpx.Response(200, text=URLSET)}))
        result = cs.xml_sitemap(page(), svc)
        self.assertEqual(result.status, "passed")
        self.assertEqual(result.payload["url_count"], 2)

    def test_empty_sitemap_is_invalid(self):
        svc = services(routes({"/sitemap.xml": httpx.Response(200, text="<urlset></urlset>")}))
        result = cs.xml_sitemap(page(), svc)
        self.assertEqual((result.status, result.payload["valid"]), ("improve", False))


class TestDns(unittest.TestCase):
    def test_required_records(self):
        lookup = MagicMock()
        lookup.all_records.return_value = (
            {"A": ["93.184.216.34"], "NS": ["a.iana-servers.net."], "MX": ["0 ."], "TXT": []},
            ["CAA"],
        )
        result = cs.dns_records(page(url="https://www.example.com/"), services(dns_lookup=lookup))
        self.assertEqual(lookup.all_records.call_args[0][0], "example.com")
        self.assertEqual(result.status, "improve")
        self.assertEqual(result.payload["missing"], ["TXT"])
        self.assertEqual(result.payload["lookup_failures"], ["CAA"])

    def test_spf(self):
        lookup = MagicMock()
        lookup.records.return_value = ['"google-site-verification=abc"', '"v=spf1 include:_spf.example.net " "-all"']
        result = cs.spf_record(page(), services(dns_lookup=lookup))
        self.assertEqual(result.status, "passed")
        self.assertEqual(result.payload["records"], ["v=spf1 include:_spf.example.net -all"])

    def test_no_spf(self):
        lookup = MagicMock()
        lookup.records.return_value = []
        self.assertEqual(cs.spf_record(page(), services(dns_lookup=lookup)).status, "improve")

    def test_ip_info_uses_geolocation(self):
        lookup = MagicMock()
        lookup.records.return_value = ["93.184.216.34"]
        gateway = MagicMock()
        gateway.ip_geolocation.return_value = {"ip": "93.184.216.34", "city": "Norwell", "country": "United States"}
        result = cs.ip_info(page(), services(dns_lookup=lookup, gateway=gateway))
        gateway.ip_geolocation.assert_called_once_with("93.184.216.34")
        self.assertEqual(result.status, "passed")
        self.assertIn("Norwell, United States", result.message)

    def test_lookup_maps_missing_records_to_empty(self):
        resolver = MagicMock()

        def resolve(name, rtype):
            if rtype == "A":
                rdata = MagicMock()
                rdata.to_text.return_value = "93.184.216.34"
                return [rdata]
            if rtype == "MX":
                raise dns.exception.Timeout()
            raise dns.resolver.NoAnswer()

        resolver.resolve.side_effect = resolve
        lookup = DnsLookup(timeout_s=2, resolver=resolver)
        self.assertEqual(lookup.records("example.com", "A"), ["93.184.216.34"])
        self.assertEqual(lookup.records("example.com", "TXT"), [])
        found, failures = lookup.all_records("example.com", ("A", "MX", "TXT"))
        self.assertEqual(found, {"A": ["93.184.216.34"], "MX": [], "TXT": []})
        self.assertEqual(failures, ["MX"])
        self.assertEqual(resolver.lifetime, 2)


class TestServerBehaviour(unittest.TestCase):
    def test_custom_404(self):
        svc = services(lambda r: httpx.Response(404, text="<h1>Oops, we lost that one</h1>"))
        self.assertEqual(cs.custom_404(page(), svc).status, "passed")

    def test_default_404(self):
        svc = services(lambda r: httpx.Response(404, text="<h1>404 Not Found</h1>"))
        self.assertEqual(cs.custom_404(page(), svc).status, "improve")

    def test_soft_404(self):
        result = cs.custom_404(page(), services(lambda r: httpx.Response(200, text="home")))
        self.assertEqual(result.status, "improve")
        self.assertIn("HTTP 200", result.message)

    def test_ads_txt_counts_records(self):
        body = "google.com, pub-0000000000000000, DIRECT, f08c47fec0942fa0\n# comment\nnot-a-record\n"
        result = cs.ads_txt(page(), services(routes({"/ads.txt": httpx.Response(200, text=body)})))
        self.assertEqual((result.status, result.payload["valid_lines"]), ("passed", 1))

    def test_favicon_from_markup_needs_no_request(self):
        result = cs.favicon(page('<link rel="shortcut icon" href="/f.png">'), None)
        self.assertEqual(result.payload, {"source": "link", "href": "/f.png"})

    def test_favicon_fallback(self):
        svc = services(routes({"/favicon.ico": httpx.Response(200, content=b"\x00\x00\x01\x00")}))
        self.assertEqual(cs.favicon(page(), svc).payload["source"], "favicon.ico")
        self.assertEqual(cs.favicon(page(), services()).status, "improve")

    def test_www_variant_redirects(self):
        def handler(request):
            if request.url.host == "www.example.com":
                return httpx.Response(301, headers={"location": "https://example.com/"})
            return httpx.Response(200, text="ok")

        result = cs.www_redirect(page(), services(handler))
        self.assertEqual(result.status, "passed")
        self.assertEqual(result.payload["variant"], "https://www.example.com")

    def test_www_variant_without_redirect(self):
        result = cs.www_redirect(page(url="https://www.example.com/"), services(lambda r: httpx.Response(200)))
        self.assertEqual(result.status, "improve")
        self.assertEqual(result.payload["variant"], "https://example.com")

    def test_www_variant_unreachable(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        result = cs.www_redirect(page(), services(refuse))
        self.assertEqual(result.status, "improve")
        self.assertIsNone(result.payload["final_url"])

    def test_gzip_reads_the_primary_fetch_headers(self):
        def no_request(request):
            raise AssertionError(f"unexpected request to {request.url}")

        compressed = page(headers={"content-encoding": "gzip"})
        self.assertEqual(cs.gzip_compression(compressed, services(no_request)).status, "passed")
        plain = cs.gzip_compression(page(), services(no_request))
        self.assertEqual(plain.status, "improve")
        self.assertIsNone(plain.payload["content_encoding"])

    def test_ip_redirects_to_host(self):
        dns_lookup = MagicMock()
        dns_lookup.records.return_value = ["93.184.216.34"]
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(301, headers={"location": "https://www.example.com/"})

        result = cs.ip_canonicalization(page(), services(handler, dns_lookup=dns_lookup))
        dns_lookup.records.assert_called_once_with("example.com", "A")
        self.assertEqual(seen, ["http://93.184.216.34/"])
        self.assertEqual(result.status, "passed")
        self.assertEqual(result.payload["redirect_host"], "example.com")

    def test_ip_serving_content_is_not_canonical(self):
        dns_lookup = MagicMock()
        dns_lookup.records.return_value = ["93.184.216.34"]
        result = cs.ip_canonicalization(page(), services(lambda r: httpx.Response(200, text="hi"), dns_lookup=dns_lookup))
        self.assertEqual(result.status, "improve")
        self.assertIsNone(result.payload["redirect_host"])

    def test_ip_canonicalization_without_address(self):
        dns_lookup = MagicMock()
        dns_lookup.records.return_value = []
        result = cs.ip_canonicalization(page(), services(dns_lookup=dns_lookup))
        self.assertEqual(result.status, "improve")
        self.assertIsNone(result.payload["ip"])

    def test_ip_unreachable(self):
        dns_lookup = MagicMock()
        dns_lookup.records.return_value = ["10.0.0.1"]

        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        result = cs.ip_canonicalization(page(), services(refuse, dns_lookup=dns_lookup))
        self.assertEqual(result.status, "improve")
        self.assertIn("refused", result.payload["reason"])

    def test_ttfb(self):
        result = cs.ttfb(page(), services(lambda r: httpx.Response(200, text="ok")))
        self.assertEqual(result.status, "passed")
        self.assertEqual(result.payload["status"], 200)

    def test_network_checks_need_services(self):
        with self.assertRaises(RuntimeError):
            cs.robots_txt(page(), None)


class TestSsl(unittest.TestCase):
    def test_handshake_failure_is_error(self):
        with patch.object(cs, "tls_certificate", side_effect=OSError("connection refused")):
            result = cs.ssl_certificate(page(), services())
        self.assertEqual(result.status, "error")
        self.assertFalse(result.payload["supported"])

    def test_expiring_certificate(self):
        info = {"supported": True, "issuer": "CN=Test CA", "subject": "CN=example.com", "not_after": None, "days_to_expiry": 5}
        with patch.object(cs, "tls_certificate", return_value=info):
            self.assertEqual(cs.ssl_certificate(page(), services()).status, "improve")
        with patch.object(cs, "tls_certificate", return_value={**info, "days_to_expiry": 200}):
            self.assertEqual(cs.ssl_certificate(page(), services()).status, "passed")


class TestExternalServiceChecks(unittest.TestCase):
    def _gateway(self, **results):
        gateway = MagicMock()
        for name, value in results.items():
            getattr(gateway, name).return_value = value
        return gateway

    def test_pagespeed_bands_follow_mobile_score(self):
        for mobile, expected in ((95.0, "passed"), (90.0, "passed"), (60.0, "improve"), (49.0, "error")):
            gateway = self._gateway(pagespeed={"mobile": {"score": mobile}, "desktop": {"score": 99.0}})
            with self.subTest(mobile=mobile):
                self.assertEqual(cs.pagespeed(page(), services(gateway=gateway)).status, expected)

    def test_pagespeed_budget_covers_the_gateway_timeout(self):
        settings = Settings()
        check = default_registry().get("pagespeed")
        self.assertGreaterEqual(check.timeout_s, settings.pagespeed_timeout_s)
        self.assertGreater(check.timeout_s, settings.check_timeout_s)

    def test_pagespeed_unavailable(self):
        gateway = self._gateway(pagespeed={"error": True, "unavailable": True, "user_message": "Try again later."})
        result = cs.pagespeed(page(), services(gateway=gateway))
        self.assertEqual((result.status, result.message), ("error", "Try again later."))

    def test_safe_browsing(self):
        safe = self._gateway(safe_browsing={"status": "safe", "threats": [], "matches": []})
        self.assertEqual(cs.safe_browsing(page(), services(gateway=safe)).status, "passed")
        unsafe = self._gateway(safe_browsing={"status": "unsafe", "threats": ["MALWARE"], "matches": [{}]})
        result = cs.safe_browsing(page(), services(gateway=unsafe))
        self.assertEqual(result.status, "error")
        self.assertIn("MALWARE", result.message)

    def test_domain_registration(self):
        gateway = self._gateway(rdap={"domain": "example.com", "age_days": 100, "expires_in_days": 400})
        result = cs.domain_registration(page(url="https://www.example.com"), services(gateway=gateway))
        gateway.rdap.assert_called_once_with("example.com")
        self.assertEqual(result.status, "improve")
        self.assertIn("100 days old", result.message)


if __name__ == "__main__":
    unittest.main()
