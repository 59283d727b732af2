import json
import threading
import unittest

import httpx

from seohealth_agent.cache import TTLCache
from seohealth_agent.gateway import (
    ApiKeyPool,
    ExternalServiceGateway,
    RetryingClient,
    score_class,
    summarize_pagespeed,
    summarize_rdap,
)
from seohealth_agent.models import ApiKey


def psi_body(performance=0.95):
    return {
        "lighthouseResult": {
            "lighthouseVersion": "12.0.0",
            "categories": {
                "performance": {"score": performance},
                "accessibility": {"score": 0.88},
                "seo": {"score": 1.0},
            },
            "audits": {
                "first-contentful-paint": {"numericValue": 1234.5, "score": 0.9},
                "largest-contentful-paint": {"numericValue": 2500, "score": 0.7},
                "cumulative-layout-shift": {"numericValue": 0.05, "score": 1},
                "render-blocking-resources": {
                    "title": "Eliminate render-blocking resources",
                    "score": 0.4,
                    "details": {"type": "opportunity", "items": [{"wastedMs": 300}, {"wastedMs": 150}]},
                },
                "unused-css-rules": {
                    "title": "Reduce unused CSS",
                    "score": 0.5,
                    "details": {"type": "opportunity", "items": [{"wastedBytes": 2048}]},
                },
                "uses-http2": {"title": "Use HTTP/2", "score": 1, "details": {"type": "opportunity", "items": []}},
            },
        }
    }


def gateway_for(handler, keys=(), sleeps=None):
    client = RetryingClient(transport=httpx.MockTransport(handler), sleep=(sleeps.append if sleeps is not None else lambda s: None))
    return ExternalServiceGateway(keys=ApiKeyPool([k.model_copy() for k in keys]), client=client)


class TestRetryingClient(unittest.TestCase):
    def test_backoff_doubles_from_the_base_delay(self):
        sleeps = []
        client = RetryingClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(500)), base_delay_ms=100, sleep=sleeps.append
        )
        client.get("https://api.example.com/")
        self.assertEqual(sleeps, [0.1, 0.2, 0.4])

    def test_each_retry_is_logged(self):
        client = RetryingClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(503)), max_retries=1, sleep=lambda s: None
        )
        with self.assertLogs("seohealth_agent.gateway", level="WARNING") as logs:
            self.assertEqual(client.get("https://api.example.com/").status_code, 503)
        self.assertEqual(len(logs.output), 1)
        self.assertIn("HTTP 503", logs.output[0])
        self.assertIn("retry 1 in 2000ms", logs.output[0])

    def test_retries_server_errors_then_succeeds(self):
        calls = []
        sleeps = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(503 if len(calls) < 3 else 200, text="ok")

        client = RetryingClient(transport=httpx.MockTransport(handler), sleep=sleeps.append)
        res = client.get("https://api.example.com/")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(len(calls), 3)
        self.assertEqual(sleeps, [2.0, 4.0])

    def test_gives_up_after_three_retries(self):
        sleeps = []
        client = RetryingClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)), sleep=sleeps.append)
        res = client.get("https://api.example.com/")
        self.assertEqual(res.status_code, 500)
        self.assertEqual(sleeps, [2.0, 4.0, 8.0])

    def test_client_errors_are_not_retried(self):
        sleeps = []
        client = RetryingClient(transport=httpx.MockTransport(lambda r: httpx.Response(404)), sleep=sleeps.append)
        self.assertEqual(client.get("https://api.example.com/").status_code, 404)
        self.assertEqual(sleeps, [])

    def test_connection_errors_are_retried_then_raised(self):
        attempts = []

        def refuse(request):
            attempts.append(1)
            raise httpx.ConnectError("refused", request=request)

        client = RetryingClient(transport=httpx.MockTransport(refuse), sleep=lambda s: None)
        with self.assertRaises(httpx.ConnectError):
            client.get("https://api.example.com/")
        self.assertEqual(len(attempts), 4)

    def test_read_errors_are_not_retried(self):
        attempts = []

        def broken(request):
            attempts.append(1)
            raise httpx.ReadError("reset", request=request)

        client = RetryingClient(transport=httpx.MockTransport(broken), sleep=lambda s: None)
        with self.assertRaises(httpx.ReadError):
            client.get("https://api.example.com/")
        self.assertEqual(len(attempts), 1)


class TestApiKeyPool(unittest.TestCase):
    def test_least_used_active_key_rotates(self):
        pool = ApiKeyPool([
            ApiKey(service_name="pagespeed", key_material="k1", usage_count=5),
            ApiKey(service_name="pagespeed", key_material="k2", usage_count=3),
            ApiKey(service_name="pagespeed", key_material="k3", usage_count=3, active=False),
            ApiKey(service_name="safe_browsing", key_material="s1", usage_count=0),
        ])
        picked = [pool.acquire("pagespeed").key_material for _ in range(5)]
        self.assertEqual(picked, ["k2", "k2", "k1", "k2", "k1"])
        counts = {k.key_material: k.usage_count for k in pool.keys("pagespeed")}
        self.assertEqual(counts, {"k1": 7, "k2": 6, "k3": 3})

    def test_unknown_service_has_no_key(self):
        self.assertIsNone(ApiKeyPool().acquire("pagespeed"))

    def test_returned_key_is_a_copy(self):
        pool = ApiKeyPool([ApiKey(service_name="pagespeed", key_material="k1")])
        key = pool.acquire("pagespeed")
        key.usage_count = 100
        self.assertEqual(pool.keys()[0].usage_count, 1)


class TestPageSpeed(unittest.TestCase):
    KEYS = [ApiKey(service_name="pagespeed", key_material="secret")]

    def test_mobile_and_desktop_run_concurrently_and_are_cached(self):
        barrier = threading.Barrier(2, timeout=5)
        strategies = []

        def handler(request):
            strategies.append(request.url.params["strategy"])
            self.assertEqual(request.url.params.get_list("category"), ["PERFORMANCE", "ACCESSIBILITY", "SEO"])
            self.assertEqual(request.url.params["key"], "secret")
            barrier.wait()
            return httpx.Response(200, json=psi_body(0.95 if request.url.params["strategy"] == "desktop" else 0.42))

        gw = gateway_for(handler, self.KEYS)
        result = gw.pagespeed("https://example.com")
        self.assertEqual(sorted(strategies), ["desktop", "mobile"])
        self.assertEqual(result["mobile"]["score"], 42.0)
        self.assertEqual(result["desktop"]["score"], 95.0)

        again = gw.pagespeed("https://example.com")
        self.assertIs(again, result)
        self.assertEqual(len(strategies), 2)
        self.assertEqual(gw.keys.keys("pagespeed")[0].usage_count, 1)

    def test_failure_returns_unavailable_payload(self):
        gw = gateway_for(lambda r: httpx.Response(400, json={"error": "bad"}), self.KEYS)
        result = gw.pagespeed("https://example.com")
        self.assertTrue(result["error"])
        self.assertTrue(result["unavailable"])
        self.assertEqual(result["message"], "Performance analysis unavailable")
        self.assertTrue(result["retry_suggestion"])
        self.assertIn("timestamp", result)
        # Failures are not cached.
        self.assertEqual(len(gw.cache), 0)

    def test_missing_key_is_unavailable(self):
        gw = gateway_for(lambda r: httpx.Response(200, json=psi_body()))
        self.assertTrue(gw.pagespeed("https://example.com")["unavailable"])

    def test_malformed_payload_is_unavailable_and_not_cached(self):
        body = {"lighthouseResult": {"categories": {"performance": "fast"}}}
        gw = gateway_for(lambda r: httpx.Response(200, json=body), self.KEYS)
        result = gw.pagespeed("https://example.com")
        self.assertTrue(result["unavailable"])
        self.assertIn("malformed response", result["technical_details"])
        self.assertEqual(len(gw.cache), 0)

    def test_cache_is_bounded(self):
        gw = gateway_for(lambda r: httpx.Response(200, json=psi_body()), self.KEYS)
        gw.cache = TTLCache(60, maxsize=2)
        for n in range(3):
            gw.pagespeed(f"https://example.com/{n}")
        self.assertEqual(len(gw.cache), 2)

    def test_summary_shape(self):
        summary = summarize_pagespeed(psi_body(0.731))
        self.assertEqual(summary["score"], 73.1)
        self.assertEqual(summary["score_class"], "Needs Improvement")
        self.assertEqual(summary["category_scores"], {"accessibility": 88.0, "seo": 100.0})
        self.assertEqual(summary["metrics"]["LCP"]["display_value"], "2.50s")
        self.assertEqual(summary["metrics"]["CLS"]["display_value"], "0.05")
        self.assertEqual(summary["metrics"]["TTI"]["value"], 0.0)
        impacts = {d["title"]: d["impact"] for d in summary["diagnostics"]}
        self.assertEqual(impacts, {
            "Eliminate render-blocking resources": "Potential savings of 450ms",
            "Reduce unused CSS": "Reduce by 2.0 KB",
        })

    def test_score_class_bands(self):
        self.assertEqual(score_class(90), "Excellent")
        self.assertEqual(score_class(89.9), "Needs Improvement")
        self.assertEqual(score_class(50), "Needs Improvement")
        self.assertEqual(score_class(49.9), "Poor")


class TestOtherServices(unittest.TestCase):
    def test_safe_browsing_request_and_verdicts(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            self.assertEqual(request.method, "POST")
            self.assertEqual(request.url.params["key"], "sb")
            return httpx.Response(200, json={} if len(bodies) == 1 else {"matches": [{"threatType": "MALWARE"}]})

        gw = gateway_for(handler, [ApiKey(service_name="safe_browsing", key_material="sb")])
        self.assertEqual(gw.safe_browsing("https://example.com")["status"], "safe")
        flagged = gw.safe_browsing("https://example.com")
        self.assertEqual(flagged["status"], "unsafe")
        self.assertEqual(flagged["threats"], ["MALWARE"])

        body = bodies[0]
        self.assertEqual(body["client"], {"clientId": "SEOAnalyzerTool", "clientVersion": "1.0"})
        self.assertEqual(body["threatInfo"]["threatTypes"], ["MALWARE", "SOCIAL_ENGINEERING"])
        self.assertEqual(body["threatInfo"]["threatEntries"], [{"url": "https://example.com"}])

    def test_rdap_strips_www_and_summarizes(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, json={
                "ldhName": "EXAMPLE.COM",
                "events": [
                    {"eventAction": "registration", "eventDate": "1995-08-14T04:00:00Z"},
                    {"eventAction": "expiration", "eventDate": "2099-08-13T04:00:00Z"},
                ],
                "nameservers": [{"ldhName": "B.IANA-SERVERS.NET"}, {"ldhName": "A.IANA-SERVERS.NET"}],
                "entities": [{"roles": ["registrar"], "vcardArray": ["vcard", [["version", {}, "text", "4.0"], ["fn", {}, "text", "RESERVED-IANA"]]]}],
            })

        result = gateway_for(handler).rdap("www.example.com")
        self.assertEqual(seen, ["https://rdap.org/domain/example.com"])
        self.assertEqual(result["registrar"], "RESERVED-IANA")
        self.assertEqual(result["nameservers"], ["a.iana-servers.net", "b.iana-servers.net"])
        self.assertGreater(result["age_days"], 365 * 25)
        self.assertGreater(result["expires_in_days"], 365)

    def test_rdap_server_error_is_unavailable_after_retries(self):
        sleeps = []
        result = gateway_for(lambda r: httpx.Response(502), sleeps=sleeps).rdap("example.com")
        self.assertTrue(result["unavailable"])
        self.assertEqual(sleeps, [2.0, 4.0, 8.0])

    def test_ip_geolocation(self):
        def handler(request):
            self.assertEqual(request.url.path, "/json/93.184.216.34")
            self.assertIn("regionName", request.url.params["fields"])
            return httpx.Response(200, json={"status": "success", "country": "United States", "city": "Norwell", "query": "93.184.216.34"})

        result = gateway_for(handler).ip_geolocation("93.184.216.34")
        self.assertEqual(result["country"], "United States")
        self.assertEqual(result["ip"], "93.184.216.34")

    def test_ip_geolocation_failure_status(self):
        result = gateway_for(lambda r: httpx.Response(200, json={"status": "fail", "message": "private range"})).ip_geolocation("10.0.0.1")
        self.assertTrue(result["unavailable"])
        self.assertIn("private range", result["technical_details"])

    def test_summarize_rdap_without_events(self):
        self.assertIsNone(summarize_rdap({})["age_days"])

    def test_rdap_with_malformed_events_is_unavailable(self):
        result = gateway_for(lambda r: httpx.Response(200, json={"events": ["registration"]})).rdap("example.com")
        self.assertTrue(result["unavailable"])
        self.assertEqual(result["service"], "rdap")
        self.assertIn("malformed response", result["technical_details"])

    def test_rdap_with_truncated_vcard_is_unavailable(self):
        body = {"entities": [{"roles": ["registrar"], "vcardArray": ["vcard", [["fn", {}, "text"]]]}]}
        result = gateway_for(lambda r: httpx.Response(200, json=body)).rdap("example.com")
        self.assertTrue(result["unavailable"])

    def test_safe_browsing_with_malformed_matches_is_unavailable(self):
        gw = gateway_for(lambda r: httpx.Response(200, json={"matches": 3}),
                         [ApiKey(service_name="safe_browsing", key_material="sb")])
        self.assertTrue(gw.safe_browsing("https://example.com")["unavailable"])


if __name__ == "__main__":
    unittest.main()
