import asyncio
import unittest
from unittest import mock

from fastapi.testclient import TestClient

from bbstats import __version__
from bbstats.cache import CacheService
from bbstats.collector import GatewayLogCollector
from bbstats.config import Settings
from bbstats.main import create_app
from bbstats.upstream import GatewayClient

from fakes import FakeClock, FakeUpstream, make_settings, recent_only, settle

SUMMARY = "/api/activity-summary"


class ActivitySummaryApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.upstream = FakeUpstream(recent_only())
        self.app = create_app(make_settings(), transport=self.upstream.transport, clock=FakeClock())
        self.client = TestClient(self.app)
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)

    def test_health_reports_configuration(self) -> None:
        res = self.client.get("/health")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json(), {"ok": True, "version": __version__, "configured": True})

    def test_first_request_misses_then_hits(self) -> None:
        first = self.client.get(SUMMARY, params={"range": "7d"})
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.headers["x-cache-status"], "MISS")
        self.assertEqual(first.headers["cache-control"], "public, max-age=21600")

        body = first.json()
        self.assertEqual(body["requestedRange"], "7d")
        self.assertEqual(body["range"], "7d")
        self.assertEqual(body["totals"], {"blocked": 7, "allowed": 0})
        self.assertEqual(body["topBlocked"], [{"name": "ads.example.com", "count": 7}])
        self.assertFalse(body["meta"]["fromCache"])
        self.assertEqual(body["meta"]["segmentsPlanned"], 7)
        self.assertNotIn("error", body)

        second = self.client.get(SUMMARY, params={"range": "7d"})
        self.assertEqual(second.headers["x-cache-status"], "HIT")
        self.assertEqual(second.headers["cache-control"], "public, max-age=21600")
        self.assertEqual(second.json()["totals"], body["totals"])
        self.assertTrue(second.json()["meta"]["fromCache"])

    def test_unknown_range_resolves_to_default(self) -> None:
        for value in ("bogus", "", "  7D "):
            with self.subTest(range=value):
                res = self.client.get(SUMMARY, params={"range": value})
                self.assertEqual(res.status_code, 200)
                self.assertEqual(res.json()["requestedRange"], "7d")

    def test_missing_range_parameter_uses_default(self) -> None:
        res = self.client.get(SUMMARY)
        self.assertEqual(res.json()["requestedRange"], "7d")

    def test_force_refresh_bypasses_cache(self) -> None:
        self.client.get(SUMMARY, params={"range": "30d"})
        self.assertEqual(self.client.get(SUMMARY, params={"range": "30d"}).headers["x-cache-status"], "HIT")

        forced = self.client.get(SUMMARY, params={"range": "30d", "force": "1"})
        self.assertEqual(forced.headers["x-cache-status"], "MISS")
        self.assertEqual(forced.json()["meta"]["reason"], "user-refresh")

    def test_upstream_failure_returns_error_payload(self) -> None:
        self.upstream.responder = lambda segment: 500

        res = self.client.get(SUMMARY, params={"range": "365d"})

        self.assertEqual(res.status_code, 200)
        self.assertEqual(
            res.json(),
            {
                "error": "Unable to retrieve data from Cloudflare right now.",
                "topBlocked": [],
                "totals": {"blocked": 0, "allowed": 0},
                "requestedRange": "365d",
                "range": "365d",
                "rangeLabel": "Last 365 days",
            },
        )


class CacheHeaderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.upstream = FakeUpstream(recent_only())
        settings = make_settings(cache_ttl_ms=3_600_000)
        self.client = TestClient(create_app(settings, transport=self.upstream.transport, clock=self.clock))
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)

    def test_max_age_follows_remaining_lifetime_and_stale_is_not_cached(self) -> None:
        first = self.client.get(SUMMARY, params={"range": "7d"})
        self.assertEqual(first.headers["x-cache-status"], "MISS")
        self.assertEqual(first.headers["cache-control"], "public, max-age=3600")

        self.clock.advance(600)
        hit = self.client.get(SUMMARY, params={"range": "7d"})
        self.assertEqual(hit.headers["x-cache-status"], "HIT")
        self.assertEqual(hit.headers["cache-control"], "public, max-age=3000")

        self.clock.advance(3001)
        stale = self.client.get(SUMMARY, params={"range": "7d"})
        self.assertEqual(stale.status_code, 200)
        self.assertEqual(stale.headers["x-cache-status"], "STALE")
        self.assertEqual(stale.headers["cache-control"], "no-cache")
        self.assertTrue(stale.json()["meta"]["stale"])
        self.assertTrue(stale.json()["meta"]["refreshing"])
        self.assertEqual(stale.json()["totals"], first.json()["totals"])


class GoneRequest:
    """A request whose client has already hung up."""

    def __init__(self, app) -> None:
        self.app = app

    async def is_disconnected(self) -> bool:
        return True


class ClientDisconnectTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = FakeClock()
        self.upstream = FakeUpstream(recent_only())
        self.upstream.gate = asyncio.Event()
        self.app = create_app(make_settings(), clock=self.clock)
        self.gateway = GatewayClient(make_settings(), transport=self.upstream.transport)
        self.cache = CacheService(GatewayLogCollector(self.gateway, clock=self.clock), 3600, clock=self.clock)
        self.app.state.cache = self.cache
        self.endpoint = next(r for r in self.app.routes if getattr(r, "path", None) == SUMMARY).endpoint

    async def asyncTearDown(self) -> None:
        await self.cache.aclose()
        await self.gateway.aclose()

    async def test_disconnect_returns_empty_499_and_drops_the_fetch(self) -> None:
        res = await self.endpoint(request=GoneRequest(self.app), range_key="7d", force=None)
        await settle()

        self.assertEqual(res.status_code, 499)
        self.assertEqual(res.body, b"")
        self.assertLessEqual(len(self.upstream.calls), 1)
        self.assertIsNone(self.cache.entry("7d"))
        self.assertIsNone(self.cache.prefetch_task)

    async def test_disconnect_cancels_prefetch_rotation(self) -> None:
        with mock.patch.object(self.cache, "cancel_prefetch", wraps=self.cache.cancel_prefetch) as cancel:
            res = await self.endpoint(request=GoneRequest(self.app), range_key="30d", force="1")

        self.assertEqual(res.status_code, 499)
        cancel.assert_called_with("request aborted")


class UnconfiguredApiTests(unittest.TestCase):
    def test_missing_credentials_is_a_server_error(self) -> None:
        app = create_app(Settings.from_env({"CLOUDFLARE_ACCOUNT_ID": "YOUR_ACCOUNT_ID"}))
        with TestClient(app) as client:
            self.assertFalse(client.get("/health").json()["configured"])

            res = client.get(SUMMARY, params={"range": "30d"})

        self.assertEqual(res.status_code, 500)
        self.assertEqual(
            res.json(),
            {
                "error": "Missing CLOUDFLARE_ACCOUNT_ID or CLOUDFLARE_API_TOKEN.",
                "topBlocked": [],
                "totals": {"blocked": 0, "allowed": 0},
            },
        )


if __name__ == "__main__":
    unittest.main()
