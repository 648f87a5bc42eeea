from __future__ import annotations

import asyncio
import json
import unittest
from typing import Callable, List
from urllib.parse import parse_qs, urlparse

import httpx

from app.core.exceptions import RefreshFailedError, UpstreamAPIError, UpstreamAuthError, UpstreamTimeoutError
from app.services.antigravity_client import AntigravityClient

BASE = "https://daily-cloudcode-pa.example.com/v1internal"
FALLBACK = "https://cloudcode-pa.example.com/v1internal"


def _client(handler: Callable[[httpx.Request], httpx.Response], base_urls: List[str] = None) -> AntigravityClient:
    return AntigravityClient(
        base_urls=base_urls or [BASE],
        client_id="client-id",
        client_secret="client-secret",
        user_agent="antigravity/1.0",
        timeout_seconds=5,
        transport=httpx.MockTransport(handler),
    )


def _run(client: AntigravityClient, coro_factory):
    async def _main():
        try:
            return await coro_factory()
        finally:
            await client.aclose()

    return asyncio.run(_main())


class TestInference(unittest.TestCase):
    def test_generate_content_posts_envelope(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["ua"] = request.headers.get("user-agent")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"response": {"candidates": []}})

        client = _client(handler)
        out = _run(client, lambda: client.generate_content({"model": "m"}, "at-1"))

        self.assertEqual(out, {"response": {"candidates": []}})
        self.assertEqual(seen["url"], f"{BASE}:generateContent")
        self.assertEqual(seen["auth"], "Bearer at-1")
        self.assertEqual(seen["ua"], "antigravity/1.0")
        self.assertEqual(seen["body"], {"model": "m"})

    def test_unauthorized_maps_to_auth_error(self) -> None:
        client = _client(lambda r: httpx.Response(401, json={"error": {"message": "token expired"}}))
        with self.assertRaises(UpstreamAuthError) as ctx:
            _run(client, lambda: client.generate_content({}, "at"))
        self.assertEqual(ctx.exception.message, "token expired")

    def test_rate_limit_carries_retry_delay(self) -> None:
        body = {
            "error": {
                "code": 429,
                "message": "Resource has been exhausted",
                "details": [{"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": "12.5s"}],
            }
        }
        client = _client(lambda r: httpx.Response(429, json=body))
        with self.assertRaises(UpstreamAPIError) as ctx:
            _run(client, lambda: client.generate_content({}, "at"))
        self.assertEqual(ctx.exception.status_code, 429)
        self.assertEqual(ctx.exception.retry_after_seconds, 12.5)
        self.assertTrue(ctx.exception.retryable)

    def test_retry_after_header_fallback(self) -> None:
        client = _client(lambda r: httpx.Response(429, text="slow down", headers={"Retry-After": "7"}))
        with self.assertRaises(UpstreamAPIError) as ctx:
            _run(client, lambda: client.generate_content({}, "at"))
        self.assertEqual(ctx.exception.retry_after_seconds, 7.0)
        self.assertEqual(ctx.exception.message, "slow down")

    def test_client_error_is_not_retryable(self) -> None:
        client = _client(lambda r: httpx.Response(400, json={"error": {"message": "bad field"}}))
        with self.assertRaises(UpstreamAPIError) as ctx:
            _run(client, lambda: client.generate_content({}, "at"))
        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(ctx.exception.error_code, "upstream_400")

    def test_connect_error_falls_back_to_next_base_url(self) -> None:
        hosts = []

        def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.url.host)
            if request.url.host == "daily-cloudcode-pa.example.com":
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json={"ok": True})

        client = _client(handler, [BASE, FALLBACK])
        self.assertEqual(_run(client, lambda: client.generate_content({}, "at")), {"ok": True})
        self.assertEqual(hosts, ["daily-cloudcode-pa.example.com", "cloudcode-pa.example.com"])

    def test_all_base_urls_unreachable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = _client(handler, [BASE, FALLBACK])
        with self.assertRaises(UpstreamAPIError) as ctx:
            _run(client, lambda: client.generate_content({}, "at"))
        self.assertEqual(ctx.exception.status_code, 502)

    def test_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        client = _client(handler)
        with self.assertRaises(UpstreamTimeoutError):
            _run(client, lambda: client.generate_content({}, "at"))

    def test_protocol_error_maps_to_retryable_upstream_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.RemoteProtocolError("peer closed connection", request=request)

        client = _client(handler, [BASE, FALLBACK])
        with self.assertRaises(UpstreamAPIError) as ctx:
            _run(client, lambda: client.generate_content({}, "at"))
        self.assertEqual(ctx.exception.status_code, 502)
        self.assertTrue(ctx.exception.retryable)
        self.assertIn("RemoteProtocolError", ctx.exception.message)

    def test_project_call_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadError("reset", request=request)

        client = _client(handler)
        with self.assertRaises(UpstreamAPIError) as ctx:
            _run(client, lambda: client.load_project("at"))
        self.assertEqual(ctx.exception.status_code, 502)

    def test_stream_parses_sse_data(self) -> None:
        seen = {}
        body = (
            'data: {"response": {"candidates": []}}\n\n'
            ": keep-alive\n\n"
            "data: line one\n"
            "data: line two\n\n"
            "data: tail"
        )

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = request.url
            seen["accept"] = request.headers.get("accept")
            return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

        client = _client(handler)

        async def _collect():
            stream = await client.open_stream({"model": "m"}, "at")
            try:
                return [data async for data in stream.iter_data()]
            finally:
                await stream.aclose()

        events = _run(client, _collect)
        self.assertEqual(events, ['{"response": {"candidates": []}}', "line one\nline two", "tail"])
        self.assertTrue(str(seen["url"]).startswith(f"{BASE}:streamGenerateContent"))
        self.assertEqual(parse_qs(urlparse(str(seen["url"])).query), {"alt": ["sse"]})
        self.assertEqual(seen["accept"], "text/event-stream")

    def test_stream_error_status_raises_before_streaming(self) -> None:
        client = _client(lambda r: httpx.Response(503, json={"error": {"message": "overloaded"}}))
        with self.assertRaises(UpstreamAPIError) as ctx:
            _run(client, lambda: client.open_stream({}, "at"))
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertTrue(ctx.exception.retryable)


class TestOAuth(unittest.TestCase):
    def test_refresh_access_token(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["form"] = parse_qs(request.content.decode("utf-8"))
            return httpx.Response(200, json={"access_token": "new-at", "expires_in": 3599})

        client = _client(handler)
        grant = _run(client, lambda: client.refresh_access_token("rt-1"))
        self.assertEqual(grant.access_token, "new-at")
        self.assertEqual(grant.expires_in, 3599)
        self.assertIsNone(grant.refresh_token)
        self.assertEqual(seen["form"]["grant_type"], ["refresh_token"])
        self.assertEqual(seen["form"]["refresh_token"], ["rt-1"])

    def test_invalid_grant(self) -> None:
        client = _client(
            lambda r: httpx.Response(400, json={"error": "invalid_grant", "error_description": "Token has been revoked."})
        )
        with self.assertRaises(RefreshFailedError) as ctx:
            _run(client, lambda: client.refresh_access_token("rt-secret-value"))
        self.assertTrue(ctx.exception.invalid_grant)
        self.assertIn("invalid_grant", ctx.exception.message)
        self.assertNotIn("rt-secret-value", ctx.exception.message)

    def test_server_error_is_not_invalid_grant(self) -> None:
        client = _client(lambda r: httpx.Response(500, text="oops"))
        with self.assertRaises(RefreshFailedError) as ctx:
            _run(client, lambda: client.refresh_access_token("rt"))
        self.assertFalse(ctx.exception.invalid_grant)

    def test_missing_access_token(self) -> None:
        client = _client(lambda r: httpx.Response(200, json={"expires_in": 10}))
        with self.assertRaises(RefreshFailedError):
            _run(client, lambda: client.refresh_access_token("rt"))

    def test_empty_refresh_token_is_rejected_locally(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={})

        client = _client(handler)
        with self.assertRaises(RefreshFailedError) as ctx:
            _run(client, lambda: client.refresh_access_token("  "))
        self.assertTrue(ctx.exception.invalid_grant)
        self.assertEqual(calls, [])

    def test_build_auth_url(self) -> None:
        client = _client(lambda r: httpx.Response(200))
        url = client.build_auth_url(redirect_uri="http://localhost:8080/oauth-callback", state="st-1")
        query = parse_qs(urlparse(url).query)
        self.assertEqual(query["client_id"], ["client-id"])
        self.assertEqual(query["state"], ["st-1"])
        self.assertEqual(query["redirect_uri"], ["http://localhost:8080/oauth-callback"])
        self.assertEqual(query["access_type"], ["offline"])
        asyncio.run(client.aclose())

    def test_load_project(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertTrue(str(request.url).endswith(":loadCodeAssist"))
            return httpx.Response(
                200,
                json={"cloudaicompanionProject": "proj-x", "currentTier": {"id": "free-tier"}},
            )

        client = _client(handler)
        self.assertEqual(_run(client, lambda: client.load_project("at")), ("proj-x", "free-tier"))


if __name__ == "__main__":
    unittest.main()
