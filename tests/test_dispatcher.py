"""Tests for the request dispatcher pipeline."""

from __future__ import annotations

import asyncio

import pytest

from httpgate.client.cancellation import CancellationToken
from httpgate.client.dispatcher import CACHED_STATUS_TEXT, Dispatcher, decode_body
from httpgate.client.errors import AbortError, ConfigError, NetworkError, RequestTimeout
from httpgate.client.types import ClientDefaults, RequestSpec, ResponseEnvelope, TransportResponse

BASE_URL = "https://api.example.com"


@pytest.fixture
def make_dispatcher(transport_factory, recording_sleep, clock):
    def factory(*outcomes, **defaults):
        defaults.setdefault("base_url", BASE_URL)
        transport = transport_factory(*outcomes)
        dispatcher = Dispatcher(ClientDefaults(**defaults), transport, sleep=recording_sleep, clock=clock)
        return dispatcher, transport

    return factory


async def _until_pending(dispatcher: Dispatcher, count: int = 1) -> None:
    for _ in range(50):
        if len(dispatcher.pending) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError("request never became pending")


# ==========================================================================
# Test: Config merge
# ==========================================================================


class TestConfigMerge:
    def test_request_values_win_and_defaults_untouched(self, make_dispatcher):
        dispatcher, _ = make_dispatcher(
            headers={"Accept": "application/json", "X-Client": "httpgate"},
            timeout=5.0,
            retry=2,
        )
        config = dispatcher.resolve(RequestSpec(path="/users", headers={"accept": "text/plain"}, retry=0))

        assert config.headers == {"X-Client": "httpgate", "accept": "text/plain"}
        assert config.retry == 0
        assert config.timeout == 5.0
        assert config.base_url == BASE_URL
        assert config.method == "GET"
        assert dispatcher.defaults.headers == {"Accept": "application/json", "X-Client": "httpgate"}

    def test_unknown_method_rejected(self, make_dispatcher):
        dispatcher, _ = make_dispatcher()
        with pytest.raises(ConfigError, match="FETCH"):
            dispatcher.resolve(RequestSpec(path="/x", method="fetch"))

    @pytest.mark.asyncio
    async def test_execute_rejects_unknown_method_before_transport(self, make_dispatcher):
        dispatcher, transport = make_dispatcher()
        with pytest.raises(ConfigError):
            await dispatcher.execute(RequestSpec(path="/x", method="BREW"))
        assert transport.call_count == 0


# ==========================================================================
# Test: Happy path and decoding
# ==========================================================================


class TestExecute:
    @pytest.mark.asyncio
    async def test_json_envelope(self, make_dispatcher, response_factory):
        dispatcher, transport = make_dispatcher(
            response_factory(200, json_data={"id": 1, "name": "Ada"}, headers={"x-request-id": "r1"})
        )
        envelope = await dispatcher.execute(RequestSpec(path="/users/1"))

        assert envelope.data == {"id": 1, "name": "Ada"}
        assert envelope.status == 200
        assert envelope.ok
        assert envelope.headers["x-request-id"] == "r1"
        assert envelope.config.path == "/users/1"
        assert transport.calls[0][0] == f"{BASE_URL}/users/1"

    @pytest.mark.asyncio
    async def test_error_status_returned_as_envelope(self, make_dispatcher, response_factory):
        dispatcher, _ = make_dispatcher(response_factory(404, text="not found", status_text="Not Found"))
        envelope = await dispatcher.execute(RequestSpec(path="/missing"))

        assert envelope.status == 404
        assert envelope.status_text == "Not Found"
        assert envelope.data == "not found"
        assert not envelope.ok

    @pytest.mark.asyncio
    async def test_response_body_is_released(self, make_dispatcher, response_factory):
        dispatcher, transport = make_dispatcher(response_factory(200, text="ok"))
        await dispatcher.execute(RequestSpec(path="/x"))
        assert transport.responses[0].closed


class TestDecodeBody:
    def test_json(self):
        assert decode_body(b'{"a": 1}', {"Content-Type": "application/json; charset=utf-8"}) == {"a": 1}

    def test_vendor_json_type(self):
        assert decode_body(b"[1, 2]", {"content-type": "application/problem+json"}) == [1, 2]

    def test_malformed_json_falls_back_to_text(self):
        assert decode_body(b"{oops", {"content-type": "application/json"}) == "{oops"

    def test_empty_json_body(self):
        assert decode_body(b"", {"content-type": "application/json"}) is None

    def test_text_and_charset(self):
        assert decode_body("café".encode("latin-1"), {"content-type": "text/plain; charset=latin-1"}) == "café"

    def test_no_content_type(self):
        assert decode_body(b"plain", {}) == "plain"


# ==========================================================================
# Test: Cache
# ==========================================================================


class TestCaching:
    @pytest.mark.asyncio
    async def test_hit_bypasses_interceptors_and_transport(self, make_dispatcher, response_factory):
        dispatcher, transport = make_dispatcher(response_factory(200, json_data=[{"id": 1}]), cache=True)
        seen = []
        dispatcher.interceptors.request.register(lambda spec: seen.append("request") or spec)
        dispatcher.interceptors.response.register(lambda env: seen.append("response") or env)

        first = await dispatcher.execute(RequestSpec(path="/users"))
        second = await dispatcher.execute(RequestSpec(path="/users"))

        assert transport.call_count == 1
        assert seen == ["request", "response"]
        assert first.status_text != CACHED_STATUS_TEXT
        assert second.data == [{"id": 1}]
        assert second.status == 200
        assert second.status_text == CACHED_STATUS_TEXT
        assert second.headers == {}

    @pytest.mark.asyncio
    async def test_entry_expires(self, make_dispatcher, response_factory, clock):
        dispatcher, transport = make_dispatcher(
            response_factory(200, json_data={"v": 1}),
            response_factory(200, json_data={"v": 2}),
            cache=True,
            cache_ttl=60,
        )
        await dispatcher.execute(RequestSpec(path="/v"))
        clock.advance(59)
        assert (await dispatcher.execute(RequestSpec(path="/v"))).data == {"v": 1}
        clock.advance(1)
        assert (await dispatcher.execute(RequestSpec(path="/v"))).data == {"v": 2}
        assert transport.call_count == 2

    @pytest.mark.asyncio
    async def test_key_taken_before_interceptors(self, make_dispatcher, response_factory):
        dispatcher, transport = make_dispatcher(response_factory(200, json_data={"ok": True}), cache=True)
        dispatcher.interceptors.request.register(
            lambda spec: spec.replace(params={**(spec.params or {}), "ts": "changing"})
        )

        await dispatcher.execute(RequestSpec(path="/feed", params={"page": 1}))
        again = await dispatcher.execute(RequestSpec(path="/feed", params={"page": 1}))

        assert transport.call_count == 1
        assert again.status_text == CACHED_STATUS_TEXT

    @pytest.mark.asyncio
    async def test_explicit_cache_key(self, make_dispatcher, response_factory):
        dispatcher, transport = make_dispatcher(response_factory(200, json_data=1))
        await dispatcher.execute(RequestSpec(path="/a", cache=True, cache_key="shared"))
        hit = await dispatcher.execute(RequestSpec(path="/b", cache=True, cache_key="shared"))

        assert hit.data == 1
        assert transport.call_count == 1

    @pytest.mark.asyncio
    async def test_disabled_by_default(self, make_dispatcher, response_factory):
        dispatcher, transport = make_dispatcher(response_factory(200, text="a"), response_factory(200, text="b"))
        await dispatcher.execute(RequestSpec(path="/x"))
        await dispatcher.execute(RequestSpec(path="/x"))
        assert transport.call_count == 2
        assert len(dispatcher.cache) == 0

    @pytest.mark.asyncio
    async def test_failed_request_not_cached(self, make_dispatcher, response_factory):
        dispatcher, transport = make_dispatcher(NetworkError("down"), response_factory(200, text="up"), cache=True)
        with pytest.raises(NetworkError):
            await dispatcher.execute(RequestSpec(path="/x"))
        assert (await dispatcher.execute(RequestSpec(path="/x"))).data == "up"
        assert transport.call_count == 2


# ==========================================================================
# Test: Interceptors in the pipeline
# ==========================================================================


class TestInterceptorFlow:
    @pytest.mark.asyncio
    async def test_request_transform_reaches_transport(self, make_dispatcher, response_factory):
        dispatcher, transport = make_dispatcher(response_factory(200))
        dispatcher.interceptors.request.register(lambda spec: spec.with_headers({"Authorization": "Bearer t"}))

        await dispatcher.execute(RequestSpec(path="/me"))
        _, request = transport.calls[0]
        assert request.headers["Authorization"] == "Bearer t"

    @pytest.mark.asyncio
    async def test_response_transforms_in_order(self, make_dispatcher, response_factory):
        dispatcher, _ = make_dispatcher(response_factory(200, json_data={"n": 1}))
        dispatcher.interceptors.response.register(lambda env: env.replace(data={"n": env.data["n"] + 1}))
        dispatcher.interceptors.response.register(lambda env: env.replace(data={"n": env.data["n"] * 10}))

        envelope = await dispatcher.execute(RequestSpec(path="/n"))
        assert envelope.data == {"n": 20}

    @pytest.mark.asyncio
    async def test_request_rejection_goes_to_response_failure_path(self, make_dispatcher):
        dispatcher, transport = make_dispatcher()

        def reject(spec):
            raise PermissionError("no token")

        fallback = ResponseEnvelope(data=None, status=401, status_text="Unauthorized", headers={}, config=RequestSpec())
        received = []

        def handle(exc):
            received.append(exc)
            return fallback

        dispatcher.interceptors.request.register(reject)
        dispatcher.interceptors.response.register(None, handle)

        assert await dispatcher.execute(RequestSpec(path="/x")) is fallback
        assert isinstance(received[0], PermissionError)
        assert transport.call_count == 0

    @pytest.mark.asyncio
    async def test_request_rejection_without_handler_raises(self, make_dispatcher):
        dispatcher, transport = make_dispatcher()

        def deny(spec):
            raise PermissionError("denied")

        dispatcher.interceptors.request.register(deny)

        with pytest.raises(PermissionError):
            await dispatcher.execute(RequestSpec(path="/x"))
        assert transport.call_count == 0

    @pytest.mark.asyncio
    async def test_non_spec_from_request_interceptor(self, make_dispatcher):
        dispatcher, _ = make_dispatcher()
        dispatcher.interceptors.request.register(lambda spec: None)

        with pytest.raises(ConfigError):
            await dispatcher.execute(RequestSpec(path="/x"))

    @pytest.mark.asyncio
    async def test_transport_failure_recovered(self, make_dispatcher):
        dispatcher, _ = make_dispatcher(NetworkError("refused"))
        dispatcher.interceptors.response.register(None, lambda exc: f"recovered: {exc.code}")

        assert await dispatcher.execute(RequestSpec(path="/x")) == "recovered: network"

    @pytest.mark.asyncio
    async def test_async_failure_transform_can_rethrow(self, make_dispatcher):
        dispatcher, _ = make_dispatcher(NetworkError("refused"))

        async def translate(exc):
            raise RuntimeError("service unavailable") from exc

        dispatcher.interceptors.response.register(None, translate)
        with pytest.raises(RuntimeError, match="service unavailable"):
            await dispatcher.execute(RequestSpec(path="/x"))


# ==========================================================================
# Test: Gate, pending calls and cancellation
# ==========================================================================


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_slot_released_and_pending_cleared_on_failure(self, make_dispatcher):
        dispatcher, _ = make_dispatcher(NetworkError("down"), concurrency=1)
        with pytest.raises(NetworkError):
            await dispatcher.execute(RequestSpec(path="/x"))

        assert dispatcher.gate.active == 0
        assert dispatcher.pending == []

    @pytest.mark.asyncio
    async def test_concurrency_limit_applies(self, make_dispatcher, response_factory):
        release = asyncio.Event()
        in_flight = 0
        peak = 0

        async def slow(url, request):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await release.wait()
            in_flight -= 1
            return response_factory(200, text=url)

        dispatcher, transport = make_dispatcher(slow, slow, slow, concurrency=2)
        tasks = [asyncio.create_task(dispatcher.execute(RequestSpec(path=f"/{i}"))) for i in range(3)]
        await _until_pending(dispatcher, 3)
        for _ in range(5):
            await asyncio.sleep(0)

        assert transport.call_count == 2
        assert dispatcher.gate.waiting == 1

        release.set()
        results = await asyncio.gather(*tasks)
        assert [r.data for r in results] == [f"{BASE_URL}/{i}" for i in range(3)]
        assert peak == 2
        assert dispatcher.gate.active == 0

    @pytest.mark.asyncio
    async def test_cancel_by_request_id(self, make_dispatcher):
        async def hang(url, request):
            await asyncio.sleep(10)

        dispatcher, _ = make_dispatcher(hang, retry=3)
        task = asyncio.create_task(dispatcher.execute(RequestSpec(path="/slow")))
        await _until_pending(dispatcher)

        call = dispatcher.pending[0]
        assert call.method == "GET"
        assert call.path == "/slow"
        assert dispatcher.cancel(call.request_id, "navigated away")

        with pytest.raises(AbortError, match="navigated away"):
            await task
        assert dispatcher.pending == []
        assert not dispatcher.cancel(call.request_id)

    @pytest.mark.asyncio
    async def test_caller_token_cancels(self, make_dispatcher):
        async def hang(url, request):
            await asyncio.sleep(10)

        dispatcher, _ = make_dispatcher(hang)
        token = CancellationToken()
        task = asyncio.create_task(dispatcher.execute(RequestSpec(path="/slow", cancel_token=token)))
        await _until_pending(dispatcher)

        token.cancel()
        with pytest.raises(AbortError):
            await task

    @pytest.mark.asyncio
    async def test_cancel_all_reaches_queued_requests(self, make_dispatcher):
        async def hang(url, request):
            await asyncio.sleep(10)

        dispatcher, transport = make_dispatcher(hang, concurrency=1)
        tasks = [asyncio.create_task(dispatcher.execute(RequestSpec(path=f"/{i}"))) for i in range(3)]
        await _until_pending(dispatcher, 3)
        for _ in range(5):
            await asyncio.sleep(0)

        assert dispatcher.cancel_all("shutdown") == 3
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, AbortError) for r in results)
        assert transport.call_count == 1
        assert dispatcher.gate.active == 0
        assert dispatcher.gate.waiting == 0

    @pytest.mark.asyncio
    async def test_get_status(self, make_dispatcher, response_factory):
        dispatcher, _ = make_dispatcher(response_factory(200, json_data=[]), cache=True, concurrency=4)
        dispatcher.interceptors.request.register(lambda spec: spec)
        await dispatcher.execute(RequestSpec(path="/items"))

        assert dispatcher.get_status() == {
            "gate": {"active": 0, "waiting": 0, "limit": 4},
            "pending": 0,
            "cache_entries": 1,
            "interceptors": {"request": 1, "response": 0},
        }

    @pytest.mark.asyncio
    async def test_context_manager_clears_state(self, make_dispatcher, response_factory):
        dispatcher, _ = make_dispatcher(response_factory(200, json_data=1), cache=True)
        async with dispatcher as d:
            await d.execute(RequestSpec(path="/x"))
            assert len(d.cache) == 1
        assert len(dispatcher.cache) == 0


# ==========================================================================
# Test: Stalled response bodies
# ==========================================================================


def _stalled_response(stalled: asyncio.Event) -> TransportResponse:
    """Headers arrive promptly, then the body stops halfway through."""

    async def body():
        yield b'{"a":'
        stalled.set()
        await asyncio.sleep(3600)
        yield b" 1}"

    return TransportResponse(status=200, status_text="OK", headers={"content-type": "application/json"}, body=body())


class TestStalledBody:
    @pytest.mark.asyncio
    async def test_timeout_covers_body_read(self, make_dispatcher):
        response = _stalled_response(asyncio.Event())
        dispatcher, _ = make_dispatcher(response)

        with pytest.raises(RequestTimeout):
            await asyncio.wait_for(dispatcher.execute(RequestSpec(path="/a", timeout=0.05)), 2)
        assert response.closed
        assert dispatcher.pending == []

    @pytest.mark.asyncio
    async def test_stalled_body_is_retried(self, make_dispatcher, response_factory, recording_sleep):
        first = _stalled_response(asyncio.Event())
        dispatcher, transport = make_dispatcher(first, response_factory(200, json_data={"a": 1}))

        envelope = await asyncio.wait_for(dispatcher.execute(RequestSpec(path="/a", timeout=0.05, retry=1)), 2)

        assert envelope.data == {"a": 1}
        assert transport.call_count == 2
        assert first.closed
        assert recording_sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_token_cancels_body_read(self, make_dispatcher):
        stalled = asyncio.Event()
        response = _stalled_response(stalled)
        dispatcher, _ = make_dispatcher(response, retry=3)
        token = CancellationToken()

        task = asyncio.create_task(dispatcher.execute(RequestSpec(path="/a", cancel_token=token)))
        await asyncio.wait_for(stalled.wait(), 2)
        token.cancel("stop")

        with pytest.raises(AbortError, match="stop"):
            await asyncio.wait_for(task, 2)
        assert response.closed
        assert dispatcher.pending == []

    @pytest.mark.asyncio
    async def test_cancel_by_request_id_during_body_read(self, make_dispatcher):
        stalled = asyncio.Event()
        response = _stalled_response(stalled)
        dispatcher, _ = make_dispatcher(response)

        task = asyncio.create_task(dispatcher.execute(RequestSpec(path="/a")))
        await asyncio.wait_for(stalled.wait(), 2)
        assert dispatcher.cancel(dispatcher.pending[0].request_id, "gone")

        with pytest.raises(AbortError, match="gone"):
            await asyncio.wait_for(task, 2)
        assert response.closed
