import asyncio

import pytest

from ask_core.domain.exceptions import ApiError, ConfigurationError, NetworkError
from ask_core.domain.models import ChatMessage, ChatRequest
from ask_core.domain.patches import Canceled, ContentDelta, NewMessage, TerminalError, TerminalSuccess
from ask_core.streaming.controller import GENERIC_ERROR_TEXT, RequestController, SessionState, describe_error
from ask_core.streaming.reconciler import MessageReconciler


BLOCK = object()

HELLO = [
    'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n',
    'data: {"choices":[{"delta":{"content":"lo"},"finish_reason":"stop"}]}\n\n',
    "data: [DONE]\n\n",
]
TWO_DELTAS = [
    'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n',
    'data: {"choices":[{"delta":{"content":"lo"}}]}\n\n',
]


class SettingsStub:
    request_timeout = 5.0
    flush_interval = 0.01
    max_incomplete_lines = 64


class FakeProvider:
    name = "fake"

    def __init__(self, *scripts, error=None):
        self.scripts = list(scripts)
        self.error = error
        self.requests = []
        self.reached = asyncio.Event()

    def ensure_configured(self):
        pass

    async def stream_chat(self, req):
        self.requests.append(req)
        fragments = self.scripts.pop(0) if self.scripts else []
        for fragment in fragments:
            if fragment is BLOCK:
                self.reached.set()
                await asyncio.Event().wait()
            yield fragment
        if self.error is not None:
            raise self.error

    async def chat(self, req):
        raise NotImplementedError


class Recorder:
    def __init__(self):
        self.batches = []
        self.timeline = []
        self._rec = MessageReconciler()

    def __call__(self, batch):
        self.batches.append(batch)
        self.timeline = self._rec.apply(self.timeline, batch)

    @property
    def patches(self):
        return [p for b in self.batches for p in b]


def make_request():
    return ChatRequest(model="gpt-3.5-turbo", messages=[ChatMessage(role="user", content="hi")])


@pytest.mark.asyncio
async def test_hello_scenario_completes_with_response_time():
    sink = Recorder()
    ctl = RequestController(FakeProvider(HELLO), sink, SettingsStub())
    session = ctl.start_request(make_request(), "a1")
    await ctl.wait()

    assert session.state is SessionState.COMPLETED
    assert len(sink.timeline) == 1
    msg = sink.timeline[0]
    assert msg.role == "assistant"
    assert msg.content == "Hello"
    assert not msg.is_thinking
    assert msg.response_time_ms is not None and msg.response_time_ms >= 0
    terminals = [p for p in sink.patches if isinstance(p, TerminalSuccess)]
    assert len(terminals) == 1


@pytest.mark.asyncio
async def test_placeholder_is_the_only_thinking_message():
    sink = Recorder()
    ctl = RequestController(FakeProvider([BLOCK]), sink, SettingsStub())
    ctl.start_request(make_request(), "a1")
    assert sink.batches[0] == [NewMessage("a1", "assistant", is_thinking=True)]
    assert [m.is_thinking for m in sink.timeline] == [True]
    assert sink.timeline[0].response_time_ms is None
    ctl.cancel()
    await ctl.wait()


@pytest.mark.asyncio
async def test_cancel_after_two_deltas():
    sink = Recorder()
    provider = FakeProvider(TWO_DELTAS + [BLOCK])
    ctl = RequestController(provider, sink, SettingsStub())
    session = ctl.start_request(make_request(), "a1")
    await asyncio.wait_for(provider.reached.wait(), 1)
    await asyncio.sleep(0.05)
    assert sink.timeline[0].content == "Hello"

    ctl.cancel()
    await ctl.wait()

    assert session.state is SessionState.CANCELED
    msg = sink.timeline[0]
    assert msg.is_canceled
    assert not msg.is_thinking
    assert msg.response_time_ms is None
    assert not any(isinstance(p, TerminalError) for p in sink.patches)


@pytest.mark.asyncio
async def test_cancel_drops_frames_still_buffered():
    sink = Recorder()
    cfg = SettingsStub()
    cfg.flush_interval = 10
    provider = FakeProvider(TWO_DELTAS + [BLOCK])
    ctl = RequestController(provider, sink, cfg)
    ctl.start_request(make_request(), "a1")
    await asyncio.wait_for(provider.reached.wait(), 1)

    ctl.cancel()
    await ctl.wait()

    assert sink.batches == [[NewMessage("a1", "assistant", is_thinking=True)], [Canceled("a1")]]


@pytest.mark.asyncio
async def test_cancel_is_noop_after_completion():
    sink = Recorder()
    ctl = RequestController(FakeProvider(HELLO), sink, SettingsStub())
    ctl.start_request(make_request(), "a1")
    await ctl.wait()
    count = len(sink.batches)
    ctl.cancel()
    ctl.cancel()
    assert len(sink.batches) == count
    assert not sink.timeline[0].is_canceled


@pytest.mark.asyncio
async def test_new_request_preempts_previous_session():
    sink = Recorder()
    provider = FakeProvider(TWO_DELTAS + [BLOCK], HELLO)
    ctl = RequestController(provider, sink, SettingsStub())
    first = ctl.start_request(make_request(), "a1")
    await asyncio.wait_for(provider.reached.wait(), 1)
    second = ctl.start_request(make_request(), "a2")
    await ctl.wait()

    assert first.state is SessionState.CANCELED
    assert second.state is SessionState.COMPLETED
    assert ctl.current_session is second
    by_id = {m.id: m for m in sink.timeline}
    assert by_id["a1"].is_canceled
    assert by_id["a2"].content == "Hello"
    canceled_at = sink.patches.index(Canceled("a1"))
    assert not any(p.message_id == "a1" for p in sink.patches[canceled_at + 1:])


@pytest.mark.asyncio
async def test_api_error_becomes_error_message():
    sink = Recorder()
    error = ApiError(code="API_ERROR", message="boom", http_status=500, upstream_message="The server had an error")
    ctl = RequestController(FakeProvider(TWO_DELTAS, error=error), sink, SettingsStub())
    session = ctl.start_request(make_request(), "a1")
    await ctl.wait()

    assert session.state is SessionState.FAILED
    msg = sink.timeline[0]
    assert msg.is_error
    assert not msg.is_thinking
    assert msg.content == "Error 500\nThe server had an error"
    assert isinstance(sink.patches[-1], TerminalError)
    deltas = [p for p in sink.patches if isinstance(p, ContentDelta)]
    assert "".join(p.text for p in deltas) == "Hello"


@pytest.mark.asyncio
async def test_network_error_uses_raw_text():
    sink = Recorder()
    error = NetworkError(code="NETWORK_ERROR", message="connection refused")
    ctl = RequestController(FakeProvider([], error=error), sink, SettingsStub())
    ctl.start_request(make_request(), "a1")
    await ctl.wait()
    assert sink.timeline[0].content == "connection refused"


@pytest.mark.asyncio
async def test_malformed_frame_surfaces_as_error():
    sink = Recorder()
    ctl = RequestController(FakeProvider(["data: {oops]}\n\n"]), sink, SettingsStub())
    session = ctl.start_request(make_request(), "a1")
    await ctl.wait()
    assert session.state is SessionState.FAILED
    assert sink.timeline[0].is_error
    assert sink.timeline[0].content.startswith("malformed frame")


@pytest.mark.asyncio
async def test_stream_closed_without_terminal_frame_is_an_error():
    sink = Recorder()
    ctl = RequestController(FakeProvider(TWO_DELTAS), sink, SettingsStub())
    ctl.start_request(make_request(), "a1")
    await ctl.wait()
    assert sink.timeline[0].is_error
    assert sink.timeline[0].content == "stream closed before completion"


@pytest.mark.asyncio
async def test_timeout_is_a_transport_error():
    sink = Recorder()
    cfg = SettingsStub()
    cfg.request_timeout = 0.05
    ctl = RequestController(FakeProvider([BLOCK]), sink, cfg)
    session = ctl.start_request(make_request(), "a1")
    await ctl.wait()
    assert session.state is SessionState.FAILED
    assert sink.timeline[0].is_error
    assert "timed out" in sink.timeline[0].content


@pytest.mark.asyncio
async def test_missing_credential_blocks_request():
    class Unconfigured(FakeProvider):
        def ensure_configured(self):
            raise ConfigurationError(code="MISSING_API_KEY", message="ASK_API_KEY not set")

    sink = Recorder()
    provider = Unconfigured(HELLO)
    ctl = RequestController(provider, sink, SettingsStub())
    with pytest.raises(ConfigurationError):
        ctl.start_request(make_request(), "a1")
    assert ctl.current_session is None
    assert sink.batches == []
    assert provider.requests == []


@pytest.mark.asyncio
async def test_uninitialized_provider_blocks_request():
    ctl = RequestController(None, Recorder(), SettingsStub())
    with pytest.raises(ConfigurationError) as exc:
        ctl.start_request(make_request(), "a1")
    assert exc.value.code == "NOT_INITIALIZED"


@pytest.mark.asyncio
async def test_controller_is_usable_after_error():
    sink = Recorder()
    provider = FakeProvider([], HELLO, error=None)
    provider.error = NetworkError(code="NETWORK_ERROR", message="down")
    ctl = RequestController(provider, sink, SettingsStub())
    ctl.start_request(make_request(), "a1")
    await ctl.wait()
    provider.error = None
    ctl.start_request(make_request(), "a2")
    await ctl.wait()
    assert [m.id for m in sink.timeline] == ["a2"]
    assert sink.timeline[0].content == "Hello"


def test_describe_error_without_upstream_message():
    assert describe_error(ApiError(code="API_ERROR", message="<html>", http_status=502)) == GENERIC_ERROR_TEXT
    assert describe_error(RuntimeError("raw")) == "raw"


@pytest.mark.asyncio
async def test_sink_failure_fails_the_session():
    class FlakySink(Recorder):
        def __init__(self):
            super().__init__()
            self.failed = False

        def __call__(self, batch):
            if not self.failed and any(isinstance(p, ContentDelta) for p in batch):
                self.failed = True
                raise RuntimeError("render failed")
            super().__call__(batch)

    sink = FlakySink()
    provider = FakeProvider(TWO_DELTAS + [BLOCK])
    ctl = RequestController(provider, sink, SettingsStub())
    session = ctl.start_request(make_request(), "a1")
    await asyncio.wait_for(provider.reached.wait(), 1)
    await asyncio.wait_for(ctl.wait(), 1)

    assert session.state is SessionState.FAILED
    msg = sink.timeline[0]
    assert msg.is_error
    assert not msg.is_thinking
    assert msg.content == "render failed"
