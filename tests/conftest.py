import asyncio
import base64
import inspect
import io

import httpx
import pytest
from PIL import Image

from imagestudio.config import Settings
from imagestudio.executor import RequestExecutor
from imagestudio.models import CandidateResponse, EncodedImage
from imagestudio.providers.base_provider import BaseImageProvider
from imagestudio.retry import RetryOrchestrator


def make_png_bytes(color=(255, 0, 0), size=(4, 4)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


PNG_B64 = base64.b64encode(make_png_bytes()).decode("ascii")


def png_image(color=(255, 0, 0)) -> EncodedImage:
    return EncodedImage(
        mime_type="image/png",
        raw_data=base64.b64encode(make_png_bytes(color)).decode("ascii"),
    )


def image_candidate(color=(0, 255, 0), text=None) -> CandidateResponse:
    return CandidateResponse(images=[png_image(color)], text=text, finish_reason="STOP")


class StatusError(Exception):
    """Minimal stand-in for an SDK error carrying an HTTP status."""

    def __init__(self, status_code, message="", headers=None):
        super().__init__(message or f"HTTP {status_code}")
        self.status_code = status_code
        self.response = httpx.Response(
            status_code,
            headers=headers or {},
            request=httpx.Request("POST", "https://example.test/v1/chat/completions"),
        )


class FakeProvider(BaseImageProvider):
    """Scripted provider: each send() consumes the next outcome.

    An outcome is a CandidateResponse, None, an exception instance to raise,
    or a callable (sync or async) taking (payload, config).
    """

    def __init__(self, outcomes=None, default=None):
        self.outcomes = list(outcomes or [])
        self.default = default
        self.calls = []
        self.closed = False

    async def send(self, payload, config):
        self.calls.append((payload, config))
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if callable(outcome):
            outcome = outcome(payload, config)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def close(self):
        self.closed = True


class RecordingSleep:
    """Replacement for cancellable_sleep that records delays without waiting."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds, token=None):
        self.delays.append(seconds)
        if token is not None:
            token.raise_if_cancelled()
        await asyncio.sleep(0)


class GatedOrchestrator:
    """Orchestrator double whose calls finish only when released, ignoring cancellation.

    Models a transport that keeps running after abort so the stale-response
    guard in the controller is what keeps state clean.
    """

    def __init__(self):
        self.gates = []
        self.tokens = []

    async def execute_with_retry(self, payload, options, token=None, max_retries=None):
        gate = asyncio.get_running_loop().create_future()
        self.gates.append(gate)
        self.tokens.append(token)
        return await gate


@pytest.fixture
def primary_image():
    return png_image((255, 0, 0))


@pytest.fixture
def background_image():
    return EncodedImage(mime_type="image/jpeg", raw_data=PNG_B64)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def make_orchestrator(recording_sleep):
    def _make(provider, deadline=5.0):
        executor = RequestExecutor(provider, deadline=deadline)
        return RetryOrchestrator(executor, sleep=recording_sleep)

    return _make


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        _env_file=None,
        output_dir=str(tmp_path / "out"),
        retry_base_delay=0.0,
        retry_max_jitter=0.0,
    )
