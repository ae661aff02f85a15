import asyncio
import time

import pytest

from conftest import FakeProvider, StatusError, image_candidate
from imagestudio.cancellation import CancellationToken
from imagestudio.errors import ClassifiedError, ErrorKind
from imagestudio.executor import RequestExecutor
from imagestudio.models import CandidateResponse, GenerationOptions, GenerationRequest
from imagestudio.payload import build_payload
from imagestudio.retry import RetryOrchestrator


@pytest.fixture
def payload(primary_image):
    return build_payload(GenerationRequest(prompt="edit", primary_image=primary_image))


@pytest.mark.parametrize(
    "failure",
    [
        StatusError(401),
        StatusError(400, "Invalid argument"),
        ClassifiedError(ErrorKind.SAFETY_BLOCK),
        CandidateResponse(finish_reason="SAFETY"),
    ],
)
async def test_non_retryable_kinds_make_one_attempt(make_orchestrator, payload, failure):
    provider = FakeProvider(default=failure)
    orchestrator = make_orchestrator(provider)
    with pytest.raises(ClassifiedError) as exc_info:
        await orchestrator.execute_with_retry(payload, GenerationOptions(max_retries=5))
    assert exc_info.value.kind in {
        ErrorKind.AUTHENTICATION,
        ErrorKind.MALFORMED_REQUEST,
        ErrorKind.SAFETY_BLOCK,
    }
    assert len(provider.calls) == 1


@pytest.mark.parametrize("max_retries", [0, 1, 2, 4])
async def test_rate_limit_attempts_are_bounded(make_orchestrator, payload, max_retries):
    provider = FakeProvider(default=StatusError(429))
    orchestrator = make_orchestrator(provider)
    with pytest.raises(ClassifiedError) as exc_info:
        await orchestrator.execute_with_retry(
            payload, GenerationOptions(max_retries=max_retries)
        )
    assert exc_info.value.kind is ErrorKind.RATE_LIMIT
    assert len(provider.calls) == max_retries + 1


async def test_last_error_is_reraised_unchanged(make_orchestrator, payload):
    errors = []

    def fail(payload, config):
        error = ClassifiedError(ErrorKind.TRANSIENT_OVERLOAD, f"overloaded #{len(errors)}")
        errors.append(error)
        return error

    provider = FakeProvider(default=fail)
    with pytest.raises(ClassifiedError) as exc_info:
        await make_orchestrator(provider).execute_with_retry(payload, GenerationOptions())
    assert exc_info.value is errors[-1]


async def test_rate_limited_twice_then_success(make_orchestrator, recording_sleep, payload):
    provider = FakeProvider([StatusError(429), StatusError(429), image_candidate()])
    orchestrator = make_orchestrator(provider)
    result = await orchestrator.execute_with_retry(payload, GenerationOptions(max_retries=2))

    assert result.image is not None
    assert len(provider.calls) == 3
    assert len(recording_sleep.delays) == 2
    first, second = recording_sleep.delays
    assert 1.0 <= first <= 1.2
    assert 2.0 <= second <= 2.2
    assert sum(recording_sleep.delays) >= 3.0


async def test_retry_after_hint_extends_delay(make_orchestrator, recording_sleep, payload):
    provider = FakeProvider(
        [StatusError(429, headers={"retry-after": "5"}), image_candidate()]
    )
    await make_orchestrator(provider).execute_with_retry(payload, GenerationOptions())
    assert recording_sleep.delays[0] >= 5.0


async def test_unknown_errors_retry_at_most_once(make_orchestrator, payload):
    provider = FakeProvider(default=RuntimeError("socket hang up"))
    with pytest.raises(ClassifiedError) as exc_info:
        await make_orchestrator(provider).execute_with_retry(
            payload, GenerationOptions(max_retries=5)
        )
    assert exc_info.value.kind is ErrorKind.UNKNOWN
    assert len(provider.calls) == 2


async def test_zero_content_is_not_retried(make_orchestrator, payload):
    provider = FakeProvider(default=CandidateResponse(finish_reason="STOP"))
    with pytest.raises(ClassifiedError) as exc_info:
        await make_orchestrator(provider).execute_with_retry(payload, GenerationOptions())
    assert exc_info.value.kind is ErrorKind.ZERO_CONTENT
    assert len(provider.calls) == 1


async def test_timeouts_are_retried(payload, recording_sleep):
    async def hang(payload, config):
        await asyncio.sleep(10)

    provider = FakeProvider([hang, image_candidate()])
    orchestrator = RetryOrchestrator(
        RequestExecutor(provider, deadline=0.05), sleep=recording_sleep
    )
    result = await orchestrator.execute_with_retry(payload, GenerationOptions())
    assert result.image is not None
    assert len(provider.calls) == 2


async def test_max_retries_override(make_orchestrator, payload):
    provider = FakeProvider(default=StatusError(503))
    with pytest.raises(ClassifiedError):
        await make_orchestrator(provider).execute_with_retry(
            payload, GenerationOptions(max_retries=3), max_retries=1
        )
    assert len(provider.calls) == 2


async def test_real_backoff_elapses(payload):
    provider = FakeProvider([StatusError(503), StatusError(503), image_candidate()])
    orchestrator = RetryOrchestrator(
        RequestExecutor(provider), base_delay=0.05, max_jitter=0.0
    )
    started = time.monotonic()
    await orchestrator.execute_with_retry(payload, GenerationOptions(max_retries=2))
    assert time.monotonic() - started >= 0.15 - 0.01


async def test_cancel_interrupts_backoff_sleep(payload):
    provider = FakeProvider(default=StatusError(429))
    orchestrator = RetryOrchestrator(RequestExecutor(provider), base_delay=30.0)
    token = CancellationToken()
    task = asyncio.ensure_future(
        orchestrator.execute_with_retry(payload, GenerationOptions(), token)
    )
    while not provider.calls:
        await asyncio.sleep(0)
    await asyncio.sleep(0.01)
    token.cancel()

    with pytest.raises(ClassifiedError) as exc_info:
        await asyncio.wait_for(task, 1.0)
    assert exc_info.value.kind is ErrorKind.CANCELLED
    assert len(provider.calls) == 1
