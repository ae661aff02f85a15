import logging
import random
from typing import Awaitable, Callable, Optional

from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt

from imagestudio.cancellation import CancellationToken, cancellable_sleep
from imagestudio.errors import ClassifiedError, ErrorKind, OperationCancelled, is_retryable
from imagestudio.executor import RequestExecutor
from imagestudio.models import GenerationOptions, GenerationResult, MultimodalPayload

logger = logging.getLogger(__name__)

SleepFn = Callable[[float, Optional[CancellationToken]], Awaitable[None]]

DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_JITTER = 0.2
# Unknown failures get at most this many retries whatever max_retries says.
UNKNOWN_RETRY_CAP = 1


class RetryOrchestrator:
    """Bounded exponential backoff with jitter around a RequestExecutor.

    Delay before retry n (1-based) is ``base * 2**(n-1) + uniform(0, jitter)``,
    raised to the server's Retry-After hint when one was given. Non-retryable
    kinds are re-raised after the first attempt; exhausting the budget
    re-raises the last ClassifiedError unchanged.
    """

    def __init__(
        self,
        executor: RequestExecutor,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_jitter: float = DEFAULT_MAX_JITTER,
        unknown_retry_cap: int = UNKNOWN_RETRY_CAP,
        sleep: SleepFn = cancellable_sleep,
    ):
        self.executor = executor
        self.base_delay = base_delay
        self.max_jitter = max_jitter
        self.unknown_retry_cap = unknown_retry_cap
        self.sleep = sleep

    def backoff_delay(self, attempt_number: int) -> float:
        return self.base_delay * 2 ** (attempt_number - 1) + random.uniform(
            0, self.max_jitter
        )

    def _wait(self, retry_state: RetryCallState) -> float:
        delay = self.backoff_delay(retry_state.attempt_number)
        error = retry_state.outcome.exception()
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, retry_after)
        return delay

    def _should_retry(self, retry_state: RetryCallState) -> bool:
        if not retry_state.outcome.failed:
            return False
        error = retry_state.outcome.exception()
        if not isinstance(error, ClassifiedError):
            return False
        if error.kind is ErrorKind.UNKNOWN:
            return retry_state.attempt_number <= self.unknown_retry_cap
        return is_retryable(error.kind)

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        logger.info(
            f"Attempt {retry_state.attempt_number} failed with "
            f"{getattr(error, 'kind', ErrorKind.UNKNOWN).value}; "
            f"retrying in {retry_state.next_action.sleep:.2f}s"
        )

    async def execute_with_retry(
        self,
        payload: MultimodalPayload,
        options: GenerationOptions,
        token: Optional[CancellationToken] = None,
        max_retries: Optional[int] = None,
    ) -> GenerationResult:
        retries = options.max_retries if max_retries is None else max_retries

        async def _sleep(seconds: float) -> None:
            try:
                await self.sleep(seconds, token)
            except OperationCancelled as e:
                raise ClassifiedError(ErrorKind.CANCELLED) from e

        retrying = AsyncRetrying(
            stop=stop_after_attempt(retries + 1),
            wait=self._wait,
            retry=self._should_retry,
            before_sleep=self._log_retry,
            sleep=_sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.executor.execute(payload, options, token)
