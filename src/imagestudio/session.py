"""Single-flight generation state machine.

``SessionController`` owns one ``SessionState`` and is the only thing that
mutates it. Any UI layer subscribes to snapshots; there is no dependency on a
particular UI runtime. Phases move ``Idle -> InFlight -> Succeeded | Failed``
and back to ``Idle`` on ``reset()`` or ``cancel()``.

Every await resumes by checking that its token is still the active one, so a
superseded or reset request can never write a late result into the state.
"""

import logging
from typing import Callable, List, Optional, Sequence

from imagestudio.cancellation import CancellationToken
from imagestudio.errors import ErrorKind, classify
from imagestudio.models import (
    EncodedImage,
    GenerationOptions,
    GenerationRequest,
    SessionPhase,
    SessionState,
)
from imagestudio.payload import build_payload
from imagestudio.retry import RetryOrchestrator

logger = logging.getLogger(__name__)

Observer = Callable[[SessionState], None]


class SessionController:
    def __init__(self, orchestrator: RetryOrchestrator):
        self.orchestrator = orchestrator
        self._state = SessionState()
        self._observers: List[Observer] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def loading(self) -> bool:
        return self._state.phase is SessionPhase.IN_FLIGHT

    @property
    def error(self) -> Optional[str]:
        return self._state.last_error.message if self._state.last_error else None

    @property
    def result_image(self) -> Optional[EncodedImage]:
        return self._state.last_result.image if self._state.last_result else None

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _transition(self, **changes) -> None:
        self._state = self._state.model_copy(update=changes)
        for observer in list(self._observers):
            observer(self._state)

    def _is_active(self, token: CancellationToken) -> bool:
        return self._state.active_request_token is token

    def _cancel_active(self) -> None:
        token = self._state.active_request_token
        if token is not None:
            token.cancel()

    async def generate(
        self,
        prompt: str,
        primary_image: EncodedImage,
        auxiliary_images: Sequence[EncodedImage] = (),
        options: Optional[GenerationOptions] = None,
    ) -> bool:
        """Run one generation; returns True only if its result was committed."""
        self._cancel_active()
        token = CancellationToken()
        self._transition(
            phase=SessionPhase.IN_FLIGHT,
            active_request_token=token,
            last_result=None,
            last_error=None,
        )

        try:
            request = GenerationRequest(
                prompt=prompt,
                primary_image=primary_image,
                auxiliary_images=tuple(auxiliary_images),
                options=options or GenerationOptions(),
            )
            payload = build_payload(request)
            result = await self.orchestrator.execute_with_retry(
                payload, request.options, token
            )
        except Exception as e:
            error = classify(e)
            if not self._is_active(token):
                logger.info(f"Discarding failure of superseded request {token.id}")
                return False
            if error.kind is ErrorKind.CANCELLED:
                self._transition(phase=SessionPhase.IDLE, active_request_token=None)
                return False
            logger.error(f"Generation failed ({error.kind.value}): {error.message}")
            self._transition(
                phase=SessionPhase.FAILED, active_request_token=None, last_error=error
            )
            return False

        if not self._is_active(token):
            logger.info(f"Discarding late result of superseded request {token.id}")
            return False
        self._transition(
            phase=SessionPhase.SUCCEEDED, active_request_token=None, last_result=result
        )
        return True

    def cancel(self) -> None:
        """Abandon the in-flight request, if any, without recording an error."""
        if self._state.phase is not SessionPhase.IN_FLIGHT:
            return
        self._cancel_active()
        self._transition(phase=SessionPhase.IDLE, active_request_token=None)

    def reset(self) -> None:
        """Cancel anything in flight and clear all results.

        Call whenever the primary input image is replaced or removed.
        """
        self._cancel_active()
        self._transition(
            phase=SessionPhase.IDLE,
            active_request_token=None,
            last_result=None,
            last_error=None,
        )

    def clear_error(self) -> None:
        if self._state.last_error is None:
            return
        phase = self._state.phase
        if phase is SessionPhase.FAILED:
            phase = SessionPhase.IDLE
        self._transition(phase=phase, last_error=None)
