import asyncio
import logging
from typing import List, Optional, Sequence

from pydantic import ValidationError

from imagestudio.cancellation import CancellationToken, race
from imagestudio.errors import ClassifiedError, ErrorKind, OperationCancelled, classify
from imagestudio.models import (
    EncodedImage,
    GenerationOptions,
    GenerationRequest,
    GenerationResult,
)
from imagestudio.payload import build_payload
from imagestudio.retry import RetryOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_VARIATION_RETRIES = 1


def derive_prompt(base_prompt: str, variant: str) -> str:
    variant = variant.strip()
    if not variant:
        return base_prompt
    return f"{base_prompt.rstrip()} {variant}"


class BatchVariationOrchestrator:
    """Fires one request per prompt variant concurrently and keeps the successes.

    Results come back in input-index order. Individual failures are logged and
    dropped; only a batch with zero successes raises.
    """

    def __init__(self, orchestrator: RetryOrchestrator):
        self.orchestrator = orchestrator

    async def _run_variant(
        self,
        index: int,
        request: GenerationRequest,
        token: CancellationToken,
        max_retries: int,
    ) -> Optional[GenerationResult]:
        try:
            payload = build_payload(request)
            return await self.orchestrator.execute_with_retry(
                payload, request.options, token, max_retries=max_retries
            )
        except Exception as e:
            error = classify(e)
            if error.kind is not ErrorKind.CANCELLED:
                logger.warning(
                    f"Variation {index + 1} failed ({error.kind.value}): {error.message}"
                )
            return None

    async def generate_variations(
        self,
        base_prompt: str,
        primary_image: EncodedImage,
        auxiliary_images: Sequence[EncodedImage],
        prompt_variants: Sequence[str],
        per_request_max_retries: int = DEFAULT_VARIATION_RETRIES,
        options: Optional[GenerationOptions] = None,
        token: Optional[CancellationToken] = None,
    ) -> List[GenerationResult]:
        token = token or CancellationToken()
        options = options or GenerationOptions()
        if token.cancelled:
            raise ClassifiedError(ErrorKind.CANCELLED)
        if not prompt_variants:
            raise ClassifiedError(
                ErrorKind.MALFORMED_REQUEST, "At least one prompt variant is required."
            )
        try:
            requests = [
                GenerationRequest(
                    prompt=derive_prompt(base_prompt, variant),
                    primary_image=primary_image,
                    auxiliary_images=tuple(auxiliary_images),
                    options=options,
                )
                for variant in prompt_variants
            ]
        except ValidationError as e:
            raise classify(e) from e
        logger.info(f"Generating {len(requests)} variation(s)")

        tasks = [
            asyncio.ensure_future(
                self._run_variant(index, request, token, per_request_max_retries)
            )
            for index, request in enumerate(requests)
        ]
        try:
            outcomes = await race(asyncio.gather(*tasks), token)
        except OperationCancelled as e:
            for task in tasks:
                task.cancel()
            logger.info("Variation batch cancelled; pending results discarded")
            raise ClassifiedError(ErrorKind.CANCELLED) from e

        if token.cancelled:
            raise ClassifiedError(ErrorKind.CANCELLED)
        results = [outcome for outcome in outcomes if outcome is not None]
        if not results:
            raise _no_variant_succeeded(len(requests))
        logger.info(f"{len(results)}/{len(requests)} variation(s) succeeded")
        return results

    async def generate_variation_images(
        self,
        base_prompt: str,
        primary_image: EncodedImage,
        auxiliary_images: Sequence[EncodedImage],
        prompt_variants: Sequence[str],
        per_request_max_retries: int = DEFAULT_VARIATION_RETRIES,
        options: Optional[GenerationOptions] = None,
        token: Optional[CancellationToken] = None,
    ) -> List[EncodedImage]:
        """Like generate_variations, but a text-only reply does not count as a success."""
        results = await self.generate_variations(
            base_prompt,
            primary_image,
            auxiliary_images,
            prompt_variants,
            per_request_max_retries=per_request_max_retries,
            options=options,
            token=token,
        )
        images = [result.image for result in results if result.image is not None]
        if not images:
            raise _no_variant_succeeded(len(prompt_variants))
        return images


def _no_variant_succeeded(attempted: int) -> ClassifiedError:
    return ClassifiedError(
        ErrorKind.ZERO_CONTENT,
        f"No variant succeeded ({attempted} attempted). The model might be busy.",
    )
