import logging
from typing import Optional

from imagestudio.cancellation import CancellationToken, race
from imagestudio.errors import ClassifiedError, ErrorKind, classify
from imagestudio.models import (
    PRO_IMAGE_MODEL,
    CandidateResponse,
    GenerationConfig,
    GenerationOptions,
    GenerationResult,
    MultimodalPayload,
)
from imagestudio.providers.base_provider import BaseImageProvider

logger = logging.getLogger(__name__)

DEFAULT_DEADLINE = 60.0
MIN_THINKING_RESERVE = 1024

SAFETY_FINISH_REASONS = frozenset(
    {
        "SAFETY",
        "PROHIBITED_CONTENT",
        "IMAGE_SAFETY",
        "IMAGE_PROHIBITED_CONTENT",
        "BLOCKLIST",
        "SPII",
        "CONTENT_FILTER",
    }
)


def build_generation_config(
    options: GenerationOptions, reserve: int = MIN_THINKING_RESERVE
) -> GenerationConfig:
    """Merge options into backend knobs.

    With a thinking budget the output cap is raised to at least
    ``thinking_budget + reserve`` so the model still has room to answer.
    """
    reserve = max(reserve, MIN_THINKING_RESERVE)
    max_output_tokens = options.max_output_tokens
    if options.thinking_budget is not None:
        max_output_tokens = max(
            options.max_output_tokens or 0, options.thinking_budget + reserve
        )

    aspect_ratio = None
    image_size = None
    if "image" in options.model:
        aspect_ratio = options.aspect_ratio or "1:1"
        if options.model == PRO_IMAGE_MODEL:
            image_size = options.image_size or "1K"

    return GenerationConfig(
        model=options.model,
        temperature=options.temperature,
        seed=options.seed,
        system_instruction=options.system_instruction,
        max_output_tokens=max_output_tokens,
        thinking_budget=options.thinking_budget,
        use_search=options.use_search,
        aspect_ratio=aspect_ratio,
        image_size=image_size,
    )


def is_safety_stop(candidate: CandidateResponse) -> bool:
    if candidate.block_reason:
        return True
    return (candidate.finish_reason or "").upper() in SAFETY_FINISH_REASONS


def parse_candidate(candidate: Optional[CandidateResponse]) -> GenerationResult:
    if candidate is None:
        raise ClassifiedError(
            ErrorKind.ZERO_CONTENT, "ZERO_CANDIDATES: the model produced no results."
        )
    if is_safety_stop(candidate):
        reason = candidate.block_reason or candidate.finish_reason
        raise ClassifiedError(
            ErrorKind.SAFETY_BLOCK,
            f"Content blocked by safety filters (finish reason: {reason}). "
            "Change the prompt or input images.",
        )
    image = candidate.images[0] if candidate.images else None
    text = candidate.text if candidate.text and candidate.text.strip() else None
    if image is None and text is None:
        raise ClassifiedError(
            ErrorKind.ZERO_CONTENT,
            "No image generated. The model returned neither an image nor text "
            f"(finish reason: {candidate.finish_reason}).",
        )
    return GenerationResult(
        text=text,
        image=image,
        grounding_sources=tuple(candidate.grounding_sources),
        finish_reason=candidate.finish_reason,
    )


class RequestExecutor:
    """Issues exactly one generation call; never retries."""

    def __init__(
        self,
        provider: BaseImageProvider,
        deadline: float = DEFAULT_DEADLINE,
        thinking_reserve: int = MIN_THINKING_RESERVE,
    ):
        self.provider = provider
        self.deadline = deadline
        self.thinking_reserve = thinking_reserve

    async def execute(
        self,
        payload: MultimodalPayload,
        options: GenerationOptions,
        token: Optional[CancellationToken] = None,
        deadline: Optional[float] = None,
    ) -> GenerationResult:
        config = build_generation_config(options, self.thinking_reserve)
        deadline = self.deadline if deadline is None else deadline
        try:
            if token is not None:
                token.raise_if_cancelled()
            candidate = await race(self.provider.send(payload, config), token, deadline)
        except Exception as e:
            error = classify(e)
            if error.kind is ErrorKind.UNKNOWN:
                logger.error(
                    f"Unclassified backend failure for {config.model}: {e!r}", exc_info=e
                )
            elif error.kind is not ErrorKind.CANCELLED:
                logger.warning(
                    f"Generation attempt failed ({error.kind.value}): {error.message}"
                )
            if error is e:
                raise
            raise error from e
        return parse_candidate(candidate)
