from imagestudio.batch import BatchVariationOrchestrator
from imagestudio.config import Settings, settings as default_settings
from imagestudio.errors import ClassifiedError, ErrorKind
from imagestudio.executor import RequestExecutor
from imagestudio.models import (
    EncodedImage,
    GenerationOptions,
    GenerationResult,
    SessionPhase,
    SessionState,
)
from imagestudio.providers.base_provider import BaseImageProvider
from imagestudio.providers.openai_sdk_provider import OpenAISDKProvider
from imagestudio.retry import RetryOrchestrator
from imagestudio.session import SessionController
from imagestudio.utils import generate_filename, get_image_extension, save_image
from pydantic import BaseModel, ConfigDict
from pathlib import Path
import logging
from typing import Any, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


class Studio:
    """Application wiring: one provider shared by the session and batch orchestrators.

    Built once per process (or per test); holds no request-scoped state
    outside the SessionController.
    """

    def __init__(self, provider: BaseImageProvider, app_settings: Settings):
        self.settings = app_settings
        self.provider = provider
        self.executor = RequestExecutor(
            provider,
            deadline=app_settings.request_timeout,
            thinking_reserve=app_settings.thinking_reserve,
        )
        self.orchestrator = RetryOrchestrator(
            self.executor,
            base_delay=app_settings.retry_base_delay,
            max_jitter=app_settings.retry_max_jitter,
        )
        self.session = SessionController(self.orchestrator)
        self.batch = BatchVariationOrchestrator(self.orchestrator)

    async def close(self) -> None:
        await self.provider.close()


def build_studio(
    app_settings: Optional[Settings] = None,
    engine: Optional[str] = None,
    provider: Optional[BaseImageProvider] = None,
) -> Studio:
    app_settings = app_settings or default_settings
    if provider is None:
        try:
            engine_config = app_settings.engine(engine)
        except KeyError as e:
            raise ClassifiedError(ErrorKind.MALFORMED_REQUEST, e.args[0]) from e
        provider = OpenAISDKProvider(engine_config, timeout=app_settings.request_timeout)
    return Studio(provider, app_settings)


class JobOutput(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    saved_path: Optional[str] = None
    text: Optional[str] = None
    grounding_sources: Tuple[Any, ...] = ()
    error: Optional[ClassifiedError] = None


def _output_path(
    output_dir: str,
    output_filename: Optional[str],
    prompt: str,
    extension: str,
    index: Optional[int] = None,
) -> Path:
    if output_filename:
        current_filename = output_filename
        if index is not None:
            name_part = Path(output_filename).stem
            suffix = Path(output_filename).suffix or f".{extension}"
            current_filename = f"{name_part}_{index + 1}{suffix}"
    else:
        current_filename = generate_filename(prompt=prompt, extension=extension)
        if index is not None:
            name_part = Path(current_filename).stem
            current_filename = f"{name_part}_{index + 1}.{extension}"
    return Path(output_dir) / current_filename


def _store_result(
    result: GenerationResult,
    output_dir: str,
    output_filename: Optional[str],
    prompt: str,
    index: Optional[int] = None,
) -> JobOutput:
    output = JobOutput(text=result.text, grounding_sources=result.grounding_sources)
    if result.image is None:
        return output
    output_file_path = _output_path(
        output_dir, output_filename, prompt, get_image_extension(result.image), index
    )
    saved_path = save_image(result.image, output_file_path)
    if saved_path:
        output.saved_path = str(saved_path)
    else:
        output.error = ClassifiedError(
            ErrorKind.UNKNOWN, f"Failed to save image to {output_file_path}"
        )
    return output


async def generate_image_core(
    studio: Studio,
    prompt: str,
    primary_image: EncodedImage,
    auxiliary_images: Sequence[EncodedImage] = (),
    options: Optional[GenerationOptions] = None,
    output_filename: Optional[str] = None,
    save: bool = True,
) -> JobOutput:
    """Run one single-flight generation and store its image, if any.

    A call superseded by a later ``generate`` reports Cancelled, never the
    later call's error.
    """
    started: List[Any] = []

    def _track(state: SessionState) -> None:
        if state.phase is SessionPhase.IN_FLIGHT:
            started.append(state.active_request_token)

    unsubscribe = studio.session.subscribe(_track)
    try:
        ok = await studio.session.generate(
            prompt, primary_image, auxiliary_images, options
        )
    finally:
        unsubscribe()
    state = studio.session.state
    if not ok:
        superseded = len(started) > 1
        if superseded or state.last_error is None:
            return JobOutput(error=ClassifiedError(ErrorKind.CANCELLED))
        return JobOutput(error=state.last_error)
    if not save:
        return JobOutput(
            text=state.last_result.text,
            grounding_sources=state.last_result.grounding_sources,
        )
    return _store_result(
        state.last_result, studio.settings.output_dir, output_filename, prompt
    )


async def generate_variations_core(
    studio: Studio,
    base_prompt: str,
    primary_image: EncodedImage,
    auxiliary_images: Sequence[EncodedImage],
    prompt_variants: Sequence[str],
    options: Optional[GenerationOptions] = None,
    output_filename: Optional[str] = None,
) -> List[JobOutput]:
    try:
        results = await studio.batch.generate_variations(
            base_prompt,
            primary_image,
            auxiliary_images,
            prompt_variants,
            per_request_max_retries=studio.settings.variation_max_retries,
            options=options,
        )
    except ClassifiedError as e:
        return [JobOutput(error=e)]
    variation_name = None
    if output_filename:
        variation_name = f"{Path(output_filename).stem}_variation{Path(output_filename).suffix}"
    return [
        _store_result(
            result, studio.settings.output_dir, variation_name, base_prompt, index
        )
        for index, result in enumerate(results)
    ]
