import os
from openai import AsyncOpenAI
from imagestudio.config import EngineConfig
from imagestudio.errors import ClassifiedError, ErrorKind
from imagestudio.models import (
    CandidateResponse,
    EncodedImage,
    GenerationConfig,
    MultimodalPayload,
)
from imagestudio.providers.base_provider import BaseImageProvider
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)


def _field(obj: Any, name: str) -> Any:
    # Extra fields on SDK objects may arrive either as attributes or as plain dicts.
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


class OpenAISDKProvider(BaseImageProvider):
    """Sends multimodal payloads through an OpenAI-compatible chat-completions endpoint."""

    def __init__(self, engine_config: EngineConfig, timeout: Optional[float] = None):
        self.config = engine_config
        self.timeout = timeout
        self._client: Optional[AsyncOpenAI] = None

    @property
    def is_openrouter(self) -> bool:
        return bool(self.config.base_url) and "openrouter.ai" in str(self.config.base_url)

    def _get_client(self) -> AsyncOpenAI:
        if not self.config.has_api_key:
            raise ClassifiedError(
                ErrorKind.AUTHENTICATION,
                "API key missing. Set IMAGESTUDIO__ENGINES__<ENGINE>__API_KEY.",
            )
        if self._client is None:
            client_params: Dict[str, Any] = {
                "api_key": self.config.api_key,
                # Retries are owned by the retry orchestrator.
                "max_retries": 0,
            }
            if self.config.base_url:
                client_params["base_url"] = str(self.config.base_url)
            if self.timeout:
                client_params["timeout"] = self.timeout
            self._client = AsyncOpenAI(**client_params)
        return self._client

    def build_messages(
        self, payload: MultimodalPayload, config: GenerationConfig
    ) -> List[Dict[str, Any]]:
        content_items: List[Dict[str, Any]] = []
        for part in payload.parts:
            if part.inline_data is not None:
                content_items.append(
                    {
                        "type": "image_url",
                        "image_url": {"url": part.inline_data.to_data_url()},
                    }
                )
            elif part.text is not None:
                content_items.append({"type": "text", "text": part.text})
        messages: List[Dict[str, Any]] = []
        if config.system_instruction:
            messages.append({"role": "system", "content": config.system_instruction})
        messages.append({"role": "user", "content": content_items})
        return messages

    def build_request(
        self, payload: MultimodalPayload, config: GenerationConfig
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": f"{self.config.model_prefix}{config.model}",
            "messages": self.build_messages(payload, config),
            "temperature": config.temperature,
        }
        if config.seed is not None:
            kwargs["seed"] = config.seed
        if config.max_output_tokens is not None:
            kwargs["max_tokens"] = config.max_output_tokens

        extra_body: Dict[str, Any] = {}
        if config.is_image_model:
            extra_body["modalities"] = ["image", "text"]
            image_config = {"aspect_ratio": config.aspect_ratio or "1:1"}
            if config.image_size:
                image_config["image_size"] = config.image_size
            extra_body["image_config"] = image_config
        if config.thinking_budget is not None:
            if self.is_openrouter:
                extra_body["reasoning"] = {"max_tokens": config.thinking_budget}
            else:
                extra_body["extra_body"] = {
                    "google": {
                        "thinking_config": {"thinking_budget": config.thinking_budget}
                    }
                }
        if config.use_search:
            if self.is_openrouter:
                extra_body["plugins"] = [{"id": "web"}]
            else:
                extra_body["tools"] = [{"google_search": {}}]
        if extra_body:
            kwargs["extra_body"] = extra_body

        if self.is_openrouter:
            # Optional OpenRouter ranking headers from env
            extra_headers = {}
            ref = os.environ.get("OPENROUTER_HTTP_REFERER")
            ttl = os.environ.get("OPENROUTER_X_TITLE")
            if ref:
                extra_headers["HTTP-Referer"] = ref
            if ttl:
                extra_headers["X-Title"] = ttl
            if extra_headers:
                kwargs["extra_headers"] = extra_headers
        return kwargs

    async def send(
        self, payload: MultimodalPayload, config: GenerationConfig
    ) -> Optional[CandidateResponse]:
        client = self._get_client()
        kwargs = self.build_request(payload, config)
        logger.debug(
            f"Sending {len(payload.parts)} part(s) to {kwargs['model']} "
            f"via {self.config.base_url or 'api.openai.com'}"
        )
        completion = await client.chat.completions.create(**kwargs)
        return self.parse_completion(completion)

    def parse_completion(self, completion: Any) -> Optional[CandidateResponse]:
        choices = _field(completion, "choices") or []
        if not choices:
            return None
        choice = choices[0]
        message = _field(choice, "message")

        images: List[EncodedImage] = []
        for image in _field(message, "images") or []:
            image_url = _field(_field(image, "image_url"), "url")
            if not image_url:
                continue
            if image_url.startswith("data:"):
                try:
                    images.append(EncodedImage.from_data_url(image_url))
                except ClassifiedError as e:
                    logger.warning(f"Skipping response image: {e.message}")
            else:
                logger.warning(
                    f"Skipping remote image reference in response: {image_url[:80]}"
                )

        grounding_sources = [
            _field(annotation, "url_citation") or annotation
            for annotation in (_field(message, "annotations") or [])
        ]
        return CandidateResponse(
            text=_field(message, "content") or None,
            images=images,
            finish_reason=_field(choice, "native_finish_reason")
            or _field(choice, "finish_reason"),
            block_reason=_field(
                _field(completion, "prompt_feedback"), "block_reason"
            ),
            grounding_sources=grounding_sources,
        )

    async def close(self):
        if self._client is not None:
            await self._client.close()
            self._client = None
