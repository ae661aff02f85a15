from pydantic import BaseModel, HttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, Optional

PLACEHOLDER_API_KEYS = ("", "YOUR_API_KEY", "YOUR_OPENROUTER_API_KEY")


class EngineConfig(BaseModel):
    api_key: Optional[str] = Field(
        None, description="API key for the generation backend."
    )
    base_url: Optional[HttpUrl] = Field(
        None, description="Base URL of the OpenAI-compatible endpoint."
    )
    model: Optional[str] = Field(
        None, description="Default model to use for this engine."
    )
    model_prefix: str = Field(
        "", description="Prefix added to model ids on the wire (e.g. 'google/')."
    )

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key) and self.api_key not in PLACEHOLDER_API_KEYS


DEFAULT_ENGINES: Dict[str, EngineConfig] = {
    "openrouter": EngineConfig(
        base_url="https://openrouter.ai/api/v1",
        model="gemini-2.5-flash-image",
        model_prefix="google/",
    ),
    "gemini": EngineConfig(
        base_url="https://generativelanguage.googleapis.com/v1beta/openai/",
        model="gemini-2.5-flash-image",
    ),
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="IMAGESTUDIO__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    output_dir: str = Field(
        "generated_images", description="Default directory to save generated images."
    )
    default_engine: str = Field(
        "openrouter", description="Engine used when none is given on the command line."
    )
    engines: Dict[str, EngineConfig] = Field(
        default_factory=lambda: {
            name: config.model_copy() for name, config in DEFAULT_ENGINES.items()
        }
    )
    request_timeout: float = Field(
        60.0, gt=0, description="Per-attempt deadline in seconds."
    )
    max_retries: int = Field(2, ge=0, description="Retries for the primary generation.")
    variation_max_retries: int = Field(
        1, ge=0, description="Retries for each variation request."
    )
    retry_base_delay: float = Field(
        1.0, ge=0, description="Backoff base in seconds, doubled every attempt."
    )
    retry_max_jitter: float = Field(
        0.2, ge=0, description="Upper bound of the random jitter added to each backoff."
    )
    thinking_reserve: int = Field(
        1024, description="Output tokens kept free on top of the thinking budget."
    )

    @field_validator("engines")
    @classmethod
    def merge_default_engines(
        cls, value: Dict[str, EngineConfig]
    ) -> Dict[str, EngineConfig]:
        # IMAGESTUDIO__ENGINES__<NAME>__<FIELD> only carries the overridden fields.
        merged = {name: config.model_copy() for name, config in DEFAULT_ENGINES.items()}
        for name, config in value.items():
            name = name.lower()
            if name in merged:
                merged[name] = merged[name].model_copy(
                    update=config.model_dump(exclude_unset=True)
                )
            else:
                merged[name] = config
        return merged

    @field_validator("thinking_reserve")
    @classmethod
    def reserve_floor(cls, value: int) -> int:
        return max(value, 1024)

    def engine(self, name: Optional[str] = None) -> EngineConfig:
        engine_name = name or self.default_engine
        if engine_name not in self.engines:
            raise KeyError(
                f"Engine '{engine_name}' not configured. Available engines: {list(self.engines.keys())}"
            )
        return self.engines[engine_name]


settings = Settings()
