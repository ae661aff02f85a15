from abc import ABC, abstractmethod
from imagestudio.models import CandidateResponse, GenerationConfig, MultimodalPayload
from typing import Optional


class BaseImageProvider(ABC):
    @abstractmethod
    async def send(
        self, payload: MultimodalPayload, config: GenerationConfig
    ) -> Optional[CandidateResponse]:
        """
        Sends one multimodal generation call to the backend.
        Returns the first candidate, or None when the backend produced no candidates.
        Raw transport errors propagate unclassified.
        """
        pass

    async def close(self) -> None:
        pass
