"""Content generation collaborator.

Jobs that want generated copy (review reply drafts) take a ContentGenerator;
the OpenAI implementation is the production default when a key is set.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable

import httpx

from navi.core.config import Settings, settings as app_settings
from navi.core.exceptions import ContentGenerationError

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"


@dataclass
class ContentSpec:
    """What to write: an instruction plus the facts it should use."""

    instructions: str
    context: dict[str, str] = field(default_factory=dict)
    max_tokens: int = 400
    temperature: float = 0.7

    def to_prompt(self) -> str:
        lines = [f"{key}: {value}" for key, value in self.context.items() if value]
        return "\n".join(lines)


class ContentGenerator(ABC):
    """generate(spec) -> text."""

    @abstractmethod
    async def generate(self, spec: ContentSpec) -> str:
        pass


class OpenAIContentGenerator(ContentGenerator):
    """OpenAI chat completions."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=60.0))

    async def generate(self, spec: ContentSpec) -> str:
        try:
            async with self.client_factory() as client:
                response = await client.post(
                    f"{OPENAI_BASE_URL}/chat/completions",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "model": self.model,
                        "messages": [
                            {"role": "system", "content": spec.instructions},
                            {"role": "user", "content": spec.to_prompt()},
                        ],
                        "temperature": spec.temperature,
                        "max_tokens": spec.max_tokens,
                    },
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning("OpenAI returned %s", exc.response.status_code)
            raise ContentGenerationError(f"OpenAI error {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise ContentGenerationError(f"OpenAI request failed: {exc}") from exc
        except ValueError as exc:
            raise ContentGenerationError("OpenAI returned a non-JSON body") from exc

        try:
            return data["choices"][0]["message"]["content"].strip()
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            logger.warning("Unexpected OpenAI response shape: %r", data)
            raise ContentGenerationError("OpenAI response had no message content") from exc


def build_content_generator(settings: Settings | None = None) -> ContentGenerator | None:
    """OpenAI generator when configured, else None (features that need it are skipped)."""
    settings = settings or app_settings
    if not settings.OPENAI_API_KEY:
        return None
    return OpenAIContentGenerator(settings.OPENAI_API_KEY, settings.OPENAI_MODEL)
