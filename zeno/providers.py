"""Model backends for both pathways and the image model.

The ask pathway runs on an OpenAI-compatible endpoint with the user's own
key; the chat pathway runs on Gemini with the service key. Both are
pydantic-ai models driven by the agents in ``zeno.agents``. Image
generation is a single Gemini call through the same provider's client.

``model_errors`` and ``GeminiImages`` raise only errors from ``zeno.errors``.
"""

import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager

import httpx
from google.genai import errors as genai_errors
from google.genai import types
from openai import APITimeoutError
from pydantic_ai.exceptions import ModelAPIError, ModelHTTPError, UnexpectedModelBehavior
from pydantic_ai.models import Model
from pydantic_ai.models.google import GoogleModel, GoogleModelSettings
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.google import GoogleProvider
from pydantic_ai.providers.openai import OpenAIProvider
from pydantic_ai.settings import ModelSettings

from .config import (
    ASK_MAX_TOKENS,
    ASK_TEMPERATURE,
    ASK_TOP_P,
    CHAT_MAX_TOKENS,
    CHAT_TEMPERATURE,
    CHAT_TIMEOUT,
    CHAT_TOP_P,
    IMAGE_WORKER_TIMEOUT,
    PROVIDER_TIMEOUT,
    Settings,
)
from .errors import EmptyResultError, OperationTimeout, ProviderError, TransportError, ZenoError
from .schemas import GeneratedImage, GenerationResult

logger = logging.getLogger(__name__)

ASK_SETTINGS = ModelSettings(
    temperature=ASK_TEMPERATURE,
    top_p=ASK_TOP_P,
    max_tokens=ASK_MAX_TOKENS,
    timeout=PROVIDER_TIMEOUT,
)
CHAT_SETTINGS = GoogleModelSettings(
    temperature=CHAT_TEMPERATURE,
    top_p=CHAT_TOP_P,
    max_tokens=CHAT_MAX_TOKENS,
    timeout=CHAT_TIMEOUT,
)

_TIMEOUT_CAUSES = (APITimeoutError, httpx.TimeoutException, TimeoutError)


@contextmanager
def model_errors(label: str) -> Iterator[None]:
    """Translate backend failures raised inside the block into ``zeno.errors``."""
    try:
        yield
    except ZenoError:
        raise
    except ModelHTTPError as exc:
        raise ProviderError(
            f"{label} model returned status {exc.status_code}", status=exc.status_code
        ) from exc
    except ModelAPIError as exc:
        if isinstance(exc.__cause__, _TIMEOUT_CAUSES):
            raise OperationTimeout(f"{label} model did not answer in time") from exc
        raise TransportError(f"cannot reach the {label} model: {exc}") from exc
    except UnexpectedModelBehavior as exc:
        raise ProviderError(f"unexpected response from the {label} model: {exc}") from exc
    except httpx.TimeoutException as exc:
        raise OperationTimeout(f"{label} model did not answer in time") from exc
    except httpx.HTTPError as exc:
        raise TransportError(f"cannot reach the {label} model") from exc
    except asyncio.TimeoutError as exc:
        raise OperationTimeout(f"{label} model did not answer in time") from exc
    except ValueError as exc:
        # undecodable or schema-invalid response bodies
        raise ProviderError(f"malformed response from the {label} model") from exc


def parse_image_response(response: types.GenerateContentResponse) -> GenerationResult:
    """Collect the text of the first candidate and images from every candidate."""
    candidates = list(response.candidates or [])
    if not candidates:
        raise EmptyResultError("zero candidates")

    first = candidates[0]
    parts = first.content.parts if first.content and first.content.parts else []
    text = "".join(p.text for p in parts if p.text and not p.thought).strip()

    images: list[GeneratedImage] = []
    for candidate in candidates:
        if candidate.content is None or not candidate.content.parts:
            continue
        for part in candidate.content.parts:
            blob = part.inline_data
            if blob is not None and blob.data:
                images.append(
                    GeneratedImage(data=blob.data, mime_type=blob.mime_type or "image/png")
                )
    return GenerationResult(text=text, images=images)


class GeminiImages:
    def __init__(self, provider: GoogleProvider):
        self._client = provider.client

    async def generate(
        self,
        prompt: str,
        model: str,
        *,
        aspect_ratio: str = "",
        timeout: float = IMAGE_WORKER_TIMEOUT,
    ) -> GenerationResult:
        config = None
        if aspect_ratio:
            config = types.GenerateContentConfig(
                image_config=types.ImageConfig(aspect_ratio=aspect_ratio)
            )
        try:
            response = await asyncio.wait_for(
                self._client.aio.models.generate_content(
                    model=model, contents=prompt, config=config
                ),
                timeout,
            )
        except asyncio.TimeoutError as exc:
            raise OperationTimeout(f"{model} did not answer in {timeout}s") from exc
        except genai_errors.APIError as exc:
            raise ProviderError(f"{model} returned status {exc.code}", status=exc.code) from exc
        except (httpx.HTTPError, OSError) as exc:
            raise TransportError(f"cannot reach provider for {model}") from exc
        except ValueError as exc:
            # pydantic validation of the response body
            raise ProviderError(f"malformed response from {model}") from exc
        return parse_image_response(response)


class ProviderGateway:
    """Hands out the model for each pathway and generates images."""

    def __init__(
        self,
        settings: Settings,
        chat_model: Model | None = None,
        images: GeminiImages | None = None,
    ):
        self.settings = settings
        google = GoogleProvider(api_key=settings.aistudio_api_key)
        self.chat_model = chat_model or GoogleModel(
            settings.default_model, provider=google, settings=CHAT_SETTINGS
        )
        self.images = images or GeminiImages(google)

    def for_user(self, api_key: str) -> Model:
        """The ask model, authenticated with the user's own key."""
        return OpenAIChatModel(
            self.settings.ask_model,
            provider=OpenAIProvider(base_url=self.settings.ask_base_url, api_key=api_key),
            settings=ASK_SETTINGS,
        )

    async def generate_image(
        self,
        prompt: str,
        *,
        high_quality: bool = False,
        aspect_ratio: str = "",
        timeout: float = IMAGE_WORKER_TIMEOUT,
    ) -> GenerationResult:
        model = self.settings.high_image_model if high_quality else self.settings.image_model
        return await self.images.generate(prompt, model, aspect_ratio=aspect_ratio, timeout=timeout)
