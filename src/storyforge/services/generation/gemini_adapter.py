"""Gemini image generation via the Google Generative Language REST API."""

import base64

import httpx
import structlog

from storyforge.services.exceptions import (
    ModelUnavailable,
    PermanentProviderError,
    ProviderTimeout,
    TransientProviderError,
)
from storyforge.services.generation.base import GeneratedMedia, GenerationRequest
from storyforge.services.generation.errors import (
    fetch_reference_media,
    raise_for_provider_status,
)

logger = structlog.get_logger(__name__)

BLOCKING_FINISH_REASONS = {
    "SAFETY",
    "PROHIBITED_CONTENT",
    "IMAGE_SAFETY",
    "BLOCKLIST",
    "SPII",
    "RECITATION",
}


class GeminiImageAdapter:
    """Text-to-image and image-to-image with Gemini image models.

    The reference image, when present, is sent inline next to the prompt so
    the model edits it instead of generating from scratch.
    """

    accepts_reference = True

    def __init__(
        self,
        model: str,
        client: httpx.AsyncClient,
        api_key: str,
        api_base: str = "https://generativelanguage.googleapis.com/v1beta",
        prompt_template: str = "{prompt}",
    ):
        """Initialize Gemini adapter.

        Args:
            model: Gemini model id (e.g. "gemini-2.5-flash-image")
            client: Shared HTTP client
            api_key: Google Generative AI API key
            api_base: API base URL
            prompt_template: Format string wrapping the user prompt ({prompt})
        """
        self.model = model
        self.client = client
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.prompt_template = prompt_template

    async def generate(self, request: GenerationRequest) -> GeneratedMedia:
        """Generate one image.

        Raises:
            TransientProviderError: Network failures, 429/5xx, empty responses
            ModelUnavailable: Missing key, rejected credentials, unknown model
            PermanentProviderError: Bad input, safety blocks
        """
        if not self.api_key:
            raise ModelUnavailable("GOOGLE_GENERATIVE_AI_API_KEY not configured")

        parts: list[dict] = [{"text": self.prompt_template.format(prompt=request.prompt)}]
        if request.reference_media_ref:
            reference, mime_type = await fetch_reference_media(
                self.client, request.reference_media_ref
            )
            parts.append(
                {
                    "inline_data": {
                        "mime_type": mime_type,
                        "data": base64.b64encode(reference).decode("ascii"),
                    }
                }
            )

        try:
            response = await self.client.post(
                f"{self.api_base}/models/{self.model}:generateContent",
                headers={"x-goog-api-key": self.api_key},
                json={"contents": [{"parts": parts}]},
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"{self.model} request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransientProviderError(f"{self.model} network error: {e}") from e

        raise_for_provider_status(response, self.model)
        return self._extract_image(response.json())

    def _extract_image(self, body: dict) -> GeneratedMedia:
        feedback = body.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            raise PermanentProviderError(
                f"{self.model} blocked the prompt: {feedback['blockReason']}"
            )

        candidates = body.get("candidates") or []
        if not candidates:
            raise TransientProviderError(f"{self.model} returned no candidates")

        candidate = candidates[0]
        for part in (candidate.get("content") or {}).get("parts") or []:
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                return GeneratedMedia(
                    data=base64.b64decode(inline["data"]),
                    media_type=inline.get("mimeType") or inline.get("mime_type") or "image/png",
                    model=self.model,
                )

        finish_reason = candidate.get("finishReason")
        if finish_reason in BLOCKING_FINISH_REASONS:
            raise PermanentProviderError(
                f"{self.model} refused to generate (finishReason={finish_reason})"
            )

        logger.warning("provider.no_image", model=self.model, finish_reason=finish_reason)
        raise TransientProviderError(f"{self.model} returned no image in response")
