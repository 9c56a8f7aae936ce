"""Replicate image models with error classification."""

import asyncio
import mimetypes
from typing import Any

import httpx
import replicate
from replicate.exceptions import ReplicateError as ReplicateAPIError

from storyforge.services.exceptions import (
    ModelUnavailable,
    PermanentProviderError,
    ProviderTimeout,
    TransientProviderError,
)
from storyforge.services.generation.base import GeneratedMedia, GenerationRequest
from storyforge.services.generation.errors import classify_error, raise_for_provider_status

# Input field carrying the reference image, per model
REFERENCE_INPUT_FIELDS = {
    "black-forest-labs/flux-kontext-pro": "input_image",
}


class ReplicateImageAdapter:
    """Image generation through the Replicate SDK.

    The SDK is synchronous, so predictions run in a worker thread. Replicate
    returns a CDN URL which is downloaded so the artifact store owns the bytes.
    """

    def __init__(self, model: str, client: httpx.AsyncClient, api_token: str):
        """Initialize Replicate adapter.

        Args:
            model: Replicate model identifier (e.g. "black-forest-labs/flux-schnell")
            client: Shared HTTP client used to download the output
            api_token: Replicate API authentication token
        """
        self.model = model
        self.client = client
        self.api_token = api_token
        self.accepts_reference = model in REFERENCE_INPUT_FIELDS

    async def generate(self, request: GenerationRequest) -> GeneratedMedia:
        """Generate one image.

        Raises:
            TransientProviderError: Temporary failure, next model or later retry may succeed
            ModelUnavailable: Missing token, auth failure, unknown model
            PermanentProviderError: Policy rejection, unsupported input
        """
        if not self.api_token:
            raise ModelUnavailable("REPLICATE_API_TOKEN not configured")

        model_input: dict[str, Any] = {"prompt": request.prompt}
        if request.reference_media_ref:
            reference_field = REFERENCE_INPUT_FIELDS.get(self.model)
            if reference_field is None:
                raise ModelUnavailable(f"{self.model} does not accept a reference image")
            model_input[reference_field] = request.reference_media_ref

        try:
            client = replicate.Client(api_token=self.api_token)
            output = await asyncio.to_thread(client.run, self.model, input=model_input)
        except ReplicateAPIError as e:
            raise classify_error(e) from e
        except (ConnectionError, OSError, TimeoutError) as e:
            raise classify_error(e) from e
        except Exception as e:
            # Unexpected errors - treat as permanent to avoid retrying a broken request
            raise PermanentProviderError(f"Unexpected error: {e}") from e

        # Output format varies by model: list of files, single file, or URL string
        if isinstance(output, list) and len(output) > 0:
            image_url = str(output[0])
        elif output:
            image_url = str(output)
        else:
            raise TransientProviderError(f"{self.model} returned no output")

        return await self._download(image_url)

    async def _download(self, image_url: str) -> GeneratedMedia:
        try:
            response = await self.client.get(image_url, follow_redirects=True)
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"Timed out downloading {self.model} output: {e}") from e
        except httpx.HTTPError as e:
            raise TransientProviderError(f"Failed to download {self.model} output: {e}") from e

        raise_for_provider_status(response, self.model)
        media_type = response.headers.get("content-type", "").split(";")[0].strip()
        if not media_type.startswith("image/"):
            media_type = mimetypes.guess_type(image_url)[0] or "image/webp"
        return GeneratedMedia(data=response.content, media_type=media_type, model=self.model)
