"""Veo video generation via the Google Generative Language long-running API.

Submits predictLongRunning, polls the operation until done, then downloads
the generated video. The whole call is bounded by the fallback chain's
per-attempt timeout, so polling itself has no attempt limit.
"""

import asyncio
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
    is_policy_rejection,
    raise_for_provider_status,
)

logger = structlog.get_logger(__name__)

# google.rpc.Code values that will not succeed on retry
PERMANENT_RPC_CODES = {3, 9}  # INVALID_ARGUMENT, FAILED_PRECONDITION
# NOT_FOUND, PERMISSION_DENIED, UNIMPLEMENTED, UNAUTHENTICATED: this model, not the request
MODEL_UNAVAILABLE_RPC_CODES = {5, 7, 12, 16}


class VeoVideoAdapter:
    """Text-to-video and image-to-video with Veo models."""

    accepts_reference = True

    def __init__(
        self,
        model: str,
        client: httpx.AsyncClient,
        api_key: str,
        api_base: str = "https://generativelanguage.googleapis.com/v1beta",
        poll_interval: float = 10.0,
    ):
        """Initialize Veo adapter.

        Args:
            model: Veo model id (e.g. "veo-3.1-fast-generate-preview")
            client: Shared HTTP client
            api_key: Google Generative AI API key
            api_base: API base URL
            poll_interval: Seconds between operation status checks
        """
        self.model = model
        self.client = client
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.poll_interval = poll_interval

    @property
    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.api_key}

    async def generate(self, request: GenerationRequest) -> GeneratedMedia:
        """Generate one video.

        Raises:
            TransientProviderError: Network failures, 429/5xx, retryable operation errors
            ModelUnavailable: Missing key, rejected credentials, unknown model
            PermanentProviderError: Bad input, filtered output
        """
        if not self.api_key:
            raise ModelUnavailable("GOOGLE_GENERATIVE_AI_API_KEY not configured")

        instance: dict = {"prompt": request.prompt}
        if request.reference_media_ref:
            reference, mime_type = await fetch_reference_media(
                self.client, request.reference_media_ref
            )
            instance["image"] = {
                "bytesBase64Encoded": base64.b64encode(reference).decode("ascii"),
                "mimeType": mime_type,
            }

        parameters: dict = {}
        if request.aspect_ratio:
            parameters["aspectRatio"] = request.aspect_ratio
        if request.resolution:
            parameters["resolution"] = request.resolution
        if request.duration_seconds:
            parameters["durationSeconds"] = request.duration_seconds

        operation = await self._call(
            "POST",
            f"{self.api_base}/models/{self.model}:predictLongRunning",
            json={"instances": [instance], "parameters": parameters},
        )
        operation_name = operation.get("name")
        if not operation_name:
            raise TransientProviderError(f"{self.model} returned no operation name")

        logger.info("provider.operation.started", model=self.model, operation=operation_name)

        while not operation.get("done"):
            await asyncio.sleep(self.poll_interval)
            operation = await self._call("GET", f"{self.api_base}/{operation_name}")

        video_uri = self._video_uri(operation)
        data = await self._download(video_uri)
        return GeneratedMedia(data=data, media_type="video/mp4", model=self.model)

    async def _call(self, method: str, url: str, json: dict | None = None) -> dict:
        try:
            response = await self.client.request(method, url, headers=self._headers, json=json)
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"{self.model} request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransientProviderError(f"{self.model} network error: {e}") from e

        raise_for_provider_status(response, self.model)
        return response.json()

    def _video_uri(self, operation: dict) -> str:
        error = operation.get("error")
        if error:
            message = error.get("message", "unknown error")
            if error.get("code") in PERMANENT_RPC_CODES or is_policy_rejection(message):
                raise PermanentProviderError(f"{self.model} operation failed: {message}")
            if error.get("code") in MODEL_UNAVAILABLE_RPC_CODES:
                raise ModelUnavailable(f"{self.model} unavailable: {message}")
            raise TransientProviderError(f"{self.model} operation failed: {message}")

        response = operation.get("response") or {}
        video_response = response.get("generateVideoResponse") or response

        if video_response.get("raiMediaFilteredCount"):
            reasons = "; ".join(video_response.get("raiMediaFilteredReasons") or [])
            raise PermanentProviderError(
                f"{self.model} content policy filtered the video: {reasons or 'no reason given'}"
            )

        samples = video_response.get("generatedSamples") or video_response.get("generatedVideos")
        for sample in samples or []:
            uri = (sample.get("video") or {}).get("uri")
            if uri:
                return uri

        raise TransientProviderError(f"{self.model} completed without a video")

    async def _download(self, uri: str) -> bytes:
        try:
            response = await self.client.get(uri, headers=self._headers, follow_redirects=True)
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"{self.model} video download timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransientProviderError(f"{self.model} video download failed: {e}") from e

        raise_for_provider_status(response, self.model)
        return response.content
