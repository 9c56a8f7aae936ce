"""Error classification for provider responses and network failures."""

import httpx

from storyforge.services.exceptions import (
    ModelUnavailable,
    PermanentProviderError,
    ProviderError,
    ProviderTimeout,
    TransientProviderError,
)

TRANSIENT_STATUS_CODES = {408, 409, 425, 429, 500, 502, 503, 504}

_POLICY_MARKERS = (
    "content policy",
    "safety",
    "nsfw",
    "inappropriate",
    "prohibited",
    "blocked",
    "responsible ai",
)


def is_policy_rejection(message: str) -> bool:
    """Return True if a provider message reads as a content-policy rejection."""
    message_lower = message.lower()
    return any(marker in message_lower for marker in _POLICY_MARKERS)


def classify_error(exception: Exception) -> ProviderError:
    """Classify a provider SDK or network exception into a retry category.

    Args:
        exception: Original exception from a provider SDK or the network layer

    Returns:
        Classified ProviderError subclass instance

    Classification rules:
        - Timeout errors → ProviderTimeout
        - 429 (rate limit), 5xx → TransientProviderError
        - 401/403 (authentication), 404 (unknown model) → ModelUnavailable
        - Content policy violations → PermanentProviderError
        - Connection errors → TransientProviderError
        - Anything else → PermanentProviderError
    """
    if isinstance(exception, ProviderError):
        return exception

    error_message = str(exception)
    error_message_lower = error_message.lower()

    if isinstance(exception, (TimeoutError, httpx.TimeoutException)) or (
        "timeout" in error_message_lower or "timed out" in error_message_lower
    ):
        return ProviderTimeout(f"Network timeout: {error_message}")

    if "429" in error_message or "rate limit" in error_message_lower:
        return TransientProviderError(f"Rate limit exceeded: {error_message}")

    if any(code in error_message for code in ("500", "502", "503", "504")) or (
        "service unavailable" in error_message_lower
    ):
        return TransientProviderError(f"Service unavailable: {error_message}")

    if (
        "401" in error_message
        or "403" in error_message
        or "unauthorized" in error_message_lower
        or "forbidden" in error_message_lower
        or "invalid api token" in error_message_lower
    ):
        return ModelUnavailable(f"Authentication failed: {error_message}")

    if "404" in error_message or "not found" in error_message_lower:
        return ModelUnavailable(f"Model not found: {error_message}")

    if is_policy_rejection(error_message):
        return PermanentProviderError(f"Content policy violation: {error_message}")

    if isinstance(exception, (ConnectionError, OSError, httpx.TransportError)):
        return TransientProviderError(f"Connection error: {error_message}")

    return PermanentProviderError(f"Permanent error: {error_message}")


def raise_for_provider_status(response: httpx.Response, provider: str) -> None:
    """Raise a classified ProviderError for a non-2xx provider response.

    Args:
        response: HTTP response from the provider API
        provider: Model or service name used in the error message

    Raises:
        TransientProviderError: 408, 409, 425, 429, 5xx
        ModelUnavailable: 401, 403, 404 (credentials or model id, not the request)
        PermanentProviderError: Any other 4xx (bad input, policy)
    """
    if response.is_success:
        return

    detail = _error_detail(response)
    status = response.status_code

    if status in TRANSIENT_STATUS_CODES:
        raise TransientProviderError(f"{provider} returned {status}: {detail}")
    if status in (401, 403):
        raise ModelUnavailable(f"{provider} rejected credentials ({status}): {detail}")
    if status == 404:
        raise ModelUnavailable(f"{provider} model or resource not found: {detail}")
    if is_policy_rejection(detail):
        raise PermanentProviderError(f"{provider} content policy rejection: {detail}")
    if 400 <= status < 500:
        raise PermanentProviderError(f"{provider} rejected request ({status}): {detail}")
    raise TransientProviderError(f"{provider} returned unexpected status {status}: {detail}")


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])[:500]
        if isinstance(error, str):
            return error[:500]
        if body.get("detail"):
            return str(body["detail"])[:500]
    return response.text[:500]


async def fetch_reference_media(client: httpx.AsyncClient, url: str) -> tuple[bytes, str]:
    """Download a reference image for image-to-image / image-to-video requests.

    Returns:
        (bytes, mime type) of the reference media

    Raises:
        TransientProviderError: Network failure or retryable status
        PermanentProviderError: Reference missing or not accessible
    """
    try:
        response = await client.get(url, follow_redirects=True)
    except httpx.TimeoutException as e:
        raise ProviderTimeout(f"Timed out downloading reference media {url}: {e}") from e
    except httpx.HTTPError as e:
        raise TransientProviderError(f"Network error downloading reference media: {e}") from e

    if response.status_code in TRANSIENT_STATUS_CODES:
        raise TransientProviderError(
            f"Reference media download returned {response.status_code}: {url}"
        )
    if not response.is_success:
        raise PermanentProviderError(
            f"Reference media not accessible ({response.status_code}): {url}"
        )

    mime_type = response.headers.get("content-type", "image/png").split(";")[0].strip()
    return response.content, mime_type
