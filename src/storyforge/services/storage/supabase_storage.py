"""Supabase Storage client for uploading generated media."""

import httpx

from storyforge.models.job import Capability
from storyforge.services.exceptions import StorageError
from storyforge.services.storage.blob_store import StoredBlob


class SupabaseBlobStore:
    """Uploads media to Supabase Storage buckets (one bucket per capability)."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        supabase_url: str,
        service_role_key: str,
        buckets: dict[Capability, str],
        timeout: float = 60.0,
    ):
        """Initialize Supabase Storage client.

        Args:
            client: Shared HTTP client
            supabase_url: Project URL (e.g. https://<ref>.supabase.co)
            service_role_key: Service role key (from SUPABASE_SERVICE_ROLE_KEY env var)
            buckets: Bucket name per capability
            timeout: Upload timeout in seconds
        """
        self.client = client
        self.base_url = supabase_url.rstrip("/")
        self.buckets = buckets
        self.timeout = timeout
        self.headers = {
            "Authorization": f"Bearer {service_role_key}",
            "apikey": service_role_key,
        }

    async def put(
        self, path: str, data: bytes, media_type: str, capability: Capability
    ) -> StoredBlob:
        """Upload bytes to the capability's bucket.

        Uploads use x-upsert so a retried save of the same job overwrites the
        object instead of failing with a conflict.

        Raises:
            StorageError: Network failure or non-2xx response
        """
        bucket = self.buckets[capability]
        try:
            response = await self.client.post(
                f"{self.base_url}/storage/v1/object/{bucket}/{path}",
                headers={**self.headers, "Content-Type": media_type, "x-upsert": "true"},
                content=data,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise StorageError(f"Upload timeout after {self.timeout:.0f}s: {str(e)}") from e
        except httpx.HTTPError as e:
            raise StorageError(f"Network error: {str(e)}") from e

        if response.status_code in (401, 403):
            raise StorageError(
                f"Storage access denied ({response.status_code}). "
                "Check SUPABASE_SERVICE_ROLE_KEY in the .env file."
            )
        if response.status_code == 404:
            raise StorageError(f"Bucket {bucket!r} not found: {response.text}")
        if response.status_code >= 400:
            raise StorageError(f"Upload failed ({response.status_code}): {response.text}")

        return StoredBlob(
            storage_ref=f"{bucket}/{path}", public_url=self.get_public_url(bucket, path)
        )

    def get_public_url(self, bucket: str, path: str) -> str:
        """Public URL for an object in a public bucket.

        Returns:
            URL (e.g., "https://<ref>.supabase.co/storage/v1/object/public/<bucket>/<path>")
        """
        return f"{self.base_url}/storage/v1/object/public/{bucket}/{path}"
