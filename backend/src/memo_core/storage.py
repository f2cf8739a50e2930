"""Media storage client.

Uploaded media is named after the record that owns it (memo, comment or
user id), so a record must exist before its media can be uploaded.
"""
import hashlib
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

import httpx
import tenacity

from .config import settings
from .errors import StorageError, UnapprovedFileTypeError


logger = logging.getLogger(__name__)

AVATAR = "avatar"

ALLOWED_FORMATS = {
    AVATAR: ["jpeg", "jpg", "png"],
    "image": ["jpeg", "jpg", "png", "gif", "bmp"],
    "video": ["mp4", "mov", "avi", "mkv", "wmv"],
    "audio": ["mp3", "wav", "ogg", "aac", "flac"],
}

# Cloudinary files audio under the video resource type
RESOURCE_TYPES = {
    AVATAR: "image",
    "image": "image",
    "video": "video",
    "audio": "video",
}


class RetryableStorageError(StorageError):
    """Transient storage failure (rate limit, 5xx)."""
    pass


class MediaStorage(ABC):
    """Where memo, comment and avatar media live."""

    @abstractmethod
    async def upload(self, public_id: str, data: bytes, media_kind: str) -> str:
        """
        Store `data` under `public_id` and return its public URL.

        Raises UnapprovedFileTypeError if the format is not allowed for
        `media_kind`, StorageError for anything else.
        """

    @abstractmethod
    async def delete(self, public_id: str, media_kind: str) -> None:
        """Remove the media stored under `public_id`."""

    async def close(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


def _log_retry(retry_state: tenacity.RetryCallState) -> None:
    """Log retry attempts for debugging."""
    logger.warning(
        f"Storage retry attempt {retry_state.attempt_number} after "
        f"{retry_state.outcome.exception() if retry_state.outcome else 'unknown error'}"
    )


# Retry decorator for storage calls with exponential backoff
storage_retry = tenacity.retry(
    stop=tenacity.stop_after_attempt(3),
    wait=tenacity.wait_exponential(multiplier=1, min=1, max=10),
    retry=tenacity.retry_if_exception_type((RetryableStorageError, httpx.TransportError)),
    before_sleep=_log_retry,
    reraise=True,
)


class CloudinaryStorage(MediaStorage):
    """Cloudinary signed upload/destroy over its REST API."""

    BASE_URL = "https://api.cloudinary.com/v1_1"

    def __init__(
        self,
        cloud_name: str = None,
        api_key: str = None,
        api_secret: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.cloud_name = cloud_name or settings.cloudinary_cloud_name
        self.api_key = api_key or settings.cloudinary_api_key
        self.api_secret = api_secret or settings.cloudinary_api_secret
        self.client = httpx.AsyncClient(
            base_url=f"{self.BASE_URL}/{self.cloud_name}",
            timeout=timeout or settings.upload_timeout_seconds,
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    def sign(self, params: dict) -> str:
        """Cloudinary signature: sha1 of the sorted params joined with the secret."""
        to_sign = "&".join(f"{key}={params[key]}" for key in sorted(params))
        return hashlib.sha1(f"{to_sign}{self.api_secret}".encode()).hexdigest()

    def _signed(self, params: dict) -> dict:
        params = {**params, "timestamp": str(int(time.time()))}
        return {**params, "signature": self.sign(params), "api_key": self.api_key}

    @staticmethod
    def _resource_type(media_kind: str) -> str:
        if media_kind not in RESOURCE_TYPES:
            raise StorageError(f"unsupported media kind: {media_kind}")
        return RESOURCE_TYPES[media_kind]

    async def _post(self, endpoint: str, data: dict, files: dict = None) -> dict:
        """POST to the API and return the JSON body, raising on error payloads."""
        response = await self.client.post(endpoint, data=data, files=files)

        if response.status_code == 429 or response.status_code >= 500:
            raise RetryableStorageError(
                f"Cloudinary {response.status_code}", status_code=response.status_code
            )

        try:
            body = response.json()
        except ValueError:
            body = {"error": {"message": response.text}}

        message = (body.get("error") or {}).get("message", "")
        if response.status_code != 200 or message:
            # Rejected formats come back as "<Kind> file format <ext> not allowed"
            if "file format" in message and "not allowed" in message:
                raise UnapprovedFileTypeError(context={"detail": message})
            raise StorageError(message or f"Cloudinary {response.status_code}", status_code=response.status_code)

        return body

    @storage_retry
    async def upload(self, public_id: str, data: bytes, media_kind: str) -> str:
        resource_type = self._resource_type(media_kind)
        params = self._signed({
            "public_id": public_id,
            "allowed_formats": ",".join(ALLOWED_FORMATS[media_kind]),
            "tags": "storage",
            "invalidate": "true",
        })
        body = await self._post(
            f"/{resource_type}/upload",
            data=params,
            files={"file": (public_id, data)},
        )
        logger.info(f"Uploaded {media_kind} media for {public_id}")
        return body["secure_url"]

    @storage_retry
    async def delete(self, public_id: str, media_kind: str) -> None:
        resource_type = self._resource_type(media_kind)
        params = self._signed({"public_id": public_id, "invalidate": "true"})
        body = await self._post(f"/{resource_type}/destroy", data=params)
        if body.get("result") not in ("ok", "not found"):
            raise StorageError(f"unexpected destroy result: {body.get('result')}")
        logger.info(f"Deleted {media_kind} media for {public_id}")
