"""
Content-addressed storage for rendered certificates.
Pins documents to IPFS through the Pinata API, falling back to a local content
hash when no pinning credentials are configured.
"""

import hashlib
import json
from typing import Any, Dict, Optional

import aiohttp
from pydantic import BaseModel

from ..core.config import Settings
from ..core.errors import ContentStoreError
from ..utils.logger import get_logger

logger = get_logger("content_store")


PLACEHOLDER_JWT = "your_pinata_jwt_token_here"


class StoredContent(BaseModel):
    """Result of storing one document."""
    content_id: str
    confirmed: bool
    gateway: Optional[str] = None
    size: Optional[int] = None


def compute_content_hash(data: bytes) -> str:
    """
    Calculate the SHA-256 digest of rendered bytes.

    Returns:
        0x-prefixed hex digest
    """
    return "0x" + hashlib.sha256(data).hexdigest()


def fallback_content_id(data: bytes) -> str:
    """Deterministic CID-shaped identifier used when pinning is unavailable."""
    return "Qm" + hashlib.sha256(data).hexdigest()[:44]


class ContentStore:
    """Service for storing rendered documents by content."""

    def __init__(
        self,
        pinata_jwt: Optional[str] = None,
        gateway_base: str = "https://gateway.pinata.cloud",
        api_url: str = "https://api.pinata.cloud/pinning/pinFileToIPFS",
        timeout: int = 60
    ):
        self.pinata_jwt = pinata_jwt
        self.gateway_base = gateway_base.rstrip("/")
        self.api_url = api_url
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "ContentStore":
        return cls(
            pinata_jwt=settings.pinata_jwt,
            gateway_base=settings.pinata_gateway,
            api_url=settings.pinata_api_url,
        )

    def is_configured(self) -> bool:
        return bool(
            self.pinata_jwt
            and self.pinata_jwt != PLACEHOLDER_JWT
            and len(self.pinata_jwt) > 50
        )

    def gateway_url(self, content_id: str) -> str:
        return f"{self.gateway_base}/ipfs/{content_id}"

    async def store(
        self,
        data: bytes,
        file_name: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> StoredContent:
        """
        Store raw bytes and return their content identifier.

        Args:
            data: Document bytes
            file_name: Name recorded alongside the pin
            metadata: Key/value pairs attached to the pin

        Returns:
            StoredContent; ``confirmed`` is False for the local fallback

        Raises:
            ContentStoreError: If the pinning service rejects or fails the upload
        """
        if not self.is_configured():
            content_id = fallback_content_id(data)
            logger.debug(f"Pinning not configured, using local content hash for {file_name}")
            return StoredContent(content_id=content_id, confirmed=False, size=len(data))

        form = aiohttp.FormData()
        form.add_field("file", data, filename=file_name, content_type="application/pdf")
        form.add_field("pinataMetadata", json.dumps({"name": file_name, "keyvalues": metadata or {}}))
        form.add_field("pinataOptions", json.dumps({"cidVersion": 1}))

        headers = {"Authorization": f"Bearer {self.pinata_jwt}"}
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.api_url, data=form, headers=headers) as response:
                    if response.status >= 300:
                        body = await response.text()
                        raise ContentStoreError(f"Pinata upload failed ({response.status}): {body[:200]}")
                    payload = await response.json()
        except aiohttp.ClientError as e:
            raise ContentStoreError(f"Pinata upload failed: {e}") from e

        content_id = payload["IpfsHash"]
        logger.info(f"Pinned {file_name} as {content_id} ({len(data)} bytes)")

        return StoredContent(
            content_id=content_id,
            confirmed=True,
            gateway=self.gateway_url(content_id),
            size=payload.get("PinSize", len(data)),
        )
