"""Unit tests for content storage."""

import pytest

from certchain.core.errors import ContentStoreError
from certchain.services.content_store import ContentStore, compute_content_hash, fallback_content_id


CONFIGURED_JWT = "eyJ" + "a" * 60


def test_content_hash_is_prefixed_sha256():
    digest = compute_content_hash(b"certificate")
    assert digest.startswith("0x")
    assert len(digest) == 66
    assert digest == compute_content_hash(b"certificate")


def test_placeholder_and_short_tokens_are_not_configured():
    assert not ContentStore(pinata_jwt=None).is_configured()
    assert not ContentStore(pinata_jwt="your_pinata_jwt_token_here").is_configured()
    assert not ContentStore(pinata_jwt="short").is_configured()
    assert ContentStore(pinata_jwt=CONFIGURED_JWT).is_configured()


@pytest.mark.anyio
async def test_unconfigured_store_falls_back_to_local_hash():
    stored = await ContentStore(pinata_jwt=None).store(b"%PDF-1.4 test", "cert.pdf")

    assert stored.confirmed is False
    assert stored.content_id == fallback_content_id(b"%PDF-1.4 test")
    assert stored.content_id.startswith("Qm")
    assert len(stored.content_id) == 46
    assert stored.gateway is None
    assert stored.size == 13


@pytest.mark.anyio
async def test_unreachable_pinning_service_raises():
    store = ContentStore(pinata_jwt=CONFIGURED_JWT, api_url="http://127.0.0.1:1/pinning", timeout=5)

    with pytest.raises(ContentStoreError, match="Pinata upload failed"):
        await store.store(b"%PDF-1.4 test", "cert.pdf")


def test_gateway_url():
    store = ContentStore(gateway_base="https://gw.example.com/")
    assert store.gateway_url("bafy123") == "https://gw.example.com/ipfs/bafy123"
