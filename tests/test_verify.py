"""Tests for manifest canonicalization and Ed25519 signature verification."""

from __future__ import annotations

import json
import uuid
from unittest.mock import patch

import pytest

from conftest import b64, raw_public_key
from guildvault.errors import NotFoundError, ValidationError
from guildvault.manifest import ManifestEnvelope, canonical_bytes, format_float
from guildvault.verify import ManifestVerifier, decode_signature, verify_ed25519


def _manifest(user_id: uuid.UUID) -> dict:
    return {
        "version": 2,
        "exported_by": {"user_id": str(user_id), "username": "owner"},
        "server": {"name": "Guild", "channels": 4},
        "exported_at": "2024-03-01T12:00:00Z",
        "files": ["channels/general.json", "roles.json"],
    }


@pytest.fixture
async def signer(store, signing_key):
    return await store.create_user("signer", identity_key=raw_public_key(signing_key), display_name="Signer")


@pytest.fixture
def verifier(store):
    return ManifestVerifier(store)


# --- canonical serialization ---


class TestCanonicalBytes:
    def test_keys_sorted_at_every_depth(self):
        assert canonical_bytes({"b": 1, "a": {"d": 2, "c": 3}}) == b'{"a":{"c":3,"d":2},"b":1}'

    def test_insertion_order_irrelevant(self):
        one = {"x": [1, 2], "exported_by": {"user_id": "u"}}
        two = {"exported_by": {"user_id": "u"}, "x": [1, 2]}
        assert canonical_bytes(one) == canonical_bytes(two)

    def test_non_ascii_kept_as_utf8(self):
        assert canonical_bytes({"name": "Café"}) == '{"name":"Café"}'.encode("utf-8")

    def test_list_order_preserved(self):
        assert canonical_bytes([3, 1, 2]) == b"[3,1,2]"

    def test_scalars(self):
        assert canonical_bytes({"a": None, "b": True, "c": "x\ny", "d": -4}) == b'{"a":null,"b":true,"c":"x\\ny","d":-4}'

    @pytest.mark.parametrize("value, text", [
        (1e-7, "1e-7"),
        (1e16, "1e16"),
        (1.5e300, "1.5e300"),
        (-2.5e-10, "-2.5e-10"),
        (1e-5, "0.00001"),
        (0.001234, "0.001234"),
        (0.5, "0.5"),
        (12.34, "12.34"),
        (100.0, "100.0"),
        (1e15, "1000000000000000.0"),
        (1.2345678901234568e17, "1.2345678901234568e17"),
        (0.0, "0.0"),
        (-0.0, "-0.0"),
    ])
    def test_float_layout(self, value, text):
        assert format_float(value) == text
        assert canonical_bytes({"v": value}) == f'{{"v":{text}}}'.encode()

    def test_integers_beyond_64_bits_written_as_floats(self):
        assert canonical_bytes([2**64 - 1, -(2**63)]) == b"[18446744073709551615,-9223372036854775808]"
        assert canonical_bytes([2**64]) == b"[1.8446744073709552e19]"

    def test_float_written_as_parsed_from_json(self):
        doc = json.loads('{"ratio":1e-7,"size":1E16,"n":1.0}')
        assert canonical_bytes(doc) == b'{"n":1.0,"ratio":1e-7,"size":1e16}'

    @pytest.mark.parametrize("doc", [
        {"v": float("nan")},
        {"v": float("inf")},
        {1: "int key"},
        {"v": {1, 2}},
    ])
    def test_unserializable_content_rejected(self, doc):
        with pytest.raises((TypeError, ValueError)):
            canonical_bytes(doc)


class TestManifestEnvelope:
    def test_parses_exporter(self):
        uid = uuid.uuid4()
        env = ManifestEnvelope.parse({"exported_by": {"user_id": str(uid)}, "extra": True})
        assert env.identity.exporter_id == uid
        assert env.body.canonical_bytes() == canonical_bytes(
            {"exported_by": {"user_id": str(uid)}, "extra": True}
        )

    @pytest.mark.parametrize("manifest", [
        {},
        {"exported_by": {}},
        {"exported_by": "someone"},
        {"exported_by": {"user_id": 42}},
        {"exported_by": {"user_id": "not-a-uuid"}},
    ])
    def test_missing_or_malformed_exporter(self, manifest):
        with pytest.raises(ValidationError):
            ManifestEnvelope.parse(manifest)


# --- signature decoding ---


class TestDecodeSignature:
    def test_accepts_64_bytes(self):
        assert decode_signature(b64(b"\x07" * 64)) == b"\x07" * 64

    @pytest.mark.parametrize("length", [0, 32, 63, 65, 128])
    def test_rejects_wrong_length(self, length):
        with pytest.raises(ValidationError, match="64 bytes"):
            decode_signature(b64(b"\x00" * length))

    def test_rejects_bad_base64(self):
        with pytest.raises(ValidationError, match="base64"):
            decode_signature("***not base64***")


def test_verify_ed25519_rejects_non_32_byte_keys(signing_key):
    sig = signing_key.sign(b"msg")
    assert verify_ed25519(raw_public_key(signing_key), b"msg", sig) is True
    assert verify_ed25519(raw_public_key(signing_key) + b"\x00", b"msg", sig) is False
    assert verify_ed25519(b"", b"msg", sig) is False


# --- ManifestVerifier ---


@pytest.mark.asyncio
async def test_valid_signature(verifier, signer, signing_key):
    manifest = _manifest(signer.id)
    signature = b64(signing_key.sign(canonical_bytes(manifest)))

    result = await verifier.verify(manifest, signature)

    assert result.valid is True
    assert result.identity_key_matches is True
    assert result.signer.user_id == signer.id
    assert result.signer.username == "signer"
    assert result.signer.display_name == "Signer"


@pytest.mark.asyncio
async def test_key_order_of_submitted_manifest_does_not_matter(verifier, signer, signing_key):
    manifest = _manifest(signer.id)
    signature = b64(signing_key.sign(canonical_bytes(manifest)))
    reordered = dict(reversed(list(manifest.items())))

    result = await verifier.verify(reordered, signature)
    assert result.valid is True


@pytest.mark.asyncio
async def test_manifest_with_floats_signed_by_foreign_exporter(verifier, signer, signing_key):
    signed_text = '{"exported_by":{"user_id":"%s"},"ratio":1e-7,"size":1e16}' % signer.id
    signature = b64(signing_key.sign(signed_text.encode()))

    result = await verifier.verify(json.loads(signed_text), signature)
    assert result.valid is True


@pytest.mark.asyncio
async def test_non_finite_number_in_manifest_is_validation_error(verifier, signer):
    manifest = _manifest(signer.id)
    manifest["ratio"] = float("nan")
    with pytest.raises(ValidationError, match="serialize"):
        await verifier.verify(manifest, b64(b"\x00" * 64))


@pytest.mark.asyncio
@pytest.mark.parametrize("bit", [0, 7, 100, 511])
async def test_flipped_signature_bit_is_invalid(verifier, signer, signing_key, bit):
    manifest = _manifest(signer.id)
    sig = bytearray(signing_key.sign(canonical_bytes(manifest)))
    sig[bit // 8] ^= 1 << (bit % 8)

    result = await verifier.verify(manifest, b64(bytes(sig)))
    assert result.valid is False
    assert result.identity_key_matches is False
    assert result.signer is not None


@pytest.mark.asyncio
async def test_tampered_manifest_is_invalid(verifier, signer, signing_key):
    manifest = _manifest(signer.id)
    signature = b64(signing_key.sign(canonical_bytes(manifest)))
    manifest["server"]["channels"] = 5

    result = await verifier.verify(manifest, signature)
    assert result.valid is False


@pytest.mark.asyncio
async def test_signature_from_another_key_is_invalid(verifier, signer):
    from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

    manifest = _manifest(signer.id)
    signature = b64(Ed25519PrivateKey.generate().sign(canonical_bytes(manifest)))

    result = await verifier.verify(manifest, signature)
    assert result.valid is False


@pytest.mark.asyncio
async def test_wrong_length_signature_never_reaches_crypto(verifier, signer):
    with patch("guildvault.verify.verify_ed25519") as mock_verify:
        with pytest.raises(ValidationError):
            await verifier.verify(_manifest(signer.id), b64(b"\x01" * 63))
        mock_verify.assert_not_called()


@pytest.mark.asyncio
async def test_missing_exporter_is_validation_error(verifier):
    with pytest.raises(ValidationError, match="exported_by.user_id"):
        await verifier.verify({"version": 2}, b64(b"\x00" * 64))


@pytest.mark.asyncio
async def test_unknown_signer_is_not_found(verifier):
    with pytest.raises(NotFoundError):
        await verifier.verify(_manifest(uuid.uuid4()), b64(b"\x00" * 64))


@pytest.mark.asyncio
async def test_stored_key_of_other_length_yields_invalid(store, verifier, signing_key):
    user = await store.create_user("kx-only", identity_key=b"\x05" * 33)
    manifest = _manifest(user.id)
    signature = b64(signing_key.sign(canonical_bytes(manifest)))

    result = await verifier.verify(manifest, signature)
    assert result.valid is False
    assert result.signer.username == "kx-only"
