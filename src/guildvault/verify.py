"""Manifest signature verification (Ed25519 over canonical manifest JSON).

Stateless apart from the signer lookup. Requires no caller authentication:
anyone holding a manifest and its detached signature may check it.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import TYPE_CHECKING, Any, Mapping

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from guildvault.errors import NotFoundError, ValidationError
from guildvault.manifest import ManifestEnvelope
from guildvault.models import VerifyExportResponse, VerifySigner

if TYPE_CHECKING:
    from guildvault.store.backend import PlatformStore

logger = logging.getLogger("guildvault.verify")

SIGNATURE_LENGTH = 64
PUBLIC_KEY_LENGTH = 32


def decode_signature(signature: str) -> bytes:
    """Decode a standard-base64 signature. Raises ValidationError unless it is 64 bytes."""
    try:
        sig_bytes = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Invalid base64 signature")
    if len(sig_bytes) != SIGNATURE_LENGTH:
        raise ValidationError("Signature must be 64 bytes (Ed25519)")
    return sig_bytes


def verify_ed25519(public_key: bytes, message: bytes, signature: bytes) -> bool:
    """True iff ``signature`` is a valid Ed25519 signature of ``message``.

    Keys of any length other than 32 bytes are not Ed25519 verification keys
    (the same column may hold an X25519 key) and simply fail.
    """
    if len(public_key) != PUBLIC_KEY_LENGTH:
        return False
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
    except (InvalidSignature, ValueError):
        return False
    return True


class ManifestVerifier:
    def __init__(self, store: "PlatformStore") -> None:
        self._store = store

    async def verify(self, manifest: Mapping[str, Any], signature: str) -> VerifyExportResponse:
        envelope = ManifestEnvelope.parse(manifest)
        sig_bytes = decode_signature(signature)

        user = await self._store.find_user_by_id(envelope.identity.exporter_id)
        if user is None:
            raise NotFoundError("Signer not found")

        canonical = envelope.body.canonical_bytes()
        valid = verify_ed25519(user.identity_key, canonical, sig_bytes)
        logger.debug("verify: signer=%s valid=%s", user.id, valid)

        return VerifyExportResponse(
            valid=valid,
            signer=VerifySigner(user_id=user.id, username=user.username, display_name=user.display_name),
            identity_key_matches=valid,
        )
