"""Wallet signer for platform-to-user (A2U) payment submissions."""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from joserfc import jws
from joserfc.jwk import OKPKey

_SEED_VERSION_BYTE = 18 << 3  # "S..." secret seed
_ADDRESS_VERSION_BYTE = 6 << 3  # "G..." account address


def _crc16_xmodem(data: bytes) -> int:
    crc = 0
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            crc = ((crc << 1) ^ 0x1021) if crc & 0x8000 else (crc << 1)
            crc &= 0xFFFF
    return crc


def _encode_strkey(version_byte: int, raw: bytes) -> str:
    body = bytes([version_byte]) + raw
    checksum = _crc16_xmodem(body).to_bytes(2, "little")
    return base64.b32encode(body + checksum).decode()


def _decode_strkey(version_byte: int, value: str) -> bytes:
    try:
        decoded = base64.b32decode(value.strip().upper())
    except (binascii.Error, ValueError) as exc:
        msg = "Wallet seed is not valid base32"
        raise ValueError(msg) from exc

    if len(decoded) != 35:
        msg = "Wallet seed has an invalid length"
        raise ValueError(msg)

    body, checksum = decoded[:-2], decoded[-2:]
    if body[0] != version_byte:
        msg = "Wallet seed has an unexpected version byte"
        raise ValueError(msg)
    if _crc16_xmodem(body).to_bytes(2, "little") != checksum:
        msg = "Wallet seed checksum mismatch"
        raise ValueError(msg)
    return body[1:]


def encode_secret_seed(raw_private: bytes) -> str:
    """Encode 32 raw Ed25519 private bytes as an ``S...`` wallet seed."""
    if len(raw_private) != 32:
        msg = "Raw private key must be 32 bytes"
        raise ValueError(msg)
    return _encode_strkey(_SEED_VERSION_BYTE, raw_private)


class WalletSigner:
    """
    Signs A2U submission envelopes with the app wallet's Ed25519 key.

    The key is derived from the wallet private seed held by the server
    (never exposed client-side). Keeping signing here lets the payment
    network client swap the signing mechanism without touching ledger
    logic.
    """

    def __init__(self, wallet_private_seed: str) -> None:
        raw_private = _decode_strkey(_SEED_VERSION_BYTE, wallet_private_seed)
        private_key = Ed25519PrivateKey.from_private_bytes(raw_private)
        raw_public = private_key.public_key().public_bytes_raw()

        self._address = _encode_strkey(_ADDRESS_VERSION_BYTE, raw_public)
        jwk_dict: dict[str, str | list[str]] = {
            "kty": "OKP",
            "crv": "Ed25519",
            "d": base64.urlsafe_b64encode(raw_private).rstrip(b"=").decode(),
            "x": base64.urlsafe_b64encode(raw_public).rstrip(b"=").decode(),
        }
        self._key = OKPKey.import_key(jwk_dict)

    @property
    def address(self) -> str:
        """Public ``G...`` address of the app wallet."""
        return self._address

    def sign(self, payload: dict[str, Any]) -> str:
        """
        Create a JWS compact serialization token.

        Args:
            payload: Submission envelope. Must include an "action" field
                    (e.g., "submit_payment").

        Returns:
            JWS compact serialization string (header.payload.signature)
        """
        protected = {"alg": "EdDSA", "kid": self._address}
        payload_bytes = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
        return jws.serialize_compact(protected, payload_bytes, self._key, algorithms=["EdDSA"])
