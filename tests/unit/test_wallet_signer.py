"""Unit tests for WalletSigner."""

from __future__ import annotations

import base64
import json
import os

import pytest
from joserfc import jws
from joserfc.jwk import OKPKey

from gig_escrow_service.clients.wallet_signer import WalletSigner, encode_secret_seed
from tests.helpers import make_wallet_seed

pytestmark = pytest.mark.unit


def _public_jwk(address: str) -> OKPKey:
    raw_public = base64.b32decode(address)[1:-2]
    return OKPKey.import_key(
        {
            "kty": "OKP",
            "crv": "Ed25519",
            "x": base64.urlsafe_b64encode(raw_public).rstrip(b"=").decode(),
        }
    )


def test_address_is_deterministic_for_a_seed() -> None:
    seed = make_wallet_seed()
    assert seed.startswith("S")
    first = WalletSigner(seed)
    second = WalletSigner(seed)
    assert first.address == second.address
    assert first.address.startswith("G")
    assert len(first.address) == 56


def test_sign_produces_verifiable_eddsa_jws() -> None:
    signer = WalletSigner(make_wallet_seed())
    token = signer.sign({"action": "submit_payment", "payment_id": "pay-1"})

    result = jws.deserialize_compact(token, _public_jwk(signer.address), algorithms=["EdDSA"])
    assert result.headers()["kid"] == signer.address
    assert json.loads(result.payload) == {"action": "submit_payment", "payment_id": "pay-1"}


@pytest.mark.parametrize("seed", ["not-base32!", "SAAAA", ""])
def test_invalid_seed_is_rejected(seed: str) -> None:
    with pytest.raises(ValueError):
        WalletSigner(seed)


def test_checksum_mismatch_is_rejected() -> None:
    seed = encode_secret_seed(os.urandom(32))
    tampered = seed[:-1] + ("A" if seed[-1] != "A" else "B")
    with pytest.raises(ValueError):
        WalletSigner(tampered)


def test_encode_secret_seed_requires_32_bytes() -> None:
    with pytest.raises(ValueError):
        encode_secret_seed(b"short")
