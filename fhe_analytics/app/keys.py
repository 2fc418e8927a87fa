"""Origin tokens, placeholder key material and proof digests."""
from __future__ import annotations

import hashlib
import json
import re
import secrets
from dataclasses import dataclass
from typing import Dict

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

TOKEN_PREFIX = "fhe_sk_"
_TOKEN_PATTERN = re.compile(r"^fhe_sk_[a-f0-9]{48}$")


@dataclass(frozen=True)
class KeyPair:
    public_key: str
    fingerprint: str


def generate_origin_token() -> str:
    return f"{TOKEN_PREFIX}{secrets.token_hex(24)}"


def is_valid_origin_token(token: str) -> bool:
    return bool(_TOKEN_PATTERN.match(token))


def fingerprint_for(public_key: str) -> str:
    digest = hashlib.sha256(public_key.encode("utf-8")).hexdigest()
    return f"sha256:{digest[:40]}"


def generate_key_pair() -> KeyPair:
    """Generate an RSA key pair standing in for FHE key material.

    Only the public half is kept; nothing in the service decrypts with it.
    """

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return KeyPair(public_key=public_pem, fingerprint=fingerprint_for(public_pem))


def generate_proof_digest(aggregates: Dict[str, int]) -> str:
    """Hash a day's ``{metric: total}`` map for external anchoring."""

    data = json.dumps(aggregates, separators=(",", ":"))
    return "0x" + hashlib.sha256(data.encode("utf-8")).hexdigest()


def generate_mock_cid() -> str:
    return f"Qm{secrets.token_hex(22)}"
