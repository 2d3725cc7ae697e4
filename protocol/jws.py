"""
JWK / JWS utilities for the ACME protocol (RFC 8555).

Uses *josepy* (the library powering Certbot) for JWK handling.

Responsibilities (boundary with protocol/crypto.py):
  - Generate the per-run **account** RSA key
  - Compute JWK thumbprint (for HTTP-01 key-authorizations)
  - Sign ACME POST bodies as JWS (with jwk or kid header)

Account keys are never written to disk; every renewal attempt registers
with a fresh key.
"""
from __future__ import annotations

import base64
import json
from typing import Any

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from josepy.jwk import JWKRSA


def generate_account_key(key_size: int = 2048) -> JWKRSA:
    """Generate a new RSA account key wrapped in a josepy JWKRSA."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return JWKRSA(key=private_key)


# ─── JWK thumbprint ───────────────────────────────────────────────────────────


def compute_jwk_thumbprint(jwk: JWKRSA) -> str:
    """
    Base64url SHA-256 thumbprint of the public JWK (RFC 7638).
    Used to construct the HTTP-01 key-authorization:
      key_authorization = token + "." + thumbprint
    """
    return b64url(jwk.public_key().thumbprint(hash_function=hashes.SHA256))


def compute_key_authorization(token: str, jwk: JWKRSA) -> str:
    """Return the HTTP-01 key-authorization string for *token*."""
    return f"{token}.{compute_jwk_thumbprint(jwk)}"


# ─── JWS signing ─────────────────────────────────────────────────────────────


def sign_request(
    payload: dict | None,
    account_key: JWKRSA,
    nonce: str,
    url: str,
    account_url: str | None = None,
) -> dict:
    """
    Sign an ACME request payload and return the JWS dict to POST.

    If *account_url* is None the JWS header uses the full JWK (used for
    newAccount).  If *account_url* is set the header uses the shorter "kid"
    form (used for all subsequent requests).  A *payload* of None produces
    a POST-as-GET body.
    """
    header: dict[str, Any] = {
        "alg": "RS256",
        "nonce": nonce,
        "url": url,
    }
    if account_url:
        header["kid"] = account_url
    else:
        header["jwk"] = account_key.public_key().to_partial_json()

    protected = b64url(json.dumps(header).encode())
    payload_b64 = "" if payload is None else b64url(json.dumps(payload).encode())

    signing_input = f"{protected}.{payload_b64}".encode()
    signature = account_key.key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256())

    return {
        "protected": protected,
        "payload": payload_b64,
        "signature": b64url(signature),
    }


def b64url(data: bytes) -> str:
    """URL-safe base64 encoding with no padding (as required by JOSE)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()
