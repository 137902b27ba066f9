"""Hybrid encryption envelope for delegated API results.

The payload is serialized to compact JSON, encrypted with a random AES-256
key in CBC mode (PKCS7 padding, random 16-byte IV), and the AES key is
encrypted with the caller's RSA public key using OAEP with SHA-1. Clients
written against the existing wire format expect exactly the three base64
fields ``encryptedData``, ``encryptedKey`` and ``iv``.
"""
from __future__ import annotations

import base64
import binascii
import json
import os
from typing import Any, Dict, Mapping

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, padding, serialization
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from scrapevault.errors import EnvelopeError

AES_KEY_BYTES = 32
IV_BYTES = 16
ENVELOPE_FIELDS = ("encryptedData", "encryptedKey", "iv")


def _oaep() -> asym_padding.OAEP:
    return asym_padding.OAEP(
        mgf=asym_padding.MGF1(algorithm=hashes.SHA1()),
        algorithm=hashes.SHA1(),
        label=None,
    )


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def load_public_key(public_key_pem: str) -> rsa.RSAPublicKey:
    if not isinstance(public_key_pem, str) or not public_key_pem.strip():
        raise EnvelopeError("publicKey must be a non-empty PEM string")
    try:
        key = serialization.load_pem_public_key(public_key_pem.strip().encode("utf-8"))
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise EnvelopeError(f"Invalid public key: {exc}") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise EnvelopeError("publicKey must be an RSA public key")
    return key


def encrypt_payload(payload: Any, public_key_pem: str) -> Dict[str, str]:
    public_key = load_public_key(public_key_pem)
    plaintext = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    key = os.urandom(AES_KEY_BYTES)
    iv = os.urandom(IV_BYTES)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    try:
        encrypted_key = public_key.encrypt(key, _oaep())
    except ValueError as exc:
        raise EnvelopeError(f"Public key cannot wrap a {AES_KEY_BYTES}-byte key: {exc}") from exc

    return {
        "encryptedData": _b64(ciphertext),
        "encryptedKey": _b64(encrypted_key),
        "iv": _b64(iv),
    }


def decrypt_envelope(envelope: Mapping[str, str], private_key: rsa.RSAPrivateKey) -> Any:
    """Client-side inverse of :func:`encrypt_payload`."""

    missing = [name for name in ENVELOPE_FIELDS if name not in envelope]
    if missing:
        raise EnvelopeError(f"Envelope is missing field(s): {', '.join(missing)}")
    try:
        ciphertext = base64.b64decode(envelope["encryptedData"], validate=True)
        encrypted_key = base64.b64decode(envelope["encryptedKey"], validate=True)
        iv = base64.b64decode(envelope["iv"], validate=True)
    except (binascii.Error, TypeError) as exc:
        raise EnvelopeError(f"Envelope field is not valid base64: {exc}") from exc

    try:
        key = private_key.decrypt(encrypted_key, _oaep())
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plaintext = unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:
        raise EnvelopeError(f"Envelope could not be decrypted: {exc}") from exc
    return json.loads(plaintext.decode("utf-8"))
