from __future__ import annotations

import base64
import binascii
import hashlib

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import dsa, ec, ed25519, rsa

# ssh_host_<type>_key names understood by sshd
HOST_KEY_TYPES = ("rsa", "ecdsa", "ed25519", "dsa")


class KeyMaterialError(ValueError):
    pass


def b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64d(data: str) -> bytes:
    # Base64 lines may arrive wrapped; strict decoding still rejects junk.
    compact = "".join(data.split())
    if not compact:
        raise KeyMaterialError("empty base64 payload")
    try:
        return base64.b64decode(compact.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise KeyMaterialError(f"invalid base64: {exc}") from exc


def load_private_key(raw: bytes):
    try:
        if b"BEGIN OPENSSH PRIVATE KEY" in raw:
            return serialization.load_ssh_private_key(raw, password=None)
        return serialization.load_pem_private_key(raw, password=None)
    except (ValueError, TypeError) as exc:
        raise KeyMaterialError(f"unreadable private key: {exc}") from exc
    except UnsupportedAlgorithm as exc:
        raise KeyMaterialError(f"unsupported private key: {exc}") from exc


def key_type_name(key) -> str:
    if isinstance(key, rsa.RSAPrivateKey):
        return "rsa"
    if isinstance(key, ec.EllipticCurvePrivateKey):
        return "ecdsa"
    if isinstance(key, ed25519.Ed25519PrivateKey):
        return "ed25519"
    if isinstance(key, dsa.DSAPrivateKey):
        return "dsa"
    raise KeyMaterialError(f"unsupported key class {type(key).__name__}")


def derive_public_key(raw: bytes, comment: str = "") -> str:
    key = load_private_key(raw)
    public = key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    line = public.decode("ascii")
    if comment:
        line = f"{line} {comment}"
    return line + "\n"


def public_key_fingerprint(public_line: str) -> str:
    parts = public_line.split()
    if len(parts) < 2:
        raise KeyMaterialError("public key line must have a type and a blob")
    blob = b64d(parts[1])
    digest = hashlib.sha256(blob).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def generate_private_key(kind: str):
    if kind == "ed25519":
        return ed25519.Ed25519PrivateKey.generate()
    if kind == "ecdsa":
        return ec.generate_private_key(ec.SECP256R1())
    if kind == "rsa":
        return rsa.generate_private_key(public_exponent=65537, key_size=3072)
    raise KeyMaterialError(f"cannot generate key type {kind}")


def private_key_to_openssh(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    )
