"""
narrowssh.crypto
----------------
SSH key material helpers:

- parse_public_key(): validate an OpenSSH public key line
- fingerprint(): SHA256 fingerprint as printed by ssh-keygen -l
- generate_keypair(): the keygen capability used at issuance time

Private key material produced here is handed back to the caller once and is
never stored or logged by narrowssh.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Dict, Tuple
import base64, hashlib, struct, binascii

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

from .errors import InvalidPublicKey
from .utils import b64d

# Security-key types are validated structurally only; cryptography cannot
# load them.
SK_KEY_TYPES = frozenset({
    "sk-ssh-ed25519@openssh.com",
    "sk-ecdsa-sha2-nistp256@openssh.com",
})

SUPPORTED_KEY_TYPES = frozenset({
    "ssh-ed25519",
    "ssh-rsa",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
}) | SK_KEY_TYPES


@dataclass(frozen=True)
class PublicKey:
    key_type: str
    key_data: str
    comment: str = ""

    @property
    def identity(self) -> Tuple[str, str]:
        """Key type and data; two lines with equal identity are the same key."""
        return self.key_type, self.key_data

    @property
    def line(self) -> str:
        base = f"{self.key_type} {self.key_data}"
        return f"{base} {self.comment}" if self.comment else base


def _wire_key_type(blob: bytes) -> str:
    if len(blob) < 4:
        raise InvalidPublicKey("key data is truncated")
    (n,) = struct.unpack(">I", blob[:4])
    if n > len(blob) - 4:
        raise InvalidPublicKey("key data is truncated")
    return blob[4:4 + n].decode("ascii", errors="replace")


def parse_public_key(line: str) -> PublicKey:
    text = line.strip()
    if not text:
        raise InvalidPublicKey("empty public key")
    if any(c in text for c in "\r\n\0"):
        raise InvalidPublicKey("public key must be a single line")

    parts = text.split(None, 2)
    if len(parts) < 2:
        raise InvalidPublicKey("expected '<type> <base64-data> [comment]'")
    key_type, key_data = parts[0], parts[1]
    comment = parts[2].strip() if len(parts) == 3 else ""

    if key_type not in SUPPORTED_KEY_TYPES:
        raise InvalidPublicKey(f"unsupported key type {key_type!r}")
    try:
        blob = b64d(key_data)
    except (binascii.Error, ValueError) as exc:
        raise InvalidPublicKey("key data is not valid base64") from exc

    embedded = _wire_key_type(blob)
    if embedded != key_type:
        raise InvalidPublicKey(f"key data encodes {embedded!r}, line says {key_type!r}")

    if key_type not in SK_KEY_TYPES:
        try:
            serialization.load_ssh_public_key(f"{key_type} {key_data}".encode("ascii"))
        except (ValueError, UnsupportedAlgorithm) as exc:
            raise InvalidPublicKey(f"malformed {key_type} key: {exc}") from exc

    return PublicKey(key_type, key_data, comment)


def fingerprint(public_key: str) -> str:
    pk = parse_public_key(public_key)
    digest = hashlib.sha256(b64d(pk.key_data)).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


# --------- Keygen capability ----------
_GENERATORS: Dict[str, Callable[[], object]] = {
    "ed25519": ed25519.Ed25519PrivateKey.generate,
    "ecdsa": lambda: ec.generate_private_key(ec.SECP256R1()),
    "ecdsa-p384": lambda: ec.generate_private_key(ec.SECP384R1()),
    "ecdsa-p521": lambda: ec.generate_private_key(ec.SECP521R1()),
    "rsa": lambda: rsa.generate_private_key(public_exponent=65537, key_size=3072),
    "rsa-4096": lambda: rsa.generate_private_key(public_exponent=65537, key_size=4096),
}

SUPPORTED_ALGORITHMS = tuple(_GENERATORS)
DEFAULT_ALGORITHM = "ed25519"


def generate_keypair(algorithm: str = DEFAULT_ALGORITHM, comment: str = "") -> Tuple[str, str]:
    """
    Generate a fresh keypair.

    Returns (public_key_line, private_key_pem). The private key is an
    unencrypted OpenSSH PEM block.
    """
    try:
        factory = _GENERATORS[algorithm]
    except KeyError:
        raise ValueError(
            f"unsupported algorithm {algorithm!r}; choose from {', '.join(SUPPORTED_ALGORITHMS)}"
        ) from None

    sk = factory()
    private_pem = sk.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_line = sk.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode("ascii")
    if comment:
        public_line = f"{public_line} {comment}"
    return public_line, private_pem
