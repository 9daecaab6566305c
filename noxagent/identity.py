"""
Nox Agent Identity — Ed25519 keypair used to sign job results.

The public key is the agent_id. Every completed job carries the sha256 of its
canonical output and a signature over that hash, so a purchaser can check a
result was produced by this agent without trusting the transport.
"""

import hashlib
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)


def _raw_public_bytes(pubkey: Ed25519PublicKey) -> bytes:
    return pubkey.public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )


def canonical_json(data: Any) -> str:
    """Stable JSON form used for hashing (sorted keys, no whitespace)."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def content_hash(data: Any) -> str:
    return hashlib.sha256(canonical_json(data).encode()).hexdigest()


@dataclass
class AgentIdentity:
    """The service's signing identity."""
    agent_id: str
    fingerprint: str
    _private_key: Optional[Ed25519PrivateKey] = field(default=None, repr=False)
    _public_key: Optional[Ed25519PublicKey] = field(default=None, repr=False)

    @classmethod
    def _from_keys(cls, private_key: Optional[Ed25519PrivateKey],
                   public_key: Ed25519PublicKey) -> "AgentIdentity":
        raw = _raw_public_bytes(public_key)
        return cls(
            agent_id=f"ed25519:{raw.hex()}",
            fingerprint=hashlib.sha256(raw).hexdigest()[:16],
            _private_key=private_key,
            _public_key=public_key,
        )

    @classmethod
    def generate(cls) -> "AgentIdentity":
        private_key = Ed25519PrivateKey.generate()
        return cls._from_keys(private_key, private_key.public_key())

    @classmethod
    def from_keyfile(cls, path: str) -> "AgentIdentity":
        """Load identity from a PEM private key file."""
        with open(path, "rb") as f:
            private_key = serialization.load_pem_private_key(f.read(), password=None)
        if not isinstance(private_key, Ed25519PrivateKey):
            raise ValueError(f"{path} does not hold an Ed25519 private key")
        return cls._from_keys(private_key, private_key.public_key())

    @classmethod
    def from_public_key_hex(cls, hex_str: str) -> "AgentIdentity":
        """Verify-only identity."""
        public_key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(hex_str))
        return cls._from_keys(None, public_key)

    @classmethod
    def load_or_create(cls, path: Optional[str]) -> "AgentIdentity":
        """Load from path if it exists, else generate (and save when a path is given)."""
        if path and os.path.exists(path):
            return cls.from_keyfile(path)
        identity = cls.generate()
        if path:
            identity.save_keyfile(path)
        return identity

    def save_keyfile(self, path: str):
        if not self._private_key:
            raise ValueError("No private key to save (verify-only identity)")
        pem = self._private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(pem)
        os.chmod(path, 0o600)

    def sign(self, data: str) -> str:
        """Sign a string, return hex signature."""
        if not self._private_key:
            raise ValueError("No private key (verify-only identity)")
        return self._private_key.sign(data.encode()).hex()

    def verify(self, data: str, signature_hex: str) -> bool:
        try:
            self._public_key.verify(bytes.fromhex(signature_hex), data.encode())
            return True
        except (InvalidSignature, ValueError):
            return False

    @property
    def public_key_hex(self) -> str:
        return _raw_public_bytes(self._public_key).hex()


@dataclass
class SignedOutput:
    """Hash of a job output plus the agent's signature over it."""
    output_hash: str
    signer_id: str
    signature: str

    def to_dict(self) -> dict:
        return {
            "output_hash": self.output_hash,
            "signer_id": self.signer_id,
            "signature": self.signature,
        }


def sign_output(identity: AgentIdentity, output: Any) -> SignedOutput:
    digest = content_hash(output)
    return SignedOutput(
        output_hash=digest,
        signer_id=identity.agent_id,
        signature=identity.sign(digest),
    )


def verify_output(output: Any, signed: dict) -> bool:
    """Check a {output_hash, signer_id, signature} block against an output."""
    signer = signed.get("signer_id", "")
    if not signer.startswith("ed25519:"):
        return False
    if content_hash(output) != signed.get("output_hash"):
        return False
    try:
        identity = AgentIdentity.from_public_key_hex(signer[len("ed25519:"):])
    except ValueError:
        return False
    return identity.verify(signed["output_hash"], signed.get("signature", ""))
