"""
Crypto Vault — AES-256-GCM encryption for PII and merchant credentials at rest.

Every value is sealed with a fresh 96-bit IV and stored as three hex strings
(ciphertext, iv, tag). A tag that fails to verify raises IntegrityError;
callers decide whether that skips one record or aborts a whole run.

The process runs a self-test at startup (run_security_check) and refuses to
start if a known plaintext does not survive the round trip.
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from phantom.config import settings

logger = logging.getLogger("phantom.vault")

KEY_LENGTH = 32   # AES-256
IV_LENGTH = 12    # GCM standard nonce
TAG_LENGTH = 16
SELF_TEST_PREFIX = "PHANTOM_VAULT_SELF_TEST_"


# ─── Errors ────────────────────────────────────────────────────────────

class VaultError(Exception):
    """Base class for vault failures."""


class VaultConfigError(VaultError):
    """Missing or malformed key material."""


class VaultSelfTestError(VaultError):
    """Startup round trip failed — the process must not run."""


class IntegrityError(VaultError):
    """Authentication tag did not verify (tampered data or wrong key)."""


@dataclass(frozen=True)
class SealedValue:
    ciphertext: str
    iv: str
    tag: str


# ─── Vault ─────────────────────────────────────────────────────────────

class Vault:
    """Symmetric authenticated encryption bound to one key."""

    def __init__(self, secret: str):
        if not secret or len(secret) < KEY_LENGTH:
            raise VaultConfigError(
                f"ENCRYPTION_KEY must be at least {KEY_LENGTH} characters"
            )
        key = secret.encode("utf-8")[:KEY_LENGTH]
        if len(key) != KEY_LENGTH:
            raise VaultConfigError("ENCRYPTION_KEY did not yield a 32-byte key")
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> SealedValue:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        # cryptography appends the tag to the ciphertext
        return SealedValue(
            ciphertext=sealed[:-TAG_LENGTH].hex(),
            iv=iv.hex(),
            tag=sealed[-TAG_LENGTH:].hex(),
        )

    def decrypt(self, ciphertext: str, iv: str, tag: str) -> str:
        try:
            raw_iv = bytes.fromhex(iv)
            raw_tag = bytes.fromhex(tag)
            raw_ct = bytes.fromhex(ciphertext)
        except (TypeError, ValueError) as e:
            raise IntegrityError(f"Malformed sealed value: {e}") from e

        if len(raw_iv) != IV_LENGTH or len(raw_tag) != TAG_LENGTH:
            raise IntegrityError("Malformed sealed value: bad IV or tag length")

        try:
            plain = self._aead.decrypt(raw_iv, raw_ct + raw_tag, None)
        except InvalidTag as e:
            raise IntegrityError("Authentication tag mismatch — data tampered or wrong key") from e
        return plain.decode("utf-8")

    def open(self, sealed: SealedValue) -> str:
        return self.decrypt(sealed.ciphertext, sealed.iv, sealed.tag)

    def self_test(self) -> None:
        """Encrypt → decrypt a known string; raise VaultSelfTestError on any mismatch."""
        sample = f"{SELF_TEST_PREFIX}{int(time.time() * 1000)}"
        try:
            result = self.open(self.encrypt(sample))
        except IntegrityError as e:
            raise VaultSelfTestError(f"Vault self-test decrypt failed: {e}") from e
        if result != sample:
            raise VaultSelfTestError("Vault self-test mismatch: decrypted text differs")

    def diagnostic(self) -> dict:
        """Timed round trip used as the Ghost Hunter pre-flight."""
        sample = f"{SELF_TEST_PREFIX}{int(time.time() * 1000)}"
        t0 = time.perf_counter()
        try:
            sealed = self.encrypt(sample)
            t1 = time.perf_counter()
            ok = self.open(sealed) == sample
            t2 = time.perf_counter()
        except VaultError as e:
            return {"ok": False, "encrypt_ms": None, "decrypt_ms": None, "error": str(e)}
        return {
            "ok": ok,
            "encrypt_ms": round((t1 - t0) * 1000, 3),
            "decrypt_ms": round((t2 - t1) * 1000, 3),
            "error": None if ok else "round trip mismatch",
        }


# ─── Process-wide instance ─────────────────────────────────────────────

_vault: Optional[Vault] = None


def get_vault() -> Vault:
    """Return the process vault, built lazily from settings.encryption_key."""
    global _vault
    if _vault is None:
        _vault = Vault(settings.encryption_key)
    return _vault


def run_security_check() -> Vault:
    """Startup hook: build the vault and self-test it. Raises on failure."""
    vault = get_vault()
    vault.self_test()
    logger.info("🔐 Vault self-test passed (AES-256-GCM)")
    return vault


# ─── Log redaction ─────────────────────────────────────────────────────

def redact_email(email: Optional[str]) -> str:
    """user@example.com → use***@***.com"""
    if not email or "@" not in email:
        return "***"
    local, domain = email.rsplit("@", 1)
    tld = domain.rsplit(".", 1)[-1] if "." in domain else ""
    return f"{local[:3]}***@***.{tld}" if tld else f"{local[:3]}***@***"


def redact_name(name: Optional[str]) -> str:
    """John Smith → Joh*** Smi***"""
    if not name:
        return "***"
    return " ".join(f"{part[:3]}***" for part in name.split())
