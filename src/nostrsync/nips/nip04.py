"""
NIP-04 encrypted direct messages (kind 4).

Encryption and decryption are delegated to ``nostr_sdk``. The shared secret
is symmetric, so a DM is decrypted with the local secret key and the *other*
party's public key whether the local user sent or received it.

Every failure on attacker-controlled input (bad base64, bad IV, wrong key,
padding, non-UTF-8 plaintext, malformed public key) surfaces as
[DecryptionError][nostrsync.core.exceptions.DecryptionError] and nothing
else.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from nostr_sdk import NostrSdkError, PublicKey, nip04_decrypt, nip04_encrypt

from nostrsync.core.exceptions import DecryptionError


if TYPE_CHECKING:
    from nostr_sdk import Keys


def encrypt(keys: Keys, counterparty: str, plaintext: str) -> str:
    """Encrypt *plaintext* for *counterparty* (hex public key).

    Raises:
        ValueError: If *counterparty* is not a valid public key.
    """
    try:
        public_key = PublicKey.parse(counterparty)
    except NostrSdkError as e:
        raise ValueError(f"invalid counterparty public key: {e}") from e
    return nip04_encrypt(keys.secret_key(), public_key, plaintext)


def decrypt(keys: Keys, counterparty: str, ciphertext: str) -> str:
    """Decrypt a NIP-04 payload exchanged with *counterparty*.

    Raises:
        DecryptionError: If the payload is malformed or the keys do not match.
    """
    try:
        public_key = PublicKey.parse(counterparty)
        return nip04_decrypt(keys.secret_key(), public_key, ciphertext)
    except (NostrSdkError, ValueError, TypeError, UnicodeDecodeError) as e:
        raise DecryptionError(f"cannot decrypt message from {counterparty[:16]}: {e}") from e
