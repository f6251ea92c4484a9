"""
Signing, verification and payload codecs for the local user's events.

[EventCodec][nostrsync.nips.codec.EventCodec] is bound to the local
``nostr_sdk.Keys``. It is the only place that touches secret key material:
everything downstream handles immutable
[Event][nostrsync.models.event.Event] values.

Timestamps of locally authored events are always supplied by the caller,
which takes them from the clock-corrected
[ClockOffsetProvider][nostrsync.utils.clock.ClockOffsetProvider].

See Also:
    [compute_event_id()][nostrsync.nips.nip01.compute_event_id]: Id derivation.
    [nip04][nostrsync.nips.nip04]: DM encryption.
    [nip02][nostrsync.nips.nip02]: Contact-list tags.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING

from nostr_sdk import EventBuilder, Kind, NostrSdkError, Tag, Timestamp

from nostrsync.core.exceptions import MalformedEventError
from nostrsync.models.constants import EventKind
from nostrsync.models.event import Event

from . import nip04
from .nip01 import compute_event_id, verify_event_id
from .nip02 import contact_list_tags


if TYPE_CHECKING:
    from nostr_sdk import Keys

    from nostrsync.models.contact import DbContact
    from nostrsync.models.metadata import ProfileMetadata


logger = logging.getLogger(__name__)


class EventCodec:
    """Signs, verifies, encrypts and decrypts on behalf of the local user.

    Args:
        keys: The local user's key pair.

    Examples:
        ```python
        codec = EventCodec(keys)
        dm = codec.build_dm(recipient_hex, "hello", created_at=clock.now())
        codec.decrypt_dm(recipient_hex, dm.content)   # "hello"
        ```
    """

    def __init__(self, keys: Keys) -> None:
        self._keys = keys
        self._public_key = keys.public_key().to_hex()

    @property
    def public_key(self) -> str:
        """Hex public key of the local user."""
        return self._public_key

    # -------------------------------------------------------------------------
    # Identity and verification
    # -------------------------------------------------------------------------

    @staticmethod
    def compute_id(
        pubkey: str,
        created_at: int,
        kind: int,
        tags: Sequence[Sequence[str]],
        content: str,
    ) -> str:
        return compute_event_id(pubkey, created_at, kind, tags, content)

    @staticmethod
    def verify_id(event: Event) -> bool:
        return verify_event_id(event)

    @staticmethod
    def verify(event: Event) -> bool:
        """Check the id and the Schnorr signature.

        Never raises: anything the SDK rejects counts as a failed verification.
        """
        if not verify_event_id(event):
            return False
        try:
            return bool(event.to_nostr().verify())
        except (NostrSdkError, ValueError, TypeError) as e:
            logger.debug("signature_check_failed event=%s error=%s", event.id, e)
            return False

    def is_own(self, event: Event) -> bool:
        return event.pubkey == self._public_key

    # -------------------------------------------------------------------------
    # Direct messages
    # -------------------------------------------------------------------------

    def encrypt_dm(self, counterparty: str, plaintext: str) -> str:
        return nip04.encrypt(self._keys, counterparty, plaintext)

    def decrypt_dm(self, counterparty: str, ciphertext: str) -> str:
        """Decrypt a DM exchanged with *counterparty*.

        Raises:
            DecryptionError: On any malformed payload or key mismatch.
        """
        return nip04.decrypt(self._keys, counterparty, ciphertext)

    def dm_counterparty(self, event: Event) -> str:
        """Return the other party of a kind-4 event.

        The recipient (first ``p`` tag) when the local user wrote it,
        otherwise the author.

        Raises:
            MalformedEventError: If an own DM has no recipient tag.
        """
        if not self.is_own(event):
            return event.pubkey
        recipient = event.first_tag_value("p")
        if recipient is None:
            raise MalformedEventError("direct message without recipient", event_id=event.id)
        return recipient.lower()

    def open_dm(self, event: Event) -> tuple[str, str]:
        """Return ``(counterparty, plaintext)`` of a kind-4 event.

        Raises:
            MalformedEventError: If the recipient is missing.
            DecryptionError: If the content cannot be decrypted.
        """
        counterparty = self.dm_counterparty(event)
        return counterparty, self.decrypt_dm(counterparty, event.content)

    # -------------------------------------------------------------------------
    # Signing
    # -------------------------------------------------------------------------

    def sign(
        self,
        kind: int,
        content: str,
        tags: Iterable[Sequence[str]],
        created_at: int,
    ) -> Event:
        """Build and sign an event with an explicit ``created_at``.

        Raises:
            ValueError: If a tag cannot be parsed by the SDK.
        """
        try:
            sdk_tags = [Tag.parse(list(tag)) for tag in tags]
            signed = (
                EventBuilder(Kind(int(kind)), content)
                .tags(sdk_tags)
                .custom_created_at(Timestamp.from_secs(created_at))
                .sign_with_keys(self._keys)
            )
        except NostrSdkError as e:
            raise ValueError(f"cannot sign kind {kind} event: {e}") from e
        return Event.from_nostr(signed)

    def build_dm(self, recipient: str, plaintext: str, created_at: int) -> Event:
        """Encrypt *plaintext* for *recipient* and sign a kind-4 event."""
        ciphertext = self.encrypt_dm(recipient, plaintext)
        return self.sign(
            EventKind.ENCRYPTED_DIRECT_MESSAGE, ciphertext, [["p", recipient]], created_at
        )

    def build_contact_list(self, contacts: Iterable[DbContact], created_at: int) -> Event:
        """Sign a kind-3 event listing *contacts* (known ones only)."""
        listed = [c for c in contacts if c.is_known]
        return self.sign(EventKind.CONTACT_LIST, "", contact_list_tags(listed), created_at)

    def build_metadata(self, metadata: ProfileMetadata, created_at: int) -> Event:
        """Sign a kind-0 event carrying *metadata*."""
        return self.sign(EventKind.METADATA, metadata.to_json(), [], created_at)
