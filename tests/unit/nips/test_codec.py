"""
Unit tests for nips.codec, nips.nip01, nips.nip02, nips.nip04 and nips.nip28.

Tests:
- Event id computation and verification
- Signing with explicit timestamps and signature verification
- DM encryption round trip between two keys, and decryption failures
- Counterparty resolution for incoming and own DMs
- Contact-list tag generation and parsing
- Channel references of kind 41/42 events
"""

from dataclasses import replace

import pytest

from nostrsync.core.exceptions import DecryptionError, MalformedEventError
from nostrsync.models import DbContact, EventKind
from nostrsync.nips import (
    compute_event_id,
    contact_list_tags,
    parse_contact_list,
    referenced_channel_id,
    verify_event_id,
)


# ============================================================================
# NIP-01
# ============================================================================


class TestEventId:
    """Id derivation from the canonical serialization."""

    def test_signed_event_id_matches_computation(self, codec, sign):
        event = sign(codec, EventKind.TEXT_NOTE, "hello", [["t", "nostr"]])
        expected = compute_event_id(
            event.pubkey, event.created_at, event.kind, event.tags, event.content
        )
        assert event.id == expected
        assert verify_event_id(event)

    def test_tampered_content_fails_verification(self, codec, sign):
        event = sign(codec, EventKind.TEXT_NOTE, "hello")
        assert not verify_event_id(replace(event, content="hullo"))

    def test_unicode_content_is_not_escaped(self):
        a = compute_event_id("a" * 64, 1, 1, [], "héllo")
        b = compute_event_id("a" * 64, 1, 1, [], "h\\u00e9llo")
        assert a != b


class TestSigning:
    """EventCodec.sign() and verify()."""

    def test_created_at_is_kept(self, codec, sign):
        event = sign(codec, EventKind.TEXT_NOTE, "x", created_at=1234567890)
        assert event.created_at == 1234567890
        assert event.pubkey == codec.public_key

    def test_verify_accepts_signed_event(self, codec, sign):
        assert codec.verify(sign(codec, EventKind.TEXT_NOTE, "x"))

    def test_verify_rejects_forged_signature(self, codec, peer_codec, sign):
        mine = sign(codec, EventKind.TEXT_NOTE, "x")
        theirs = sign(peer_codec, EventKind.TEXT_NOTE, "x")
        assert not codec.verify(replace(mine, sig=theirs.sig))

    def test_is_own(self, codec, peer_codec, sign):
        assert codec.is_own(sign(codec, EventKind.TEXT_NOTE))
        assert not codec.is_own(sign(peer_codec, EventKind.TEXT_NOTE))


# ============================================================================
# NIP-04
# ============================================================================


class TestDirectMessages:
    """Encryption, decryption and counterparty resolution."""

    def test_round_trip_between_two_keys(self, codec, peer_codec):
        dm = codec.build_dm(peer_codec.public_key, "hi there", created_at=1700000000)
        assert dm.kind == EventKind.ENCRYPTED_DIRECT_MESSAGE
        assert dm.first_tag_value("p") == peer_codec.public_key
        assert dm.content != "hi there"
        assert peer_codec.decrypt_dm(codec.public_key, dm.content) == "hi there"
        assert codec.decrypt_dm(peer_codec.public_key, dm.content) == "hi there"

    def test_open_own_and_incoming(self, codec, peer_codec):
        outgoing = codec.build_dm(peer_codec.public_key, "out", created_at=1700000000)
        incoming = peer_codec.build_dm(codec.public_key, "in", created_at=1700000001)
        assert codec.open_dm(outgoing) == (peer_codec.public_key, "out")
        assert codec.open_dm(incoming) == (peer_codec.public_key, "in")

    def test_garbage_ciphertext_raises(self, codec, peer_codec):
        with pytest.raises(DecryptionError):
            codec.decrypt_dm(peer_codec.public_key, "not-a-payload")

    def test_own_dm_without_recipient_is_malformed(self, codec, sign):
        event = sign(codec, EventKind.ENCRYPTED_DIRECT_MESSAGE, "abc?iv=def")
        with pytest.raises(MalformedEventError):
            codec.dm_counterparty(event)

    def test_invalid_counterparty_key(self, codec):
        with pytest.raises(ValueError):
            codec.encrypt_dm("zz" * 32, "x")


# ============================================================================
# NIP-02
# ============================================================================


class TestContactList:
    """Kind-3 tags in both directions."""

    def test_tags_drop_trailing_empty_fields(self):
        tags = contact_list_tags(
            [
                DbContact(pubkey="a" * 64),
                DbContact(pubkey="b" * 64, relay_hint="wss://relay.example.com"),
                DbContact(pubkey="c" * 64, petname="carol"),
            ]
        )
        assert tags == [
            ["p", "a" * 64],
            ["p", "b" * 64, "wss://relay.example.com"],
            ["p", "c" * 64, "", "carol"],
        ]

    def test_build_and_parse(self, codec):
        contacts = [
            DbContact(pubkey="a" * 64, petname="alice"),
            DbContact(pubkey="b" * 64, relay_hint="wss://relay.example.com"),
        ]
        event = codec.build_contact_list(contacts, created_at=1700000000)
        parsed = parse_contact_list(event)
        assert [c.pubkey for c in parsed] == ["a" * 64, "b" * 64]
        assert parsed[0].petname == "alice"
        assert parsed[1].relay_hint == "wss://relay.example.com"

    def test_unknown_contacts_are_not_listed(self, codec):
        event = codec.build_contact_list(
            [DbContact(pubkey="a" * 64), DbContact.unknown("b" * 64)], created_at=1
        )
        assert [c.pubkey for c in parse_contact_list(event)] == ["a" * 64]

    def test_parse_skips_invalid_and_duplicate_keys(self, codec, sign):
        event = sign(
            codec,
            EventKind.CONTACT_LIST,
            tags=[["p", "a" * 64, "", "first"], ["p", "not-a-key"], ["p", "a" * 64, "", "dup"]],
        )
        parsed = parse_contact_list(event)
        assert len(parsed) == 1
        assert parsed[0].pubkey == "a" * 64
        assert parsed[0].petname == "first"


# ============================================================================
# NIP-28
# ============================================================================


class TestChannelReference:
    """referenced_channel_id()."""

    def test_first_e_tag(self, codec, sign):
        event = sign(codec, EventKind.CHANNEL_MESSAGE, "hi", [["e", "ab" * 32], ["e", "cd" * 32]])
        assert referenced_channel_id(event) == "ab" * 32

    def test_missing_or_invalid(self, codec, sign):
        assert referenced_channel_id(sign(codec, EventKind.CHANNEL_MESSAGE, "hi")) is None
        invalid = sign(codec, EventKind.CHANNEL_MESSAGE, "hi", [["e", "xyz"]])
        assert referenced_channel_id(invalid) is None
