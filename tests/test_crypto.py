"""
Tests for the cryptographic layer: chat keys, wrapping and message encryption.
"""

import asyncio
from types import SimpleNamespace

import pytest

from chatcrypto import (
    UNREADABLE,
    ChatKey,
    ChatKeyProtocol,
    DecryptFailure,
    KeyCorrupt,
    KeyMismatch,
    MessageCipher,
)
from chatcrypto.cipher import UNREADABLE_TEXT
from chatcrypto.primitives import (
    b64decode,
    b64encode,
    deserialize_private_key,
    deserialize_public_key,
    generate_rsa_keypair,
    serialize_private_key,
    serialize_public_key,
)

ALICE_PRIVATE, ALICE_PUBLIC = generate_rsa_keypair()
BOB_PRIVATE, BOB_PUBLIC = generate_rsa_keypair()


def test_message_round_trip():
    """Decrypting an encrypted message returns the original text"""
    async def run():
        cipher = MessageCipher()
        key = await ChatKeyProtocol().generate_chat_key()
        payload = await cipher.encrypt("Hello, Bob! 👋", key)
        return await cipher.decrypt(payload.nonce, payload.ciphertext, key)

    assert asyncio.run(run()) == "Hello, Bob! 👋"


def test_nonce_uniqueness():
    """The same plaintext encrypted twice gives different nonces and ciphertexts"""
    async def run():
        cipher = MessageCipher()
        key = await ChatKeyProtocol().generate_chat_key()
        return await cipher.encrypt("same", key), await cipher.encrypt("same", key)

    first, second = asyncio.run(run())
    assert first.nonce != second.nonce
    assert first.ciphertext != second.ciphertext
    assert len(b64decode(first.nonce)) == 12


def test_decrypt_with_wrong_key_is_unreadable():
    async def run():
        protocol = ChatKeyProtocol()
        cipher = MessageCipher()
        payload = await cipher.encrypt("secret", await protocol.generate_chat_key())
        other = await protocol.generate_chat_key()
        result = await cipher.decrypt(payload.nonce, payload.ciphertext, other)
        with pytest.raises(DecryptFailure):
            await cipher.decrypt_or_raise(payload.nonce, payload.ciphertext, other)
        return result

    assert asyncio.run(run()) is UNREADABLE


def test_tampered_ciphertext_is_rejected():
    async def run():
        cipher = MessageCipher()
        key = await ChatKeyProtocol().generate_chat_key()
        payload = await cipher.encrypt("do not touch", key)
        raw = bytearray(b64decode(payload.ciphertext))
        raw[0] ^= 0x01
        return await cipher.decrypt(payload.nonce, b64encode(bytes(raw)), key)

    assert asyncio.run(run()) is UNREADABLE


def test_malformed_nonce_is_unreadable():
    async def run():
        cipher = MessageCipher()
        key = await ChatKeyProtocol().generate_chat_key()
        payload = await cipher.encrypt("x", key)
        short = await cipher.decrypt(b64encode(b"short"), payload.ciphertext, key)
        garbage = await cipher.decrypt("not base64!!", payload.ciphertext, key)
        return short, garbage

    assert asyncio.run(run()) == (UNREADABLE, UNREADABLE)


def test_decrypt_batch_keeps_going_after_a_bad_message():
    """One unreadable message becomes a placeholder; the rest still decrypt"""
    async def run():
        cipher = MessageCipher()
        key = await ChatKeyProtocol().generate_chat_key()
        good = await cipher.encrypt("first", key)
        bad = await cipher.encrypt("second", await ChatKeyProtocol().generate_chat_key())
        also_good = await cipher.encrypt("third", key)
        stored = [
            SimpleNamespace(id="m1", sender_id="alice", sent_at=1.0, nonce=good.nonce, ciphertext=good.ciphertext),
            SimpleNamespace(id="m2", sender_id="bob", sent_at=2.0, nonce=bad.nonce, ciphertext=bad.ciphertext),
            SimpleNamespace(id="m3", sender_id="alice", sent_at=3.0, nonce=also_good.nonce,
                            ciphertext=also_good.ciphertext),
        ]
        return await cipher.decrypt_batch(stored, key)

    messages = asyncio.run(run())
    assert [m.text for m in messages] == ["first", UNREADABLE_TEXT, "third"]
    assert [m.readable for m in messages] == [True, False, True]
    assert messages[1].sender_id == "bob"


def test_wrap_round_trip():
    """Unwrapping with the matching private key recovers the chat key"""
    async def run():
        protocol = ChatKeyProtocol()
        key = await protocol.generate_chat_key()
        wrapped = await protocol.wrap(key, ALICE_PUBLIC)
        return key, await protocol.unwrap(wrapped, ALICE_PRIVATE)

    key, unwrapped = asyncio.run(run())
    assert unwrapped == key


def test_wrapping_is_randomized():
    async def run():
        protocol = ChatKeyProtocol()
        key = await protocol.generate_chat_key()
        return await protocol.wrap(key, ALICE_PUBLIC), await protocol.wrap(key, ALICE_PUBLIC)

    first, second = asyncio.run(run())
    assert first != second


def test_unwrap_with_wrong_private_key_raises_key_mismatch():
    async def run():
        protocol = ChatKeyProtocol()
        wrapped = await protocol.wrap(await protocol.generate_chat_key(), ALICE_PUBLIC)
        await protocol.unwrap(wrapped, BOB_PRIVATE)

    with pytest.raises(KeyMismatch):
        asyncio.run(run())


def test_unwrap_malformed_input_raises_key_mismatch():
    with pytest.raises(KeyMismatch):
        asyncio.run(ChatKeyProtocol().unwrap("%%%not-base64%%%", ALICE_PRIVATE))


def test_wrap_for_participants_wraps_the_same_key_for_everyone():
    async def run():
        protocol = ChatKeyProtocol()
        key = await protocol.generate_chat_key()
        wrapped = await protocol.wrap_for_participants(key, {"alice": ALICE_PUBLIC, "bob": BOB_PUBLIC})
        return key, wrapped, {
            "alice": await protocol.unwrap(wrapped["alice"], ALICE_PRIVATE),
            "bob": await protocol.unwrap(wrapped["bob"], BOB_PRIVATE),
        }

    key, wrapped, unwrapped = asyncio.run(run())
    assert set(wrapped) == {"alice", "bob"}
    assert unwrapped["alice"] == key
    assert unwrapped["bob"] == key


def test_chat_keys_are_independent():
    async def run():
        protocol = ChatKeyProtocol()
        return await protocol.generate_chat_key(), await protocol.generate_chat_key()

    first, second = asyncio.run(run())
    assert first != second
    assert len(first.raw) == 32


def test_chat_key_hides_raw_bytes_from_repr():
    key = ChatKey(b"k" * 32)
    assert "kkkk" not in repr(key)
    with pytest.raises(ValueError):
        ChatKey(b"short")


def test_key_serialization():
    pem = serialize_public_key(ALICE_PUBLIC)
    assert pem.startswith("-----BEGIN PUBLIC KEY-----")
    assert serialize_public_key(deserialize_public_key(pem)) == pem

    der = serialize_private_key(ALICE_PRIVATE)
    restored = deserialize_private_key(der)
    assert serialize_private_key(restored) == der


def test_garbage_private_key_is_corrupt():
    with pytest.raises(KeyCorrupt):
        deserialize_private_key(b"\x00garbage")
