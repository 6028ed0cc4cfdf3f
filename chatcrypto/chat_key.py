"""
Per-conversation key protocol

Every conversation gets one random 256-bit chat key. The creator wraps that key
under each participant's RSA public key; each participant later unwraps their
own copy with the private key that never leaves their device.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, Mapping
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey

from .primitives import (
    SYMMETRIC_KEY_BYTES,
    KeyMismatch,
    b64decode,
    b64encode,
    constant_time_compare,
    generate_symmetric_key,
    rsa_decrypt,
    rsa_encrypt,
)


@dataclass(frozen=True)
class ChatKey:
    """
    Symmetric key for one conversation.

    Only ever held in memory; the raw bytes are excluded from repr so the key
    cannot end up in logs by accident.
    """
    raw: bytes = field(repr=False)

    def __post_init__(self):
        if len(self.raw) != SYMMETRIC_KEY_BYTES:
            raise ValueError(f"Chat key must be {SYMMETRIC_KEY_BYTES} bytes")

    def __eq__(self, other) -> bool:
        if not isinstance(other, ChatKey):
            return NotImplemented
        return constant_time_compare(self.raw, other.raw)

    def __hash__(self) -> int:
        return hash(self.raw)


class ChatKeyProtocol:
    """
    Generates chat keys and wraps/unwraps them for participants.
    """

    async def generate_chat_key(self) -> ChatKey:
        """
        Generate a fresh chat key, independent of every other conversation.

        Returns:
            New ChatKey
        """
        return ChatKey(generate_symmetric_key())

    async def wrap(self, chat_key: ChatKey, recipient_public_key: RSAPublicKey) -> str:
        """
        Wrap a chat key for one recipient.

        Args:
            chat_key: Key to wrap
            recipient_public_key: Recipient's RSA public key

        Returns:
            Base64 RSA-OAEP ciphertext of the raw key bytes
        """
        wrapped = await asyncio.to_thread(rsa_encrypt, recipient_public_key, chat_key.raw)
        return b64encode(wrapped)

    async def unwrap(self, wrapped_key: str, own_private_key: RSAPrivateKey) -> ChatKey:
        """
        Recover a chat key from its wrapped form.

        Args:
            wrapped_key: Base64 wrapped key addressed to us
            own_private_key: Our RSA private key

        Returns:
            The unwrapped ChatKey

        Raises:
            KeyMismatch: If the key was wrapped for someone else or is malformed
        """
        try:
            data = b64decode(wrapped_key)
        except ValueError as e:
            raise KeyMismatch(str(e))

        raw = await asyncio.to_thread(rsa_decrypt, own_private_key, data)
        if len(raw) != SYMMETRIC_KEY_BYTES:
            raise KeyMismatch("Unwrapped key has the wrong length")
        return ChatKey(raw)

    async def wrap_for_participants(
        self, chat_key: ChatKey, public_keys: Mapping[str, RSAPublicKey]
    ) -> Dict[str, str]:
        """
        Wrap the same chat key once for every participant.

        Args:
            chat_key: The conversation's key
            public_keys: Participant id -> RSA public key

        Returns:
            Participant id -> wrapped key
        """
        ids = list(public_keys)
        wrapped = await asyncio.gather(*(self.wrap(chat_key, public_keys[uid]) for uid in ids))
        return dict(zip(ids, wrapped))
