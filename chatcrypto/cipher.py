"""
Message encryption under a resolved chat key.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

from .chat_key import ChatKey
from .primitives import (
    DecryptFailure,
    aes_gcm_decrypt,
    aes_gcm_encrypt,
    b64decode,
    b64encode,
)

logger = logging.getLogger(__name__)

UNREADABLE_TEXT = "Could not decrypt message."


class _Unreadable:
    """Sentinel returned for messages that fail authenticated decryption"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNREADABLE"

    def __bool__(self) -> bool:
        return False


UNREADABLE = _Unreadable()


@dataclass(frozen=True)
class EncryptedPayload:
    """Wire form of one encrypted message body"""
    nonce: str
    ciphertext: str

    def to_dict(self) -> dict:
        return {"nonce": self.nonce, "ciphertext": self.ciphertext}

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedPayload":
        return cls(nonce=data["nonce"], ciphertext=data["ciphertext"])


@dataclass(frozen=True)
class DecryptedMessage:
    """A message as shown to the reader"""
    id: str
    sender_id: str
    sent_at: float
    text: str
    readable: bool = True


class MessageCipher:
    """
    AES-256-GCM message encryption.

    Nonces are drawn from the OS CSPRNG on every call rather than from a
    counter, since several devices may encrypt under the same chat key.
    """

    async def encrypt(self, plaintext: str, chat_key: ChatKey, associated_data: bytes = b"") -> EncryptedPayload:
        """
        Encrypt a message.

        Args:
            plaintext: Message text
            chat_key: Conversation key
            associated_data: Additional authenticated data

        Returns:
            EncryptedPayload with base64 nonce and ciphertext
        """
        nonce, ciphertext = aes_gcm_encrypt(chat_key.raw, plaintext.encode("utf-8"), associated_data)
        return EncryptedPayload(nonce=b64encode(nonce), ciphertext=b64encode(ciphertext))

    async def decrypt_or_raise(
        self, nonce: str, ciphertext: str, chat_key: ChatKey, associated_data: bytes = b""
    ) -> str:
        """
        Decrypt a message.

        Raises:
            DecryptFailure: On malformed input, wrong key or tampering
        """
        try:
            raw_nonce = b64decode(nonce)
            raw_ciphertext = b64decode(ciphertext)
        except ValueError as e:
            raise DecryptFailure(str(e))

        plaintext = aes_gcm_decrypt(chat_key.raw, raw_nonce, raw_ciphertext, associated_data)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptFailure(f"Plaintext is not UTF-8: {e}")

    async def decrypt(
        self, nonce: str, ciphertext: str, chat_key: ChatKey, associated_data: bytes = b""
    ) -> Union[str, _Unreadable]:
        """
        Decrypt a message, returning UNREADABLE instead of raising.
        """
        try:
            return await self.decrypt_or_raise(nonce, ciphertext, chat_key, associated_data)
        except DecryptFailure:
            return UNREADABLE

    async def decrypt_batch(self, messages: Iterable, chat_key: ChatKey) -> List[DecryptedMessage]:
        """
        Decrypt a batch of stored messages.

        A message that fails to decrypt becomes a placeholder; it never stops
        the rest of the batch.

        Args:
            messages: Objects with id, sender_id, sent_at, nonce and ciphertext
            chat_key: Conversation key

        Returns:
            DecryptedMessage list in input order
        """
        out = []
        failures = 0
        for message in messages:
            text: Optional[str] = await self.decrypt(message.nonce, message.ciphertext, chat_key)
            if text is UNREADABLE:
                failures += 1
                out.append(DecryptedMessage(
                    id=message.id,
                    sender_id=message.sender_id,
                    sent_at=message.sent_at,
                    text=UNREADABLE_TEXT,
                    readable=False
                ))
            else:
                out.append(DecryptedMessage(
                    id=message.id,
                    sender_id=message.sender_id,
                    sent_at=message.sent_at,
                    text=text
                ))

        if failures:
            logger.warning("%d of %d messages could not be decrypted", failures, len(out))
        return out
