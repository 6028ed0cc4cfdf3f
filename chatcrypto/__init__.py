"""
Cryptographic module for end-to-end encrypted chat.

Implements the hybrid scheme used by every conversation:
- RSA-OAEP (SHA-256) wrapping of a per-conversation key
- AES-256-GCM message encryption under that key
"""

from .primitives import (
    CryptoError,
    KeyNotFound,
    KeyCorrupt,
    KeyMismatch,
    DecryptFailure,
)
from .chat_key import ChatKey, ChatKeyProtocol
from .cipher import (
    UNREADABLE,
    DecryptedMessage,
    EncryptedPayload,
    MessageCipher,
)

__all__ = [
    'CryptoError',
    'KeyNotFound',
    'KeyCorrupt',
    'KeyMismatch',
    'DecryptFailure',
    'ChatKey',
    'ChatKeyProtocol',
    'UNREADABLE',
    'DecryptedMessage',
    'EncryptedPayload',
    'MessageCipher',
]
