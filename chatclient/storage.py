"""
Device-local storage for private keys.

The private key never leaves the device it was generated on; it is kept in a
KeyVault keyed by identity id. EncryptedKeyVault stores each identity in its
own SQLite file, encrypted with a key derived from the user's password.
"""

import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from chatcrypto import KeyCorrupt
from chatstore.paths import validate_segment

NONCE_BYTES = 12
SALT_BYTES = 16
VERIFIER = b"cipherchat-vault"


class InvalidPassword(ValueError):
    """The vault password does not match the one the entry was written with"""
    user_message = "Incorrect password for the local key store."


class KeyVault(ABC):
    """
    Keychain capability injected into AsymmetricIdentity.
    """

    @abstractmethod
    def get(self, identity_id: str) -> Optional[bytes]:
        """
        Returns:
            Stored bytes, or None if nothing is stored

        Raises:
            KeyCorrupt: If the entry exists but cannot be read back
        """

    @abstractmethod
    def put(self, identity_id: str, data: bytes) -> None:
        """Store bytes for the identity, replacing any previous entry"""

    @abstractmethod
    def delete(self, identity_id: str) -> None:
        """Remove the identity's entry; absent entries are ignored"""


class MemoryKeyVault(KeyVault):
    """In-process vault, used by tests and throwaway sessions"""

    def __init__(self):
        self._entries: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, identity_id: str) -> Optional[bytes]:
        with self._lock:
            return self._entries.get(identity_id)

    def put(self, identity_id: str, data: bytes) -> None:
        with self._lock:
            self._entries[identity_id] = bytes(data)

    def delete(self, identity_id: str) -> None:
        with self._lock:
            self._entries.pop(identity_id, None)


class EncryptedKeyVault(KeyVault):
    """
    Password-protected vault, one SQLite file per identity.

    Each file holds the encrypted key plus a password verifier; the salt
    lives next to it.
    Separate files mean one identity on the device can neither read nor
    overwrite another identity's key.
    """

    def __init__(self, password: str, storage_dir: str = "client_data", iterations: int = 100000):
        """
        Initialize encrypted vault.

        Args:
            password: Password the entries are encrypted under
            storage_dir: Directory to store encrypted data
            iterations: PBKDF2 iteration count
        """
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self._password = password
        self._iterations = iterations

    def _db_path(self, identity_id: str) -> Path:
        return self.storage_dir / f"{validate_segment(identity_id)}.db"

    def _salt_path(self, identity_id: str) -> Path:
        return self.storage_dir / f"{validate_segment(identity_id)}.salt"

    def derive_key(self, salt: bytes) -> bytes:
        """
        Derive encryption key from password using PBKDF2.

        Args:
            salt: Salt for key derivation

        Returns:
            32-byte encryption key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self._iterations,
        )
        return kdf.derive(self._password.encode())

    def _connect(self, identity_id: str) -> sqlite3.Connection:
        db = sqlite3.connect(str(self._db_path(identity_id)))
        try:
            db.execute("""
                CREATE TABLE IF NOT EXISTS keys (
                    key_type TEXT PRIMARY KEY,
                    encrypted_data BLOB NOT NULL
                )
            """)
        except sqlite3.Error:
            db.close()
            raise
        return db

    def get(self, identity_id: str) -> Optional[bytes]:
        db_path = self._db_path(identity_id)
        salt_path = self._salt_path(identity_id)
        if not db_path.exists():
            return None

        try:
            db = self._connect(identity_id)
            try:
                rows = dict(db.execute("SELECT key_type, encrypted_data FROM keys").fetchall())
            finally:
                db.close()
        except sqlite3.DatabaseError as e:
            raise KeyCorrupt(f"Vault file for {identity_id} is unreadable: {e}")

        if "private" not in rows:
            return None
        if not salt_path.exists() or "verifier" not in rows:
            raise KeyCorrupt("Vault metadata is missing")

        key = self.derive_key(salt_path.read_bytes())
        aad = identity_id.encode()
        try:
            self._decrypt(key, rows["verifier"], aad)
        except (InvalidTag, ValueError):
            raise InvalidPassword(f"Wrong password for vault entry {identity_id}")
        try:
            return self._decrypt(key, rows["private"], aad)
        except (InvalidTag, ValueError) as e:
            raise KeyCorrupt(f"Vault entry failed authentication: {e!r}")

    def put(self, identity_id: str, data: bytes) -> None:
        salt_path = self._salt_path(identity_id)
        salt = os.urandom(SALT_BYTES)
        salt_path.write_bytes(salt)

        key = self.derive_key(salt)
        aad = identity_id.encode()

        db = self._connect(identity_id)
        try:
            db.executemany(
                "INSERT OR REPLACE INTO keys (key_type, encrypted_data) VALUES (?, ?)",
                [
                    ("verifier", self._encrypt(key, VERIFIER, aad)),
                    ("private", self._encrypt(key, data, aad)),
                ]
            )
            db.commit()
        finally:
            db.close()

    @staticmethod
    def _encrypt(key: bytes, data: bytes, aad: bytes) -> bytes:
        nonce = os.urandom(NONCE_BYTES)
        return nonce + AESGCM(key).encrypt(nonce, data, aad)

    @staticmethod
    def _decrypt(key: bytes, blob: bytes, aad: bytes) -> bytes:
        return AESGCM(key).decrypt(blob[:NONCE_BYTES], blob[NONCE_BYTES:], aad)

    def delete(self, identity_id: str) -> None:
        for path in (self._db_path(identity_id), self._salt_path(identity_id)):
            if path.exists():
                path.unlink()
