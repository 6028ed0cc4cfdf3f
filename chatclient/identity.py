"""
Per-user asymmetric identity.

Generates the RSA keypair used for key wrapping, keeps the private half in the
device's KeyVault and publishes the public half to the identity directory,
where it may be written only once.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey

from chatcrypto import KeyCorrupt, KeyNotFound
from chatcrypto.primitives import (
    RSA_KEY_SIZE,
    deserialize_private_key,
    deserialize_public_key,
    generate_rsa_keypair,
    serialize_private_key,
    serialize_public_key,
)
from chatstore import ConcurrentModification, PermissionDenied, Store, WriteBatch
from chatstore import paths
from chatstore.rules import KEY_ALREADY_PUBLISHED

from .errors import IdentityNotFound, KeyAlreadyPublished
from .models import Profile
from .storage import KeyVault

logger = logging.getLogger(__name__)


@dataclass
class KeyPair:
    """RSA keypair for one identity"""
    private_key: RSAPrivateKey
    public_key: RSAPublicKey

    @property
    def public_pem(self) -> str:
        return serialize_public_key(self.public_key)


class AsymmetricIdentity:
    """
    Keypair lifecycle for the identities used on this device.
    """

    def __init__(self, store: Store, vault: KeyVault, key_size: int = RSA_KEY_SIZE):
        self.store = store
        self.vault = vault
        self.key_size = key_size

    async def generate_keypair(self) -> KeyPair:
        """
        Generate a fresh RSA keypair.

        Returns:
            New KeyPair
        """
        private_key, public_key = await asyncio.to_thread(generate_rsa_keypair, self.key_size)
        return KeyPair(private_key, public_key)

    async def persist_private_key(self, identity_id: str, private_key: RSAPrivateKey) -> None:
        """
        Store the private key on this device only.

        Args:
            identity_id: Owner of the key
            private_key: Key to store
        """
        await asyncio.to_thread(self.vault.put, identity_id, serialize_private_key(private_key))

    async def load_private_key(self, identity_id: str) -> RSAPrivateKey:
        """
        Load the private key stored on this device.

        Args:
            identity_id: Owner of the key

        Returns:
            The RSA private key

        Raises:
            KeyNotFound: If no key was stored or storage was cleared
            KeyCorrupt: If the entry is unreadable; the entry is purged
        """
        try:
            data = await asyncio.to_thread(self.vault.get, identity_id)
            if data is None:
                raise KeyNotFound(f"No private key stored for {identity_id}")
            return deserialize_private_key(data)
        except KeyCorrupt:
            logger.warning("Private key for %s is corrupt; removing it from this device", identity_id)
            await asyncio.to_thread(self.vault.delete, identity_id)
            raise

    async def purge_private_key(self, identity_id: str) -> None:
        await asyncio.to_thread(self.vault.delete, identity_id)

    async def publish_public_key(self, identity_id: str, public_key: RSAPublicKey) -> None:
        """
        Publish the public key, once.

        Republishing the identical key is a no-op.

        Raises:
            KeyAlreadyPublished: If a different key is already published
        """
        pem = serialize_public_key(public_key)
        path = paths.public_key(identity_id)

        existing = await self.store.get(path)
        if existing is not None:
            if existing != pem:
                raise KeyAlreadyPublished(f"Public key for {identity_id} differs from the published one")
            return

        batch = WriteBatch().set(path, pem).require_absent(path)
        try:
            await self.store.commit(batch)
        except ConcurrentModification:
            # Someone published first; only the identical key is acceptable.
            if await self.store.get(path) != pem:
                raise KeyAlreadyPublished(f"Public key for {identity_id} was published concurrently")
        except PermissionDenied as e:
            if e.reason == KEY_ALREADY_PUBLISHED:
                raise KeyAlreadyPublished(str(e))
            raise

    async def fetch_public_key(self, identity_id: str) -> RSAPublicKey:
        """
        Raises:
            IdentityNotFound: If no usable key is published for the id
        """
        pem = await self.store.get(paths.public_key(identity_id))
        if not isinstance(pem, str):
            raise IdentityNotFound(f"No public key published for {identity_id}")
        try:
            return deserialize_public_key(pem)
        except ValueError:
            raise IdentityNotFound(f"Published key for {identity_id} is not a valid RSA key")

    async def get_profile(self, identity_id: str) -> Optional[Profile]:
        return Profile.from_dict(await self.store.get(paths.profile(identity_id)))

    async def update_profile(self, identity_id: str, profile: Profile) -> None:
        await self.store.commit(WriteBatch().set(paths.profile(identity_id), profile.to_dict()))

    async def create_account(
        self, identity_id: str, display_name: str, avatar_ref: Optional[str] = None
    ) -> KeyPair:
        """
        Set up a new identity on this device.

        Generates the keypair, keeps the private key local, publishes the
        public key and writes the profile.

        Returns:
            The new KeyPair
        """
        keypair = await self.generate_keypair()
        await self.persist_private_key(identity_id, keypair.private_key)
        await self.publish_public_key(identity_id, keypair.public_key)
        await self.update_profile(identity_id, Profile(display_name, avatar_ref))
        logger.info("Created identity %s", identity_id)
        return keypair
