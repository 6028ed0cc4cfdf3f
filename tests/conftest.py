"""
Shared fixtures: in-memory users wired the way a device would wire them.
"""

import pytest

from chatclient.directory import ConversationDirectory
from chatclient.identity import AsymmetricIdentity
from chatclient.session import ChatSession
from chatclient.storage import KeyVault, MemoryKeyVault
from chatstore import MemoryDatabase


class Device:
    """One user's client stack on one device"""

    def __init__(self, db: MemoryDatabase, user_id: str, vault: KeyVault = None):
        self.user_id = user_id
        self.store = db.connect(user_id)
        self.vault = vault or MemoryKeyVault()
        self.identity = AsymmetricIdentity(self.store, self.vault)
        self.directory = ConversationDirectory(self.store, self.identity)
        self.membership = self.directory.membership
        self.invites = self.directory.invites
        self.session = ChatSession(self.directory)


@pytest.fixture
def make_device():
    """Factory for a signed-up user: keypair generated, key published, profile written"""

    async def _make(db: MemoryDatabase, user_id: str, display_name: str = None) -> Device:
        device = Device(db, user_id)
        await device.identity.create_account(user_id, display_name or user_id.title())
        return device

    return _make


@pytest.fixture
def second_device():
    """Another device for an existing user, sharing that user's key vault"""

    def _make(db: MemoryDatabase, device: Device) -> Device:
        return Device(db, device.user_id, vault=device.vault)

    return _make
