"""
Conversation directory.

Ties identity, key protocol, invites and membership together: creates
conversations, keeps the user's live conversation list, and hands resolved
chat keys to the message layer.
"""

import asyncio
import logging
import time
import uuid
from typing import Callable, Dict, List, Optional

from chatcrypto import UNREADABLE, ChatKey, ChatKeyProtocol, MessageCipher
from chatstore import PermissionDenied, Store, Subscription, WriteBatch
from chatstore import paths
from chatstore.base import invoke_callback
from chatstore.rules import BLOCKED

from .errors import CannotCreate, ChatKeyMissing, NotAParticipant, StaleInvite
from .identity import AsymmetricIdentity
from .invites import InviteOutcome, InviteResolver
from .membership import MembershipRecord, MembershipState, MembershipStateMachine
from .models import (
    CREATED_PREVIEW,
    PLACEHOLDER_NAME,
    Conversation,
    ConversationSummary,
    Invite,
    Preferences,
)

logger = logging.getLogger(__name__)


class ConversationDirectory:
    """
    The set of conversations one user is part of.
    """

    def __init__(
        self,
        store: Store,
        identity: AsymmetricIdentity,
        membership: Optional[MembershipStateMachine] = None,
        invites: Optional[InviteResolver] = None,
        key_protocol: Optional[ChatKeyProtocol] = None,
        cipher: Optional[MessageCipher] = None,
        preview_length: int = 40,
    ):
        self.store = store
        self.user_id = store.user_id
        self.identity = identity
        self.membership = membership or MembershipStateMachine(store, identity)
        self.invites = invites or InviteResolver(store)
        self.key_protocol = key_protocol or ChatKeyProtocol()
        self.cipher = cipher or MessageCipher()
        self.preview_length = preview_length

        self._keys: Dict[str, ChatKey] = {}
        self._subscriptions: List[Subscription] = []
        self._refresh_lock = asyncio.Lock()

    # ============ Creation ============

    async def create_conversation(self, other_id: str) -> str:
        """
        Start a two-party conversation, or return the existing one.

        Args:
            other_id: Identity to chat with

        Returns:
            Conversation id

        Raises:
            ValueError: If other_id is the user's own id
            IdentityNotFound: If other_id has no published key
            CannotCreate: If a block exists in either direction
        """
        if other_id == self.user_id:
            raise ValueError("You cannot start a chat with yourself.")

        await self.membership.ensure_can_create(other_id)
        public_keys = {
            self.user_id: await self.identity.fetch_public_key(self.user_id),
            other_id: await self.identity.fetch_public_key(other_id),
        }

        existing = await self.find_existing(set(public_keys))
        if existing:
            return existing

        chat_key = await self.key_protocol.generate_chat_key()
        wrapped = await self.key_protocol.wrap_for_participants(chat_key, public_keys)
        preview = await self.cipher.encrypt(CREATED_PREVIEW, chat_key)

        cid = uuid.uuid4().hex
        now = time.time()
        batch = WriteBatch()
        batch.set(paths.conversation_meta(cid), {"created_by": self.user_id, "created_at": now})
        for uid, wrapped_key in wrapped.items():
            batch.set(paths.participant(cid, uid), True)
            batch.set(paths.wrapped_key(cid, uid), wrapped_key)
        batch.set(paths.last_message(cid), preview.to_dict())
        batch.set(paths.last_activity(cid), now)
        batch.set(paths.membership(self.user_id, cid), True)
        batch.set(paths.invite(other_id, cid), Invite(cid, other_id, self.user_id, now).to_dict())
        batch.require_absent(paths.conversation_meta(cid))

        try:
            await self.store.commit(batch)
        except PermissionDenied as e:
            if e.reason == BLOCKED:
                self.membership.note_blocked_by({other_id})
                raise CannotCreate(str(e))
            raise

        self._keys[cid] = chat_key
        logger.info("Created conversation %s", cid)
        return cid

    async def find_existing(self, participants: set) -> Optional[str]:
        """Id of an active conversation with exactly these participants"""
        for cid in await self.membership.membership_ids():
            conversation = await self._read(cid)
            if conversation and conversation.participants == participants and conversation.is_usable:
                return cid
        return None

    # ============ Listing ============

    async def _read(self, cid: str) -> Optional[Conversation]:
        try:
            return await self.membership.read_conversation(cid)
        except PermissionDenied:
            return None

    async def list_conversations(self) -> List[ConversationSummary]:
        """
        Visible conversations, most recently active first.

        Conversations with a peer the user has blocked are hidden, not
        deleted.
        """
        blocked = await self.membership.blocked_ids()
        summaries = []

        for cid in await self.membership.membership_ids():
            conversation = await self._read(cid)
            if conversation is None or self.user_id not in conversation.participants:
                continue

            current = set(conversation.peers(self.user_id))
            departed = set(conversation.snapshots) - conversation.participants - {self.user_id}
            if current & blocked:
                continue

            peer_ids = sorted(current | departed)
            names = []
            for peer in peer_ids:
                profile = None
                if peer in current:
                    profile = await self.identity.get_profile(peer)
                profile = profile or conversation.snapshots.get(peer)
                names.append(profile.display_name if profile else PLACEHOLDER_NAME)

            summaries.append(ConversationSummary(
                id=cid,
                peer_ids=peer_ids,
                peer_names=names,
                preview=await self._preview(conversation),
                last_activity=conversation.last_activity,
                peer_left=bool(departed) and not current,
            ))

        summaries.sort(key=lambda s: (s.last_activity, s.id), reverse=True)
        return summaries

    async def _preview(self, conversation: Conversation) -> Optional[str]:
        chat_key = self._keys.get(conversation.id)
        if chat_key is None or conversation.last_message is None:
            return None
        text = await self.cipher.decrypt(
            conversation.last_message.nonce, conversation.last_message.ciphertext, chat_key
        )
        return None if text is UNREADABLE else text

    def subscribe(self, callback: Callable) -> Subscription:
        """
        Watch the user's conversation list.

        Every change to the membership index, invite queue or blocked set
        runs a reconciliation pass over pending invites and then delivers a
        fresh list to callback.

        Returns:
            Subscription; call unsubscribe() to stop
        """
        group: Optional[Subscription] = None

        async def on_change(snapshot):
            if snapshot is None or group is None or not group.active:
                return
            async with self._refresh_lock:
                await self.invites.resolve_pending()
                summaries = await self.list_conversations()
            if group.active:
                await invoke_callback(callback, summaries)

        prefixes = (
            paths.memberships(self.user_id),
            paths.invites(self.user_id),
            paths.blocked_set(self.user_id),
        )
        group = Subscription.combine(
            paths.memberships(self.user_id),
            *(self.store.watch(prefix, on_change) for prefix in prefixes)
        )
        self._subscriptions.append(group)
        return group

    # ============ Keys ============

    async def resolve_key(self, conversation_id: str) -> ChatKey:
        """
        Unwrap the conversation's chat key for this user.

        Returns:
            ChatKey, cached for the rest of the session

        Raises:
            NotAParticipant: If the user cannot read the conversation
            ChatKeyMissing: If no wrapped key exists for the user
            KeyNotFound: If the private key is not on this device
            KeyCorrupt: If the local private key is unreadable
            KeyMismatch: If the wrapped key was not made for this user's key
        """
        cached = self._keys.get(conversation_id)
        if cached is not None:
            return cached

        conversation = await self._read(conversation_id)
        if conversation is None or self.user_id not in conversation.participants:
            raise NotAParticipant(f"Not a participant of {conversation_id}")

        wrapped = conversation.wrapped_keys.get(self.user_id)
        if wrapped is None:
            raise ChatKeyMissing(f"No wrapped key for {self.user_id} in {conversation_id}")

        private_key = await self.identity.load_private_key(self.user_id)
        chat_key = await self.key_protocol.unwrap(wrapped, private_key)
        self._keys[conversation_id] = chat_key
        return chat_key

    def cached_key(self, conversation_id: str) -> Optional[ChatKey]:
        return self._keys.get(conversation_id)

    def forget_keys(self) -> None:
        self._keys.clear()

    # ============ Membership ============

    async def join(self, conversation_id: str) -> InviteOutcome:
        """
        Accept the invite for a conversation.

        Raises:
            StaleInvite: If the conversation does not include the user
        """
        outcome = await self.invites.resolve(conversation_id)
        if outcome == InviteOutcome.REJECTED:
            raise StaleInvite(f"Invite to {conversation_id} is no longer valid")
        if outcome == InviteOutcome.ALREADY_RESOLVED:
            record = await self.membership.derive(conversation_id)
            if record.state in (MembershipState.LEFT, MembershipState.DELETED):
                raise StaleInvite(f"Invite to {conversation_id} is no longer valid")
        return outcome

    async def derive(self, conversation_id: str) -> MembershipRecord:
        return await self.membership.derive(conversation_id)

    async def block(self, other_id: str) -> None:
        await self.membership.block(other_id)

    async def unblock(self, other_id: str) -> None:
        await self.membership.unblock(other_id)

    async def clear_history(self, conversation_id: str, now: Optional[float] = None) -> float:
        return await self.membership.clear_history(conversation_id, now)

    async def leave(self, conversation_id: str) -> MembershipState:
        self._keys.pop(conversation_id, None)
        return await self.membership.leave(conversation_id)

    async def leave_all(self) -> Dict[str, MembershipState]:
        self.forget_keys()
        return await self.membership.leave_all()

    async def delete_account(self) -> None:
        self.close()
        await self.membership.delete_account()

    async def get_preferences(self) -> Preferences:
        return await self.membership.get_preferences()

    async def set_preferences(self, preferences: Preferences) -> None:
        await self.membership.set_preferences(preferences)

    async def purge_expired(self, now: Optional[float] = None) -> List[str]:
        expired = await self.membership.purge_expired(now)
        for cid in expired:
            self._keys.pop(cid, None)
        return expired

    def close(self) -> None:
        """Stop every list subscription and discard cached chat keys"""
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        self.forget_keys()
