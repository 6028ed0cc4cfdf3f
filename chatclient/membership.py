"""
Membership state machine.

Per-user, per-conversation state is derived rather than stored: it follows
from the conversation's participant set, the user's blocked set and the
user's cleared marker.

    Active --block--> Blocked --unblock--> Active
    Active --leave--> Left      (others remain)
    Active --leave--> Deleted   (last participant)

Clearing history is orthogonal to all of the above. Every mutation is a
single multi-path batch; leaves carry preconditions and are retried on
concurrent modification.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from chatstore import ConcurrentModification, PermissionDenied, Store, WriteBatch
from chatstore import paths

from .errors import CannotCreate
from .identity import AsymmetricIdentity
from .models import PLACEHOLDER_NAME, Conversation, Preferences, Profile

logger = logging.getLogger(__name__)


class MembershipState(str, Enum):
    ACTIVE = "active"
    BLOCKED = "blocked"
    LEFT = "left"
    DELETED = "deleted"


@dataclass
class MembershipRecord:
    """Derived view of one user's relation to one conversation"""
    conversation_id: str
    state: MembershipState
    cleared_at: Optional[float] = None
    peers: Set[str] = field(default_factory=set)
    blocked_peers: Set[str] = field(default_factory=set)

    @property
    def can_send(self) -> bool:
        return self.state == MembershipState.ACTIVE

    def is_visible(self, sent_at: float) -> bool:
        """Whether a message survives this user's cleared marker"""
        return self.cleared_at is None or sent_at > self.cleared_at


class MembershipStateMachine:
    """
    Block, clear, leave and account-level transitions for one user.
    """

    def __init__(self, store: Store, identity: AsymmetricIdentity, max_retries: int = 3):
        self.store = store
        self.identity = identity
        self.user_id = store.user_id
        self.max_retries = max_retries
        # Peers known to have blocked us. Their blocked sets are private, so
        # this is only learned when the store refuses a write.
        self.blocked_by: Set[str] = set()

    # ============ Derived state ============

    async def blocked_ids(self) -> Set[str]:
        entries = await self.store.read(paths.blocked_set(self.user_id))
        return {rel for rel, value in entries.items() if rel and value}

    async def cleared_at(self, conversation_id: str) -> Optional[float]:
        value = await self.store.get(paths.cleared(self.user_id, conversation_id))
        return float(value) if value is not None else None

    def note_blocked_by(self, peer_ids) -> None:
        """Record that a write involving these peers was refused as blocked"""
        self.blocked_by.update(peer_ids)
        logger.warning("Store refused a write to %s: blocked", ", ".join(sorted(peer_ids)))

    async def read_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """
        Returns:
            The conversation, or None if it no longer exists

        Raises:
            PermissionDenied: If the user is not a participant
        """
        entries = await self.store.read(paths.conversation(conversation_id))
        return Conversation.from_entries(conversation_id, entries)

    async def derive(self, conversation_id: str) -> MembershipRecord:
        """
        Compute the user's membership state for one conversation.
        """
        try:
            conversation = await self.read_conversation(conversation_id)
        except PermissionDenied:
            return MembershipRecord(conversation_id, MembershipState.LEFT)

        if conversation is None:
            return MembershipRecord(conversation_id, MembershipState.DELETED)
        if self.user_id not in conversation.participants:
            return MembershipRecord(conversation_id, MembershipState.LEFT)

        peers = set(conversation.peers(self.user_id))
        blocked = peers & (await self.blocked_ids() | self.blocked_by)
        state = MembershipState.BLOCKED if blocked else MembershipState.ACTIVE
        return MembershipRecord(
            conversation_id,
            state,
            cleared_at=await self.cleared_at(conversation_id),
            peers=peers,
            blocked_peers=blocked,
        )

    async def ensure_can_create(self, other_id: str) -> None:
        """
        Raises:
            CannotCreate: If either side is known to have blocked the other
        """
        if other_id in await self.blocked_ids():
            raise CannotCreate(f"{other_id} is blocked")
        if other_id in self.blocked_by:
            raise CannotCreate(f"{other_id} has blocked this user")

    # ============ Block / clear ============

    async def block(self, other_id: str) -> None:
        """Hide conversations with other_id and refuse new ones; no data is deleted"""
        await self.store.commit(WriteBatch().set(paths.blocked(self.user_id, other_id), True))
        logger.info("Blocked %s", other_id)

    async def unblock(self, other_id: str) -> None:
        await self.store.commit(WriteBatch().delete(paths.blocked(self.user_id, other_id)))
        logger.info("Unblocked %s", other_id)

    async def clear_history(self, conversation_id: str, now: Optional[float] = None) -> float:
        """
        Hide every message sent up to now, for this user only.

        Returns:
            The cleared-marker timestamp
        """
        marker = time.time() if now is None else now
        await self.store.commit(WriteBatch().set(paths.cleared(self.user_id, conversation_id), marker))
        logger.info("Cleared history of %s", conversation_id)
        return marker

    # ============ Leave ============

    def _forget(self, conversation_id: str) -> WriteBatch:
        """User-owned entries that go away with a conversation"""
        return (
            WriteBatch()
            .delete(paths.membership(self.user_id, conversation_id))
            .delete(paths.cleared(self.user_id, conversation_id))
            .delete(paths.invite(self.user_id, conversation_id))
        )

    async def _finish_if_out(self, conversation_id: str) -> Tuple[Optional[MembershipState], Optional[Conversation]]:
        """
        Re-read the conversation; if the user is already out, drop their own
        bookkeeping and return the final state.
        """
        try:
            conversation = await self.read_conversation(conversation_id)
            denied = False
        except PermissionDenied:
            conversation, denied = None, True

        if conversation is not None and self.user_id in conversation.participants:
            return None, conversation

        await self.store.commit(self._forget(conversation_id))
        if conversation is None and not denied:
            return MembershipState.DELETED, None
        return MembershipState.LEFT, None

    async def leave(self, conversation_id: str) -> MembershipState:
        """
        Leave a conversation.

        The last participant to leave deletes the conversation and its
        messages. Otherwise only the user's participant entry and wrapped key
        are removed, after recording a snapshot of their profile for the
        remaining participants if none exists yet.

        Returns:
            MembershipState.LEFT or MembershipState.DELETED

        Raises:
            ConcurrentModification: If the leave kept racing other writers
                and the user is still a participant
        """
        last_error: Optional[ConcurrentModification] = None

        for attempt in range(self.max_retries):
            done, conversation = await self._finish_if_out(conversation_id)
            if done is not None:
                return done

            remaining = conversation.participants - {self.user_id}
            batch = self._forget(conversation_id)
            batch.require_exists(paths.participant(conversation_id, self.user_id))

            if remaining:
                if self.user_id not in conversation.snapshots:
                    profile = await self.identity.get_profile(self.user_id) or Profile(PLACEHOLDER_NAME)
                    batch.set(paths.snapshot(conversation_id, self.user_id), profile.to_dict())
                batch.delete(paths.participant(conversation_id, self.user_id))
                batch.delete(paths.wrapped_key(conversation_id, self.user_id))
                for other in sorted(remaining):
                    batch.require_exists(paths.participant(conversation_id, other))
                outcome = MembershipState.LEFT
            else:
                batch.delete(paths.conversation(conversation_id))
                batch.delete(paths.messages(conversation_id))
                outcome = MembershipState.DELETED

            try:
                await self.store.commit(batch)
            except ConcurrentModification as e:
                logger.warning("Leave of %s raced another writer (attempt %d)", conversation_id, attempt + 1)
                last_error = e
                continue

            logger.info("Left %s (%s)", conversation_id, outcome.value)
            return outcome

        # Out of retries: whoever won the race may already have removed us.
        done, _ = await self._finish_if_out(conversation_id)
        if done is not None:
            return done
        raise last_error or ConcurrentModification(paths.participant(conversation_id, self.user_id), True)

    async def membership_ids(self) -> List[str]:
        entries = await self.store.read(paths.memberships(self.user_id))
        return sorted(rel for rel, value in entries.items() if rel and value)

    async def leave_all(self) -> Dict[str, MembershipState]:
        """Leave every conversation in the user's membership index"""
        outcomes = {}
        for cid in await self.membership_ids():
            outcomes[cid] = await self.leave(cid)
        return outcomes

    async def delete_account(self) -> None:
        """
        Leave everything and remove the user's data.

        The published public key stays behind as a tombstone, so the identity
        can never be taken over by a different key.
        """
        await self.leave_all()
        batch = (
            WriteBatch()
            .delete(paths.profile(self.user_id))
            .delete(paths.memberships(self.user_id))
            .delete(paths.invites(self.user_id))
            .delete(paths.blocked_set(self.user_id))
            .delete(paths.cleared_markers(self.user_id))
            .delete(paths.preferences(self.user_id))
        )
        await self.store.commit(batch)
        await self.identity.purge_private_key(self.user_id)
        logger.info("Deleted account %s", self.user_id)

    # ============ Retention ============

    async def get_preferences(self) -> Preferences:
        return Preferences.from_dict(await self.store.get(paths.preferences(self.user_id)))

    async def set_preferences(self, preferences: Preferences) -> None:
        await self.store.commit(WriteBatch().set(paths.preferences(self.user_id), preferences.to_dict()))

    async def purge_expired(self, now: Optional[float] = None) -> List[str]:
        """
        Leave conversations inactive for longer than the auto-delete window.

        Only applies when delete-on-inactivity is enabled.

        Returns:
            Ids of the conversations left
        """
        preferences = await self.get_preferences()
        window = preferences.auto_delete.seconds
        if window is None or not preferences.delete_on_inactivity:
            return []

        cutoff = (time.time() if now is None else now) - window
        expired = []
        for cid in await self.membership_ids():
            try:
                conversation = await self.read_conversation(cid)
            except PermissionDenied:
                conversation = None
            if conversation is None or conversation.last_activity < cutoff:
                await self.leave(cid)
                expired.append(cid)

        if expired:
            logger.info("Auto-deleted %d inactive conversations", len(expired))
        return expired
