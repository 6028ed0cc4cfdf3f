"""
Invite reconciliation.

An invite is only a hint that someone added us to a conversation. The
authoritative answer is the conversation's participant set; the resolver
checks it, records durable membership, and consumes the invite. Every write
it makes is idempotent, so two devices resolving the same invite at once end
in the same state.
"""

import asyncio
import logging
from enum import Enum
from typing import Dict

from chatstore import Store, WriteBatch
from chatstore import paths

from .models import Invite

logger = logging.getLogger(__name__)


class InviteOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    ALREADY_RESOLVED = "already_resolved"


class InviteResolver:
    """
    Converts pending invites for one user into membership entries.
    """

    def __init__(self, store: Store):
        self.store = store
        self.user_id = store.user_id
        self._in_flight: Dict[str, asyncio.Task] = {}

    async def resolve(self, conversation_id: str) -> InviteOutcome:
        """
        Resolve the pending invite for one conversation.

        Concurrent calls for the same conversation share a single resolution.

        Args:
            conversation_id: Conversation named by the invite

        Returns:
            InviteOutcome
        """
        task = self._in_flight.get(conversation_id)
        if task is None:
            task = asyncio.ensure_future(self._resolve(conversation_id))
            self._in_flight[conversation_id] = task
            task.add_done_callback(lambda _: self._in_flight.pop(conversation_id, None))
        return await asyncio.shield(task)

    async def _resolve(self, cid: str) -> InviteOutcome:
        invite_path = paths.invite(self.user_id, cid)
        data = await self.store.get(invite_path)
        if data is None:
            return InviteOutcome.ALREADY_RESOLVED
        invite = Invite.from_dict(cid, self.user_id, data if isinstance(data, dict) else {})

        is_participant = await self.store.get(paths.participant(cid, self.user_id)) is not None

        batch = WriteBatch().delete(invite_path)
        if is_participant:
            batch.set(paths.membership(self.user_id, cid), True)
        await self.store.commit(batch)

        if is_participant:
            logger.info("Invite to %s from %s accepted", cid, invite.from_id)
            return InviteOutcome.ACCEPTED
        logger.warning("Invite to %s from %s is stale; discarded", cid, invite.from_id)
        return InviteOutcome.REJECTED

    async def resolve_pending(self) -> Dict[str, InviteOutcome]:
        """
        Reconcile every invite currently queued for the user.

        Returns:
            Conversation id -> outcome
        """
        queued = await self.store.read(paths.invites(self.user_id))
        cids = sorted({rel.split("/")[0] for rel in queued if rel})
        outcomes = await asyncio.gather(*(self.resolve(cid) for cid in cids))
        return dict(zip(cids, outcomes))
