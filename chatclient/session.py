"""
Message layer for the active conversation.

Only one conversation is open at a time. Opening resolves the chat key before
anything else; if that fails the view shows an error instead of history.
Every open bumps a generation counter, and any decrypt still in flight for an
older generation is discarded rather than delivered.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from chatcrypto import ChatKey, CryptoError, DecryptedMessage, MessageCipher
from chatstore import PermissionDenied, StoreError, Subscription, WriteBatch
from chatstore import paths
from chatstore.base import invoke_callback
from chatstore.rules import BLOCKED

from .directory import ConversationDirectory
from .errors import ChatError, MessagingDisabled, NotAParticipant
from .membership import MembershipRecord, MembershipState
from .models import Message, truncate_preview
from .storage import InvalidPassword

logger = logging.getLogger(__name__)


@dataclass
class ConversationView:
    """What the UI shows for the open conversation"""
    conversation_id: str
    messages: List[DecryptedMessage] = field(default_factory=list)
    state: Optional[MembershipState] = None
    can_send: bool = False
    error: Optional[Exception] = None

    @property
    def user_message(self) -> Optional[str]:
        if self.error is None:
            return None
        return getattr(self.error, "user_message", str(self.error))


class ChatSession:
    """
    The open conversation of one signed-in user.
    """

    def __init__(self, directory: ConversationDirectory, cipher: Optional[MessageCipher] = None):
        self.directory = directory
        self.store = directory.store
        self.user_id = directory.user_id
        self.cipher = cipher or directory.cipher

        self.view: Optional[ConversationView] = None
        self._generation = 0
        self._subscription: Optional[Subscription] = None
        self._record: Optional[MembershipRecord] = None
        self._chat_key: Optional[ChatKey] = None
        self._on_update: Optional[Callable] = None

    def _detach(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        self._chat_key = None
        self._record = None
        self._on_update = None

    async def open(self, conversation_id: str, on_update: Optional[Callable] = None) -> ConversationView:
        """
        Make a conversation the active one.

        Args:
            conversation_id: Conversation to open
            on_update: Called with the view after every change

        Returns:
            ConversationView; check view.error before expecting messages
        """
        self._detach()
        self._generation += 1
        generation = self._generation

        view = ConversationView(conversation_id)
        self.view = view
        self._on_update = on_update

        try:
            record = await self.directory.derive(conversation_id)
            if record.state in (MembershipState.LEFT, MembershipState.DELETED):
                raise NotAParticipant(f"Not a participant of {conversation_id}")
            chat_key = await self.directory.resolve_key(conversation_id)
        except (CryptoError, ChatError, StoreError, InvalidPassword) as e:
            logger.warning("Cannot open %s: %s", conversation_id, type(e).__name__)
            view.error = e
            view.can_send = False
            return view

        if generation != self._generation:
            return view

        self._record = record
        self._chat_key = chat_key
        view.state = record.state
        view.can_send = record.can_send

        self._subscription = self.store.watch(
            paths.messages(conversation_id),
            lambda snapshot: self._on_messages(generation, snapshot),
        )
        return view

    async def _on_messages(self, generation: int, snapshot) -> None:
        if generation != self._generation:
            return
        view = self.view

        if snapshot is None:
            view.can_send = False
            view.state = MembershipState.LEFT
            view.error = NotAParticipant(f"No longer a participant of {view.conversation_id}")
            await self._deliver(generation)
            return

        stored = []
        for mid, data in snapshot.items():
            if not mid or "/" in mid:
                continue
            try:
                stored.append(Message.from_dict(mid, data))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed message %s in %s", mid, view.conversation_id)

        decrypted = await self.cipher.decrypt_batch(stored, self._chat_key)
        if generation != self._generation:
            return

        view.messages = self._visible(decrypted)
        await self._deliver(generation)

    def _visible(self, messages: List[DecryptedMessage]) -> List[DecryptedMessage]:
        visible = [m for m in messages if self._record.is_visible(m.sent_at)]
        return sorted(visible, key=lambda m: (m.sent_at, m.id))

    async def _deliver(self, generation: int) -> None:
        if self._on_update is not None and generation == self._generation:
            await invoke_callback(self._on_update, self.view)

    async def send(self, text: str) -> Message:
        """
        Encrypt and send a message to the open conversation.

        The message, the encrypted preview and the activity timestamp are
        written in one batch.

        Returns:
            The stored Message

        Raises:
            MessagingDisabled: If nothing is open, the view is in an error
                state, or a block prevents sending
            NotAParticipant: If the user is no longer in the conversation
        """
        view = self.view
        if view is None or not view.can_send or self._chat_key is None:
            raise MessagingDisabled("No conversation open for sending")
        if not text.strip():
            raise ValueError("Message text is empty")

        cid = view.conversation_id
        now = time.time()
        payload = await self.cipher.encrypt(text, self._chat_key)
        preview = await self.cipher.encrypt(truncate_preview(text, self.directory.preview_length), self._chat_key)
        message = Message(
            id=uuid.uuid4().hex,
            sender_id=self.user_id,
            nonce=payload.nonce,
            ciphertext=payload.ciphertext,
            sent_at=now,
        )

        batch = (
            WriteBatch()
            .set(paths.message(cid, message.id), message.to_dict())
            .set(paths.last_message(cid), preview.to_dict())
            .set(paths.last_activity(cid), now)
        )
        try:
            await self.store.commit(batch)
        except PermissionDenied as e:
            view.can_send = False
            if e.reason == BLOCKED:
                self.directory.membership.note_blocked_by(self._record.peers)
                view.state = MembershipState.BLOCKED
                raise MessagingDisabled(str(e))
            view.state = MembershipState.LEFT
            raise NotAParticipant(str(e))
        return message

    async def clear_history(self) -> None:
        """Hide every message currently in the open conversation, for this user"""
        view = self.view
        if view is None or self._record is None:
            raise MessagingDisabled("No conversation open")
        self._record.cleared_at = await self.directory.clear_history(view.conversation_id)
        view.messages = self._visible(view.messages)
        await self._deliver(self._generation)

    def close(self) -> None:
        """Detach from the open conversation"""
        self._detach()
        self._generation += 1
        self.view = None

    def sign_out(self) -> None:
        """Drop every subscription and every in-memory chat key"""
        self.close()
        self.directory.close()
