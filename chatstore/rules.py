"""
Access rules for the shared store.

These are the authorization checks the store applies on behalf of every
caller. Both the in-memory database and the server evaluate batches against
the same rules, using the state as it was before the batch.
"""

from typing import Any, Dict, List, Protocol, Set

from . import paths
from .base import PermissionDenied, WriteBatch

# Denial reasons carried on PermissionDenied
NOT_OWNER = "not_owner"
NOT_A_PARTICIPANT = "not_a_participant"
BLOCKED = "blocked"
APPEND_ONLY = "append_only"
APPEND_ONCE = "append_once"
KEY_ALREADY_PUBLISHED = "key_already_published"
IMMUTABLE = "immutable"
CREATOR_MISMATCH = "creator_mismatch"
PARTICIPANTS_REMAIN = "participants_remain"
INVITE_PENDING = "invite_pending"
SENDER_MISMATCH = "sender_mismatch"
UNKNOWN_PATH = "unknown_path"

OWNER_ONLY = ("memberships", "blocked", "cleared", "preferences")
CONVERSATION_FIELDS = ("meta", "participants", "keys", "snapshots", "last_message", "last_activity")


class Reader(Protocol):
    """Raw, unchecked access to the current state"""

    async def get(self, path: str) -> Any: ...

    async def read(self, prefix: str) -> Dict[str, Any]: ...


async def current_participants(reader: Reader, cid: str) -> Set[str]:
    entries = await reader.read(paths.participants(cid))
    return {key for key in entries if key and "/" not in key}


class AccessRules:
    """
    Read and write authorization for an authenticated user id.
    """

    async def check_read(self, uid: str, path: str, reader: Reader) -> None:
        """
        Raises:
            PermissionDenied: If uid may not read path
        """
        segs = paths.split(path)
        if len(segs) < 2:
            raise PermissionDenied(UNKNOWN_PATH, path)

        top = segs[0]
        if top == "users":
            return
        if top in OWNER_ONLY or top == "invites":
            if segs[1] != uid:
                raise PermissionDenied(NOT_OWNER, path)
            return
        if top == "conversations":
            cid = segs[1]
            if path == paths.participant(cid, uid):
                return
            parts = await current_participants(reader, cid)
            if uid in parts:
                return
            if not parts and await reader.get(paths.conversation_meta(cid)) is None:
                return
            raise PermissionDenied(NOT_A_PARTICIPANT, path)
        if top == "messages":
            if uid not in await current_participants(reader, segs[1]):
                raise PermissionDenied(NOT_A_PARTICIPANT, path)
            return
        raise PermissionDenied(UNKNOWN_PATH, path)

    async def check_commit(self, uid: str, batch: WriteBatch, reader: Reader) -> None:
        """
        Raises:
            PermissionDenied: If any update in the batch is not allowed for uid
        """
        by_conversation: Dict[str, List[str]] = {}

        for path, value in batch.updates.items():
            segs = paths.split(path)
            top = segs[0]

            if top == "users":
                await self._check_user_write(uid, path, segs, value, reader)
            elif top in OWNER_ONLY:
                if len(segs) < 2 or segs[1] != uid:
                    raise PermissionDenied(NOT_OWNER, path)
            elif top == "invites":
                await self._check_invite_write(uid, path, segs, value, reader)
            elif top == "conversations" and len(segs) >= 2:
                by_conversation.setdefault(segs[1], []).append(path)
            elif top == "messages" and len(segs) >= 2:
                await self._check_message_write(uid, path, segs, value, batch, reader)
            else:
                raise PermissionDenied(UNKNOWN_PATH, path)

        for cid, cpaths in by_conversation.items():
            await self._check_conversation_write(uid, cid, cpaths, batch, reader)

    async def _check_user_write(self, uid, path, segs, value, reader) -> None:
        if len(segs) != 3 or segs[1] != uid:
            raise PermissionDenied(NOT_OWNER, path)
        if segs[2] == "profile":
            return
        if segs[2] == "public_key":
            if value is None:
                raise PermissionDenied(APPEND_ONCE, path)
            existing = await reader.get(path)
            if existing is not None and existing != value:
                raise PermissionDenied(KEY_ALREADY_PUBLISHED, path)
            return
        raise PermissionDenied(UNKNOWN_PATH, path)

    async def _check_invite_write(self, uid, path, segs, value, reader) -> None:
        if value is None:
            if len(segs) < 2 or segs[1] != uid:
                raise PermissionDenied(NOT_OWNER, path)
            return

        if len(segs) != 3:
            raise PermissionDenied(UNKNOWN_PATH, path)
        target = segs[1]
        if target == uid or not isinstance(value, dict) or value.get("from_id") != uid:
            raise PermissionDenied(SENDER_MISMATCH, path)
        if await reader.get(path) is not None:
            raise PermissionDenied(INVITE_PENDING, path)
        if await reader.get(paths.blocked(target, uid)) is not None:
            raise PermissionDenied(BLOCKED, path)

    async def _check_message_write(self, uid, path, segs, value, batch, reader) -> None:
        cid = segs[1]
        parts = await current_participants(reader, cid)
        if uid not in parts:
            raise PermissionDenied(NOT_A_PARTICIPANT, path)

        if len(segs) == 2:
            # Only the last participant may drop the message log, together
            # with the conversation itself.
            conv_path = paths.conversation(cid)
            if value is not None or conv_path not in batch.updates or batch.updates[conv_path] is not None:
                raise PermissionDenied(APPEND_ONLY, path)
            return

        if len(segs) != 3 or value is None:
            raise PermissionDenied(APPEND_ONLY, path)
        if await reader.get(path) is not None:
            raise PermissionDenied(APPEND_ONLY, path)
        if not isinstance(value, dict) or value.get("sender_id") != uid:
            raise PermissionDenied(SENDER_MISMATCH, path)
        for other in parts - {uid}:
            if await reader.get(paths.blocked(other, uid)) is not None:
                raise PermissionDenied(BLOCKED, path)

    async def _check_conversation_write(self, uid, cid, cpaths, batch, reader) -> None:
        parts = await current_participants(reader, cid)
        meta = await reader.get(paths.conversation_meta(cid))

        if meta is None and not parts:
            await self._check_creation(uid, cid, cpaths, batch, reader)
            return

        if uid not in parts:
            raise PermissionDenied(NOT_A_PARTICIPANT, paths.conversation(cid))

        for path in cpaths:
            value = batch.updates[path]
            segs = paths.split(path)

            if len(segs) == 2:
                if value is not None or not parts <= {uid}:
                    raise PermissionDenied(PARTICIPANTS_REMAIN, path)
                continue

            field = segs[2]
            if field == "meta":
                raise PermissionDenied(IMMUTABLE, path)
            if field in ("participants", "keys"):
                # A member may only remove themselves; keys are never rewritten.
                if value is not None or len(segs) != 4 or segs[3] != uid:
                    raise PermissionDenied(IMMUTABLE, path)
            elif field == "snapshots":
                if value is None or len(segs) != 4 or segs[3] != uid:
                    raise PermissionDenied(NOT_OWNER, path)
            elif field in ("last_message", "last_activity"):
                if len(segs) != 3:
                    raise PermissionDenied(UNKNOWN_PATH, path)
            else:
                raise PermissionDenied(UNKNOWN_PATH, path)

    async def _check_creation(self, uid, cid, cpaths, batch, reader) -> None:
        meta = batch.updates.get(paths.conversation_meta(cid))
        if not isinstance(meta, dict) or meta.get("created_by") != uid:
            raise PermissionDenied(CREATOR_MISMATCH, paths.conversation_meta(cid))

        new_parts = set()
        for path in cpaths:
            segs = paths.split(path)
            if batch.updates[path] is None or len(segs) < 3 or segs[2] not in CONVERSATION_FIELDS:
                raise PermissionDenied(UNKNOWN_PATH, path)
            if segs[2] == "participants" and len(segs) == 4:
                new_parts.add(segs[3])

        if uid not in new_parts:
            raise PermissionDenied(CREATOR_MISMATCH, paths.participants(cid))

        for path in cpaths:
            segs = paths.split(path)
            if segs[2] in ("keys", "snapshots") and (len(segs) != 4 or segs[3] not in new_parts):
                raise PermissionDenied(UNKNOWN_PATH, path)

        for other in new_parts - {uid}:
            if await reader.get(paths.blocked(other, uid)) is not None:
                raise PermissionDenied(BLOCKED, paths.participant(cid, other))
