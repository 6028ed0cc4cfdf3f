"""
Client-side views of the records kept in the shared store.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from chatcrypto import EncryptedPayload

PLACEHOLDER_NAME = "Unknown User"
CREATED_PREVIEW = "Chat created"


@dataclass
class Profile:
    """Display information from the identity directory"""
    display_name: str
    avatar_ref: Optional[str] = None

    def to_dict(self) -> dict:
        return {"display_name": self.display_name, "avatar_ref": self.avatar_ref}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["Profile"]:
        if not isinstance(data, dict) or "display_name" not in data:
            return None
        return cls(display_name=data["display_name"], avatar_ref=data.get("avatar_ref"))


@dataclass
class Conversation:
    """
    One conversation as read from conversations/{cid}.
    """
    id: str
    created_by: str
    created_at: float
    participants: FrozenSet[str]
    wrapped_keys: Dict[str, str] = field(default_factory=dict)
    snapshots: Dict[str, Profile] = field(default_factory=dict)
    last_message: Optional[EncryptedPayload] = None
    last_activity: float = 0.0

    @property
    def is_usable(self) -> bool:
        """Every participant has a wrapped key"""
        return bool(self.participants) and all(uid in self.wrapped_keys for uid in self.participants)

    def peers(self, user_id: str) -> List[str]:
        return sorted(self.participants - {user_id})

    @classmethod
    def from_entries(cls, cid: str, entries: Dict[str, Any]) -> Optional["Conversation"]:
        """
        Build from a prefix read of conversations/{cid}.

        Args:
            cid: Conversation id
            entries: Relative path -> value, as returned by Store.read

        Returns:
            Conversation, or None if the conversation does not exist
        """
        meta = entries.get("meta")
        if not isinstance(meta, dict):
            return None

        participants = set()
        wrapped_keys = {}
        snapshots = {}
        for rel, value in entries.items():
            parts = rel.split("/")
            if len(parts) != 2:
                continue
            kind, uid = parts
            if kind == "participants" and value:
                participants.add(uid)
            elif kind == "keys" and isinstance(value, str):
                wrapped_keys[uid] = value
            elif kind == "snapshots":
                snap = Profile.from_dict(value)
                if snap:
                    snapshots[uid] = snap

        preview = entries.get("last_message")
        return cls(
            id=cid,
            created_by=meta.get("created_by", ""),
            created_at=float(meta.get("created_at", 0.0)),
            participants=frozenset(participants),
            wrapped_keys=wrapped_keys,
            snapshots=snapshots,
            last_message=EncryptedPayload.from_dict(preview) if isinstance(preview, dict) else None,
            last_activity=float(entries.get("last_activity") or meta.get("created_at", 0.0)),
        )


@dataclass(frozen=True)
class Message:
    """A stored message (still encrypted)"""
    id: str
    sender_id: str
    nonce: str
    ciphertext: str
    sent_at: float

    def to_dict(self) -> dict:
        return {
            "sender_id": self.sender_id,
            "nonce": self.nonce,
            "ciphertext": self.ciphertext,
            "sent_at": self.sent_at,
        }

    @classmethod
    def from_dict(cls, mid: str, data: dict) -> "Message":
        return cls(
            id=mid,
            sender_id=data["sender_id"],
            nonce=data["nonce"],
            ciphertext=data["ciphertext"],
            sent_at=float(data["sent_at"]),
        )


@dataclass(frozen=True)
class Invite:
    """Pending signal that from_id added target_id to a conversation"""
    conversation_id: str
    target_id: str
    from_id: str
    created_at: float

    def to_dict(self) -> dict:
        return {"from_id": self.from_id, "created_at": self.created_at}

    @classmethod
    def from_dict(cls, conversation_id: str, target_id: str, data: dict) -> "Invite":
        return cls(
            conversation_id=conversation_id,
            target_id=target_id,
            from_id=data.get("from_id", ""),
            created_at=float(data.get("created_at", 0.0)),
        )


class AutoDelete(str, Enum):
    """Retention windows offered by the auto-delete setting"""
    NEVER = "never"
    HOURS_24 = "24h"
    HOURS_48 = "48h"
    WEEK = "1w"
    MONTH = "1m"
    MONTHS_3 = "3m"

    @property
    def seconds(self) -> Optional[float]:
        return _WINDOWS[self]


_DAY = 24 * 60 * 60
_WINDOWS = {
    AutoDelete.NEVER: None,
    AutoDelete.HOURS_24: 1 * _DAY,
    AutoDelete.HOURS_48: 2 * _DAY,
    AutoDelete.WEEK: 7 * _DAY,
    AutoDelete.MONTH: 30 * _DAY,
    AutoDelete.MONTHS_3: 90 * _DAY,
}


@dataclass
class Preferences:
    """Per-user retention settings"""
    auto_delete: AutoDelete = AutoDelete.NEVER
    delete_on_inactivity: bool = False

    def to_dict(self) -> dict:
        return {"auto_delete": self.auto_delete.value, "delete_on_inactivity": self.delete_on_inactivity}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "Preferences":
        if not isinstance(data, dict):
            return cls()
        try:
            auto_delete = AutoDelete(data.get("auto_delete", AutoDelete.NEVER.value))
        except ValueError:
            auto_delete = AutoDelete.NEVER
        return cls(auto_delete=auto_delete, delete_on_inactivity=bool(data.get("delete_on_inactivity")))


@dataclass
class ConversationSummary:
    """A row of the conversation list"""
    id: str
    peer_ids: List[str]
    peer_names: List[str]
    preview: Optional[str]
    last_activity: float
    peer_left: bool = False

    @property
    def title(self) -> str:
        return ", ".join(self.peer_names) or PLACEHOLDER_NAME


def truncate_preview(text: str, length: int = 40) -> str:
    """Shorten message text for the conversation list"""
    if len(text) > length:
        return text[:length] + "..."
    return text
