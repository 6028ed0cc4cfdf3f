"""
Path layout of the shared store.

The store is a tree of JSON leaves addressed by slash-separated paths. Every
write path used by the client and every rule used by the server is built from
the helpers below, so the layout lives in exactly one place.
"""

from typing import List

SEPARATOR = "/"


def validate_segment(segment: str) -> str:
    """
    Check a single path segment.

    Raises:
        ValueError: If the segment is empty or contains a separator
    """
    if not isinstance(segment, str) or not segment:
        raise ValueError("Path segments must be non-empty strings")
    if SEPARATOR in segment or segment in (".", ".."):
        raise ValueError(f"Invalid path segment: {segment!r}")
    return segment


def join(*segments: str) -> str:
    """Build a path from validated segments"""
    return SEPARATOR.join(validate_segment(s) for s in segments)


def split(path: str) -> List[str]:
    """Split a path into its segments, validating each one"""
    if not path:
        return []
    return [validate_segment(s) for s in path.split(SEPARATOR)]


def is_under(path: str, prefix: str) -> bool:
    """True if path equals prefix or is a descendant of it"""
    return path == prefix or path.startswith(prefix + SEPARATOR)


def overlaps(a: str, b: str) -> bool:
    """True if one path is an ancestor of (or equal to) the other"""
    return is_under(a, b) or is_under(b, a)


def relative(path: str, prefix: str) -> str:
    """Path relative to prefix ("" when they are equal)"""
    if path == prefix:
        return ""
    return path[len(prefix) + 1:]


# Identity directory

def profile(uid: str) -> str:
    return join("users", uid, "profile")


def public_key(uid: str) -> str:
    return join("users", uid, "public_key")


# Conversations

def conversation(cid: str) -> str:
    return join("conversations", cid)


def conversation_meta(cid: str) -> str:
    return join("conversations", cid, "meta")


def participants(cid: str) -> str:
    return join("conversations", cid, "participants")


def participant(cid: str, uid: str) -> str:
    return join("conversations", cid, "participants", uid)


def wrapped_key(cid: str, uid: str) -> str:
    return join("conversations", cid, "keys", uid)


def snapshot(cid: str, uid: str) -> str:
    return join("conversations", cid, "snapshots", uid)


def last_message(cid: str) -> str:
    return join("conversations", cid, "last_message")


def last_activity(cid: str) -> str:
    return join("conversations", cid, "last_activity")


# Messages

def messages(cid: str) -> str:
    return join("messages", cid)


def message(cid: str, mid: str) -> str:
    return join("messages", cid, mid)


# Per-user stores

def memberships(uid: str) -> str:
    return join("memberships", uid)


def membership(uid: str, cid: str) -> str:
    return join("memberships", uid, cid)


def invites(uid: str) -> str:
    return join("invites", uid)


def invite(uid: str, cid: str) -> str:
    return join("invites", uid, cid)


def blocked_set(uid: str) -> str:
    return join("blocked", uid)


def blocked(uid: str, other: str) -> str:
    return join("blocked", uid, other)


def cleared_markers(uid: str) -> str:
    return join("cleared", uid)


def cleared(uid: str, cid: str) -> str:
    return join("cleared", uid, cid)


def preferences(uid: str) -> str:
    return join("preferences", uid)


def with_dependents(changed: List[str]) -> List[str]:
    """
    Changed paths plus the prefixes whose readability they affect.

    A conversation's participant set decides who may read its messages, so a
    participant change also touches the message log.
    """
    out = list(changed)
    for path in changed:
        segs = path.split(SEPARATOR)
        if segs[0] == "conversations" and len(segs) >= 2 and (len(segs) == 2 or segs[2] == "participants"):
            out.append(messages(segs[1]))
    return out
