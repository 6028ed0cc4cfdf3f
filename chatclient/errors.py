"""
Errors raised by the conversation layer.

Cryptographic failures live in chatcrypto.primitives and store failures in
chatstore.base; every class here carries a user_message suitable for display.
"""


class ChatError(Exception):
    """Base exception for conversation-level failures"""
    user_message = "Something went wrong with this chat."


class CannotCreate(ChatError):
    """Conversation creation refused because of a block relationship"""
    user_message = "You cannot start a chat with this user."


class StaleInvite(ChatError):
    """The invite no longer matches the conversation's participants"""
    user_message = "This invitation is no longer valid."


class IdentityNotFound(ChatError):
    """No published identity exists for the requested id"""
    user_message = "User not found."


class KeyAlreadyPublished(ChatError):
    """A different public key is already published for this identity"""
    user_message = "A different key is already registered for this account."


class ChatKeyMissing(ChatError):
    """The conversation holds no wrapped key for this user"""
    user_message = "This chat is missing its encryption key. It may be an old or corrupted chat."


class NotAParticipant(ChatError):
    """The user is not (or no longer) a participant of the conversation"""
    user_message = "You are not a member of this chat."


class MessagingDisabled(ChatError):
    """Sending is not possible in the conversation's current state"""
    user_message = "Messaging is disabled for this chat."
