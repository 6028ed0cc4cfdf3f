#!/usr/bin/env python3
"""
CLI Client for End-to-End Encrypted Chat

Provides a command-line interface for:
- Account registration and login
- Starting conversations (per-conversation keys wrapped with RSA-OAEP)
- Encrypted messaging (AES-256-GCM)
- Blocking, clearing history, leaving, and account deletion
"""

import asyncio
import getpass
import logging
import sys
from datetime import datetime
from typing import List, Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from chatcrypto import CryptoError
from chatstore import StoreError

from chatclient.config import ClientSettings, get_settings
from chatclient.directory import ConversationDirectory
from chatclient.errors import ChatError
from chatclient.identity import AsymmetricIdentity
from chatclient.membership import MembershipStateMachine
from chatclient.models import AutoDelete, ConversationSummary, Preferences
from chatclient.remote import RemoteStore
from chatclient.session import ChatSession, ConversationView
from chatclient.storage import EncryptedKeyVault, InvalidPassword

HELP = """Commands:
  /chat <username>      - Start (or reopen) a chat with a user
  /open <number>        - Open a conversation from /list
  /list                 - Show conversation list
  /exit                 - Close the current chat
  /clear                - Clear the current chat's history for you
  /leave                - Leave the current chat
  /block <username>     - Block a user
  /unblock <username>   - Unblock a user
  /users                - List all users
  /autodelete <never|24h|48h|1w|1m|3m> [on|off] - Auto-delete inactive chats
  /leaveall             - Leave every chat
  /deleteaccount        - Delete your account
  /quit                 - Quit application"""


class ChatClient:
    """
    End-to-end encrypted chat client.
    """

    def __init__(self, settings: Optional[ClientSettings] = None):
        """
        Initialize chat client.

        Args:
            settings: Client configuration
        """
        self.settings = settings or get_settings()
        self.store: Optional[RemoteStore] = None
        self.directory: Optional[ConversationDirectory] = None
        self.session: Optional[ChatSession] = None
        self.conversations: List[ConversationSummary] = []
        self.current_title: Optional[str] = None
        self._shown = 0
        self.running = False

    def _setup(self, store: RemoteStore, password: str) -> AsymmetricIdentity:
        vault = EncryptedKeyVault(password, self.settings.VAULT_DIR, self.settings.PBKDF2_ITERATIONS)
        identity = AsymmetricIdentity(store, vault, self.settings.RSA_KEY_SIZE)
        membership = MembershipStateMachine(store, identity, self.settings.LEAVE_RETRIES)
        self.store = store
        self.directory = ConversationDirectory(
            store, identity, membership=membership, preview_length=self.settings.PREVIEW_LENGTH
        )
        self.session = ChatSession(self.directory)
        return identity

    async def register(self, username: str, password: str) -> bool:
        """
        Register a new account and publish its public key.

        Returns:
            True if successful
        """
        try:
            store = await RemoteStore.register(self.settings.SERVER_URL, username, password)
        except StoreError as e:
            print(f"Registration failed: {e.user_message}")
            return False

        identity = self._setup(store, password)
        try:
            await identity.create_account(username, username)
        except (StoreError, ChatError) as e:
            print(f"Registration failed: {e.user_message}")
            await store.close()
            return False

        print(f"Registration successful! Welcome, {username}")
        return True

    async def login(self, username: str, password: str) -> bool:
        """
        Login with existing account.

        Returns:
            True if successful
        """
        try:
            store = await RemoteStore.login(self.settings.SERVER_URL, username, password)
        except StoreError as e:
            print(f"Login failed: {e.user_message}")
            return False

        identity = self._setup(store, password)
        try:
            await identity.load_private_key(username)
        except InvalidPassword as e:
            print(e.user_message)
            await store.close()
            return False
        except CryptoError as e:
            # Still usable for listing and settings; chats will show the error.
            print(e.user_message)

        print(f"Login successful! Welcome back, {username}")
        return True

    # ============ Display ============

    def _on_list(self, summaries: List[ConversationSummary]) -> None:
        self.conversations = summaries

    def _on_view(self, view: ConversationView) -> None:
        for message in view.messages[self._shown:]:
            who = "You" if message.sender_id == self.store.user_id else message.sender_id
            timestamp = datetime.fromtimestamp(message.sent_at).strftime("%H:%M")
            print(f"[{timestamp}] {who}: {message.text}")
        self._shown = len(view.messages)
        if view.error is not None:
            print(f"[{view.user_message}]")

    def _print_list(self) -> None:
        if not self.conversations:
            print("No conversations yet. Use /chat <username> to start one.")
            return
        print("Conversations:")
        for number, summary in enumerate(self.conversations, 1):
            left = " (left)" if summary.peer_left else ""
            preview = f" - {summary.preview}" if summary.preview else ""
            print(f"  {number}. {summary.title}{left}{preview}")

    # ============ Commands ============

    async def open_conversation(self, conversation_id: str, title: str) -> None:
        self._shown = 0
        self.current_title = title
        view = await self.session.open(conversation_id, on_update=self._on_view)
        if view.error is not None:
            print(f"[{view.user_message}]")
        else:
            print(f"Chatting with {title}. Type '/exit' to leave chat, '/help' for commands.")

    async def start_chat(self, username: str) -> None:
        cid = await self.directory.create_conversation(username)
        await self.open_conversation(cid, username)

    async def send_message(self, text: str) -> None:
        await self.session.send(text)

    async def list_users(self) -> None:
        print("Registered users:")
        for user in await self.store.list_users():
            if user != self.store.user_id:
                print(f"  - {user}")

    async def set_autodelete(self, args: List[str]) -> None:
        window = AutoDelete(args[0])
        inactivity = len(args) < 2 or args[1].lower() == "on"
        await self.directory.set_preferences(Preferences(window, inactivity))
        expired = await self.directory.purge_expired()
        print(f"Auto-delete set to {window.value}; {len(expired)} inactive chats removed")

    async def run_interactive(self):
        """Run interactive chat session"""
        self.running = True
        list_subscription = self.directory.subscribe(self._on_list)
        await self.directory.invites.resolve_pending()
        await self.directory.purge_expired()
        self.conversations = await self.directory.list_conversations()

        prompt = PromptSession()
        print()
        print(HELP)
        print()

        try:
            while self.running:
                try:
                    prompt_text = f"[{self.current_title}] > " if self.current_title else "> "
                    with patch_stdout():
                        user_input = await prompt.prompt_async(prompt_text)

                    if not user_input:
                        continue

                    if user_input.startswith("/"):
                        await self._handle_command(user_input)
                    elif self.current_title:
                        await self.send_message(user_input)
                    else:
                        print("No active chat. Use /chat <username> to start.")

                except (ChatError, CryptoError, StoreError) as e:
                    print(f"[{e.user_message}]")
                except ValueError as e:
                    print(f"[{e}]")
                except (KeyboardInterrupt, EOFError):
                    break

        finally:
            self.running = False
            list_subscription.unsubscribe()
            self.session.sign_out()
            await self.store.close()

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split()
        cmd = parts[0].lower()
        args = parts[1:]

        if cmd == "/chat" and len(args) == 1:
            await self.start_chat(args[0])
        elif cmd == "/open" and len(args) == 1 and args[0].isdigit():
            index = int(args[0]) - 1
            if not 0 <= index < len(self.conversations):
                print("No such conversation. Use /list.")
                return
            summary = self.conversations[index]
            await self.open_conversation(summary.id, summary.title)
        elif cmd == "/list":
            self.conversations = await self.directory.list_conversations()
            self._print_list()
        elif cmd == "/exit":
            self.session.close()
            self.current_title = None
            print("Exited chat")
        elif cmd == "/clear" and self.session.view:
            await self.session.clear_history()
            self._shown = 0
            print("History cleared")
        elif cmd == "/leave" and self.session.view:
            cid = self.session.view.conversation_id
            self.session.close()
            self.current_title = None
            state = await self.directory.leave(cid)
            print(f"Chat {state.value}")
        elif cmd == "/block" and len(args) == 1:
            await self.directory.block(args[0])
            print(f"Blocked {args[0]}")
        elif cmd == "/unblock" and len(args) == 1:
            await self.directory.unblock(args[0])
            print(f"Unblocked {args[0]}")
        elif cmd == "/users":
            await self.list_users()
        elif cmd == "/autodelete" and 1 <= len(args) <= 2:
            await self.set_autodelete(args)
        elif cmd == "/leaveall":
            self.session.close()
            self.current_title = None
            outcomes = await self.directory.leave_all()
            print(f"Left {len(outcomes)} chats")
        elif cmd == "/deleteaccount":
            confirm = input("Type your username to delete your account: ").strip()
            if confirm != self.store.user_id:
                print("Account not deleted")
                return
            self.session.close()
            await self.directory.delete_account()
            print("Account deleted")
            self.running = False
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP)
        else:
            print("Unknown command. Type /help for help.")


async def main():
    """Main entry point"""
    settings = get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL)
    client = ChatClient(settings)

    print("=" * 50)
    print("End-to-End Encrypted Chat Client")
    print("=" * 50)
    print()

    while True:
        print("1. Register")
        print("2. Login")
        print("3. Quit")
        choice = input("Choose an option: ").strip()

        if choice == "1":
            username = input("Username: ").strip()
            password = getpass.getpass("Password: ")
            if await client.register(username, password):
                break
        elif choice == "2":
            username = input("Username: ").strip()
            password = getpass.getpass("Password: ")
            if await client.login(username, password):
                break
        elif choice == "3":
            return
        else:
            print("Invalid choice")

    await client.run_interactive()
    print("\nGoodbye!")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
