"""
Store implementation backed by the chat server.

Reads and commits go over HTTP; change notifications arrive over a single
WebSocket shared by every watch of this store.
"""

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Optional, Set, Tuple

import httpx
import websockets
import websockets.exceptions

from chatstore import (
    ConcurrentModification,
    PermissionDenied,
    Store,
    StoreError,
    Subscription,
    WriteBatch,
)
from chatstore.base import WatchCallback, invoke_callback

logger = logging.getLogger(__name__)


class AuthenticationError(StoreError):
    user_message = "Invalid username or password."


class ServiceUnavailable(StoreError):
    """The chat server could not be reached or failed to answer"""
    user_message = "The chat service is unreachable. Try again later."


# Failures of the change feed connection itself, as opposed to the server
# refusing us.
FEED_ERRORS = (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException)
MAX_RECONNECT_DELAY = 30.0


class RemoteStore(Store):
    """
    One signed-in user's connection to the chat server.
    """

    reconnect_delay = 1.0

    def __init__(self, server_url: str, token: str, user_id: str, http_client: Optional[httpx.AsyncClient] = None):
        """
        Args:
            server_url: Base URL of the chat server
            token: JWT access token
            user_id: Identity the token was issued for
            http_client: Client to reuse; one is created if omitted
        """
        self.server_url = server_url.rstrip("/")
        self.ws_url = self.server_url.replace("http", "ws", 1) + "/ws"
        self.token = token
        self.user_id = user_id
        self.http_client = http_client or httpx.AsyncClient()

        self.websocket = None
        self._watches: Dict[str, Tuple[str, WatchCallback]] = {}
        self._connect_lock = asyncio.Lock()
        self._receive_task: Optional[asyncio.Task] = None
        self._reconnecting = False
        self._tasks = set()

    # ============ Accounts ============

    @classmethod
    async def _authenticate(cls, endpoint: str, server_url: str, username: str, password: str) -> "RemoteStore":
        http_client = httpx.AsyncClient()
        try:
            response = await http_client.post(
                f"{server_url.rstrip('/')}/api/{endpoint}",
                json={"username": username, "password": password}
            )
        except httpx.HTTPError as e:
            await http_client.aclose()
            raise ServiceUnavailable(f"{endpoint} failed: {e!r}") from e

        if response.status_code != 200:
            await http_client.aclose()
            detail = response.json().get("detail", "Unknown error")
            raise AuthenticationError(f"{endpoint} failed: {detail}")

        data = response.json()
        return cls(server_url, data["access_token"], data["username"], http_client)

    @classmethod
    async def register(cls, server_url: str, username: str, password: str) -> "RemoteStore":
        """Create an account and return a store signed in to it"""
        return await cls._authenticate("register", server_url, username, password)

    @classmethod
    async def login(cls, server_url: str, username: str, password: str) -> "RemoteStore":
        return await cls._authenticate("login", server_url, username, password)

    async def list_users(self) -> list:
        data = await self._request("GET", "/api/users")
        return data["users"]

    # ============ Store ============

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code == 403:
            detail = response.json().get("detail") or {}
            raise PermissionDenied(detail.get("reason", "forbidden"), detail.get("path"))
        if response.status_code == 409:
            detail = response.json().get("detail") or {}
            raise ConcurrentModification(detail.get("path", ""), bool(detail.get("exists")))
        if response.status_code == 401:
            raise AuthenticationError("Token rejected by the server")
        if response.is_error:
            raise ServiceUnavailable(f"{response.request.method} {response.request.url.path} returned {response.status_code}")

    async def _request(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self.http_client.request(
                method, f"{self.server_url}{endpoint}", headers=self._headers, **kwargs
            )
        except httpx.HTTPError as e:
            raise ServiceUnavailable(f"{method} {endpoint} failed: {e!r}") from e
        self._raise_for_status(response)
        return response.json()

    async def get(self, path: str) -> Any:
        data = await self._request("GET", "/api/data", params={"path": path})
        return data["value"]

    async def read(self, prefix: str) -> Dict[str, Any]:
        data = await self._request("GET", "/api/tree", params={"prefix": prefix})
        return data["entries"]

    async def commit(self, batch: WriteBatch) -> None:
        await self._request("POST", "/api/commit", json=batch.to_dict())

    # ============ Change feed ============

    def watch(self, prefix: str, callback: WatchCallback) -> Subscription:
        watch_id = uuid.uuid4().hex
        self._watches[watch_id] = (prefix, callback)
        self._spawn(self._send_watch(watch_id, prefix))
        return Subscription(prefix, on_cancel=lambda: self._unwatch(watch_id))

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Change feed task failed", exc_info=task.exception())

    def _unwatch(self, watch_id: str) -> None:
        if self._watches.pop(watch_id, None) is not None and self.websocket is not None:
            self._spawn(self._send({"type": "unwatch", "id": watch_id}))

    async def _send_watch(self, watch_id: str, prefix: str) -> None:
        try:
            replayed = await self._connect()
        except FEED_ERRORS as e:
            logger.warning("Change feed unavailable (%s); will retry", e)
            self._schedule_reconnect()
            return
        if watch_id in self._watches and watch_id not in replayed:
            await self._send({"type": "watch", "id": watch_id, "prefix": prefix})

    async def _send(self, message: dict) -> None:
        try:
            await self.websocket.send(json.dumps(message))
        except websockets.exceptions.ConnectionClosed:
            logger.warning("Change feed closed while sending %s", message.get("type"))

    async def _connect(self) -> Set[str]:
        """
        Open the change feed if it is not open yet.

        A fresh connection re-registers every active watch, so the server
        sends each one a current snapshot.

        Returns:
            Ids of the watches registered by this call
        """
        async with self._connect_lock:
            if self.websocket is not None:
                return set()
            websocket = await websockets.connect(self.ws_url)
            await websocket.send(json.dumps({"type": "auth", "token": self.token}))
            data = json.loads(await websocket.recv())
            if data.get("type") != "auth_success":
                await websocket.close()
                raise AuthenticationError(data.get("message", "Change feed authentication failed"))

            replayed = set()
            try:
                for watch_id, (prefix, _) in list(self._watches.items()):
                    await websocket.send(json.dumps({"type": "watch", "id": watch_id, "prefix": prefix}))
                    replayed.add(watch_id)
            except FEED_ERRORS:
                await websocket.close()
                raise

            self.websocket = websocket
            self._receive_task = asyncio.create_task(self._receive_loop(websocket))
            self._receive_task.add_done_callback(self._task_done)
            return replayed

    def _schedule_reconnect(self) -> None:
        if self._watches and not self._reconnecting:
            self._reconnecting = True
            self._spawn(self._reconnect())

    async def _reconnect(self) -> None:
        delay = self.reconnect_delay
        try:
            while self._watches and self.websocket is None:
                await asyncio.sleep(delay)
                try:
                    await self._connect()
                except FEED_ERRORS as e:
                    logger.warning("Change feed reconnect failed: %s", e)
                    delay = min(max(delay, 0.5) * 2, MAX_RECONNECT_DELAY)
            if self.websocket is not None:
                logger.info("Change feed reconnected with %d watches", len(self._watches))
        finally:
            self._reconnecting = False

    async def _receive_loop(self, websocket) -> None:
        try:
            async for raw in websocket:
                data = json.loads(raw)
                if data.get("type") == "changed":
                    entry = self._watches.get(data.get("id"))
                    if entry is None:
                        continue
                    try:
                        await invoke_callback(entry[1], data.get("data"))
                    except Exception:
                        logger.exception("Watch callback for %s failed", entry[0])
                elif data.get("type") == "error":
                    logger.warning("Server error on change feed: %s", data.get("message"))
            logger.info("Change feed closed")
        except websockets.exceptions.ConnectionClosed:
            logger.info("Change feed closed")
        if self.websocket is websocket:
            self.websocket = None
            self._schedule_reconnect()

    async def close(self) -> None:
        self._watches.clear()
        if self._receive_task is not None:
            self._receive_task.cancel()
            self._receive_task = None
        for task in list(self._tasks):
            task.cancel()
        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None
        await self.http_client.aclose()
