"""
FastAPI server exposing the shared store.

This server:
- Handles user registration and authentication (JWT)
- Serves path reads and batch commits, enforcing the access rules
- Pushes change notifications to watching clients over a WebSocket

It stores only ciphertexts and wrapped keys; plaintext never reaches it.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from chatstore import ConcurrentModification, PermissionDenied, WriteBatch
from chatstore import paths

from .auth import Token, create_access_token, current_user_dependency, verify_token
from .config import ServerSettings, get_settings
from .database import Database

logger = logging.getLogger(__name__)


# Pydantic models for API
class UserCredentials(BaseModel):
    username: str
    password: str


class PreconditionModel(BaseModel):
    path: str
    exists: bool


class BatchModel(BaseModel):
    updates: Dict[str, Any]
    preconditions: List[PreconditionModel] = []


class _Connection:
    def __init__(self, username: str, websocket: WebSocket):
        self.username = username
        self.websocket = websocket
        self.watches: Dict[str, str] = {}
        self.send_lock = asyncio.Lock()

    async def send(self, message: dict) -> None:
        async with self.send_lock:
            await self.websocket.send_json(message)


class ConnectionManager:
    """Tracks WebSocket connections and the prefixes each one watches"""

    def __init__(self, db: Database):
        self.db = db
        self.connections: Dict[str, _Connection] = {}

    def connect(self, username: str, websocket: WebSocket) -> str:
        conn_id = uuid.uuid4().hex
        self.connections[conn_id] = _Connection(username, websocket)
        return conn_id

    def disconnect(self, conn_id: str) -> None:
        self.connections.pop(conn_id, None)

    def get_online_users(self) -> List[str]:
        return sorted({conn.username for conn in self.connections.values()})

    async def _snapshot(self, username: str, prefix: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.db.read(username, prefix)
        except PermissionDenied:
            return None

    async def send_snapshot(self, conn_id: str, watch_id: str) -> None:
        conn = self.connections.get(conn_id)
        if conn is None or watch_id not in conn.watches:
            return
        prefix = conn.watches[watch_id]
        snapshot = await self._snapshot(conn.username, prefix)
        await conn.send({"type": "changed", "id": watch_id, "prefix": prefix, "data": snapshot})

    async def notify(self, changed: List[str]) -> None:
        """Send a fresh snapshot to every watch overlapping a changed path"""
        targets: List[Tuple[str, str]] = []
        for conn_id, conn in list(self.connections.items()):
            for watch_id, prefix in list(conn.watches.items()):
                if any(paths.overlaps(prefix, path) for path in changed):
                    targets.append((conn_id, watch_id))

        for conn_id, watch_id in targets:
            try:
                await self.send_snapshot(conn_id, watch_id)
            except (WebSocketDisconnect, RuntimeError):
                logger.info("Dropping closed connection %s", conn_id)
                self.disconnect(conn_id)


def _denied(e: PermissionDenied) -> HTTPException:
    return HTTPException(status_code=403, detail={"reason": e.reason, "path": e.path})


def create_app(settings: Optional[ServerSettings] = None) -> FastAPI:
    """Build the application around one database"""
    settings = settings or get_settings()
    db = Database(settings.DATABASE_URL)
    manager = ConnectionManager(db)
    current_user = current_user_dependency(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await db.create_tables()
        logger.info("Database initialized")
        yield
        await db.dispose()
        logger.info("Server shutting down")

    app = FastAPI(
        title=settings.APP_NAME,
        description="Untrusted shared store for end-to-end encrypted chat",
        version=settings.APP_VERSION,
        lifespan=lifespan
    )
    app.state.db = db
    app.state.manager = manager

    def issue_token(username: str) -> Token:
        access_token = create_access_token(
            data={"sub": username},
            expires_delta=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
            settings=settings,
        )
        return Token(access_token=access_token, token_type="bearer", username=username)

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    @app.post("/api/register", response_model=Token)
    async def register(user_data: UserCredentials):
        """Register a new account; the username is the identity id"""
        try:
            user = await db.create_user(user_data.username, user_data.password)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid username")
        if not user:
            raise HTTPException(status_code=400, detail="Username already exists")
        logger.info("Registered %s", user.username)
        return issue_token(user.username)

    @app.post("/api/login", response_model=Token)
    async def login(user_data: UserCredentials):
        """Authenticate a user and return JWT token"""
        user = await db.authenticate_user(user_data.username, user_data.password)
        if not user:
            raise HTTPException(status_code=401, detail="Invalid username or password")
        return issue_token(user.username)

    @app.get("/api/users")
    async def list_users(username: str = Depends(current_user)):
        return {"users": await db.list_users()}

    @app.get("/api/users/online")
    async def list_online_users(username: str = Depends(current_user)):
        return {"users": manager.get_online_users()}

    @app.get("/api/data")
    async def get_data(path: str = Query(...), username: str = Depends(current_user)):
        try:
            return {"path": path, "value": await db.get(username, path)}
        except PermissionDenied as e:
            raise _denied(e)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.get("/api/tree")
    async def get_tree(prefix: str = Query(...), username: str = Depends(current_user)):
        try:
            return {"prefix": prefix, "entries": await db.read(username, prefix)}
        except PermissionDenied as e:
            raise _denied(e)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.post("/api/commit")
    async def commit(body: BatchModel, username: str = Depends(current_user)):
        try:
            batch = WriteBatch.from_dict(body.model_dump())
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        try:
            changed = await db.commit(username, batch)
        except ConcurrentModification as e:
            raise HTTPException(status_code=409, detail={"path": e.path, "exists": e.expected_exists})
        except PermissionDenied as e:
            logger.info("Refused commit from %s: %s", username, e)
            raise _denied(e)

        await manager.notify(paths.with_dependents(changed))
        return {"status": "ok", "changed": changed}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        WebSocket change feed.

        Protocol:
        1. Client sends: {"type": "auth", "token": "jwt_token"}
        2. Server responds: {"type": "auth_success", "username": "..."}
        3. Client sends: {"type": "watch", "id": "...", "prefix": "..."}
           Server answers at once and after every change below the prefix:
           {"type": "changed", "id": "...", "prefix": "...", "data": {...} | null}
        4. Client sends: {"type": "unwatch", "id": "..."}
        """
        conn_id = None
        await websocket.accept()

        try:
            auth_data = await websocket.receive_json()
            username = verify_token(auth_data.get("token"), settings) if auth_data.get("type") == "auth" else None
            if not username:
                await websocket.send_json({"type": "error", "message": "Authentication required"})
                await websocket.close()
                return

            conn_id = manager.connect(username, websocket)
            conn = manager.connections[conn_id]
            await conn.send({"type": "auth_success", "username": username})

            while True:
                data = await websocket.receive_json()
                kind = data.get("type")

                if kind == "watch":
                    watch_id, prefix = data.get("id"), data.get("prefix")
                    try:
                        paths.split(prefix or "")
                    except ValueError:
                        prefix = None
                    if not watch_id or not prefix:
                        await conn.send({"type": "error", "message": "Invalid watch request"})
                        continue
                    conn.watches[watch_id] = prefix
                    await manager.send_snapshot(conn_id, watch_id)
                elif kind == "unwatch":
                    conn.watches.pop(data.get("id"), None)
                elif kind == "ping":
                    await conn.send({"type": "pong"})

        except WebSocketDisconnect:
            pass
        finally:
            if conn_id:
                manager.disconnect(conn_id)

    return app


app = create_app()


def run():
    import uvicorn

    settings = get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL)
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    run()
