"""
Database models and operations for the store server.

Uses SQLAlchemy with SQLite for user accounts and the path tree. The server
stores only what clients write: wrapped keys, ciphertexts and bookkeeping. It
never sees a chat key or a plaintext message.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from passlib.context import CryptContext
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from chatstore import ConcurrentModification, WriteBatch
from chatstore import paths
from chatstore.rules import AccessRules

Base = declarative_base()
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """User account model"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(64), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    is_active = Column(Boolean, default=True)

    def verify_password(self, password: str) -> bool:
        """Verify password against hash"""
        return pwd_context.verify(password, self.hashed_password)

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash a password"""
        return pwd_context.hash(password)


class Node(Base):
    """One leaf of the path tree"""
    __tablename__ = "nodes"

    path = Column(String(512), primary_key=True)
    value = Column(Text, nullable=False)  # JSON
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


def _subtree(prefix: str):
    """Filter matching prefix and every path below it"""
    # "0" sorts directly after "/", so this range is exactly the descendants.
    return or_(
        Node.path == prefix,
        (Node.path >= prefix + paths.SEPARATOR) & (Node.path < prefix + "0"),
    )


class SessionReader:
    """Raw reads inside one session, as used by the access rules"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, path: str) -> Any:
        result = await self.session.execute(select(Node.value).where(Node.path == path))
        value = result.scalar_one_or_none()
        return json.loads(value) if value is not None else None

    async def read(self, prefix: str) -> Dict[str, Any]:
        result = await self.session.execute(select(Node.path, Node.value).where(_subtree(prefix)))
        return {paths.relative(path, prefix): json.loads(value) for path, value in result.all()}

    async def exists(self, path: str) -> bool:
        result = await self.session.execute(select(Node.path).where(_subtree(path)).limit(1))
        return result.first() is not None


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./chat.db", rules: Optional[AccessRules] = None):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
            rules: Access rules applied to reads and commits
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self.rules = rules or AccessRules()
        self._commit_lock = asyncio.Lock()

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    # ============ Accounts ============

    async def create_user(self, username: str, password: str) -> Optional[User]:
        """
        Create a new user account.

        Args:
            username: Unique username, also the user's identity id
            password: Plain text password (will be hashed)

        Returns:
            Created User object or None if username exists
        """
        paths.validate_segment(username)
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            if result.scalar_one_or_none():
                return None

            user = User(username=username, hashed_password=User.hash_password(password))
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    async def get_user(self, username: str) -> Optional[User]:
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            return result.scalar_one_or_none()

    async def authenticate_user(self, username: str, password: str) -> Optional[User]:
        """
        Authenticate a user.

        Returns:
            User object if authenticated, None otherwise
        """
        user = await self.get_user(username)
        if not user or not user.is_active or not user.verify_password(password):
            return None
        return user

    async def list_users(self) -> List[str]:
        async with self.async_session() as session:
            result = await session.execute(select(User.username).where(User.is_active.is_(True)))
            return [row[0] for row in result.all()]

    # ============ Path tree ============

    async def get(self, user_id: str, path: str) -> Any:
        """
        Read one leaf on behalf of user_id.

        Raises:
            PermissionDenied: If the rules forbid the read
        """
        async with self.async_session() as session:
            reader = SessionReader(session)
            await self.rules.check_read(user_id, path, reader)
            return await reader.get(path)

    async def read(self, user_id: str, prefix: str) -> Dict[str, Any]:
        """
        Read a subtree on behalf of user_id.

        Raises:
            PermissionDenied: If the rules forbid the read
        """
        async with self.async_session() as session:
            reader = SessionReader(session)
            await self.rules.check_read(user_id, prefix, reader)
            return await reader.read(prefix)

    async def commit(self, user_id: str, batch: WriteBatch) -> List[str]:
        """
        Apply a batch in one transaction.

        Preconditions and rules are evaluated against the state before the
        batch; commits are serialized so that state cannot move underneath.

        Returns:
            The paths the batch touched

        Raises:
            ConcurrentModification: If a precondition does not hold
            PermissionDenied: If the rules forbid any part of the batch
        """
        async with self._commit_lock:
            async with self.async_session() as session:
                async with session.begin():
                    reader = SessionReader(session)
                    for pre in batch.preconditions:
                        if await reader.exists(pre.path) != pre.exists:
                            raise ConcurrentModification(pre.path, pre.exists)
                    await self.rules.check_commit(user_id, batch, reader)

                    for path in batch.deletes:
                        await session.execute(
                            delete(Node).where(_subtree(path)).execution_options(synchronize_session=False)
                        )
                    for path, value in batch.sets.items():
                        await session.merge(Node(path=path, value=json.dumps(value), updated_at=_utcnow()))

        return list(batch.updates)
