"""Durable chat history: every message the persona has seen, in arrival order."""

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterable

from sqlalchemy import BigInteger, Boolean, Column, String, Text, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from ..core.errors import PersistenceError
from ..utils.config import get_settings
from ..utils.logging import get_logger

logger = get_logger(__name__)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""

    pass


class MessageRecord(Base):
    """SQLAlchemy model for chat messages."""

    __tablename__ = "messages"

    timestamp = Column(BigInteger, primary_key=True, autoincrement=False)
    message_id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    user_id = Column(String(64), nullable=False)
    channel_id = Column(String(64), nullable=False)
    channel_name = Column(String(255), nullable=True)
    guild_id = Column(String(64), nullable=True)
    guild_name = Column(String(255), nullable=True)
    role = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    quote = Column(String(64), nullable=True)
    need_reply = Column(Boolean, nullable=False, default=False)
    origin_id = Column(String(128), nullable=False)
    endpoint = Column(String(32), nullable=True)


@dataclass
class ChatMessage:
    """
    One settled chat message.

    Identified by ``(timestamp, message_id)``. Only ``need_reply`` changes
    after creation.
    """

    timestamp: int
    message_id: str
    name: str
    user_id: str
    channel_id: str
    content: str
    origin_id: str
    role: str = "user"  # user, assistant, system
    channel_name: str | None = None
    guild_id: str | None = None
    guild_name: str | None = None
    quote: str | None = None
    need_reply: bool = False
    endpoint: str | None = None

    @property
    def key(self) -> tuple[int, str]:
        return (self.timestamp, self.message_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    def to_record(self) -> MessageRecord:
        return MessageRecord(**self.to_dict())

    @classmethod
    def from_record(cls, record: MessageRecord) -> "ChatMessage":
        return cls(
            timestamp=record.timestamp,
            message_id=record.message_id,
            name=record.name,
            user_id=record.user_id,
            channel_id=record.channel_id,
            content=record.content,
            origin_id=record.origin_id,
            role=record.role,
            channel_name=record.channel_name,
            guild_id=record.guild_id,
            guild_name=record.guild_name,
            quote=record.quote,
            need_reply=bool(record.need_reply),
            endpoint=record.endpoint,
        )


class HistoryStore:
    """
    Append-only message log backed by SQLAlchemy.

    Features:
    - Idempotent upsert keyed by (timestamp, message_id)
    - Bulk load in timestamp order for the startup mirror
    """

    def __init__(self, db_url: str | None = None, echo: bool | None = None) -> None:
        self.settings = get_settings()
        self._db_url = db_url or self.settings.database.url

        # Ensure async driver
        if "sqlite:///" in self._db_url and "aiosqlite" not in self._db_url:
            self._db_url = self._db_url.replace("sqlite:///", "sqlite+aiosqlite:///")

        # Ensure directory exists
        if "sqlite" in self._db_url and ":memory:" not in self._db_url:
            db_path = self._db_url.split("///")[-1]
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._engine = create_async_engine(
            self._db_url,
            echo=self.settings.database.echo if echo is None else echo,
        )
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database schema."""
        if self._initialized:
            return

        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to initialize history store: {e}") from e

        self._initialized = True
        logger.info("History store initialized", url=self._db_url.split("///")[0])

    async def bulk_load(self) -> list[ChatMessage]:
        """Load every stored message, oldest first."""
        if not self._initialized:
            await self.initialize()

        try:
            async with self._session_factory() as session:
                stmt = select(MessageRecord).order_by(
                    MessageRecord.timestamp, MessageRecord.message_id
                )
                result = await session.execute(stmt)
                messages = [ChatMessage.from_record(r) for r in result.scalars().all()]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load history: {e}") from e

        logger.info("Loaded history", count=len(messages))
        return messages

    async def upsert(self, messages: Iterable[ChatMessage]) -> None:
        """
        Insert or update messages by primary key.

        Raises:
            PersistenceError: if the transaction fails; nothing is written.
        """
        if not self._initialized:
            await self.initialize()

        batch = list(messages)
        if not batch:
            return

        try:
            async with self._session_factory() as session:
                for message in batch:
                    await session.merge(message.to_record())
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to upsert {len(batch)} message(s): {e}") from e

        logger.debug("Upserted messages", count=len(batch))

    async def close(self) -> None:
        """Dispose the engine and its connection pool."""
        await self._engine.dispose()
