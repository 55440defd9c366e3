import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import settings


def _uuid() -> str:
    return str(uuid.uuid4())


def make_engine(database_url: str, **kwargs):
    """Create an async engine for the given URL"""
    return create_async_engine(database_url, echo=settings.db_echo, **kwargs)


def make_session_factory(bind) -> async_sessionmaker:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False, autoflush=False)


# Create engine
engine = make_engine(settings.database_url)
SessionLocal = make_session_factory(engine)

Base = declarative_base()


class UserRole(str, enum.Enum):
    USER = "user"
    ADMIN = "admin"


class IdentityProvider(str, enum.Enum):
    LOCAL = "local"
    GOOGLE = "google"
    FACEBOOK = "facebook"


class SharePermission(str, enum.Enum):
    READ = "read"
    EDIT = "edit"


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String(100), nullable=False)
    email = Column(String(320), unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=True)  # null for externally authenticated identities
    profile_picture = Column(String, nullable=True)
    role = Column(String(20), default=UserRole.USER.value, nullable=False)
    provider = Column(String(20), default=IdentityProvider.LOCAL.value, nullable=False)
    provider_id = Column(String, index=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Note(Base):
    __tablename__ = "notes"

    id = Column(String, primary_key=True, default=_uuid)
    title = Column(String(200), index=True, nullable=False)
    content = Column(Text, default="", nullable=False)
    owner_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    version = Column(Integer, default=1, nullable=False)
    is_archived = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def increment_version(self) -> int:
        self.version += 1
        return self.version


class NoteRevision(Base):
    """Content of a note as it was at a prior version"""
    __tablename__ = "note_revisions"

    id = Column(String, primary_key=True, default=_uuid)
    note_id = Column(String, ForeignKey("notes.id"), index=True, nullable=False)
    version = Column(Integer, nullable=False)
    content = Column(Text, default="", nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class NoteShare(Base):
    """Access grant for a note, addressed to a user id and/or an email"""
    __tablename__ = "note_shares"

    id = Column(String, primary_key=True, default=_uuid)
    note_id = Column(String, ForeignKey("notes.id"), index=True, nullable=False)
    recipient_user_id = Column(String, ForeignKey("users.id"), index=True, nullable=True)
    recipient_email = Column(String(320), index=True, nullable=True)
    permission = Column(String(10), default=SharePermission.READ.value, nullable=False)
    is_accepted = Column(Boolean, default=False, nullable=False)
    is_revoked = Column(Boolean, default=False, nullable=False)
    share_token = Column(String, unique=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def state(self) -> str:
        if self.is_revoked:
            return "revoked"
        if self.is_accepted:
            return "accepted"
        return "pending"


async def get_db():
    """Dependency to get database session"""
    async with SessionLocal() as db:
        try:
            yield db
        except Exception:
            await db.rollback()
            raise


async def init_db(bind=None):
    """Create tables if they don't exist"""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
