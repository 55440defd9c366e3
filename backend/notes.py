import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from access import Access, resolve_permission
from db import Note, NoteRevision, NoteShare, User
from errors import ForbiddenError, InternalError, NotFoundError
from revisions import RevisionLedger

logger = logging.getLogger(__name__)


class NoteLocks:
    """Per-note critical sections for read-increment-write of ``version``.

    An entry lives only while some task holds or waits on it.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, note_id: str):
        lock = self._locks.setdefault(note_id, asyncio.Lock())
        self._users[note_id] = self._users.get(note_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[note_id] -= 1
            if not self._users[note_id]:
                del self._users[note_id]
                del self._locks[note_id]


@dataclass
class NoteAccess:
    """A note paired with what the requesting user may do with it"""
    note: Note
    access: Access

    @property
    def permission(self) -> Optional[str]:
        return self.access.permission.value if self.access.permission else None

    @property
    def role(self) -> str:
        return self.access.role


@dataclass
class PendingShare:
    note: Note
    share: NoteShare


@dataclass
class SharedNote:
    note: Note
    shares: List[NoteShare] = field(default_factory=list)


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class NoteStore:
    """Note aggregate operations, each gated by ``resolve_permission``."""

    def __init__(self, db: AsyncSession, presence=None, locks: Optional[NoteLocks] = None):
        self.db = db
        self.presence = presence
        self.locks = locks if locks is not None else NoteLocks()
        self.ledger = RevisionLedger(db)

    # Loading and access

    async def _load_note(self, note_id: str, for_update: bool = False) -> Note:
        stmt = select(Note).where(Note.id == note_id).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        note = (await self.db.execute(stmt)).scalar_one_or_none()
        if note is None:
            logger.warning(f"Note not found: {note_id}")
            raise NotFoundError("Note not found")
        return note

    async def _ensure_exists(self, note_id: str) -> None:
        # Checked before a lock is taken so unknown ids never get one
        if await self.db.scalar(select(Note.id).where(Note.id == note_id)) is None:
            logger.warning(f"Note not found: {note_id}")
            raise NotFoundError("Note not found")

    async def authorize(self, note: Note, user_id: str) -> Access:
        if user_id == note.owner_id:
            return resolve_permission(note.owner_id, [], user_id)
        result = await self.db.execute(
            select(NoteShare).where(
                NoteShare.note_id == note.id,
                NoteShare.recipient_user_id == user_id,
            )
        )
        return resolve_permission(note.owner_id, result.scalars().all(), user_id)

    async def _authorize_read(self, note: Note, user_id: str) -> Access:
        access = await self.authorize(note, user_id)
        if not access.can_read:
            logger.warning(f"User {user_id} denied access to note {note.id}")
            raise ForbiddenError("You do not have permission to access this note")
        return access

    async def _authorize_write(self, note: Note, user_id: str) -> Access:
        access = await self._authorize_read(note, user_id)
        if not access.can_write:
            logger.warning(f"User {user_id} denied edit of note {note.id}")
            raise ForbiddenError("You do not have permission to edit this note")
        return access

    async def commit(self, failure_message: str) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"{failure_message}: {e}")
            raise InternalError(failure_message)

    async def check_access(self, user_id: str, note_id: str) -> Access:
        return (await self.get_note(note_id, user_id)).access

    # Single note operations

    async def create_note(self, owner_id: str, title: str, content: str = "") -> NoteAccess:
        owner = await self.db.get(User, owner_id)
        if owner is None:
            raise NotFoundError("User not found")

        note = Note(title=title, content=content or "", owner_id=owner_id, version=1)
        self.db.add(note)
        await self.db.flush()
        await self.ledger.snapshot(note, owner_id)
        await self.commit("Failed to create note")
        logger.info(f"Note created successfully with ID: {note.id}")
        return NoteAccess(note, Access.OWNER)

    async def get_note(self, note_id: str, user_id: str) -> NoteAccess:
        note = await self._load_note(note_id)
        access = await self._authorize_read(note, user_id)
        return NoteAccess(note, access)

    async def update_note(
        self,
        note_id: str,
        user_id: str,
        title: Optional[str] = None,
        content: Optional[str] = None,
        is_archived: Optional[bool] = None,
        broadcast: bool = True,
    ) -> NoteAccess:
        """Apply a patch; a content change snapshots the old content first.

        Concurrent writers are serialised per note, so each one snapshots the
        content it replaces and the last to commit becomes the head.
        """
        await self._ensure_exists(note_id)
        async with self.locks.hold(note_id):
            note = await self._load_note(note_id, for_update=True)
            access = await self._authorize_write(note, user_id)

            changed = False
            if content is not None and content != note.content:
                await self.ledger.snapshot(note, user_id)
                note.increment_version()
                note.content = content
                changed = True
            if title is not None and title != note.title:
                note.title = title
                changed = True
            if is_archived is not None and is_archived != note.is_archived:
                note.is_archived = is_archived
                changed = True

            if changed:
                note.updated_at = datetime.utcnow()
                await self.commit("Failed to update note")
                logger.info(f"Note {note_id} updated by {user_id}, now at version {note.version}")
            else:
                # Nothing to write; end the transaction to release the row lock
                await self.commit("Failed to update note")

        if changed and broadcast:
            await self._broadcast_update(note, user_id)
        return NoteAccess(note, access)

    async def delete_note(self, note_id: str, user_id: str) -> None:
        note = (await self.get_note(note_id, user_id)).note
        if note.owner_id != user_id:
            raise ForbiddenError("Only the owner can delete this note")

        # Revisions, then shares, then the note itself
        try:
            await self.ledger.purge(note_id)
            await self.db.execute(delete(NoteShare).where(NoteShare.note_id == note_id))
            await self.db.delete(note)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Database error deleting note {note_id}: {e}")
            raise InternalError("Failed to delete note")

        logger.info(f"Note deleted successfully: {note_id}")
        if self.presence is not None:
            await self.presence.notify_room(
                note_id,
                "notification",
                {"message": "This note has been deleted", "noteId": note_id, "action": "note-deleted"},
                exclude_user=user_id,
            )
            await self.presence.close_room(note_id)

    # Revisions

    async def get_revisions(self, note_id: str, user_id: str) -> List[NoteRevision]:
        note = (await self.get_note(note_id, user_id)).note
        return await self.ledger.history(note)

    async def restore_revision(self, note_id: str, revision_id: str, user_id: str) -> NoteAccess:
        await self._ensure_exists(note_id)
        async with self.locks.hold(note_id):
            note = await self._load_note(note_id, for_update=True)
            access = await self._authorize_write(note, user_id)
            revision = await self.ledger.get(note_id, revision_id)

            await self.ledger.snapshot(note, user_id)
            note.increment_version()
            note.content = revision.content
            note.updated_at = datetime.utcnow()
            await self.commit("Failed to restore note revision")
            logger.info(
                f"Note {note_id} restored to revision {revision_id} (v{revision.version}), "
                f"now at version {note.version}"
            )

        await self._broadcast_update(note, user_id)
        return NoteAccess(note, access)

    # Listings

    async def list_notes(self, user_id: str, include_archived: bool = False) -> List[NoteAccess]:
        stmt = select(Note).where(Note.owner_id == user_id)
        if not include_archived:
            stmt = stmt.where(Note.is_archived.is_(False))
        result = await self.db.execute(stmt.order_by(Note.updated_at.desc()))
        return [NoteAccess(note, Access.OWNER) for note in result.scalars().all()]

    async def list_archived(self, user_id: str) -> List[NoteAccess]:
        result = await self.db.execute(
            select(Note)
            .where(Note.owner_id == user_id, Note.is_archived.is_(True))
            .order_by(Note.updated_at.desc())
        )
        return [NoteAccess(note, Access.OWNER) for note in result.scalars().all()]

    def _active_shares_for(self, user_id: str):
        return and_(
            NoteShare.recipient_user_id == user_id,
            NoteShare.is_accepted.is_(True),
            NoteShare.is_revoked.is_(False),
            Note.owner_id != user_id,
        )

    async def _shared_with(self, user_id: str, *criteria) -> List[NoteAccess]:
        result = await self.db.execute(
            select(Note, NoteShare)
            .join(NoteShare, NoteShare.note_id == Note.id)
            .where(self._active_shares_for(user_id), *criteria)
            .order_by(Note.updated_at.desc())
        )
        by_note: Dict[str, NoteAccess] = {}
        for note, share in result.all():
            access = Access.for_share(share.permission)
            current = by_note.get(note.id)
            if current is None or (access.can_write and not current.access.can_write):
                by_note[note.id] = NoteAccess(note, access)
        return list(by_note.values())

    async def list_shared_with(self, user_id: str) -> List[NoteAccess]:
        return await self._shared_with(user_id)

    async def list_shared_by(self, user_id: str) -> List[SharedNote]:
        result = await self.db.execute(
            select(Note, NoteShare)
            .join(NoteShare, NoteShare.note_id == Note.id)
            .where(Note.owner_id == user_id, NoteShare.is_revoked.is_(False))
            .order_by(Note.updated_at.desc(), NoteShare.created_at.asc())
        )
        by_note: Dict[str, SharedNote] = {}
        for note, share in result.all():
            by_note.setdefault(note.id, SharedNote(note)).shares.append(share)
        return list(by_note.values())

    async def search_notes(self, user_id: str, query: str) -> List[NoteAccess]:
        """Case-insensitive substring search over owned and shared notes"""
        pattern = _like_pattern(query)
        matches = or_(
            Note.title.ilike(pattern, escape="\\"),
            Note.content.ilike(pattern, escape="\\"),
        )
        owned = await self.db.execute(
            select(Note)
            .where(Note.owner_id == user_id, Note.is_archived.is_(False), matches)
            .order_by(Note.updated_at.desc())
        )
        results = [NoteAccess(note, Access.OWNER) for note in owned.scalars().all()]
        results.extend(await self._shared_with(user_id, Note.is_archived.is_(False), matches))
        return results

    async def get_pending_shares(self, user_id: str) -> List[PendingShare]:
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")

        pending_filter = and_(NoteShare.is_accepted.is_(False), NoteShare.is_revoked.is_(False))
        by_id = await self.db.execute(
            select(NoteShare, Note)
            .join(Note, Note.id == NoteShare.note_id)
            .where(NoteShare.recipient_user_id == user_id, pending_filter)
            .order_by(NoteShare.created_at.asc())
        )
        by_email = await self.db.execute(
            select(NoteShare, Note)
            .join(Note, Note.id == NoteShare.note_id)
            .where(
                func.lower(NoteShare.recipient_email) == user.email.lower(),
                NoteShare.recipient_user_id.is_(None),
                pending_filter,
            )
            .order_by(NoteShare.created_at.asc())
        )

        # One entry per note, preferring a share that can still be redeemed
        pending: Dict[str, PendingShare] = {}
        for share, note in [*by_id.all(), *by_email.all()]:
            current = pending.get(note.id)
            if current is None or (share.share_token and not current.share.share_token):
                pending[note.id] = PendingShare(note, share)
        logger.info(f"Found {len(pending)} pending shares for user {user_id}")
        return list(pending.values())

    async def _broadcast_update(self, note: Note, user_id: str) -> None:
        if self.presence is None:
            return
        await self.presence.notify_room(
            note.id,
            "content-update",
            {
                "noteId": note.id,
                "title": note.title,
                "content": note.content,
                "version": note.version,
                "isArchived": note.is_archived,
                "userId": user_id,
                "timestamp": datetime.utcnow().isoformat(),
            },
            exclude_user=user_id,
        )
