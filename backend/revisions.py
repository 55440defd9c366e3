import logging
from typing import List

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from db import Note, NoteRevision
from errors import NotFoundError

logger = logging.getLogger(__name__)


class RevisionLedger:
    """Append-only log of the content a note held at each prior version."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def snapshot(self, note: Note, author_id: str) -> NoteRevision:
        """Record the note's current content under its current version.

        Must be called before the version is incremented. A snapshot already
        stored for this version with the same content (the one written when
        the note was created) is reused rather than duplicated.
        """
        existing = await self.db.execute(
            select(NoteRevision)
            .where(NoteRevision.note_id == note.id, NoteRevision.version == note.version)
            .order_by(NoteRevision.created_at.desc())
        )
        for revision in existing.scalars():
            if revision.content == note.content:
                return revision

        revision = NoteRevision(
            note_id=note.id,
            version=note.version,
            content=note.content,
            user_id=author_id,
        )
        self.db.add(revision)
        await self.db.flush()
        logger.info(f"Snapshotted note {note.id} at version {note.version}")
        return revision

    async def history(self, note: Note) -> List[NoteRevision]:
        """Revisions for every version before the head, newest first"""
        result = await self.db.execute(
            select(NoteRevision)
            .where(NoteRevision.note_id == note.id, NoteRevision.version < note.version)
            .order_by(NoteRevision.version.desc(), NoteRevision.created_at.desc())
        )
        return list(result.scalars().all())

    async def get(self, note_id: str, revision_id: str) -> NoteRevision:
        result = await self.db.execute(
            select(NoteRevision).where(
                NoteRevision.note_id == note_id, NoteRevision.id == revision_id
            )
        )
        revision = result.scalar_one_or_none()
        if revision is None:
            raise NotFoundError("Revision not found")
        return revision

    async def purge(self, note_id: str) -> None:
        await self.db.execute(delete(NoteRevision).where(NoteRevision.note_id == note_id))
