import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db import Note, NoteShare, SharePermission, User
from errors import ForbiddenError, InvalidError, NotFoundError
from notes import NoteAccess, NoteLocks, NoteStore

logger = logging.getLogger(__name__)


def _display_name(user: Optional[User]) -> str:
    if user is None:
        return "Someone"
    return user.name or user.email


class ShareRegistry:
    """Share lifecycle: Pending -> Accepted -> Revoked, or Pending -> Revoked.

    ``is_accepted`` only ever goes false to true and ``is_revoked`` only ever
    goes false to true. Each transition is a conditional UPDATE so two racing
    requests cannot both win.
    """

    def __init__(self, db: AsyncSession, presence=None, locks: Optional[NoteLocks] = None):
        self.db = db
        self.presence = presence
        self.notes = NoteStore(db, presence=presence, locks=locks)

    async def share_note(
        self,
        owner_id: str,
        note_id: str,
        email: str,
        permission: SharePermission = SharePermission.READ,
    ) -> NoteShare:
        result = await self.notes.get_note(note_id, owner_id)
        if not result.access.is_owner:
            raise ForbiddenError("Only the owner can share this note")
        note = result.note

        email = email.strip().lower()
        target = (
            await self.db.execute(select(User).where(func.lower(User.email) == email))
        ).scalar_one_or_none()

        # Pre-resolving the recipient does not accept on their behalf
        share = NoteShare(
            note_id=note_id,
            recipient_email=email,
            recipient_user_id=target.id if target else None,
            permission=SharePermission(permission).value,
            share_token=str(uuid.uuid4()),
            is_accepted=False,
            is_revoked=False,
        )
        self.db.add(share)
        await self.notes.commit("Failed to share note")
        logger.info(f"Note {note_id} shared with {email} ({share.permission}) as share {share.id}")

        if self.presence is not None:
            if target is not None:
                owner = await self.db.get(User, owner_id)
                await self.presence.emit_to_user(
                    target.id,
                    "note-shared",
                    {
                        "noteId": note_id,
                        "noteTitle": note.title,
                        "sharedBy": _display_name(owner),
                        "shareId": share.id,
                        "shareToken": share.share_token,
                        "permission": share.permission,
                    },
                )
            await self.presence.notify_room(
                note_id,
                "share:updated",
                {"noteId": note_id, "shareId": share.id, "action": "created"},
            )
        return share

    async def _load_by_token(self, token: str) -> NoteShare:
        share = (
            await self.db.execute(
                select(NoteShare)
                .where(NoteShare.share_token == token)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if share is None:
            raise NotFoundError("Invalid share token")
        return share

    async def _load_user(self, user_id: str) -> User:
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def _guard_pending(self, share: NoteShare, user: User, accepted_message: str) -> None:
        if share.is_revoked:
            raise InvalidError("This share has been revoked")
        if share.is_accepted:
            raise InvalidError(accepted_message)
        if share.recipient_user_id is not None:
            if share.recipient_user_id != user.id:
                raise ForbiddenError("This share was not intended for you")
        elif share.recipient_email and share.recipient_email.lower() != user.email.lower():
            raise ForbiddenError("This share was not intended for you")

    async def _transition_pending(self, share: NoteShare, user: User, accepted_message: str, **values) -> None:
        self._guard_pending(share, user, accepted_message)
        result = await self.db.execute(
            update(NoteShare)
            .where(
                NoteShare.id == share.id,
                NoteShare.is_accepted.is_(False),
                NoteShare.is_revoked.is_(False),
            )
            .values(recipient_user_id=user.id, updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        await self.notes.commit("Failed to update share")
        await self.db.refresh(share)
        if result.rowcount == 0:
            # Lost a race with another transition; report the state that won
            self._guard_pending(share, user, accepted_message)
            raise InvalidError("This share is no longer pending")

    async def accept_share(self, token: str, user_id: str) -> NoteAccess:
        user = await self._load_user(user_id)
        share = await self._load_by_token(token)
        await self._transition_pending(
            share, user, "This share has already been accepted", is_accepted=True
        )
        logger.info(f"Share {share.id} accepted by {user_id}")

        result = await self.notes.get_note(share.note_id, user_id)
        if self.presence is not None:
            await self.presence.notify_user(
                result.note.owner_id,
                f"{_display_name(user)} accepted your shared note",
                {
                    "noteId": share.note_id,
                    "action": "share-accepted",
                    "acceptedBy": {"id": user.id, "name": _display_name(user)},
                },
            )
            await self.presence.notify_room(
                share.note_id,
                "share:updated",
                {"noteId": share.note_id, "shareId": share.id, "accepted": True, "action": "accepted"},
            )
        return result

    async def decline_share(self, token: str, user_id: str) -> NoteShare:
        """Decline sets the same terminal flag as revoke."""
        user = await self._load_user(user_id)
        share = await self._load_by_token(token)
        await self._transition_pending(
            share,
            user,
            "This share has already been accepted and cannot be declined",
            is_revoked=True,
        )
        logger.info(f"Share {share.id} declined by {user_id}")

        if self.presence is not None:
            note = await self.db.get(Note, share.note_id)
            await self.presence.notify_user(
                note.owner_id,
                f"{_display_name(user)} declined your shared note",
                {
                    "noteId": share.note_id,
                    "action": "share-declined",
                    "declinedBy": {"id": user.id, "name": _display_name(user)},
                },
            )
            await self.presence.notify_room(
                share.note_id,
                "share:updated",
                {"noteId": share.note_id, "shareId": share.id, "revoked": True, "action": "declined"},
            )
        return share

    async def revoke_share(self, share_id: str, requester_id: str) -> NoteShare:
        share = await self.db.get(NoteShare, share_id, populate_existing=True)
        if share is None:
            raise NotFoundError("Share not found")

        result = await self.notes.get_note(share.note_id, requester_id)
        if not result.access.is_owner:
            raise ForbiddenError("Only the owner can revoke shares")
        note = result.note

        outcome = await self.db.execute(
            update(NoteShare)
            .where(NoteShare.id == share.id, NoteShare.is_revoked.is_(False))
            .values(is_revoked=True, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.notes.commit("Failed to revoke share")
        await self.db.refresh(share)
        if outcome.rowcount == 0:
            logger.info(f"Share {share_id} was already revoked")
            return share
        logger.info(f"Share {share_id} on note {share.note_id} revoked by {requester_id}")

        if self.presence is not None:
            if share.recipient_user_id:
                await self.presence.notify_user(
                    share.recipient_user_id,
                    "Access to a shared note has been revoked",
                    {
                        "noteId": share.note_id,
                        "action": "share-revoked",
                        "noteTitle": note.title,
                        "shareId": share.id,
                    },
                )
            await self.presence.notify_room(
                share.note_id,
                "share:updated",
                {
                    "noteId": share.note_id,
                    "shareId": share.id,
                    "revoked": True,
                    "action": "revoked",
                    "share": {
                        "id": share.id,
                        "recipientUserId": share.recipient_user_id,
                        "recipientEmail": share.recipient_email,
                        "permission": share.permission,
                        "note": {"id": note.id, "title": note.title},
                    },
                },
            )
            if share.recipient_user_id and share.recipient_user_id != note.owner_id:
                await self.presence.evict_user(share.note_id, share.recipient_user_id)
            await self.presence.notify_user(
                requester_id,
                f"Share with {share.recipient_email or share.recipient_user_id} was revoked",
                {"noteId": share.note_id, "action": "share-revoked-by-owner", "shareId": share.id},
            )
        return share
