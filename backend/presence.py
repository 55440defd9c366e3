import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from socketio import exceptions as socketio_exceptions

from errors import NoteServiceError, UnauthenticatedError

logger = logging.getLogger(__name__)

Authenticator = Callable[[str], Awaitable[str]]
AccessChecker = Callable[[str, str], Awaitable[Any]]
NoteSaver = Callable[[str, str, Optional[str], Optional[str]], Awaitable[Any]]


def _timestamp() -> str:
    return datetime.utcnow().isoformat()


class Connection:
    """One authenticated socket and the note rooms it has joined"""

    def __init__(self, sid: str, user_id: str):
        self.sid = sid
        self.user_id = user_id
        self.rooms: Set[str] = set()


class PresenceManager:
    """Tracks note rooms and personal channels for live connections.

    Constructed once per process and handed to the note and share services.
    It never reaches into the database itself; persistence and access checks
    come through the providers passed to ``bind``.
    """

    def __init__(
        self,
        sio,
        authenticate: Optional[Authenticator] = None,
        check_access: Optional[AccessChecker] = None,
        save_note: Optional[NoteSaver] = None,
    ):
        self.sio = sio
        self._authenticate = authenticate
        self._check_access = check_access
        self._save_note = save_note
        self._lock = asyncio.Lock()
        self._connections: Dict[str, Connection] = {}
        self._rooms: Dict[str, Dict[str, str]] = {}  # note id -> {sid: user id}
        self._user_sids: Dict[str, Set[str]] = {}

    def bind(
        self,
        authenticate: Authenticator,
        check_access: AccessChecker,
        save_note: NoteSaver,
    ) -> None:
        self._authenticate = authenticate
        self._check_access = check_access
        self._save_note = save_note

    # Introspection

    def active_users(self, note_id: str) -> List[str]:
        return sorted(set(self._rooms.get(note_id, {}).values()))

    def room_sids(self, note_id: str) -> List[str]:
        return list(self._rooms.get(note_id, {}))

    def is_in_room(self, sid: str, note_id: str) -> bool:
        connection = self._connections.get(sid)
        return connection is not None and note_id in connection.rooms

    def user_for(self, sid: str) -> Optional[str]:
        connection = self._connections.get(sid)
        return connection.user_id if connection else None

    def is_online(self, user_id: str) -> bool:
        return bool(self._user_sids.get(user_id))

    # Connection lifecycle

    async def authenticate_connection(self, sid: str, auth: Optional[dict]) -> str:
        token = auth.get("token") if isinstance(auth, dict) else None
        if not token:
            raise UnauthenticatedError("Authentication token is missing")
        if self._authenticate is None:
            raise UnauthenticatedError("Authentication is not configured")

        user_id = await self._authenticate(token)
        async with self._lock:
            self._connections[sid] = Connection(sid, user_id)
            self._user_sids.setdefault(user_id, set()).add(sid)
        logger.info(f"User {user_id} connected on {sid}")
        return user_id

    async def disconnect(self, sid: str) -> None:
        connection = self._connections.get(sid)
        if connection is None:
            return
        for note_id in list(connection.rooms):
            await self.leave_note_room(sid, note_id)
        async with self._lock:
            self._connections.pop(sid, None)
            sids = self._user_sids.get(connection.user_id)
            if sids is not None:
                sids.discard(sid)
                if not sids:
                    del self._user_sids[connection.user_id]
        logger.info(f"User {connection.user_id} disconnected from {sid}")

    # Rooms

    async def join_note_room(self, sid: str, note_id: Optional[str]) -> bool:
        connection = self._connections.get(sid)
        if connection is None:
            await self._send(sid, "error", {"message": "Authentication required"})
            return False
        if not note_id:
            logger.warning(f"Invalid join-note request from {sid}")
            await self._send(sid, "error", {"message": "Invalid request"})
            return False

        try:
            access = await self._check_access(connection.user_id, note_id)
        except NoteServiceError as e:
            logger.warning(f"User {connection.user_id} denied room for note {note_id}: {e.message}")
            access = None
        except Exception as e:
            logger.error(f"Error checking access for note {note_id}: {e}")
            await self._send(sid, "error", {"message": "Failed to join note", "noteId": note_id})
            return False

        if access is None or not access.can_read:
            await self._send(
                sid, "error", {"message": "You do not have access to this note", "noteId": note_id}
            )
            return False

        async with self._lock:
            room = self._rooms.setdefault(note_id, {})
            room[sid] = connection.user_id
            connection.rooms.add(note_id)
            others = [other for other in room if other != sid]
            active = self.active_users(note_id)

        await self._fan_out(
            others,
            "user-joined",
            {"noteId": note_id, "userId": connection.user_id, "activeUsers": active},
        )
        await self._send(sid, "active-users", {"noteId": note_id, "activeUsers": active})
        logger.info(f"User {connection.user_id} joined note {note_id}")
        return True

    async def leave_note_room(self, sid: str, note_id: str) -> bool:
        connection = self._connections.get(sid)
        if connection is None:
            return False

        async with self._lock:
            # A racing leave or eviction may already have removed this sid
            if note_id not in connection.rooms:
                return False
            connection.rooms.discard(note_id)
            room = self._rooms.get(note_id, {})
            room.pop(sid, None)
            still_present = connection.user_id in room.values()
            remaining = list(room)
            if not room:
                self._rooms.pop(note_id, None)
            active = self.active_users(note_id)

        if not still_present:
            await self._fan_out(
                remaining,
                "user-left",
                {"noteId": note_id, "userId": connection.user_id, "activeUsers": active},
            )
        logger.info(f"User {connection.user_id} left note {note_id}")
        return True

    async def evict_user(self, note_id: str, user_id: str) -> None:
        """Remove every connection of ``user_id`` from a note's room"""
        for sid, member in list(self._rooms.get(note_id, {}).items()):
            if member == user_id:
                await self.leave_note_room(sid, note_id)

    async def close_room(self, note_id: str) -> None:
        async with self._lock:
            room = self._rooms.pop(note_id, {})
            for sid in room:
                connection = self._connections.get(sid)
                if connection is not None:
                    connection.rooms.discard(note_id)

    # Relays

    async def relay_content_change(self, sid: str, data: dict) -> bool:
        note_id = data.get("noteId") if isinstance(data, dict) else None
        if not note_id or not self.is_in_room(sid, note_id):
            return False

        user_id = self._connections[sid].user_id
        content = data.get("content")
        title = data.get("title")
        await self.notify_room(
            note_id,
            "content-update",
            {
                "noteId": note_id,
                "content": content,
                "title": title,
                "cursorPosition": data.get("cursorPosition"),
                "userId": user_id,
                "timestamp": _timestamp(),
            },
            exclude_sid=sid,
        )

        # A title marks a deliberate save rather than a keystroke
        if title:
            try:
                await self._save_note(user_id, note_id, content, title)
            except NoteServiceError as e:
                logger.warning(f"Rejected save of note {note_id} by {user_id}: {e.message}")
                await self._send(sid, "error", {"message": "Failed to save note", "noteId": note_id})
            except Exception as e:
                logger.error(f"Error saving note {note_id}: {e}")
                await self._send(sid, "error", {"message": "Failed to save note", "noteId": note_id})
        return True

    async def relay_cursor_position(self, sid: str, data: dict) -> bool:
        note_id = data.get("noteId") if isinstance(data, dict) else None
        if not note_id or not self.is_in_room(sid, note_id):
            return False

        await self.notify_room(
            note_id,
            "cursor-update",
            {
                "noteId": note_id,
                "userId": self._connections[sid].user_id,
                "position": data.get("position"),
                "timestamp": _timestamp(),
            },
            exclude_sid=sid,
        )
        return True

    # Out-of-band notifications

    async def emit_to_user(self, user_id: str, event: str, payload: dict) -> int:
        """Deliver to a user's personal channel; dropped when they are offline"""
        sids = list(self._user_sids.get(user_id, ()))
        if not sids:
            logger.debug(f"Dropping {event} for offline user {user_id}")
            return 0
        return await self._fan_out(sids, event, payload)

    async def notify_user(self, user_id: str, message: str, payload: Optional[dict] = None) -> int:
        return await self.emit_to_user(user_id, "notification", {"message": message, **(payload or {})})

    async def notify_room(
        self,
        note_id: str,
        event: str,
        payload: dict,
        exclude_sid: Optional[str] = None,
        exclude_user: Optional[str] = None,
    ) -> int:
        sids = [
            sid
            for sid, member in list(self._rooms.get(note_id, {}).items())
            if sid != exclude_sid and member != exclude_user
        ]
        return await self._fan_out(sids, event, payload)

    async def _send(self, sid: str, event: str, payload: dict) -> None:
        await self._fan_out([sid], event, payload)

    async def _fan_out(self, sids: Iterable[str], event: str, payload: dict) -> int:
        sids = list(sids)
        if not sids:
            return 0
        results = await asyncio.gather(
            *(self.sio.emit(event, payload, to=sid) for sid in sids),
            return_exceptions=True,
        )
        delivered = 0
        for sid, result in zip(sids, results):
            if isinstance(result, Exception):
                logger.warning(f"Failed to deliver {event} to {sid}: {result}")
            else:
                delivered += 1
        return delivered


def _note_id_from(data) -> Optional[str]:
    if isinstance(data, dict):
        return data.get("noteId") or data.get("note_id")
    return data


def register_socket_handlers(sio, presence: PresenceManager) -> None:
    """Wire Socket.IO events to the presence manager"""

    @sio.event
    async def connect(sid, environ, auth=None):
        try:
            await presence.authenticate_connection(sid, auth)
        except UnauthenticatedError as e:
            logger.warning(f"Refused connection {sid}: {e.message}")
            raise socketio_exceptions.ConnectionRefusedError("Authentication error")

    @sio.on("join-note")
    async def join_note(sid, data):
        await presence.join_note_room(sid, _note_id_from(data))

    @sio.on("leave-note")
    async def leave_note(sid, data):
        await presence.leave_note_room(sid, _note_id_from(data))

    @sio.on("content-change")
    async def content_change(sid, data):
        await presence.relay_content_change(sid, data or {})

    @sio.on("cursor-position")
    async def cursor_position(sid, data):
        await presence.relay_cursor_position(sid, data or {})

    @sio.event
    async def disconnect(sid, reason=None):
        await presence.disconnect(sid)
