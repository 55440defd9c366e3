from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, Depends, HTTPException, Query, status, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import firebase_admin
from firebase_admin import credentials
from socketio import ASGIApp
import socketio
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

import db as database
from access import Access
from auth import decode_token, get_current_user, resolve_user
from config import settings
from db import User, get_db, init_db
from errors import InternalError, InvalidError, NoteServiceError
from logging_config import setup_logging
from models import (
    ApiResponse,
    ErrorResponse,
    HealthResponse,
    NoteCreate,
    NoteResponse,
    NoteUpdate,
    PendingShareResponse,
    RevisionResponse,
    ShareCreate,
    ShareCreatedResponse,
    SharedByMeResponse,
    ShareResponse,
    UserResponse,
)
from notes import NoteLocks, NoteStore
from presence import PresenceManager, register_socket_handlers
from shares import ShareRegistry

# Setup logging
logger = setup_logging()

# Initialize Firebase from environment variables
firebase_initialized = False
try:
    service_account = settings.firebase_service_account()
    if service_account:
        firebase_admin.initialize_app(credentials.Certificate(service_account))
        firebase_initialized = True
        logger.info("Firebase initialized successfully")
    else:
        logger.warning("Firebase credentials not provided. Authentication will reject all tokens.")
except ValueError:
    # Firebase already initialized
    firebase_initialized = True
except Exception as e:
    logger.error(f"Firebase initialization failed: {e}")
    if settings.is_production():
        raise
    else:
        logger.warning("Continuing without Firebase in development mode")


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise
    yield
    await database.engine.dispose()


# FastAPI app
app = FastAPI(
    title="Collaborative Notes API",
    description="Notes with sharing, revision history and live co-editing",
    version="1.0.0",
    lifespan=lifespan,
)

# Rate limiter
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
app.state.limiter = limiter

# Socket.IO server
sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins=settings.get_cors_origins(),
    ping_timeout=settings.socket_ping_timeout,
    ping_interval=settings.socket_ping_interval,
    logger=settings.debug,
    engineio_logger=settings.debug,
)

# One presence manager and one set of note locks per process
note_locks = NoteLocks()
presence = PresenceManager(sio)


async def authenticate_socket(token: str) -> str:
    claims = await decode_token(token)
    async with database.SessionLocal() as session:
        user = await resolve_user(session, claims)
        return user.id


async def check_note_access(user_id: str, note_id: str):
    async with database.SessionLocal() as session:
        return await NoteStore(session, locks=note_locks).check_access(user_id, note_id)


async def save_note_from_socket(user_id: str, note_id: str, content: Optional[str], title: Optional[str]):
    # The relay has already broadcast this change to the room
    async with database.SessionLocal() as session:
        store = NoteStore(session, presence=presence, locks=note_locks)
        await store.update_note(note_id, user_id, title=title, content=content, broadcast=False)


presence.bind(authenticate_socket, check_note_access, save_note_from_socket)
register_socket_handlers(sio, presence)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_note_store(db: AsyncSession = Depends(get_db)) -> NoteStore:
    return NoteStore(db, presence=presence, locks=note_locks)


def get_share_registry(db: AsyncSession = Depends(get_db)) -> ShareRegistry:
    return ShareRegistry(db, presence=presence, locks=note_locks)


# Error handling

def _error(status_code: int, message: str, errors: Optional[list] = None) -> JSONResponse:
    body = ErrorResponse(message=message, errors=errors)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(by_alias=True, exclude_none=True),
    )


@app.exception_handler(NoteServiceError)
async def note_service_error_handler(request: Request, exc: NoteServiceError):
    if isinstance(exc, InternalError):
        logger.error(f"Internal error on {request.url.path}: {exc.message}")
        message = exc.message if settings.is_development() else "An unexpected error occurred"
        return _error(exc.status_code, message)
    logger.warning(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return _error(exc.status_code, exc.message)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"Database error on {request.url.path}: {exc}")
    message = str(exc) if settings.is_development() else "An unexpected error occurred"
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, message)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return _error(status.HTTP_400_BAD_REQUEST, "Validation failed", errors)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.error(f"HTTP Exception: {exc.status_code} - {exc.detail}")
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    return _error(status.HTTP_429_TOO_MANY_REQUESTS, "Rate limit exceeded")


# Health check endpoints
@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health():
    """Health check endpoint"""
    logger.info("Health check requested")
    return {"status": "ok", "timestamp": datetime.utcnow()}


@app.get("/ready", tags=["Health"])
async def readiness(db: AsyncSession = Depends(get_db)):
    """Readiness check endpoint - verifies database connectivity"""
    try:
        await db.execute(text("SELECT 1"))
        logger.info("Readiness check passed")
        return {
            "status": "ready",
            "database": "connected",
            "firebase": "initialized" if firebase_initialized else "not_configured",
        }
    except Exception as e:
        logger.error(f"Readiness check failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not ready"
        )


@app.get("/users/me", response_model=ApiResponse[UserResponse], tags=["Users"])
async def get_me(current_user: User = Depends(get_current_user)):
    """Profile of the authenticated user"""
    return ApiResponse[UserResponse](
        message="User retrieved successfully",
        data=UserResponse.from_user(current_user),
    )


# Notes
@app.post(
    "/notes",
    response_model=ApiResponse[NoteResponse],
    status_code=status.HTTP_201_CREATED,
    tags=["Notes"],
    summary="Create a new note",
)
@limiter.limit(settings.rate_limit_write)
async def create_note(
    request: Request,
    note: NoteCreate,
    current_user: User = Depends(get_current_user),
    store: NoteStore = Depends(get_note_store),
):
    """Create a new note owned by the caller"""
    logger.info(f"Creating note with title: {note.title}")
    result = await store.create_note(current_user.id, note.title, note.content)
    return ApiResponse[NoteResponse](
        message="Note created successfully",
        data=NoteResponse.from_access(result),
    )


@app.get("/notes", response_model=ApiResponse[List[NoteResponse]], tags=["Notes"], summary="List my notes")
@limiter.limit(settings.rate_limit_default)
async def list_notes(
    request: Request,
    include_archived: bool = Query(False, alias="includeArchived"),
    current_user: User = Depends(get_current_user),
    store: NoteStore = Depends(get_note_store),
):
    """List notes owned by the caller"""
    results = await store.list_notes(current_user.id, include_archived)
    logger.info(f"Found {len(results)} notes for user {current_user.id}")
    return ApiResponse[List[NoteResponse]](
        message="Notes retrieved successfully",
        data=[NoteResponse.from_access(r) for r in results],
    )


@app.get("/notes/shared", response_model=ApiResponse[List[NoteResponse]], tags=["Sharing"], summary="Notes shared with me")
@limiter.limit(settings.rate_limit_default)
async def list_shared_notes(
    request: Request,
    current_user: User = Depends(get_current_user),
    store: NoteStore = Depends(get_note_store),
):
    results = await store.list_shared_with(current_user.id)
    return ApiResponse[List[NoteResponse]](
        message="Shared notes retrieved successfully",
        data=[NoteResponse.from_access(r) for r in results],
    )


@app.get("/notes/search", response_model=ApiResponse[List[NoteResponse]], tags=["Notes"], summary="Search notes")
@limiter.limit(settings.rate_limit_default)
async def search_notes(
    request: Request,
    q: Optional[str] = Query(None, description="Text to find in title or content"),
    current_user: User = Depends(get_current_user),
    store: NoteStore = Depends(get_note_store),
):
    """Case-insensitive search over owned and shared notes"""
    if not q or not q.strip():
        raise InvalidError("Search query is required")
    results = await store.search_notes(current_user.id, q.strip())
    return ApiResponse[List[NoteResponse]](
        message="Search completed successfully",
        data=[NoteResponse.from_access(r) for r in results],
    )


@app.get("/notes/archived", response_model=ApiResponse[List[NoteResponse]], tags=["Notes"], summary="Archived notes")
@limiter.limit(settings.rate_limit_default)
async def list_archived_notes(
    request: Request,
    current_user: User = Depends(get_current_user),
    store: NoteStore = Depends(get_note_store),
):
    results = await store.list_archived(current_user.id)
    return ApiResponse[List[NoteResponse]](
        message="Archived notes retrieved successfully",
        data=[NoteResponse.from_access(r) for r in results],
    )


@app.get(
    "/notes/pending-shares",
    response_model=ApiResponse[List[PendingShareResponse]],
    tags=["Sharing"],
    summary="Invitations waiting for me",
)
@limiter.limit(settings.rate_limit_default)
async def list_pending_shares(
    request: Request,
    current_user: User = Depends(get_current_user),
    store: NoteStore = Depends(get_note_store),
):
    pending = await store.get_pending_shares(current_user.id)
    return ApiResponse[List[PendingShareResponse]](
        message="Pending shares retrieved successfully",
        data=[
            PendingShareResponse.from_note(
                p.note,
                p.share.permission,
                share_id=p.share.id,
                share_token=p.share.share_token,
            )
            for p in pending
        ],
    )


@app.get(
    "/notes/shared-by-me",
    response_model=ApiResponse[List[SharedByMeResponse]],
    tags=["Sharing"],
    summary="Notes I have shared",
)
@limiter.limit(settings.rate_limit_default)
async def list_shared_by_me(
    request: Request,
    current_user: User = Depends(get_current_user),
    store: NoteStore = Depends(get_note_store),
):
    results = await store.list_shared_by(current_user.id)
    return ApiResponse[List[SharedByMeResponse]](
        message="Notes shared by you retrieved successfully",
        data=[
            SharedByMeResponse.from_note(
                r.note,
                "edit",
                role=Access.OWNER.role,
                shares=[ShareResponse.from_share(share) for share in r.shares],
            )
            for r in results
        ],
    )


@app.get("/notes/{note_id}", response_model=ApiResponse[NoteResponse], tags=["Notes"], summary="Get a specific note")
@limiter.limit(settings.rate_limit_default)
async def get_note(
    request: Request,
    note_id: str,
    current_user: User = Depends(get_current_user),
    store: NoteStore = Depends(get_note_store),
):
    """Get a note the caller owns or has accepted a share for"""
    logger.info(f"Retrieving note: {note_id}")
    result = await store.get_note(note_id, current_user.id)
    return ApiResponse[NoteResponse](
        message="Note retrieved successfully",
        data=NoteResponse.from_access(result),
    )


@app.put("/notes/{note_id}", response_model=ApiResponse[NoteResponse], tags=["Notes"], summary="Update a note")
@limiter.limit(settings.rate_limit_write)
async def update_note(
    request: Request,
    note_id: str,
    note_data: NoteUpdate,
    current_user: User = Depends(get_current_user),
    store: NoteStore = Depends(get_note_store),
):
    """Update title, content or archive flag"""
    logger.info(f"Updating note: {note_id}")
    result = await store.update_note(
        note_id,
        current_user.id,
        title=note_data.title,
        content=note_data.content,
        is_archived=note_data.is_archived,
    )
    return ApiResponse[NoteResponse](
        message="Note updated successfully",
        data=NoteResponse.from_access(result),
    )


@app.delete("/notes/{note_id}", response_model=ApiResponse, tags=["Notes"], summary="Delete a note")
@limiter.limit(settings.rate_limit_write)
async def delete_note(
    request: Request,
    note_id: str,
    current_user: User = Depends(get_current_user),
    store: NoteStore = Depends(get_note_store),
):
    """Delete a note with its revisions and shares"""
    logger.info(f"Deleting note: {note_id}")
    await store.delete_note(note_id, current_user.id)
    return ApiResponse(message="Note deleted successfully")


# Sharing
@app.post(
    "/notes/{note_id}/share",
    response_model=ApiResponse[ShareCreatedResponse],
    tags=["Sharing"],
    summary="Share a note by email",
)
@limiter.limit(settings.rate_limit_write)
async def share_note(
    request: Request,
    note_id: str,
    share_data: ShareCreate,
    current_user: User = Depends(get_current_user),
    registry: ShareRegistry = Depends(get_share_registry),
):
    share = await registry.share_note(current_user.id, note_id, share_data.email, share_data.permission)
    return ApiResponse[ShareCreatedResponse](
        message="Note shared successfully",
        data=ShareCreatedResponse(share_id=share.id, share_token=share.share_token),
    )


@app.post(
    "/notes/share/accept/{token}",
    response_model=ApiResponse[NoteResponse],
    tags=["Sharing"],
    summary="Accept a share invitation",
)
@limiter.limit(settings.rate_limit_write)
async def accept_share(
    request: Request,
    token: str,
    current_user: User = Depends(get_current_user),
    registry: ShareRegistry = Depends(get_share_registry),
):
    result = await registry.accept_share(token, current_user.id)
    return ApiResponse[NoteResponse](
        message="Note share accepted successfully",
        data=NoteResponse.from_access(result),
    )


@app.post("/notes/share/decline/{token}", response_model=ApiResponse, tags=["Sharing"], summary="Decline a share invitation")
@limiter.limit(settings.rate_limit_write)
async def decline_share(
    request: Request,
    token: str,
    current_user: User = Depends(get_current_user),
    registry: ShareRegistry = Depends(get_share_registry),
):
    await registry.decline_share(token, current_user.id)
    return ApiResponse(message="Note share declined successfully")


@app.post("/notes/share/{share_id}/revoke", response_model=ApiResponse, tags=["Sharing"], summary="Revoke a share")
@limiter.limit(settings.rate_limit_write)
async def revoke_share(
    request: Request,
    share_id: str,
    current_user: User = Depends(get_current_user),
    registry: ShareRegistry = Depends(get_share_registry),
):
    await registry.revoke_share(share_id, current_user.id)
    return ApiResponse(message="Note share revoked successfully")


# Revisions
@app.get(
    "/notes/{note_id}/revisions",
    response_model=ApiResponse[List[RevisionResponse]],
    tags=["Revisions"],
    summary="List note revisions",
)
@limiter.limit(settings.rate_limit_default)
async def list_revisions(
    request: Request,
    note_id: str,
    current_user: User = Depends(get_current_user),
    store: NoteStore = Depends(get_note_store),
):
    """Prior versions of a note, newest first"""
    revisions = await store.get_revisions(note_id, current_user.id)
    return ApiResponse[List[RevisionResponse]](
        message="Note revisions retrieved successfully",
        data=[RevisionResponse.from_revision(r) for r in revisions],
    )


@app.post(
    "/notes/{note_id}/revisions/{revision_id}/restore",
    response_model=ApiResponse[NoteResponse],
    tags=["Revisions"],
    summary="Restore a note to a prior revision",
)
@limiter.limit(settings.rate_limit_write)
async def restore_revision(
    request: Request,
    note_id: str,
    revision_id: str,
    current_user: User = Depends(get_current_user),
    store: NoteStore = Depends(get_note_store),
):
    result = await store.restore_revision(note_id, revision_id, current_user.id)
    return ApiResponse[NoteResponse](
        message="Note restored to previous revision successfully",
        data=NoteResponse.from_access(result),
    )


# Wrap FastAPI app with Socket.IO
fastapi_app = app
app = ASGIApp(sio, fastapi_app)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
