from pydantic import BaseModel, Field, validator
from pydantic.alias_generators import to_camel
from typing import Any, Generic, List, Optional, TypeVar
from datetime import datetime

from db import SharePermission

T = TypeVar("T")


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


class ApiResponse(CamelModel, Generic[T]):
    """Uniform response envelope"""
    success: bool = True
    message: str
    data: Optional[T] = None


class ErrorResponse(CamelModel):
    """Schema for error responses"""
    success: bool = False
    message: str
    errors: Optional[List[Any]] = None


class NoteCreate(CamelModel):
    """Schema for creating a note"""
    title: str = Field(..., min_length=1, max_length=200, description="Note title")
    content: str = Field(default="", description="Rich text content, serialized")

    @validator('title')
    def title_not_empty(cls, v):
        if not v.strip():
            raise ValueError('Title cannot be empty or whitespace only')
        return v.strip()


class NoteUpdate(CamelModel):
    """Schema for updating a note"""
    title: Optional[str] = Field(None, min_length=1, max_length=200, description="Note title")
    content: Optional[str] = Field(None, description="Rich text content, serialized")
    is_archived: Optional[bool] = Field(None, description="Archive flag")

    @validator('title')
    def title_not_blank(cls, v):
        if v is not None and not v.strip():
            raise ValueError('Title cannot be empty or whitespace only')
        return v.strip() if v is not None else v


class NoteResponse(CamelModel):
    """Schema for note response"""
    id: str
    title: str
    content: str
    owner_id: str
    version: int
    is_archived: bool
    created_at: datetime
    updated_at: datetime
    permission: Optional[SharePermission] = None
    role: Optional[str] = Field(None, description="owner or shared")

    @classmethod
    def from_access(cls, result, **extra):
        """Project a store result, carrying what the requester may do"""
        return cls.from_note(result.note, result.permission, role=result.role, **extra)

    @classmethod
    def from_note(cls, note, permission: Optional[str] = None, **extra):
        return cls(
            id=note.id,
            title=note.title,
            content=note.content,
            owner_id=note.owner_id,
            version=note.version,
            is_archived=note.is_archived,
            created_at=note.created_at,
            updated_at=note.updated_at,
            permission=permission,
            **extra,
        )


class ShareCreate(CamelModel):
    """Schema for sharing a note"""
    email: str = Field(..., min_length=3, max_length=320, description="Recipient email")
    permission: SharePermission = Field(default=SharePermission.READ)

    @validator('email')
    def email_shape(cls, v):
        v = v.strip().lower()
        local, _, domain = v.partition("@")
        if not local or not domain:
            raise ValueError('A valid email address is required')
        return v


class ShareCreatedResponse(CamelModel):
    share_id: str
    share_token: str


class ShareResponse(CamelModel):
    """A share as seen by the note owner"""
    id: str
    note_id: str
    recipient_user_id: Optional[str] = None
    recipient_email: Optional[str] = None
    permission: SharePermission
    is_accepted: bool
    is_revoked: bool
    state: str
    share_token: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_share(cls, share):
        return cls(
            id=share.id,
            note_id=share.note_id,
            recipient_user_id=share.recipient_user_id,
            recipient_email=share.recipient_email,
            permission=share.permission,
            is_accepted=share.is_accepted,
            is_revoked=share.is_revoked,
            state=share.state,
            share_token=share.share_token,
            created_at=share.created_at,
            updated_at=share.updated_at,
        )


class SharedByMeResponse(NoteResponse):
    shares: List[ShareResponse] = []


class PendingShareResponse(NoteResponse):
    share_id: str
    share_token: Optional[str] = None


class RevisionResponse(CamelModel):
    """Schema for note revision response"""
    id: str
    note_id: str
    version: int
    content: str
    user_id: str
    created_at: datetime

    @classmethod
    def from_revision(cls, revision):
        return cls(
            id=revision.id,
            note_id=revision.note_id,
            version=revision.version,
            content=revision.content,
            user_id=revision.user_id,
            created_at=revision.created_at,
        )


class UserResponse(CamelModel):
    id: str
    name: str
    email: str
    profile_picture: Optional[str] = None
    role: str
    provider: str
    created_at: datetime

    @classmethod
    def from_user(cls, user):
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            profile_picture=user.profile_picture,
            role=user.role,
            provider=user.provider,
            created_at=user.created_at,
        )


class HealthResponse(BaseModel):
    """Schema for health check response"""
    status: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
