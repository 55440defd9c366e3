import enum
from typing import Iterable, Optional

from db import SharePermission


class Access(enum.Enum):
    """Outcome of an access decision for one user on one note"""

    OWNER = ("owner", SharePermission.EDIT)
    SHARED_READ = ("shared", SharePermission.READ)
    SHARED_EDIT = ("shared", SharePermission.EDIT)
    NO_ACCESS = ("none", None)

    def __init__(self, role: str, permission: Optional[SharePermission]):
        self.role = role
        self.permission = permission

    @property
    def is_owner(self) -> bool:
        return self is Access.OWNER

    @property
    def can_read(self) -> bool:
        return self is not Access.NO_ACCESS

    @property
    def can_write(self) -> bool:
        return self.permission is SharePermission.EDIT

    @classmethod
    def for_share(cls, permission: str) -> "Access":
        if SharePermission(permission) is SharePermission.EDIT:
            return cls.SHARED_EDIT
        return cls.SHARED_READ


def grants_access(share, user_id: str) -> bool:
    """Only an accepted, unrevoked share bound to the user grants access."""
    return (
        share.recipient_user_id == user_id
        and bool(share.is_accepted)
        and not share.is_revoked
    )


def resolve_permission(owner_id: str, shares: Iterable, user_id: str) -> Access:
    """Decide what ``user_id`` may do with a note.

    The owner always has full edit rights, regardless of any share rows that
    target them. Anyone else needs an accepted, unrevoked share addressed to
    their user id; pending shares grant nothing.
    """
    if user_id is None:
        return Access.NO_ACCESS
    if user_id == owner_id:
        return Access.OWNER
    best = Access.NO_ACCESS
    for share in shares:
        if grants_access(share, user_id):
            best = Access.for_share(share.permission)
            if best.can_write:
                break
    return best
