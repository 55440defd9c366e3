"""Typed failures raised by the note, share and presence services."""
from fastapi import status


class NoteServiceError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(NoteServiceError):
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(NoteServiceError):
    # Reported as 404 so callers cannot probe for notes they cannot see
    status_code = status.HTTP_404_NOT_FOUND


class InvalidError(NoteServiceError):
    status_code = status.HTTP_400_BAD_REQUEST


class UnauthenticatedError(NoteServiceError):
    status_code = status.HTTP_401_UNAUTHORIZED


class InternalError(NoteServiceError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
