from __future__ import annotations

from typing import Dict, Optional

from hativon.internal_core.contracts import ConflictResponse, ServerContent


class AutosaveError(RuntimeError):
    """Base class for every failure on the draft save path."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PayloadValidationError(AutosaveError):
    """Malformed or oversized payload; rejected before any store access."""

    status_code = 400

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.errors = dict(errors or {})


class AuthorizationError(AutosaveError):
    status_code = 403

    def __init__(self, message: str, *, authenticated: bool = True):
        super().__init__(message)
        self.authenticated = authenticated
        if not authenticated:
            self.status_code = 401


class DraftNotFoundError(AutosaveError):
    status_code = 404


class DraftConflictError(AutosaveError):
    """The caller's expected version is older than the stored one."""

    status_code = 409

    def __init__(self, server_version: str, server_content: ServerContent):
        super().__init__(f"Draft changed on the server (server version {server_version}).")
        self.server_version = server_version
        self.server_content = server_content

    def to_response(self) -> ConflictResponse:
        return ConflictResponse(
            server_version=self.server_version,
            server_content=self.server_content,
        )

    @classmethod
    def from_response(cls, response: ConflictResponse) -> "DraftConflictError":
        return cls(response.server_version, response.server_content)


class TransientSaveError(AutosaveError):
    """Network or server failure; safe to resend the same snapshot."""

    status_code = 503


class SaveAbortedError(AutosaveError):
    """A save superseded by a newer one. Never surfaced to the user."""

    status_code = 499
