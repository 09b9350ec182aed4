from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

import requests
from pydantic import ValidationError

from hativon.drafts.authorization import Caller
from hativon.drafts.errors import (
    AuthorizationError,
    DraftConflictError,
    DraftNotFoundError,
    PayloadValidationError,
    SaveAbortedError,
    TransientSaveError,
)
from hativon.drafts.gateway import PersistenceGateway
from hativon.internal_core.config import AutosaveConfig
from hativon.internal_core.contracts import AutosavePayload, ConflictResponse, SaveSuccessResponse

logger = logging.getLogger(__name__)


class CancellationToken:
    """Marks one save attempt as superseded."""

    def __init__(self, generation: int = 0) -> None:
        self.generation = generation
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SaveAbortedError(f"Save attempt {self.generation} was superseded.")


class SaveTransport(ABC):
    @abstractmethod
    def save(self, payload: AutosavePayload, token: CancellationToken) -> SaveSuccessResponse:
        """Send one save attempt.

        A cancelled token stops the attempt before anything is sent. Once sent,
        the outcome is reported even if the token was cancelled meanwhile, since
        the server may already have accepted it.

        Raises DraftConflictError, PayloadValidationError, AuthorizationError,
        DraftNotFoundError, TransientSaveError, or SaveAbortedError.
        """


def parse_save_response(status_code: int, body: Mapping[str, Any]) -> SaveSuccessResponse:
    message = str(body.get("error", "") or "")
    if 200 <= status_code < 300:
        try:
            return SaveSuccessResponse.model_validate(body)
        except ValidationError as exc:
            raise TransientSaveError(f"Malformed auto-save response: {exc}") from exc
    if status_code == 409 and body.get("conflict"):
        try:
            conflict = ConflictResponse.model_validate(body)
        except ValidationError as exc:
            raise TransientSaveError(f"Malformed conflict response: {exc}") from exc
        raise DraftConflictError.from_response(conflict)
    if status_code in (400, 413, 422):
        errors = body.get("errors")
        raise PayloadValidationError(
            message or "Invalid auto-save data",
            {str(k): str(v) for k, v in errors.items()} if isinstance(errors, dict) else None,
        )
    if status_code == 401:
        raise AuthorizationError(message or "Unauthorized", authenticated=False)
    if status_code == 403:
        raise AuthorizationError(message or "Forbidden")
    if status_code == 404:
        raise DraftNotFoundError(message or "Draft not found")
    raise TransientSaveError(message or f"Auto-save failed (HTTP {status_code})")


class HttpSaveTransport(SaveTransport):
    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 1.8,
        session: Optional[requests.Session] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self._url = url
        self._timeout_seconds = float(timeout_seconds)
        self._session = session or requests.Session()
        # requests does not promise Session is thread-safe; workers take turns.
        self._session_lock = threading.Lock()
        self._headers = dict(headers or {})

    @classmethod
    def from_config(
        cls,
        config: AutosaveConfig,
        *,
        session: Optional[requests.Session] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> "HttpSaveTransport":
        return cls(
            config.autosave_url,
            timeout_seconds=config.request_timeout_seconds,
            session=session,
            headers=headers,
        )

    def save(self, payload: AutosavePayload, token: CancellationToken) -> SaveSuccessResponse:
        token.raise_if_cancelled()
        body = payload.model_dump(by_alias=True, exclude_none=True)
        body["draftId"] = payload.draft_id
        try:
            with self._session_lock:
                response = self._session.post(
                    self._url,
                    json=body,
                    headers=self._headers,
                    timeout=self._timeout_seconds,
                )
        except requests.Timeout as exc:
            raise TransientSaveError(
                f"Auto-save timed out after {self._timeout_seconds:.2f}s"
            ) from exc
        except requests.RequestException as exc:
            raise TransientSaveError(f"Auto-save request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        logger.debug("Auto-save HTTP status=%s draft_id=%s", response.status_code, payload.draft_id)
        return parse_save_response(response.status_code, data)


class GatewaySaveTransport(SaveTransport):
    """Calls a PersistenceGateway in-process, with the same error contract as HTTP."""

    def __init__(self, gateway: PersistenceGateway, caller: Caller) -> None:
        self._gateway = gateway
        self._caller = caller

    def save(self, payload: AutosavePayload, token: CancellationToken) -> SaveSuccessResponse:
        token.raise_if_cancelled()
        result = self._gateway.save(
            caller=self._caller,
            draft_id=payload.draft_id,
            fields=payload.supplied_fields(),
            expected_version=payload.expected_version,
        )
        return result.to_response()
