from __future__ import annotations

"""
Debounced, single-flight auto-save of one draft.

Design intent:
- Every edit is mirrored to the local backup immediately; the network save is
  debounced and only ever carries the latest snapshot.
- One request is on the wire at a time. A newer attempt cancels the older one
  and is sent once the older one resolves, against whatever version it left
  on the server. A superseded attempt never changes status or clears the
  local backup.
- A version conflict suspends autosave until the caller picks overwrite,
  reload, or continue-editing. Errors other than transient ones stop
  autosave until an explicit retry or immediate save.
- The local backup is cleared only after a confirmed save of exactly the
  backed-up content, or on explicit discard.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Callable, List, Optional, Tuple

from hativon.client.backup_store import LocalBackupStore
from hativon.client.transport import CancellationToken, SaveTransport
from hativon.drafts.errors import (
    AutosaveError,
    DraftConflictError,
    SaveAbortedError,
    TransientSaveError,
)
from hativon.internal_core.config import AutosaveConfig
from hativon.internal_core.contracts import (
    AutosavePayload,
    ConflictResponse,
    DraftSnapshot,
    LocalBackup,
    SaveStatus,
    SaveSuccessResponse,
)
from hativon.internal_core.versioning import is_newer, utc_now

logger = logging.getLogger(__name__)

StatusCallback = Callable[[SaveStatus], None]
SaveCompleteCallback = Callable[[str, str], None]
ConflictCallback = Callable[[ConflictResponse], None]
TimerFactory = Callable[[float, Callable[[], None]], Any]

_Event = Tuple[Callable[..., None], tuple]


def start_thread_timer(delay_seconds: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay_seconds, callback)
    timer.daemon = True
    timer.start()
    return timer


class SaveScheduler:
    def __init__(
        self,
        *,
        transport: SaveTransport,
        backup_store: LocalBackupStore,
        draft_id: Optional[str] = None,
        initial_version: Optional[str] = None,
        enabled: bool = True,
        debounce_seconds: float = 2.0,
        on_status_change: Optional[StatusCallback] = None,
        on_save_complete: Optional[SaveCompleteCallback] = None,
        on_conflict: Optional[ConflictCallback] = None,
        timer_factory: TimerFactory = start_thread_timer,
    ) -> None:
        self._transport = transport
        self._backup_store = backup_store
        self._enabled = enabled
        self._debounce_seconds = max(0.0, float(debounce_seconds))
        self._on_status_change = on_status_change
        self._on_save_complete = on_save_complete
        self._on_conflict = on_conflict
        self._timer_factory = timer_factory

        self._lock = threading.RLock()
        self._settled = threading.Condition(self._lock)

        self._draft_id = draft_id
        self._server_version = initial_version
        self._status: SaveStatus = "idle"
        self._error_message: Optional[str] = None
        self._conflict: Optional[ConflictResponse] = None
        self._last_saved: Optional[datetime] = None
        self._latest: Optional[DraftSnapshot] = None
        self._suspended = False
        self._halted_by_error = False
        self._closed = False

        self._timer: Any = None
        self._timer_generation = 0
        self._inflight: Optional[CancellationToken] = None
        self._deferred: Optional[DraftSnapshot] = None
        self._generation = 0

        self._recovery: Optional[LocalBackup] = self._backup_store.read(draft_id, initial_version)

    @classmethod
    def from_config(
        cls,
        config: AutosaveConfig,
        *,
        transport: SaveTransport,
        backup_store: LocalBackupStore,
        **kwargs: Any,
    ) -> "SaveScheduler":
        return cls(
            transport=transport,
            backup_store=backup_store,
            debounce_seconds=config.debounce_seconds,
            **kwargs,
        )

    @property
    def status(self) -> SaveStatus:
        with self._lock:
            return self._status

    @property
    def draft_id(self) -> Optional[str]:
        with self._lock:
            return self._draft_id

    @property
    def server_version(self) -> Optional[str]:
        with self._lock:
            return self._server_version

    @property
    def last_saved(self) -> Optional[datetime]:
        with self._lock:
            return self._last_saved

    @property
    def error_message(self) -> Optional[str]:
        with self._lock:
            return self._error_message

    @property
    def conflict(self) -> Optional[ConflictResponse]:
        with self._lock:
            return self._conflict

    @property
    def recovery(self) -> Optional[LocalBackup]:
        with self._lock:
            return self._recovery

    @property
    def latest_snapshot(self) -> Optional[DraftSnapshot]:
        with self._lock:
            return self._latest

    @property
    def autosave_suspended(self) -> bool:
        with self._lock:
            return self._suspended or self._halted_by_error

    @property
    def save_in_flight(self) -> bool:
        with self._lock:
            return self._inflight is not None

    # Edits and explicit saves

    def update(self, snapshot: DraftSnapshot) -> None:
        if not self._enabled:
            return
        with self._lock:
            if self._closed:
                return
            self._backup_store.persist(self._draft_id, snapshot, self._server_version)
            self._latest = snapshot
            if self._suspended or self._halted_by_error:
                logger.debug("Autosave suspended; edit kept locally draft_id=%s", self._draft_id)
                return
            self._cancel_timer_locked()
            self._timer = self._timer_factory(
                self._debounce_seconds,
                self._make_timer_callback(self._timer_generation),
            )

    def trigger_immediate(self, snapshot: DraftSnapshot) -> None:
        if not self._enabled:
            return
        events: List[_Event] = []
        with self._lock:
            if self._closed:
                return
            self._cancel_timer_locked()
            self._backup_store.persist(self._draft_id, snapshot, self._server_version)
            self._latest = snapshot
            self._halted_by_error = False
            self._dispatch_locked(snapshot, events)
        self._emit(events)

    def cancel_pending_save(self) -> None:
        """Drop the pending timer and abort the in-flight attempt.

        An attempt the server already accepted still reports its version and,
        for a create, its id once it returns, so later saves neither conflict
        with it nor create a second draft.
        """
        events: List[_Event] = []
        with self._lock:
            self._cancel_timer_locked()
            self._deferred = None
            if self._inflight is not None and not self._inflight.cancelled:
                logger.debug("Aborting in-flight save generation=%d", self._inflight.generation)
                self._inflight.cancel()
            if self._status == "saving":
                self._set_status_locked("idle", events)
            self._settled.notify_all()
        self._emit(events)

    def retry(self) -> bool:
        events: List[_Event] = []
        with self._lock:
            if self._closed or self._status != "error" or self._latest is None:
                return False
            self._cancel_timer_locked()
            self._halted_by_error = False
            self._dispatch_locked(self._latest, events)
        self._emit(events)
        return True

    def close(self) -> None:
        self.cancel_pending_save()
        with self._lock:
            self._closed = True

    def wait_until_settled(self, timeout: Optional[float] = None) -> bool:
        """Block until no debounce timer is pending and no save is in flight."""
        with self._settled:
            return self._settled.wait_for(
                lambda: self._timer is None and self._inflight is None,
                timeout=timeout,
            )

    # Conflict resolution

    def resolve_overwrite(self) -> bool:
        """Resend local edits against the server version the conflict reported."""
        events: List[_Event] = []
        with self._lock:
            if self._conflict is None or self._closed:
                return False
            self._server_version = self._conflict.server_version
            self._conflict = None
            self._suspended = False
            self._cancel_timer_locked()
            if self._latest is None:
                self._set_status_locked("idle", events)
            else:
                logger.info(
                    "Overwriting server copy draft_id=%s base_version=%s",
                    self._draft_id,
                    self._server_version,
                )
                self._dispatch_locked(self._latest, events)
        self._emit(events)
        return True

    def resolve_reload(self) -> Optional[DraftSnapshot]:
        """Adopt the server's copy as the new baseline and drop the local backup."""
        events: List[_Event] = []
        with self._lock:
            if self._conflict is None:
                return None
            snapshot = self._conflict.server_content.to_snapshot()
            self._cancel_timer_locked()
            self._deferred = None
            self._server_version = self._conflict.server_version
            self._latest = snapshot
            self._backup_store.clear(self._draft_id)
            self._conflict = None
            self._suspended = False
            self._error_message = None
            self._set_status_locked("idle", events)
        self._emit(events)
        return snapshot

    def continue_editing(self) -> None:
        """Defer the decision: autosave stays off, local edits and backup stay."""
        events: List[_Event] = []
        with self._lock:
            if self._conflict is None:
                return
            self._set_status_locked("idle", events)
        self._emit(events)

    # Recovery

    def check_recovery(self) -> Optional[LocalBackup]:
        with self._lock:
            self._recovery = self._backup_store.read(self._draft_id, self._server_version)
            return self._recovery

    def recover_from_local(self) -> Optional[DraftSnapshot]:
        # The backup itself stays until a confirmed save or an explicit discard.
        with self._lock:
            if self._recovery is None:
                return None
            snapshot = self._recovery.data
            self._recovery = None
            self._latest = snapshot
            return snapshot

    def discard_recovery(self) -> None:
        with self._lock:
            self._recovery = None
            self._backup_store.clear(self._draft_id)

    # Internals

    def _make_timer_callback(self, generation: int) -> Callable[[], None]:
        def fire() -> None:
            self._on_debounce_elapsed(generation)

        return fire

    def _on_debounce_elapsed(self, generation: int) -> None:
        events: List[_Event] = []
        with self._lock:
            if generation != self._timer_generation:
                return
            self._timer = None
            if self._closed or self._suspended or self._halted_by_error or self._latest is None:
                self._settled.notify_all()
                return
            self._dispatch_locked(self._latest, events)
        self._emit(events)

    def _cancel_timer_locked(self) -> None:
        self._timer_generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            self._settled.notify_all()

    def _dispatch_locked(self, snapshot: DraftSnapshot, events: List[_Event]) -> None:
        self._error_message = None
        self._set_status_locked("saving", events)
        if self._inflight is not None:
            # The older request may already be committed; send once it reports back.
            if not self._inflight.cancelled:
                logger.debug("Superseding in-flight save generation=%d", self._inflight.generation)
                self._inflight.cancel()
            self._deferred = snapshot
            return

        self._generation += 1
        token = CancellationToken(self._generation)
        self._inflight = token
        payload = AutosavePayload.from_snapshot(
            draft_id=self._draft_id,
            snapshot=snapshot,
            expected_version=self._server_version,
        )
        worker = threading.Thread(
            target=self._run_save,
            args=(token, payload, snapshot),
            name=f"autosave-{self._generation}",
            daemon=True,
        )
        worker.start()

    def _run_save(self, token: CancellationToken, payload: AutosavePayload, snapshot: DraftSnapshot) -> None:
        try:
            response = self._transport.save(payload, token)
        except SaveAbortedError:
            logger.debug("Save generation=%d aborted before sending", token.generation)
            self._finish_aborted(token)
            return
        except DraftConflictError as exc:
            self._finish_conflict(token, exc)
            return
        except AutosaveError as exc:
            self._finish_error(token, exc.message, retryable=isinstance(exc, TransientSaveError))
            return
        except Exception as exc:
            logger.exception("Auto-save failed unexpectedly")
            self._finish_error(token, str(exc) or "Auto-save failed", retryable=True)
            return
        self._finish_success(token, response, snapshot)

    def _release_locked(self, token: CancellationToken) -> bool:
        """Clear the in-flight slot; True when ``token`` was not superseded."""
        current = self._inflight is token and not token.cancelled
        if self._inflight is token:
            self._inflight = None
        return current

    def _adopt_accepted_locked(self, response: SaveSuccessResponse) -> None:
        if response.is_new and self._draft_id is None:
            self._draft_id = response.id
            self._backup_store.migrate(None, response.id)
        if is_newer(response.updated_at, self._server_version):
            self._server_version = response.updated_at

    def _finish_aborted(self, token: CancellationToken) -> None:
        events: List[_Event] = []
        with self._lock:
            self._release_locked(token)
            self._dispatch_deferred_locked(events)
            self._settled.notify_all()
        self._emit(events)

    def _finish_success(
        self,
        token: CancellationToken,
        response: SaveSuccessResponse,
        snapshot: DraftSnapshot,
    ) -> None:
        events: List[_Event] = []
        with self._lock:
            current = self._release_locked(token)
            self._adopt_accepted_locked(response)
            if current:
                self._last_saved = utc_now()
                self._backup_store.clear_if_matches(self._draft_id, snapshot)
                self._set_status_locked("saved", events)
                if self._on_save_complete is not None:
                    events.append((self._on_save_complete, (response.id, response.updated_at)))
            else:
                logger.debug(
                    "Superseded save generation=%d was accepted draft_id=%s version=%s",
                    token.generation,
                    response.id,
                    response.updated_at,
                )
            self._dispatch_deferred_locked(events)
            self._settled.notify_all()
        self._emit(events)

    def _finish_conflict(self, token: CancellationToken, exc: DraftConflictError) -> None:
        events: List[_Event] = []
        with self._lock:
            if not self._release_locked(token):
                self._dispatch_deferred_locked(events)
                self._settled.notify_all()
            else:
                self._deferred = None
                self._cancel_timer_locked()
                self._conflict = exc.to_response()
                self._suspended = True
                logger.warning(
                    "Autosave conflict draft_id=%s local_version=%s server_version=%s",
                    self._draft_id,
                    self._server_version,
                    exc.server_version,
                )
                self._set_status_locked("conflict", events)
                if self._on_conflict is not None:
                    events.append((self._on_conflict, (self._conflict,)))
                self._settled.notify_all()
        self._emit(events)

    def _finish_error(self, token: CancellationToken, message: str, *, retryable: bool) -> None:
        events: List[_Event] = []
        with self._lock:
            if not self._release_locked(token):
                self._dispatch_deferred_locked(events)
                self._settled.notify_all()
            else:
                self._error_message = message
                if not retryable:
                    # Resending the same request cannot succeed; wait for retry().
                    self._halted_by_error = True
                    self._cancel_timer_locked()
                logger.warning("Auto-save failed draft_id=%s: %s", self._draft_id, message)
                self._set_status_locked("error", events)
                self._settled.notify_all()
        self._emit(events)

    def _dispatch_deferred_locked(self, events: List[_Event]) -> None:
        deferred, self._deferred = self._deferred, None
        if deferred is None or self._closed:
            return
        self._dispatch_locked(deferred, events)

    def _set_status_locked(self, status: SaveStatus, events: List[_Event]) -> None:
        if status == self._status:
            return
        self._status = status
        if self._on_status_change is not None:
            events.append((self._on_status_change, (status,)))

    def _emit(self, events: List[_Event]) -> None:
        for callback, args in events:
            try:
                callback(*args)
            except Exception:
                logger.exception("Autosave callback %r failed", callback)
