import pytest

from hativon.drafts.authorization import Caller
from hativon.drafts.errors import (
    AuthorizationError,
    DraftConflictError,
    DraftNotFoundError,
    PayloadValidationError,
    TransientSaveError,
)
from hativon.drafts.gateway import FieldLimits, PersistenceGateway
from hativon.internal_core.draft_store import InMemoryDraftStore
from hativon.internal_core.versioning import is_newer

OWNER = Caller(user_id="student-7", display_name="Noa")
OTHER = Caller(user_id="student-9", display_name="Ido")


def _gateway(store=None, **kwargs) -> PersistenceGateway:
    return PersistenceGateway(store or InMemoryDraftStore(), **kwargs)


def test_create_without_id_returns_new_draft() -> None:
    gateway = _gateway()
    result = gateway.save(caller=OWNER, draft_id=None, fields={"title": "A", "content": "B"})

    assert result.is_new is True
    record = gateway.store.get(result.id)
    assert record.title == "A"
    assert record.content == "B"
    assert record.author_id == OWNER.user_id
    assert record.author == "Noa"
    assert record.status == "draft"
    assert record.version == result.updated_at


def test_create_ignores_expected_version_and_defaults_title() -> None:
    gateway = _gateway(default_title="Untitled draft")
    result = gateway.save(
        caller=OWNER,
        draft_id=None,
        fields={"content": "only body"},
        expected_version="2030-01-01T00:00:00Z",
    )
    assert gateway.store.get(result.id).title == "Untitled draft"


def test_create_requires_title_or_content() -> None:
    gateway = _gateway()
    with pytest.raises(PayloadValidationError):
        gateway.save(caller=OWNER, draft_id=None, fields={"title": "", "content": ""})


def test_update_bumps_version_strictly() -> None:
    gateway = _gateway()
    created = gateway.save(caller=OWNER, draft_id=None, fields={"title": "A", "content": "B"})

    updated = gateway.save(
        caller=OWNER,
        draft_id=created.id,
        fields={"title": "A2"},
        expected_version=created.updated_at,
    )

    assert updated.is_new is False
    assert updated.id == created.id
    assert is_newer(updated.updated_at, created.updated_at)
    assert updated.changed_fields == ("title",)
    assert gateway.store.get(created.id).title == "A2"


def test_no_op_save_keeps_version() -> None:
    gateway = _gateway()
    created = gateway.save(caller=OWNER, draft_id=None, fields={"title": "A", "content": "B"})

    same = gateway.save(
        caller=OWNER,
        draft_id=created.id,
        fields={"title": "A", "content": "B"},
        expected_version=created.updated_at,
    )
    empty = gateway.save(caller=OWNER, draft_id=created.id, fields={})

    assert same.updated_at == created.updated_at
    assert empty.updated_at == created.updated_at
    assert gateway.store.get(created.id).version == created.updated_at


def test_second_writer_from_same_version_gets_conflict_and_no_mutation() -> None:
    gateway = _gateway()
    created = gateway.save(caller=OWNER, draft_id=None, fields={"title": "A", "content": "B"})
    t1 = created.updated_at

    first = gateway.save(caller=OWNER, draft_id=created.id, fields={"title": "from tab A"}, expected_version=t1)
    t2 = first.updated_at

    with pytest.raises(DraftConflictError) as info:
        gateway.save(caller=OWNER, draft_id=created.id, fields={"title": "from tab B"}, expected_version=t1)

    assert info.value.server_version == t2
    assert info.value.server_content.title == "from tab A"
    assert info.value.server_content.content == "B"
    stored = gateway.store.get(created.id)
    assert stored.title == "from tab A"
    assert stored.version == t2


def test_overwrite_with_returned_server_version_succeeds() -> None:
    gateway = _gateway()
    created = gateway.save(caller=OWNER, draft_id=None, fields={"title": "A", "content": "B"})
    gateway.save(caller=OWNER, draft_id=created.id, fields={"title": "remote"}, expected_version=created.updated_at)
    with pytest.raises(DraftConflictError) as info:
        gateway.save(caller=OWNER, draft_id=created.id, fields={"title": "local"}, expected_version=created.updated_at)

    result = gateway.save(
        caller=OWNER,
        draft_id=created.id,
        fields={"title": "local"},
        expected_version=info.value.server_version,
    )

    assert is_newer(result.updated_at, info.value.server_version)
    assert gateway.store.get(created.id).title == "local"


def test_update_without_expected_version_is_accepted() -> None:
    gateway = _gateway()
    created = gateway.save(caller=OWNER, draft_id=None, fields={"title": "A", "content": "B"})
    gateway.save(caller=OWNER, draft_id=created.id, fields={"content": "B2"})
    result = gateway.save(caller=OWNER, draft_id=created.id, fields={"content": "B3"})
    assert gateway.store.get(created.id).content == "B3"
    assert result.updated_at == gateway.store.get(created.id).version


def test_non_owner_is_rejected_without_mutation() -> None:
    gateway = _gateway()
    created = gateway.save(caller=OWNER, draft_id=None, fields={"title": "A", "content": "B"})

    with pytest.raises(AuthorizationError) as info:
        gateway.save(caller=OTHER, draft_id=created.id, fields={"title": "hijack"})

    assert info.value.status_code == 403
    assert gateway.store.get(created.id).title == "A"


def test_custom_ownership_policy_is_consulted() -> None:
    gateway = _gateway(ownership=lambda caller, record: caller.user_id in {record.author_id, "editor-1"})
    created = gateway.save(caller=OWNER, draft_id=None, fields={"title": "A", "content": "B"})
    gateway.save(caller=Caller(user_id="editor-1"), draft_id=created.id, fields={"title": "edited"})
    assert gateway.store.get(created.id).title == "edited"


def test_unknown_draft_raises_not_found() -> None:
    with pytest.raises(DraftNotFoundError):
        _gateway().save(caller=OWNER, draft_id="missing", fields={"title": "x"})


class _ExplodingStore(InMemoryDraftStore):
    def get(self, draft_id):
        raise AssertionError("store must not be touched")

    def create(self, record):
        raise AssertionError("store must not be touched")


def test_oversized_payload_is_rejected_before_store_access() -> None:
    gateway = _gateway(_ExplodingStore(), limits=FieldLimits(title=10))
    with pytest.raises(PayloadValidationError) as info:
        gateway.save(caller=OWNER, draft_id="any", fields={"title": "x" * 11})
    assert "title" in info.value.errors


def test_malformed_expected_version_is_rejected_before_store_access() -> None:
    gateway = _gateway(_ExplodingStore())
    with pytest.raises(PayloadValidationError) as info:
        gateway.save(caller=OWNER, draft_id="any", fields={"title": "x"}, expected_version="not-a-date")
    assert "expectedVersion" in info.value.errors


class _RacingStore(InMemoryDraftStore):
    """Lets another writer slip in between the gateway's read and its write."""

    def __init__(self, races: int) -> None:
        super().__init__()
        self.races = races
        self.clock_tick = 0

    def update_if_version(self, draft_id, *, expected_version, changes, new_version):
        if self.races > 0:
            self.races -= 1
            self.clock_tick += 1
            current = self.get(draft_id)
            super().update_if_version(
                draft_id,
                expected_version=current.version,
                changes={"content": f"concurrent {self.clock_tick}"},
                new_version=f"2099-01-01T00:00:0{self.clock_tick}.000000Z",
            )
        return super().update_if_version(
            draft_id,
            expected_version=expected_version,
            changes=changes,
            new_version=new_version,
        )


def test_lost_race_with_expected_version_becomes_conflict() -> None:
    store = _RacingStore(races=0)
    gateway = _gateway(store)
    created = gateway.save(caller=OWNER, draft_id=None, fields={"title": "A", "content": "B"})
    store.races = 1

    with pytest.raises(DraftConflictError) as info:
        gateway.save(caller=OWNER, draft_id=created.id, fields={"title": "mine"}, expected_version=created.updated_at)

    assert info.value.server_content.content == "concurrent 1"
    assert store.get(created.id).title == "A"


def test_lost_race_without_expected_version_is_retried() -> None:
    store = _RacingStore(races=0)
    gateway = _gateway(store, max_cas_attempts=3)
    created = gateway.save(caller=OWNER, draft_id=None, fields={"title": "A", "content": "B"})
    store.races = 1

    gateway.save(caller=OWNER, draft_id=created.id, fields={"title": "mine"})

    stored = store.get(created.id)
    assert stored.title == "mine"
    assert stored.content == "concurrent 1"


def test_repeated_lost_races_surface_as_transient_error() -> None:
    store = _RacingStore(races=0)
    gateway = _gateway(store, max_cas_attempts=2)
    created = gateway.save(caller=OWNER, draft_id=None, fields={"title": "A", "content": "B"})
    store.races = 5

    with pytest.raises(TransientSaveError):
        gateway.save(caller=OWNER, draft_id=created.id, fields={"title": "mine"})


def test_delete_draft_requires_owner() -> None:
    gateway = _gateway()
    created = gateway.save(caller=OWNER, draft_id=None, fields={"title": "A", "content": "B"})
    with pytest.raises(AuthorizationError):
        gateway.delete_draft(caller=OTHER, draft_id=created.id)
    gateway.delete_draft(caller=OWNER, draft_id=created.id)
    assert gateway.store.get(created.id) is None
