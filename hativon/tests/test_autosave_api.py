import pytest
from fastapi.testclient import TestClient

from hativon.api.main import app
from hativon.client.backup_store import JsonFileKeyValueStorage, LocalBackupStore
from hativon.client.scheduler import SaveScheduler
from hativon.client.transport import HttpSaveTransport
from hativon.drafts.authorization import Caller
from hativon.drafts.gateway import PersistenceGateway
from hativon.internal_core.contracts import DraftSnapshot
from hativon.internal_core.draft_store import InMemoryDraftStore
from hativon.internal_core.versioning import is_newer

AUTOSAVE_URL = "/api/user/posts/autosave"
OWNER_HEADERS = {"X-User-Id": "student-7", "X-User-Name": "Noa"}


@pytest.fixture
def gateway():
    installed = PersistenceGateway(InMemoryDraftStore())
    app.state.persistence_gateway = installed
    try:
        yield installed
    finally:
        delattr(app.state, "persistence_gateway")


def test_healthz() -> None:
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_create_update_then_stale_write_conflicts(gateway) -> None:
    client = TestClient(app)

    created = client.post(AUTOSAVE_URL, json={"title": "A", "content": "B"}, headers=OWNER_HEADERS)
    assert created.status_code == 200
    body = created.json()
    assert body["success"] is True
    assert body["isNew"] is True
    draft_id = body["id"]
    t1 = body["updatedAt"]

    updated = client.post(
        AUTOSAVE_URL,
        json={"draftId": draft_id, "title": "A2", "expectedVersion": t1},
        headers=OWNER_HEADERS,
    )
    assert updated.status_code == 200
    t2 = updated.json()["updatedAt"]
    assert updated.json()["isNew"] is False
    assert is_newer(t2, t1)

    stale = client.post(
        AUTOSAVE_URL,
        json={"draftId": draft_id, "title": "A3", "expectedVersion": t1},
        headers=OWNER_HEADERS,
    )
    assert stale.status_code == 409
    conflict = stale.json()
    assert conflict["conflict"] is True
    assert conflict["serverVersion"] == t2
    assert conflict["serverContent"]["title"] == "A2"
    assert conflict["serverContent"]["content"] == "B"
    assert gateway.store.get(draft_id).title == "A2"


def test_post_id_is_accepted_as_draft_id(gateway) -> None:
    client = TestClient(app)
    created = client.post(AUTOSAVE_URL, json={"title": "A", "content": "B"}, headers=OWNER_HEADERS).json()

    response = client.post(
        AUTOSAVE_URL,
        json={"postId": created["id"], "content": "B2", "customAuthor": "Class 6B"},
        headers=OWNER_HEADERS,
    )

    assert response.status_code == 200
    stored = gateway.store.get(created["id"])
    assert stored.content == "B2"
    assert stored.author == "Class 6B"


def test_no_op_save_returns_same_version(gateway) -> None:
    client = TestClient(app)
    created = client.post(AUTOSAVE_URL, json={"title": "A", "content": "B"}, headers=OWNER_HEADERS).json()

    again = client.post(
        AUTOSAVE_URL,
        json={"draftId": created["id"], "title": "A", "content": "B", "expectedVersion": created["updatedAt"]},
        headers=OWNER_HEADERS,
    )

    assert again.status_code == 200
    assert again.json()["updatedAt"] == created["updatedAt"]


def test_get_and_delete_draft(gateway) -> None:
    client = TestClient(app)
    created = client.post(
        AUTOSAVE_URL,
        json={"title": "Spring fair", "content": "Stalls", "coverImage": "fair.png"},
        headers=OWNER_HEADERS,
    ).json()

    detail = client.get(f"/api/user/posts/{created['id']}", headers=OWNER_HEADERS)
    assert detail.status_code == 200
    data = detail.json()
    assert data["title"] == "Spring fair"
    assert data["coverImage"] == "fair.png"
    assert data["customAuthor"] == "Noa"
    assert data["status"] == "draft"
    assert data["updatedAt"] == created["updatedAt"]

    deleted = client.delete(f"/api/user/posts/{created['id']}", headers=OWNER_HEADERS)
    assert deleted.status_code == 200
    assert deleted.json() == {"success": True, "id": created["id"]}
    assert client.get(f"/api/user/posts/{created['id']}", headers=OWNER_HEADERS).status_code == 404


def test_injected_identity_resolver_is_used(gateway) -> None:
    app.state.identity_resolver = lambda request: Caller(user_id="session-user")
    client = TestClient(app)
    try:
        response = client.post(AUTOSAVE_URL, json={"title": "A"})
    finally:
        delattr(app.state, "identity_resolver")

    assert response.status_code == 200
    assert gateway.store.get(response.json()["id"]).author_id == "session-user"


def test_scheduler_saves_over_http_and_clears_backup(gateway, tmp_path) -> None:
    client = TestClient(app)
    backups = LocalBackupStore(JsonFileKeyValueStorage(tmp_path / "autosave"))
    transport = HttpSaveTransport(AUTOSAVE_URL, session=client, headers={"X-User-Id": "student-7"})
    scheduler = SaveScheduler(transport=transport, backup_store=backups, debounce_seconds=0.05)

    scheduler.update(DraftSnapshot(title="Field trip", content="Bring lunch."))
    assert scheduler.wait_until_settled(5.0)

    assert scheduler.status == "saved"
    draft_id = scheduler.draft_id
    assert gateway.store.get(draft_id).content == "Bring lunch."
    assert backups.peek(None) is None
    assert backups.peek(draft_id) is None

    scheduler.update(DraftSnapshot(title="Field trip", content="Bring lunch and a hat."))
    assert scheduler.wait_until_settled(5.0)

    assert gateway.store.get(draft_id).content == "Bring lunch and a hat."
    assert scheduler.server_version == gateway.store.get(draft_id).version
    scheduler.close()


def test_scheduler_over_http_reports_conflict(gateway, tmp_path) -> None:
    client = TestClient(app)
    created = client.post(AUTOSAVE_URL, json={"title": "A", "content": "B"}, headers=OWNER_HEADERS).json()
    client.post(
        AUTOSAVE_URL,
        json={"draftId": created["id"], "title": "other tab", "expectedVersion": created["updatedAt"]},
        headers=OWNER_HEADERS,
    )
    scheduler = SaveScheduler(
        transport=HttpSaveTransport(AUTOSAVE_URL, session=client, headers=OWNER_HEADERS),
        backup_store=LocalBackupStore(JsonFileKeyValueStorage(tmp_path)),
        draft_id=created["id"],
        initial_version=created["updatedAt"],
    )

    scheduler.trigger_immediate(DraftSnapshot(title="this tab", content="B"))
    assert scheduler.wait_until_settled(5.0)

    assert scheduler.status == "conflict"
    assert scheduler.conflict.server_content.title == "other tab"
    assert gateway.store.get(created["id"]).title == "other tab"
