"""
Shared pytest fixtures for the signflow test suite.

Provides:
    - app: Flask application (session-scoped, in-memory SQLite + blob store)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - blob_store: the in-memory blob store (InspectableBlobStore), fresh per test
    - owner_headers / other_owner_headers: Bearer headers for two owners
    - failing_notifier: notifier whose signing requests always fail
    - api: SigningApi wrapper (upload, send, token, sign, act) for the default owner
"""

import io

import pytest

from signflow import create_app
from signflow.integrations.blob_store import InMemoryBlobStore
from signflow.models import db as _db
from signflow.models.document import Document
from signflow.services.email_service import NotificationSender
from signflow.services.jwt_service import generate_owner_token

OWNER_ID = "owner-1"
OWNER_EMAIL = "owner@example.com"
PDF_BYTES = b"%PDF-1.7\n1 0 obj << /Type /Catalog >> endobj\n%%EOF\n"


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


class InspectableBlobStore(InMemoryBlobStore):
    """In-memory store that tests can look into and tamper with."""

    def exists(self, bucket, key):
        with self._lock:
            return (bucket, key) in self._objects

    def keys(self):
        with self._lock:
            return set(self._objects)

    def overwrite(self, bucket, key, data):
        """Replace bytes in place, bypassing the version chain."""
        with self._lock:
            _, content_type = self._objects[(bucket, key)]
            self._objects[(bucket, key)] = (data, content_type)


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    app.extensions["blob_store"] = InspectableBlobStore()
    app.extensions["notifier"] = NotificationSender()
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def blob_store(app):
    return app.extensions["blob_store"]


@pytest.fixture()
def owner_headers():
    return {"Authorization": f"Bearer {generate_owner_token(OWNER_ID, OWNER_EMAIL)}"}


@pytest.fixture()
def other_owner_headers():
    return {"Authorization": f"Bearer {generate_owner_token('owner-2', 'other@example.com')}"}


class FailingNotifier(NotificationSender):
    """Signing requests never get delivered; rejection notices still do."""

    def __init__(self):
        self.attempts = []

    def send_signing_request(self, recipient, document, signing_token):
        self.attempts.append(recipient.recipient_id)
        return False


@pytest.fixture()
def failing_notifier(app):
    notifier = FailingNotifier()
    app.extensions["notifier"] = notifier
    return notifier


# ── Convenience fixtures ─────────────────────────────────────────────────


def two_signer_fields():
    return [
        {"id": "f1", "type": "text", "recipientId": "r1", "required": True},
        {"id": "f2", "type": "signature", "recipientId": "r2", "required": True},
    ]


def two_signers():
    return [
        {"id": "r1", "email": "alice@example.com", "name": "Alice", "role": "signer", "order": 1},
        {"id": "r2", "email": "bob@example.com", "name": "Bob", "role": "signer", "order": 2},
    ]


class SigningApi:
    """Thin wrapper over the test client for the common owner/recipient calls."""

    def __init__(self, client, headers):
        self.client = client
        self.headers = headers

    def upload(self, *, name="Service Agreement", content=PDF_BYTES):
        res = self.client.post(
            "/api/v1/documents",
            headers=self.headers,
            data={"name": name, "file": (io.BytesIO(content), "agreement.pdf", "application/pdf")},
            content_type="multipart/form-data",
        )
        assert res.status_code == 201, res.get_json()
        return res.get_json()

    def send(self, document_id, *, recipients=None, mode="sequential", fields=None, **extra):
        body = {
            "recipients": recipients if recipients is not None else two_signers(),
            "signingMode": mode,
            "fields": fields if fields is not None else two_signer_fields(),
            **extra,
        }
        return self.client.post(f"/api/v1/documents/{document_id}/send", headers=self.headers, json=body)

    def sent_document(self, **kwargs):
        """Upload and send in one step.  Returns the document id."""
        document_id = self.upload()["id"]
        res = self.send(document_id, **kwargs)
        assert res.status_code == 200, res.get_json()
        return document_id

    def get(self, document_id):
        res = self.client.get(f"/api/v1/documents/{document_id}", headers=self.headers)
        assert res.status_code == 200, res.get_json()
        return res.get_json()

    def token(self, document_id, recipient_id):
        document = _db.session.get(Document, document_id)
        return document.get_recipient(recipient_id).signing_token

    def sign(self, document_id, recipient_id, fields=None, **payload):
        body = {
            "token": self.token(document_id, recipient_id),
            "recipientId": recipient_id,
            "fields": fields if fields is not None else [],
            **payload,
        }
        return self.client.post("/api/v1/sign", json=body)

    def act(self, document_id, recipient_id, action, **payload):
        body = {"token": self.token(document_id, recipient_id), "action": action, **payload}
        return self.client.post("/api/v1/signed-document-action", json=body)


@pytest.fixture()
def api(client, owner_headers):
    return SigningApi(client, owner_headers)
