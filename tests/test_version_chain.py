"""
Version chain: upload, prepare, integrity checks and blob compensation.
"""

import hashlib

import pytest

from signflow.core.exceptions import InvariantViolation
from signflow.models import db
from signflow.models.document import Document
from signflow.services import document_repository, version_chain


def _v(doc_json, number):
    return next(v for v in doc_json["versions"] if v["version"] == number)


def test_upload_creates_locked_original(api):
    content = b"%PDF-1.4 contract body"
    doc = api.upload(content=content)

    assert doc["status"] == "draft"
    assert doc["current_version"] == 0
    assert len(doc["versions"]) == 1
    original = _v(doc, 0)
    assert original["label"] == "original"
    assert original["locked"] is True
    assert original["derived_from_version"] is None
    assert original["hash"] == hashlib.sha256(content).hexdigest()
    assert original["hash_algo"] == "sha256"
    assert original["size"] == len(content)
    assert "storage_key" not in original


def test_upload_stores_content_under_owner_scoped_key(api, blob_store):
    doc_id = api.upload()["id"]
    version = db.session.get(Document, doc_id).get_version(0)
    assert version.storage_key.startswith(f"documents/owner-1/{doc_id}/v0000-original-")
    assert blob_store.exists(version.storage_bucket, version.storage_key)


def test_upload_without_file_is_rejected(client, owner_headers):
    res = client.post("/api/v1/documents", headers=owner_headers,
                      data={"name": "No file"}, content_type="multipart/form-data")
    assert res.status_code == 400
    assert res.get_json()["error"] == "A file is required"


def test_prepare_appends_unlocked_layout_version(api):
    doc_id = api.upload()["id"]
    fields = [{"id": "f1", "type": "text", "recipientId": "r1", "page": 1, "x": 10, "y": 20}]

    res = api.client.post(f"/api/v1/documents/{doc_id}/prepare", headers=api.headers,
                          json={"fields": fields, "changeLog": "Placed fields"})

    assert res.status_code == 200
    doc = res.get_json()
    assert doc["current_version"] == 1
    prepared = _v(doc, 1)
    assert prepared["label"] == "prepared"
    assert prepared["locked"] is False
    assert prepared["derived_from_version"] == 0
    assert prepared["fields"] == fields
    assert prepared["change_log"] == "Placed fields"
    assert prepared["hash"] == _v(doc, 0)["hash"]


def test_send_without_fields_reuses_prepared_layout(api):
    doc_id = api.upload()["id"]
    fields = [{"id": "sig", "type": "signature", "recipientId": "r1", "required": True}]
    api.client.post(f"/api/v1/documents/{doc_id}/prepare", headers=api.headers, json={"fields": fields})

    res = api.client.post(f"/api/v1/documents/{doc_id}/send", headers=api.headers, json={
        "recipients": [{"id": "r1", "email": "alice@example.com", "order": 1}],
        "signingMode": "sequential",
    })

    assert res.status_code == 200
    doc = api.get(doc_id)
    assert doc["current_version"] == 2
    assert _v(doc, 2)["fields"] == fields
    assert _v(doc, 2)["locked"] is True


@pytest.mark.parametrize("fields", [
    "not-a-list",
    [{"type": "text"}],
    [{"id": "f1"}],
    [{"id": "f1", "type": "text"}, {"id": "f1", "type": "text"}],
])
def test_prepare_rejects_malformed_layout(api, fields):
    doc_id = api.upload()["id"]
    res = api.client.post(f"/api/v1/documents/{doc_id}/prepare", headers=api.headers, json={"fields": fields})
    assert res.status_code == 400
    assert api.get(doc_id)["current_version"] == 0


def test_prepare_after_signature_conflicts(api):
    doc_id = api.sent_document(mode="parallel")
    api.sign(doc_id, "r1", [{"id": "f1", "value": "John Doe"}])

    res = api.client.post(f"/api/v1/documents/{doc_id}/prepare", headers=api.headers,
                          json={"fields": [{"id": "f9", "type": "text"}]})
    assert res.status_code == 409


def test_send_rejects_fields_for_unknown_recipients(api):
    doc_id = api.upload()["id"]
    res = api.send(doc_id, fields=[{"id": "f1", "type": "text", "recipientId": "ghost"}])
    assert res.status_code == 400
    assert res.get_json()["details"]["recipients"] == ["ghost"]


# ── Integrity ────────────────────────────────────────────────────────────


def test_integrity_check_passes_for_untouched_content(api):
    doc_id = api.sent_document()
    for number in (0, 1):
        res = api.client.get(f"/api/v1/documents/{doc_id}/versions/{number}/integrity", headers=api.headers)
        assert res.status_code == 200
        assert res.get_json()["ok"] is True


def test_tampered_content_fails_integrity(api, blob_store):
    doc_id = api.sent_document()
    version = db.session.get(Document, doc_id).get_version(1)
    blob_store.overwrite(version.storage_bucket, version.storage_key, b"%PDF-1.7 forged")

    res = api.client.get(f"/api/v1/documents/{doc_id}/versions/1/integrity", headers=api.headers)

    assert res.status_code == 409
    body = res.get_json()
    assert body["code"] == "ERR_INTEGRITY"
    assert body["details"]["actual"] == hashlib.sha256(b"%PDF-1.7 forged").hexdigest()
    assert body["details"]["expected"] == version.hash


def test_integrity_of_unknown_version_is_not_found(api):
    doc_id = api.upload()["id"]
    res = api.client.get(f"/api/v1/documents/{doc_id}/versions/9/integrity", headers=api.headers)
    assert res.status_code == 404


# ── Compensation ─────────────────────────────────────────────────────────


def test_rejected_write_removes_its_blob(api, blob_store):
    doc_id = api.upload()["id"]
    document = db.session.get(Document, doc_id)
    clone = version_chain.clone_version(document, document.current, "prepared")
    bucket, key = clone.storage_bucket, clone.storage_key
    assert blob_store.exists(bucket, key)

    document.current_version = 5
    with pytest.raises(InvariantViolation):
        document_repository.save_document(document)

    assert not blob_store.exists(bucket, key)
    assert len(db.session.get(Document, doc_id).versions) == 1
