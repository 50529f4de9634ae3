"""
End-to-end signing flows through the recipient endpoints.

Every document here is uploaded (v0 original) and sent (v1 prepared,
locked) before anyone acts, so the first signature always produces v2.
"""

from datetime import timedelta

from signflow.models import db
from signflow.models.document import Document
from signflow.utils.helpers import utcnow

SIGNATURE = "data:image/png;base64,iVBORw0KGgo="


def _version(doc_json, number):
    return next(v for v in doc_json["versions"] if v["version"] == number)


def _recipient(doc_json, recipient_id):
    return next(r for r in doc_json["recipients"] if r["recipient_id"] == recipient_id)


# ── Sequential mode ──────────────────────────────────────────────────────


class TestSequentialSigning:

    def test_first_signer_creates_signed_version(self, api):
        doc_id = api.sent_document()

        res = api.sign(doc_id, "r1", [{"id": "f1", "value": "John Doe"}])

        assert res.status_code == 200
        body = res.get_json()
        assert body["currentVersion"] == 2
        assert body["status"] == "in_progress"

        doc = api.get(doc_id)
        v2 = _version(doc, 2)
        assert v2["label"] == "signed_by_order_1"
        assert v2["derived_from_version"] == 1
        assert v2["locked"] is True
        assert v2["fields"] == []
        assert v2["signed_by"] == ["r1"]
        assert v2["hash"] == _version(doc, 1)["hash"]
        assert _recipient(doc, "r1")["signed_version"] == 2
        assert _recipient(doc, "r2")["status"] == "sent"
        assert doc["status"] == "in_progress"

    def test_second_signer_before_first_is_refused(self, api):
        doc_id = api.sent_document()

        res = api.sign(doc_id, "r2", [{"id": "f2", "value": SIGNATURE}])

        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_SEQUENCE"
        doc = api.get(doc_id)
        assert doc["current_version"] == 1
        assert all(v["label"] in ("original", "prepared") for v in doc["versions"])

    def test_last_signature_is_signed_final_and_completes(self, api):
        doc_id = api.sent_document()
        assert api.sign(doc_id, "r1", [{"id": "f1", "value": "John Doe"}]).status_code == 200

        res = api.sign(doc_id, "r2", [{"id": "f2", "value": SIGNATURE}])

        assert res.status_code == 200
        assert res.get_json()["status"] == "completed"
        doc = api.get(doc_id)
        v3 = _version(doc, 3)
        assert v3["label"] == "signed_final"
        assert v3["signed_by"] == ["r1", "r2"]
        assert doc["current_version"] == 3
        assert doc["completed_at"] is not None
        assert doc["finalized_at"] is not None

    def test_only_recipient_at_first_order_is_invited(self, api):
        doc_id = api.upload()["id"]
        res = api.send(doc_id)

        assert res.status_code == 200
        assert res.get_json()["emailDelivery"]["sent"] == ["r1"]
        doc = api.get(doc_id)
        assert _recipient(doc, "r1")["status"] == "sent"
        assert _recipient(doc, "r2")["status"] == "pending"
        assert doc["status"] == "sent"

    def test_send_appends_locked_prepared_version(self, api):
        doc_id = api.sent_document()
        doc = api.get(doc_id)

        prepared = _version(doc, 1)
        assert prepared["label"] == "prepared"
        assert prepared["locked"] is True
        assert [f["id"] for f in prepared["fields"]] == ["f1", "f2"]
        assert prepared["sent_at"] is not None
        assert prepared["expires_at"] == doc["expires_at"]

    def test_send_twice_conflicts(self, api):
        doc_id = api.sent_document()
        res = api.send(doc_id)
        assert res.status_code == 409


# ── Parallel mode ────────────────────────────────────────────────────────


def test_parallel_signers_act_in_any_order(api):
    doc_id = api.sent_document(mode="parallel")

    res = api.sign(doc_id, "r2", [{"id": "f2", "value": SIGNATURE}])

    assert res.status_code == 200
    doc = api.get(doc_id)
    assert _recipient(doc, "r1")["status"] == "sent"
    assert _recipient(doc, "r2")["status"] == "signed"
    assert _version(doc, 2)["label"] == "signed_by_order_2"
    assert doc["status"] == "in_progress"


def test_parallel_send_invites_everyone(api):
    doc_id = api.upload()["id"]
    res = api.send(doc_id, mode="parallel")
    assert sorted(res.get_json()["emailDelivery"]["sent"]) == ["r1", "r2"]


# ── Link reuse, rejection and expiry ─────────────────────────────────────


def test_reused_link_after_signing_is_a_no_op(api):
    doc_id = api.sent_document()
    assert api.sign(doc_id, "r1", [{"id": "f1", "value": "John Doe"}]).status_code == 200

    res = api.sign(doc_id, "r1", [{"id": "f1", "value": "Someone Else"}])

    assert res.status_code == 200
    assert res.get_json()["alreadyCompleted"] is True
    doc = api.get(doc_id)
    assert doc["current_version"] == 2
    assert len(doc["versions"]) == 3


def test_rejection_halts_the_document(api):
    doc_id = api.sent_document()

    res = api.act(doc_id, "r1", "rejected", reason="Wrong amount")

    assert res.status_code == 200
    assert res.get_json()["status"] == "rejected"
    doc = api.get(doc_id)
    assert _recipient(doc, "r1")["status"] == "rejected"
    assert _recipient(doc, "r1")["rejected_at"] is not None
    assert doc["current_version"] == 1

    again = api.sign(doc_id, "r1", [{"id": "f1", "value": "John Doe"}])
    assert again.status_code == 401


def test_sign_on_rejected_document_conflicts(api):
    doc_id = api.sent_document(mode="parallel")
    assert api.act(doc_id, "r1", "rejected").status_code == 200

    res = api.sign(doc_id, "r2", [{"id": "f2", "value": SIGNATURE}])
    assert res.status_code == 409


def test_expired_link_moves_recipient_to_expired(api):
    doc_id = api.sent_document()
    document = db.session.get(Document, doc_id)
    document.get_recipient("r1").expires_at = utcnow() - timedelta(minutes=1)
    db.session.commit()

    res = api.sign(doc_id, "r1", [{"id": "f1", "value": "John Doe"}])

    assert res.status_code == 410
    assert res.get_json()["code"] == "ERR_LINK_EXPIRED"
    doc = api.get(doc_id)
    assert _recipient(doc, "r1")["status"] == "expired"
    assert _recipient(doc, "r1")["expired_at"] is not None

    again = api.sign(doc_id, "r1", [{"id": "f1", "value": "John Doe"}])
    assert again.status_code == 401


def test_unknown_token_is_not_found(client):
    res = client.post("/api/v1/sign", json={"token": "0" * 64, "recipientId": "r1", "fields": []})
    assert res.status_code == 404


def test_token_for_other_recipient_id_is_not_found(api):
    doc_id = api.sent_document()
    res = api.client.post("/api/v1/sign", json={
        "token": api.token(doc_id, "r1"), "recipientId": "r2", "fields": [],
    })
    assert res.status_code == 404


# ── Field validation ─────────────────────────────────────────────────────


def test_missing_required_field_is_rejected(api):
    doc_id = api.sent_document()

    res = api.sign(doc_id, "r1", [])

    assert res.status_code == 400
    body = res.get_json()
    assert body["details"]["fields"] == ["f1"]
    assert api.get(doc_id)["current_version"] == 1


def test_field_of_another_recipient_is_rejected(api):
    doc_id = api.sent_document()
    res = api.sign(doc_id, "r1", [
        {"id": "f1", "value": "John Doe"},
        {"id": "f2", "value": SIGNATURE},
    ])
    assert res.status_code == 400


def test_unknown_field_is_rejected(api):
    doc_id = api.sent_document()
    res = api.sign(doc_id, "r1", [{"id": "f1", "value": "John Doe"}, {"id": "nope", "value": "x"}])
    assert res.status_code == 400


# ── Roles ────────────────────────────────────────────────────────────────


def _signer_and_approver():
    return [
        {"id": "r1", "email": "alice@example.com", "name": "Alice", "role": "signer", "order": 1},
        {"id": "r2", "email": "carol@example.com", "name": "Carol", "role": "approver", "order": 2},
    ]


def test_approval_binds_to_current_version_and_completes(api):
    doc_id = api.sent_document(
        recipients=_signer_and_approver(),
        fields=[{"id": "f1", "type": "signature", "recipientId": "r1", "required": True}],
    )
    assert api.sign(doc_id, "r1", [{"id": "f1", "value": SIGNATURE}]).status_code == 200
    doc = api.get(doc_id)
    assert _version(doc, 2)["label"] == "signed_by_order_1"
    assert doc["status"] == "in_progress"

    res = api.sign(doc_id, "r2")

    assert res.status_code == 200
    body = res.get_json()
    assert body["version"] == 2
    assert body["currentVersion"] == 2
    assert body["status"] == "completed"
    doc = api.get(doc_id)
    assert _recipient(doc, "r2")["status"] == "approved"
    assert _recipient(doc, "r2")["signed_version"] is None
    assert len(doc["versions"]) == 3


def test_approver_cannot_sign(api):
    doc_id = api.sent_document(
        recipients=_signer_and_approver(),
        fields=[{"id": "f1", "type": "signature", "recipientId": "r1"}],
        mode="parallel",
    )
    res = api.act(doc_id, "r2", "signed")
    assert res.status_code == 403


def test_viewer_cannot_act(api):
    recipients = [
        {"id": "r1", "email": "alice@example.com", "role": "signer", "order": 1},
        {"id": "v1", "email": "vera@example.com", "role": "viewer"},
    ]
    doc_id = api.sent_document(recipients=recipients, fields=[
        {"id": "f1", "type": "text", "recipientId": "r1"},
    ])

    assert api.act(doc_id, "v1", "rejected").status_code == 403
    assert api.sign(doc_id, "v1").status_code == 403

    view = api.client.get("/api/v1/signing/document", query_string={"token": api.token(doc_id, "v1")})
    assert view.status_code == 200
    assert view.get_json()["canAct"] is False


def test_unknown_action_is_rejected(api):
    doc_id = api.sent_document()
    assert api.act(doc_id, "r1", "countersigned").status_code == 400


# ── Location consent ─────────────────────────────────────────────────────


def _gps_document(api):
    recipients = [{"id": "r1", "email": "alice@example.com", "role": "signer", "order": 1,
                   "captureGpsLocation": True}]
    return api.sent_document(recipients=recipients, fields=[
        {"id": "f1", "type": "text", "recipientId": "r1", "required": True},
    ])


def test_location_consent_required_to_sign(api):
    doc_id = _gps_document(api)
    res = api.sign(doc_id, "r1", [{"id": "f1", "value": "John Doe"}])
    assert res.status_code == 400
    assert api.get(doc_id)["current_version"] == 1


def test_location_consent_recorded_with_signature(api):
    doc_id = _gps_document(api)
    res = api.sign(
        doc_id, "r1", [{"id": "f1", "value": "John Doe"}],
        consent={"locationGranted": True, "grantedAt": "2026-05-01T10:00:00Z", "method": "browser"},
        location={"latitude": 41.0, "longitude": 29.0, "city": "Istanbul"},
    )
    assert res.status_code == 200
    assert res.get_json()["status"] == "completed"

    events = api.client.get(f"/api/v1/documents/{doc_id}/events", headers=api.headers).get_json()["items"]
    signed = next(e for e in events if e["action"] == "signed")
    assert signed["consent"]["locationGranted"] is True
    assert signed["geo"]["city"] == "Istanbul"
    assert signed["geo"]["source"] == "recipient"


def test_rejection_does_not_need_location_consent(api):
    doc_id = _gps_document(api)
    assert api.act(doc_id, "r1", "rejected").status_code == 200


# ── Viewing and file access ──────────────────────────────────────────────


def test_first_view_marks_recipient_viewed(api):
    doc_id = api.sent_document()
    token = api.token(doc_id, "r1")

    res = api.client.get("/api/v1/signing/document", query_string={"token": token})

    assert res.status_code == 200
    body = res.get_json()
    assert body["recipient"]["status"] == "viewed"
    assert body["canAct"] is True
    assert [f["id"] for f in body["fields"]] == ["f1"]
    assert "signing_token" not in body["recipient"]


def test_early_view_keeps_later_signer_pending_until_invited(api):
    doc_id = api.sent_document()

    early = api.client.get("/api/v1/signing/document", query_string={"token": api.token(doc_id, "r2")})

    assert early.status_code == 200
    assert early.get_json()["recipient"]["status"] == "pending"
    assert early.get_json()["canAct"] is False

    api.sign(doc_id, "r1", [{"id": "f1", "value": "John Doe"}])

    doc = api.get(doc_id)
    assert _recipient(doc, "r2")["status"] == "sent"
    events = api.client.get(f"/api/v1/documents/{doc_id}/events", headers=api.headers).get_json()["items"]
    assert [(e["action"], e["recipient_id"]) for e in events] == [
        ("sent", "r1"), ("signed", "r1"), ("sent", "r2"),
    ]


def test_signing_file_streams_current_version(api, blob_store):
    doc_id = api.sent_document()
    token = api.token(doc_id, "r1")

    res = api.client.get("/api/v1/signing/file", query_string={"token": token})

    assert res.status_code == 200
    assert res.data.startswith(b"%PDF-1.7")
    assert res.headers["X-Content-SHA256"] == api.get(doc_id)["versions"][1]["hash"]


# ── Notification failures ────────────────────────────────────────────────


def test_failed_invitation_marks_delivery_failed(api, failing_notifier):
    doc_id = api.upload()["id"]

    res = api.send(doc_id)

    assert res.status_code == 200
    assert res.get_json()["emailDelivery"]["failed"] == ["r1"]
    assert failing_notifier.attempts == ["r1"]
    doc = api.get(doc_id)
    assert _recipient(doc, "r1")["status"] == "delivery_failed"
    assert doc["status"] == "delivery_failed"
    assert doc["current_version"] == 1


def test_delivery_failed_recipient_can_still_sign(api, failing_notifier):
    doc_id = api.upload()["id"]
    api.send(doc_id)

    res = api.sign(doc_id, "r1", [{"id": "f1", "value": "John Doe"}])

    assert res.status_code == 200
    assert res.get_json()["currentVersion"] == 2
