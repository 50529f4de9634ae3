"""
Signed-field commitment store.

Covers the hash chain (value → field hash → payload hash), signature-type
detection, and insert-if-absent: a second commit for the same key keeps
the first value.
"""

from signflow.models import db
from signflow.models.signed_field import SignedFieldRecord
from signflow.services.signed_fields import (
    build_signed_field_records,
    commit_signed_fields,
    compute_payload_hash,
    delete_signed_fields,
    list_signed_fields,
)
from signflow.services.signing_ledger import build_event_fields, compute_field_hash, normalize_field_value
from signflow.utils.hashing import canonical_json, sha256_hex


def test_value_normalisation():
    assert normalize_field_value(None) == ""
    assert normalize_field_value("John Doe") == "John Doe"
    assert normalize_field_value({"b": 2, "a": 1}) == '{"a":1,"b":2}'
    assert normalize_field_value(True) == "true"


def test_field_hash_binds_field_id_to_value():
    assert compute_field_hash("f1", "John Doe") == sha256_hex("f1:John Doe")
    assert compute_field_hash("f1", "x") != compute_field_hash("f2", "x")


def test_event_fields_are_sorted_and_digested():
    event_fields, digest = build_event_fields([
        {"id": "zeta", "value": "2"},
        {"id": "alpha", "value": "1"},
    ])
    assert [f["fieldId"] for f in event_fields] == ["alpha", "zeta"]
    assert digest == sha256_hex(canonical_json(event_fields))


def test_records_carry_the_hash_chain():
    [record] = build_signed_field_records("doc-1", 2, "r1", [{"id": "f1", "type": "text", "value": "John Doe"}])
    assert record.value == "John Doe"
    assert record.field_value_hash == sha256_hex("John Doe")
    assert record.field_hash == sha256_hex("f1:John Doe")
    assert record.payload_hash == compute_payload_hash("doc-1", 2, "r1", "f1", record.field_value_hash)
    assert record.signature_image_hash is None


def test_event_hash_is_reused_when_supplied():
    [record] = build_signed_field_records(
        "doc-1", 2, "r1", [{"id": "f1", "value": "v"}], {"f1": "ledger-hash"},
    )
    assert record.field_hash == "ledger-hash"


def test_signature_types_record_image_hash():
    [record] = build_signed_field_records(
        "doc-1", 2, "r1", [{"id": "sig", "type": "signature", "value": "data:image/png;base64,AAAA"}],
    )
    assert record.signature_image_hash == record.field_value_hash


def test_second_commit_keeps_first_value():
    commit_signed_fields("doc-1", 2, "r1", [{"id": "f1", "type": "text", "value": "first"}])
    db.session.commit()

    effective = commit_signed_fields("doc-1", 2, "r1", [
        {"id": "f1", "type": "text", "value": "second"},
        {"id": "f2", "type": "text", "value": "new"},
    ])
    db.session.commit()

    assert {r.field_id: r.value for r in effective} == {"f1": "first", "f2": "new"}
    rows = SignedFieldRecord.query.filter_by(document_id="doc-1").order_by(SignedFieldRecord.field_id).all()
    assert [(r.field_id, r.value) for r in rows] == [("f1", "first"), ("f2", "new")]


def test_same_field_in_another_version_is_a_new_key():
    commit_signed_fields("doc-1", 2, "r1", [{"id": "f1", "value": "a"}])
    commit_signed_fields("doc-1", 3, "r1", [{"id": "f1", "value": "b"}])
    db.session.commit()
    assert [r.value for r in list_signed_fields("doc-1")] == ["a", "b"]
    assert [r.value for r in list_signed_fields("doc-1", version=3)] == ["b"]


def test_delete_signed_fields_scopes_to_documents():
    commit_signed_fields("doc-1", 2, "r1", [{"id": "f1", "value": "a"}])
    commit_signed_fields("doc-2", 2, "r1", [{"id": "f1", "value": "b"}])
    db.session.commit()

    assert delete_signed_fields(["doc-1"]) == 1
    db.session.commit()
    assert list_signed_fields("doc-1") == []
    assert len(list_signed_fields("doc-2")) == 1
