"""
Invariant checks on the Document aggregate.

Pure tests use namespaces; the last group goes through the repository to
show that a violating write is refused as a whole and nothing is persisted.
"""

from types import SimpleNamespace

import pytest

from signflow.core.exceptions import InvariantViolation
from signflow.models import db
from signflow.models.document import Document
from signflow.services import document_repository
from signflow.services.invariants import check_invariants, enforce_invariants


def _version(number, label="prepared", parent="auto", fields=None, signed_by=None):
    if parent == "auto":
        parent = number - 1 if number > 0 else None
    return SimpleNamespace(version=number, label=label, derived_from_version=parent,
                           fields=fields or [], signed_by=signed_by or [])


def _recipient(rid, status="sent", signed_version=None, role="signer"):
    return SimpleNamespace(recipient_id=rid, status=status, signed_version=signed_version, role=role)


def _document(versions, recipients=(), current=None):
    return SimpleNamespace(
        versions=versions,
        recipients=list(recipients),
        current_version=current if current is not None else versions[-1].version,
    )


def _healthy():
    return _document(
        [
            _version(0, "original"),
            _version(1, "prepared", fields=[{"id": "f1"}]),
            _version(2, "signed_by_order_1", signed_by=["r1"]),
        ],
        [_recipient("r1", "signed", 2), _recipient("r2", "sent")],
    )


def test_consistent_document_has_no_violations():
    assert check_invariants(_healthy()) == []


def test_current_version_must_match_latest_signature():
    doc = _healthy()
    doc.versions.append(_version(3, "prepared"))
    doc.current_version = 3
    violations = check_invariants(doc)
    assert any("latest signed version 2" in v for v in violations)


def test_gap_in_version_numbers_is_reported():
    doc = _document([_version(0, "original"), _version(2, "prepared", parent=0)])
    assert any("gapless" in v for v in check_invariants(doc))


def test_unchained_version_is_reported():
    doc = _document([_version(0, "original"), _version(1, "prepared", parent=None)])
    assert any("not chained" in v for v in check_invariants(doc))


def test_current_version_must_exist():
    doc = _document([_version(0, "original")], current=4)
    assert any("does not exist" in v for v in check_invariants(doc))


def test_only_prepared_versions_carry_fields():
    doc = _healthy()
    doc.versions[2].fields = [{"id": "f1"}]
    assert any("carries a field layout" in v for v in check_invariants(doc))


def test_signed_version_requires_signed_status():
    doc = _healthy()
    doc.recipients[1].signed_version = 1
    violations = check_invariants(doc)
    assert any("r2 has status sent" in v for v in violations)


def test_signed_status_requires_signed_version():
    doc = _healthy()
    doc.recipients[1].status = "signed"
    assert any("r2 has status signed" in v for v in check_invariants(doc))


def test_signed_by_must_match_signers_so_far():
    doc = _healthy()
    doc.versions[2].signed_by = ["r1", "r2"]
    assert any("signed_by has 2 entries, expected 1" in v for v in check_invariants(doc))


def test_every_violation_is_listed():
    doc = _healthy()
    doc.versions[2].fields = [{"id": "x"}]
    doc.versions[2].signed_by = []
    with pytest.raises(InvariantViolation) as exc_info:
        enforce_invariants(doc)
    assert len(exc_info.value.violations) == 2
    assert exc_info.value.status_code == 409
    assert exc_info.value.code == "ERR_INVARIANT"


# ── Repository boundary ──────────────────────────────────────────────────


def test_violating_save_is_rejected_entirely(api):
    document_id = api.upload()["id"]
    document = db.session.get(Document, document_id)
    document.current_version = 7
    document.name = "Renamed"

    with pytest.raises(InvariantViolation):
        document_repository.save_document(document)

    reloaded = db.session.get(Document, document_id)
    assert reloaded.current_version == 0
    assert reloaded.name == "Service Agreement"
