"""
Unit tests for document status derivation.

``derive_status`` works on attribute-compatible stand-ins, so these tests
build plain namespaces instead of ORM rows and never touch the database.
Each test pins one rule of the priority list and checks that an earlier
rule wins over a later one where both could apply.
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from signflow.services.status_logic import (
    all_participants_done,
    all_signers_signed,
    derive_status,
    has_completion_evidence,
)

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def _recipient(role="signer", status="pending", signed_version=None, order=1):
    return SimpleNamespace(role=role, status=status, signed_version=signed_version, order=order)


def _version(number, label):
    return SimpleNamespace(version=number, label=label)


def _document(recipients=(), versions=None, status="sent", expires_at=None,
              completed_at=None, finalized_at=None):
    return SimpleNamespace(
        status=status,
        recipients=list(recipients),
        versions=versions if versions is not None else [_version(0, "original"), _version(1, "prepared")],
        expires_at=expires_at,
        completed_at=completed_at,
        finalized_at=finalized_at,
    )


# ── Rule 1: sticky statuses ──────────────────────────────────────────────


@pytest.mark.parametrize("sticky", ["voided", "cancelled"])
def test_sticky_status_survives_completion_evidence(sticky):
    doc = _document(
        [_recipient(status="signed", signed_version=2)],
        versions=[_version(0, "original"), _version(1, "prepared"), _version(2, "signed_final")],
        status=sticky,
    )
    assert derive_status(doc, now=NOW) == sticky


# ── Rule 2: completion evidence ──────────────────────────────────────────


def test_signed_final_version_is_completion_evidence():
    doc = _document(
        [_recipient(status="sent")],
        versions=[_version(0, "original"), _version(1, "signed_final")],
    )
    assert derive_status(doc, now=NOW) == "completed"


def test_completed_at_beats_later_rejection_and_expiry():
    doc = _document(
        [_recipient(status="rejected")],
        completed_at=NOW - timedelta(days=3),
        expires_at=NOW - timedelta(days=1),
    )
    assert derive_status(doc, now=NOW) == "completed"


def test_finalized_at_alone_is_completion_evidence():
    doc = _document([_recipient(status="viewed")], finalized_at=NOW)
    assert has_completion_evidence(doc)
    assert derive_status(doc, now=NOW) == "completed"


def test_pending_approver_blocks_completion_when_required():
    doc = _document([
        _recipient(status="signed", signed_version=2),
        _recipient(role="approver", status="sent", order=2),
    ])
    assert not has_completion_evidence(doc, require_approver_completion=True)
    assert derive_status(doc, now=NOW) == "in_progress"


def test_signers_alone_complete_when_approvers_not_required():
    doc = _document([
        _recipient(status="signed", signed_version=2),
        _recipient(role="approver", status="sent", order=2),
    ])
    assert derive_status(doc, now=NOW, require_approver_completion=False) == "completed"


# ── Rules 3–6 ────────────────────────────────────────────────────────────


def test_no_recipients_is_draft():
    assert derive_status(_document([]), now=NOW) == "draft"


def test_all_pending_is_draft():
    doc = _document([_recipient(), _recipient(order=2)])
    assert derive_status(doc, now=NOW) == "draft"


def test_delivery_failure_outranks_rejection():
    doc = _document([
        _recipient(status="delivery_failed"),
        _recipient(status="rejected", order=2),
    ])
    assert derive_status(doc, now=NOW) == "delivery_failed"


def test_rejection_outranks_expiry():
    doc = _document(
        [_recipient(status="rejected"), _recipient(status="sent", order=2)],
        expires_at=NOW - timedelta(hours=1),
    )
    assert derive_status(doc, now=NOW) == "rejected"


def test_viewer_rejection_status_is_ignored():
    doc = _document([
        _recipient(status="sent"),
        _recipient(role="viewer", status="rejected", order=None),
    ])
    assert derive_status(doc, now=NOW) == "sent"


def test_past_expiry_gives_expired():
    doc = _document([_recipient(status="sent")], expires_at=NOW - timedelta(seconds=1))
    assert derive_status(doc, now=NOW) == "expired"


def test_naive_expiry_is_treated_as_utc():
    naive = (NOW - timedelta(minutes=5)).replace(tzinfo=None)
    doc = _document([_recipient(status="sent")], expires_at=naive)
    assert derive_status(doc, now=NOW) == "expired"


# ── Rules 7–10 ───────────────────────────────────────────────────────────


def test_signed_without_signed_version_does_not_count():
    doc = _document([_recipient(status="signed", signed_version=None)])
    assert not all_signers_signed(doc.recipients)
    assert derive_status(doc, now=NOW) == "sent"


def test_partial_completion_is_in_progress():
    doc = _document([
        _recipient(status="signed", signed_version=2),
        _recipient(status="sent", order=2),
    ])
    assert derive_status(doc, now=NOW) == "in_progress"


def test_viewed_only_is_sent():
    doc = _document([_recipient(status="viewed"), _recipient(order=2)])
    assert derive_status(doc, now=NOW) == "sent"


def test_viewer_only_recipients_never_complete():
    doc = _document([_recipient(role="viewer", status="viewed", order=None)])
    assert not all_participants_done(doc.recipients)
    assert derive_status(doc, now=NOW) == "sent"


def test_fallback_keeps_current_status():
    doc = _document([_recipient(status="expired")], status="in_progress")
    assert derive_status(doc, now=NOW) == "in_progress"
