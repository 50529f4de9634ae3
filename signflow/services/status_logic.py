"""
Document status derivation.

``derive_status`` is a pure function of the document, its versions and its
recipients.  It is recomputed after every mutation; ``Document.status`` is
never set from anywhere else except the sticky owner actions (void/cancel).

Priority, first match wins:
    1. voided / cancelled are sticky.
    2. Completion evidence (a ``signed_final`` version, ``completed_at`` or
       ``finalized_at``, or every signer signed with a signed version and,
       when approvers are required, every approver approved) → completed.
    3. No recipients, or every recipient pending → draft.
    4. Any recipient delivery_failed → delivery_failed.
    5. Any signer/approver rejected → rejected.
    6. Document ``expires_at`` in the past → expired.
    7. Every signer signed and every approver approved → completed.
    8. Some signers/approvers done, others not → in_progress.
    9. Any recipient sent or viewed → sent.
   10. Otherwise the current status is kept.

Works on ORM objects and on any attribute-compatible stand-in, so it can be
unit-tested without a database.
"""

from __future__ import annotations

from datetime import datetime

from signflow.models.document import LABEL_SIGNED_FINAL, STICKY_STATUSES
from signflow.utils.helpers import as_utc, utcnow


def _is_done(recipient) -> bool:
    if recipient.role == "signer":
        return recipient.status == "signed" and recipient.signed_version is not None
    if recipient.role == "approver":
        return recipient.status == "approved"
    return False


def _participants(recipients) -> list:
    return [r for r in recipients if r.role in ("signer", "approver")]


def all_signers_signed(recipients) -> bool:
    signers = [r for r in recipients if r.role == "signer"]
    return bool(signers) and all(_is_done(r) for r in signers)


def all_participants_done(recipients) -> bool:
    participants = _participants(recipients)
    return bool(participants) and all(_is_done(r) for r in participants)


def has_completion_evidence(document, require_approver_completion: bool = True) -> bool:
    if any(v.label == LABEL_SIGNED_FINAL for v in (document.versions or [])):
        return True
    if document.completed_at or document.finalized_at:
        return True
    recipients = list(document.recipients or [])
    if require_approver_completion:
        return all_participants_done(recipients)
    return all_signers_signed(recipients)


def derive_status(
    document,
    *,
    now: datetime | None = None,
    require_approver_completion: bool = True,
) -> str:
    """Return the status ``document`` should have given its current state."""
    current = document.status
    if current in STICKY_STATUSES:
        return current

    if has_completion_evidence(document, require_approver_completion):
        return "completed"

    recipients = list(document.recipients or [])
    if not recipients or all(r.status == "pending" for r in recipients):
        return "draft"

    if any(r.status == "delivery_failed" for r in recipients):
        return "delivery_failed"

    participants = _participants(recipients)
    if any(r.status == "rejected" for r in participants):
        return "rejected"

    expires_at = as_utc(document.expires_at)
    if expires_at is not None and expires_at < (now or utcnow()):
        return "expired"

    if all_participants_done(recipients):
        return "completed"

    if any(_is_done(r) for r in participants):
        return "in_progress"

    if any(r.status in ("sent", "viewed") for r in recipients):
        return "sent"

    return current
