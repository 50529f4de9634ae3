"""
Recipient state machine and signing orchestration.

Recipient states:
    pending → sent → viewed → signed | approved | rejected | expired
    (delivery_failed sits beside sent and can recover through a resend)

A signing action runs its guards in a fixed order so the client always
gets the most specific answer:

    unknown token / recipient .............. 404
    already signed or approved ............. 200, idempotent no-op
    link rejected or expired earlier ....... 401
    link expired now ....................... recipient → expired, then 410
    document not sent / already terminal ... 401 / 409
    viewer, or action outside the role ..... 403
    not this recipient's turn (sequential) . 403
    location consent missing ............... 400 (not required to reject)
    field not assigned / required missing .. 400

A successful ``signed`` appends a version chained from the current one,
binds the recipient to it, appends a ledger entry, commits the field
values and recomputes the document status, all in one commit.
Notifications go out after the commit; a failed notification marks that
recipient ``delivery_failed`` in a follow-up write and never undoes the
action.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from email_validator import EmailNotValidError, validate_email
from flask import current_app

from signflow.core.exceptions import (
    AuthorizationError,
    ConflictError,
    LinkExpiredError,
    NotFoundError,
    SequenceViolation,
    ValidationError,
)
from signflow.models.audit import write_audit
from signflow.models.document import (
    COMPLETED_RECIPIENT_STATUSES,
    CONSUMED_RECIPIENT_STATUSES,
    LABEL_PREPARED,
    LABEL_SIGNED_FINAL,
    RECIPIENT_ROLES,
    ROLE_COMPLETION_ACTION,
    SIGNING_MODES,
    Document,
    Recipient,
    signed_by_order_label,
    validate_recipient_transition,
)
from signflow.services import document_repository, signing_ledger, version_chain
from signflow.services.email_service import get_notifier
from signflow.services.signed_fields import commit_signed_fields
from signflow.services.signing_ledger import Evidence
from signflow.services.status_logic import (
    all_participants_done,
    all_signers_signed,
    derive_status,
)
from signflow.utils.helpers import as_utc, isoformat, new_signing_token, utcnow

logger = logging.getLogger(__name__)

ACTIONS = ("signed", "approved", "rejected")


# ── Sequencing ───────────────────────────────────────────────────────────────


def get_next_sequential_order(recipients) -> int | None:
    """Lowest order among non-viewers that have not signed or approved.

    Rejected and expired recipients keep their slot, so a rejection halts
    the sequence rather than skipping past it.
    """
    remaining = [
        r.order for r in recipients
        if r.role != "viewer" and r.status not in COMPLETED_RECIPIENT_STATUSES and r.order is not None
    ]
    return min(remaining) if remaining else None


def is_recipient_turn(recipient, recipients) -> bool:
    next_order = get_next_sequential_order(recipients)
    return next_order is not None and recipient.order == next_order


def _require_approvers() -> bool:
    return current_app.config.get("REQUIRE_APPROVER_COMPLETION", True)


def refresh_status(document: Document) -> str:
    """Recompute ``document.status`` and stamp completion once."""
    status = derive_status(document, require_approver_completion=_require_approvers())
    if status == "completed" and document.completed_at is None:
        now = utcnow()
        document.completed_at = now
        document.finalized_at = now
    document.status = status
    return status


def _transition(recipient: Recipient, target: str) -> None:
    if not validate_recipient_transition(recipient.status, target):
        raise ConflictError(f"Cannot move recipient from {recipient.status} to {target}")
    recipient.status = target


def _link_expiry(document: Document, recipient: Recipient):
    if recipient.expires_at is not None:
        return as_utc(recipient.expires_at)
    prepared = version_chain.get_latest_prepared_version(document)
    if prepared is not None and prepared.expires_at is not None:
        return as_utc(prepared.expires_at)
    return as_utc(document.expires_at)


def expire_recipient(document: Document, recipient: Recipient) -> None:
    """Force ``expired`` and record it.  Caller saves."""
    _transition(recipient, "expired")
    recipient.expired_at = utcnow()
    signing_ledger.append_event(
        document, "expired", recipient=recipient,
        base_version=document.current_version, version=document.current_version,
    )
    refresh_status(document)


def _check_link(document: Document, recipient: Recipient) -> None:
    """Guards shared by viewing and acting, up to and including expiry."""
    if recipient.status in CONSUMED_RECIPIENT_STATUSES:
        raise AuthorizationError("This signing link is no longer valid")
    expiry = _link_expiry(document, recipient)
    if expiry is not None and expiry <= utcnow() and document.status not in ("completed", "voided", "cancelled"):
        expire_recipient(document, recipient)
        document_repository.save_document(document)
        logger.info(
            "Signing link expired",
            extra={"document_id": document.id, "recipient_id": recipient.recipient_id},
        )
        raise LinkExpiredError("This signing link has expired")
    if document.status == "draft":
        raise AuthorizationError("This document has not been sent for signing")


# ── Field validation ─────────────────────────────────────────────────────────


def _validate_submitted_fields(document: Document, recipient: Recipient, fields) -> list[dict]:
    if fields is None:
        fields = []
    if not isinstance(fields, list):
        raise ValidationError("fields must be a list")
    prepared = version_chain.get_latest_prepared_version(document)
    layout = {str(f["id"]): f for f in (prepared.fields if prepared else [])}

    submitted = []
    seen = set()
    for index, field in enumerate(fields):
        if not isinstance(field, dict):
            raise ValidationError(f"fields[{index}] must be an object")
        field_id = str(field.get("id") or field.get("fieldId") or "").strip()
        if not field_id:
            raise ValidationError(f"fields[{index}].id is required")
        if field_id in seen:
            raise ValidationError(f"Field '{field_id}' was submitted twice")
        seen.add(field_id)
        placed = layout.get(field_id)
        if placed is None:
            raise ValidationError(f"Field '{field_id}' is not part of this document")
        if placed.get("recipientId") not in (None, recipient.recipient_id):
            raise ValidationError(f"Field '{field_id}' is not assigned to you")
        submitted.append({"id": field_id, "type": placed.get("type"), "value": field.get("value")})

    values = {f["id"]: signing_ledger.normalize_field_value(f["value"]) for f in submitted}
    missing = [
        field_id for field_id, placed in layout.items()
        if placed.get("required") and placed.get("recipientId") == recipient.recipient_id
        and not values.get(field_id)
    ]
    if missing:
        raise ValidationError("Required fields are missing", details={"fields": sorted(missing)})
    return submitted


# ── Recipient actions ────────────────────────────────────────────────────────


def sign(token: str, recipient_id: str, fields, payload: dict | None = None) -> dict:
    """Sign (or approve, for approvers) through ``POST /sign``."""
    if not token or not recipient_id:
        raise ValidationError("token and recipientId are required")
    document, recipient = document_repository.get_by_signing_token(token)
    if recipient.recipient_id != recipient_id:
        raise NotFoundError("Recipient")
    action = ROLE_COMPLETION_ACTION.get(recipient.role, "signed")
    return _act(document, recipient, action, fields=fields, payload=payload)


def perform_action(token: str, action: str, payload: dict | None = None) -> dict:
    """Generic recipient action through ``POST /signed-document-action``."""
    if not token:
        raise ValidationError("token is required")
    if action not in ACTIONS:
        raise ValidationError(f"action must be one of: {', '.join(ACTIONS)}")
    payload = payload or {}
    document, recipient = document_repository.get_by_signing_token(token)
    return _act(document, recipient, action, fields=payload.get("fields"), payload=payload)


def _act(document: Document, recipient: Recipient, action: str, *, fields, payload) -> dict:
    if recipient.status in COMPLETED_RECIPIENT_STATUSES:
        logger.info(
            "Signing link reused after completion",
            extra={"document_id": document.id, "recipient_id": recipient.recipient_id},
        )
        return {"success": True, "alreadyCompleted": True, "status": recipient.status}

    with document_repository.guarded_write(document):
        _check_link(document, recipient)
        if document.is_terminal:
            raise ConflictError(f"This document is already {document.status}")

        if recipient.role == "viewer":
            raise SequenceViolation("Viewers cannot sign, approve or reject this document")
        if action != "rejected" and ROLE_COMPLETION_ACTION[recipient.role] != action:
            raise SequenceViolation(f"As {recipient.role} you cannot perform '{action}'")
        if document.signing_mode == "sequential" and not is_recipient_turn(recipient, document.recipients):
            raise SequenceViolation("It is not your turn to sign this document yet")

        evidence = Evidence.from_payload(payload)
        if recipient.capture_gps_location and action != "rejected" and not evidence.location_granted:
            raise ValidationError("Location consent is required to sign this document")

        if action == "rejected":
            _reject(document, recipient, evidence, (payload or {}).get("reason"))
        else:
            submitted = _validate_submitted_fields(document, recipient, fields)
            bound_version, advanced = _complete(document, recipient, action, submitted, evidence)

    # Committed; delivery from here on is best-effort
    if action == "rejected":
        get_notifier().send_rejection_notice(document.owner_email, document.name, recipient,
                                             document_id=document.id)
        document_repository.save_document(document)
        return {"success": True, "status": document.status, "currentVersion": document.current_version}

    _notify_signing_requests(document, advanced)
    return {
        "success": True,
        "status": document.status,
        "currentVersion": document.current_version,
        "version": bound_version,
    }


def _complete(document: Document, recipient: Recipient, action: str,
              submitted: list[dict], evidence: Evidence) -> tuple[int, list[Recipient]]:
    """Apply a signature or approval and commit.  Returns the bound version
    and the recipients the sequence advanced to."""
    now = utcnow()
    base_version = document.current_version
    event_fields, fields_digest = signing_ledger.build_event_fields(submitted)

    _transition(recipient, action)
    evidence.apply_to(recipient)
    if action == "signed":
        recipient.signed_at = now
        recipient.signed_version = base_version + 1
        finishes = (all_participants_done(document.recipients) if _require_approvers()
                    else all_signers_signed(document.recipients))
        label = LABEL_SIGNED_FINAL if finishes else signed_by_order_label(recipient.order)
        new_version = version_chain.clone_version(document, document.current, label, lock=True)
        recipient.signed_version = new_version.version
        new_version.signed_by = version_chain.build_signed_by_snapshot(document.recipients, new_version.version)
        bound_version = new_version.version
    else:
        recipient.approved_at = now
        bound_version = base_version

    signing_ledger.append_event(
        document, action, recipient=recipient,
        base_version=base_version, version=bound_version,
        evidence=evidence, event_fields=event_fields, fields_digest=fields_digest,
    )
    commit_signed_fields(
        document.id, bound_version, recipient.recipient_id, submitted,
        {f["fieldId"]: f["fieldHash"] for f in event_fields},
    )

    advanced = _advance_sequence(document) if document.signing_mode == "sequential" else []
    refresh_status(document)
    document_repository.save_document(document)

    logger.info(
        "Recipient %s", action,
        extra={"document_id": document.id, "recipient_id": recipient.recipient_id,
               "action": action, "version": bound_version},
    )
    return bound_version, advanced


def _reject(document: Document, recipient: Recipient, evidence: Evidence, reason) -> None:
    _transition(recipient, "rejected")
    recipient.rejected_at = utcnow()
    recipient.rejection_reason = (str(reason).strip() or None) if reason else None
    evidence.apply_to(recipient)
    signing_ledger.append_event(
        document, "rejected", recipient=recipient,
        base_version=document.current_version, version=document.current_version,
        evidence=evidence, reason=recipient.rejection_reason,
    )
    refresh_status(document)
    document_repository.save_document(document)

    logger.info(
        "Recipient rejected",
        extra={"document_id": document.id, "recipient_id": recipient.recipient_id, "action": "rejected"},
    )


def _advance_sequence(document: Document) -> list[Recipient]:
    """Move pending recipients at the next remaining order to ``sent``."""
    next_order = get_next_sequential_order(document.recipients)
    if next_order is None:
        return []
    advanced = []
    for r in document.participants:
        if r.order == next_order and r.status == "pending":
            _mark_sent(document, r)
            advanced.append(r)
    return advanced


def _mark_sent(document: Document, recipient: Recipient) -> None:
    _transition(recipient, "sent")
    recipient.sent_at = utcnow()
    signing_ledger.append_event(
        document, "sent", recipient=recipient,
        base_version=document.current_version, version=document.current_version,
    )


def _notify_signing_requests(document: Document, recipients: list[Recipient]) -> dict:
    """Best-effort delivery after commit.  Failures become ``delivery_failed``."""
    report = {"sent": [], "failed": []}
    if not recipients:
        return report
    notifier = get_notifier()
    for r in recipients:
        if notifier.send_signing_request(r, document, r.signing_token):
            report["sent"].append(r.recipient_id)
            continue
        report["failed"].append(r.recipient_id)
        if validate_recipient_transition(r.status, "delivery_failed"):
            r.status = "delivery_failed"
        logger.warning(
            "Signing request delivery failed",
            extra={"document_id": document.id, "recipient_id": r.recipient_id},
        )
    if report["failed"]:
        refresh_status(document)
        write_audit(
            entity_id=document.id, action="document.email_delivery_issue",
            diff={"failed": report["failed"]},
        )
    document_repository.save_document(document)
    return report


# ── Viewing ──────────────────────────────────────────────────────────────────


def _records_view(document: Document, recipient: Recipient) -> bool:
    """A pending recipient whose turn has not come stays pending, so the
    sequence can still invite it later."""
    if document.is_terminal or recipient.status not in ("pending", "sent", "delivery_failed"):
        return False
    if recipient.status == "pending" and recipient.role != "viewer" and document.signing_mode == "sequential":
        return is_recipient_turn(recipient, document.recipients)
    return True


def view_document(token: str) -> dict:
    """Recipient view of the document.  First open moves the recipient to ``viewed``."""
    if not token:
        raise ValidationError("token is required")
    document, recipient = document_repository.get_by_signing_token(token)
    if recipient.status not in COMPLETED_RECIPIENT_STATUSES:
        with document_repository.guarded_write(document):
            _check_link(document, recipient)
            if _records_view(document, recipient):
                _transition(recipient, "viewed")
                recipient.viewed_at = utcnow()
                signing_ledger.append_event(
                    document, "viewed", recipient=recipient,
                    base_version=document.current_version, version=document.current_version,
                    evidence=Evidence.from_payload(None),
                )
                refresh_status(document)
                document_repository.save_document(document)

    prepared = version_chain.get_latest_prepared_version(document)
    own_fields = [
        f for f in (prepared.fields if prepared else [])
        if f.get("recipientId") in (None, recipient.recipient_id)
    ]
    can_act = (
        recipient.role != "viewer"
        and recipient.status not in COMPLETED_RECIPIENT_STATUSES
        and not document.is_terminal
        and (document.signing_mode == "parallel" or is_recipient_turn(recipient, document.recipients))
    )
    return {
        "document": {
            "name": document.name,
            "status": document.status,
            "signing_mode": document.signing_mode,
            "current_version": document.current_version,
            "expires_at": isoformat(document.expires_at),
        },
        "recipient": recipient.to_dict(),
        "fields": own_fields,
        "canAct": can_act,
    }


def open_signing_file(token: str):
    """Return ``(version, stream)`` for the current content of a token's document."""
    if not token:
        raise ValidationError("token is required")
    document, recipient = document_repository.get_by_signing_token(token)
    if recipient.status in CONSUMED_RECIPIENT_STATUSES:
        raise AuthorizationError("This signing link is no longer valid")
    version = document.current
    if version is None:
        raise NotFoundError("Document version")
    return document, version, version_chain.open_version_content(version)


# ── Owner actions ────────────────────────────────────────────────────────────


def _validate_recipients(payload, signing_mode: str) -> list[dict]:
    if not isinstance(payload, list) or not payload:
        raise ValidationError("At least one recipient is required")
    cleaned, ids = [], set()
    for index, item in enumerate(payload):
        if not isinstance(item, dict):
            raise ValidationError(f"recipients[{index}] must be an object")
        try:
            email = validate_email(str(item.get("email") or ""), check_deliverability=False).normalized
        except EmailNotValidError as exc:
            raise ValidationError(f"recipients[{index}].email is invalid", details={"email": str(exc)}) from exc
        role = item.get("role") or "signer"
        if role not in RECIPIENT_ROLES:
            raise ValidationError(f"recipients[{index}].role must be one of: {', '.join(RECIPIENT_ROLES)}")
        recipient_id = str(item.get("id") or f"r{index + 1}")
        if recipient_id in ids:
            raise ValidationError(f"Duplicate recipient id '{recipient_id}'")
        ids.add(recipient_id)
        order = item.get("order")
        if order is not None and (not isinstance(order, int) or isinstance(order, bool) or order < 1):
            raise ValidationError(f"recipients[{index}].order must be a positive integer")
        if signing_mode == "sequential" and role != "viewer" and order is None:
            raise ValidationError("Every signer and approver needs an order in sequential mode")
        cleaned.append({
            "recipient_id": recipient_id,
            "email": email,
            "name": item.get("name"),
            "role": role,
            "order": order if order is not None else (index + 1 if role != "viewer" else None),
            "capture_gps_location": bool(item.get("captureGpsLocation")),
        })
    if not any(r["role"] != "viewer" for r in cleaned):
        raise ValidationError("At least one signer or approver is required")
    return cleaned


def send_for_signing(
    document: Document,
    *,
    actor: str,
    recipients=None,
    signing_mode: str | None = None,
    fields=None,
    expires_in_days: int | None = None,
) -> dict:
    """Freeze the layout into a locked ``prepared`` version and invite recipients."""
    if document.status != "draft" or any(r.status != "pending" for r in document.recipients):
        raise ConflictError("Document has already been sent")
    signing_mode = signing_mode or document.signing_mode
    if signing_mode not in SIGNING_MODES:
        raise ValidationError(f"signingMode must be one of: {', '.join(SIGNING_MODES)}")
    days = expires_in_days if expires_in_days is not None else current_app.config.get("SIGNING_LINK_TTL_DAYS", 30)
    if not isinstance(days, int) or isinstance(days, bool) or days < 1:
        raise ValidationError("expiresInDays must be a positive integer")

    if recipients is not None:
        cleaned = _validate_recipients(recipients, signing_mode)
        document.recipients = [
            Recipient(status="pending", signing_token=new_signing_token(), **r) for r in cleaned
        ]
    elif not document.recipients:
        raise ValidationError("At least one recipient is required")
    elif signing_mode == "sequential" and any(r.order is None for r in document.participants):
        raise ValidationError("Every signer and approver needs an order in sequential mode")
    document.signing_mode = signing_mode

    latest = version_chain.get_latest_prepared_version(document)
    layout = version_chain.validate_field_layout(fields) if fields is not None else list(latest.fields if latest else [])
    known = {r.recipient_id for r in document.recipients}
    unknown = sorted({f["recipientId"] for f in layout if f.get("recipientId") and f["recipientId"] not in known})
    if unknown:
        raise ValidationError("Fields are assigned to unknown recipients", details={"recipients": unknown})

    now = utcnow()
    expires_at = now + timedelta(days=days)
    version_chain.clone_version(
        document, document.current, LABEL_PREPARED,
        lock=True, fields=layout, sent_at=now, expires_at=expires_at,
        change_log="Sent for signing",
    )
    document.expires_at = expires_at

    first_order = get_next_sequential_order(document.recipients)
    to_notify = []
    for r in document.recipients:
        r.expires_at = expires_at
        if r.signing_token is None:
            r.signing_token = new_signing_token()
        if r.role == "viewer" or signing_mode == "parallel" or r.order == first_order:
            _mark_sent(document, r)
            to_notify.append(r)

    refresh_status(document)
    write_audit(
        entity_id=document.id, action="document.sent", actor=actor,
        diff={"signing_mode": signing_mode, "recipients": len(document.recipients),
              "version": document.current_version},
    )
    document_repository.save_document(document)
    logger.info("Document sent for signing",
                extra={"document_id": document.id, "version": document.current_version})

    report = _notify_signing_requests(document, to_notify)
    return {"document": document.to_dict(), "emailDelivery": report}


def resend(document: Document, recipient_id: str, *, actor: str) -> dict:
    """Re-send the invitation of a ``sent`` or ``delivery_failed`` recipient."""
    recipient = document.get_recipient(recipient_id)
    if recipient is None:
        raise NotFoundError("Recipient", recipient_id)
    if document.is_terminal:
        raise ConflictError(f"Document is already {document.status}")
    if recipient.status not in ("sent", "delivery_failed"):
        raise ConflictError(f"Recipient is {recipient.status}; nothing to resend")

    notifier = get_notifier()
    if notifier.send_signing_request(recipient, document, recipient.signing_token):
        if recipient.status == "delivery_failed":
            _mark_sent(document, recipient)
        delivered = True
    else:
        recipient.status = "delivery_failed"
        delivered = False
    refresh_status(document)
    write_audit(entity_id=document.id, action="document.resent", actor=actor,
                diff={"recipient_id": recipient_id, "delivered": delivered})
    document_repository.save_document(document)
    return {"recipient": recipient.to_dict(), "delivered": delivered, "status": document.status}


def void_document(document: Document, *, actor: str, reason: str | None = None) -> dict:
    """Void a document.  Sticky; completed documents cannot be voided."""
    if document.status == "voided":
        return {"success": True, "status": "voided", "alreadyVoided": True}
    if document.status in ("completed", "cancelled"):
        raise ConflictError(f"A {document.status} document cannot be voided")
    previous = document.status
    document.status = "voided"
    signing_ledger.append_event(
        document, "voided",
        base_version=document.current_version, version=document.current_version,
        evidence=Evidence.from_payload(None), reason=reason,
    )
    write_audit(entity_id=document.id, action="document.voided", actor=actor,
                diff={"status": {"old": previous, "new": "voided"}, "reason": reason})
    document_repository.save_document(document)
    logger.info("Document voided", extra={"document_id": document.id})
    return {"success": True, "status": "voided"}
