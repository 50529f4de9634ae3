"""
Signing event ledger.

Every recipient action appends one ``SigningEvent`` to the document.  The
field digest of a signing action is computed here exactly once
(``build_event_fields``) and the same per-field hashes are handed to the
commitment store, so ledger and commitments agree by construction.

``replay`` is the dispute-resolution read path: it walks the ledger in
append order and, for each signing action, cross-checks the recorded field
hashes against the commitment store.
"""

from __future__ import annotations

import logging
from typing import Any

from flask import has_request_context, request

from signflow.models.document import Document, Recipient, SigningEvent
from signflow.utils.hashing import canonical_json, sha256_hex
from signflow.utils.helpers import get_client_ip, isoformat, normalize_ip, parse_datetime, utcnow

logger = logging.getLogger(__name__)


# ── Field hashing ────────────────────────────────────────────────────────────


def normalize_field_value(value: Any) -> str:
    """Canonical string for a submitted value: None → "", str as is, else JSON."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return canonical_json(value)


def compute_field_hash(field_id: str, value: Any) -> str:
    return sha256_hex(f"{field_id}:{normalize_field_value(value)}")


def build_event_fields(fields: list[dict]) -> tuple[list[dict], str]:
    """Return ``(event_fields, fields_digest)`` for the submitted fields.

    ``event_fields`` is ``[{"fieldId", "fieldHash"}]`` sorted by id.
    """
    event_fields = sorted(
        (
            {"fieldId": str(f["id"]), "fieldHash": compute_field_hash(str(f["id"]), f.get("value"))}
            for f in fields
        ),
        key=lambda item: item["fieldId"],
    )
    return event_fields, sha256_hex(canonical_json(event_fields))


# ── Evidence ─────────────────────────────────────────────────────────────────


def _compact(data: dict) -> dict | None:
    cleaned = {k: v for k, v in data.items() if v not in (None, "")}
    return cleaned or None


class Evidence:
    """Device, network, geo and consent snapshot captured with an action."""

    __slots__ = ("client_timestamp", "ip", "ip_unavailable_reason", "user_agent",
                 "client", "geo", "consent", "device", "location")

    def __init__(self, *, client_timestamp=None, ip=None, ip_unavailable_reason=None,
                 user_agent=None, client=None, geo=None, consent=None,
                 device=None, location=None) -> None:
        self.client_timestamp = client_timestamp
        self.ip = ip
        self.ip_unavailable_reason = ip_unavailable_reason
        self.user_agent = user_agent
        self.client = client
        self.geo = geo
        self.consent = consent
        self.device = device
        self.location = location

    @property
    def location_granted(self) -> bool:
        return bool((self.consent or {}).get("locationGranted"))

    @classmethod
    def from_payload(cls, payload: dict | None) -> Evidence:
        """Build evidence from the action body plus the current request."""
        payload = payload or {}
        device = payload.get("device") if isinstance(payload.get("device"), dict) else {}
        location = payload.get("location") if isinstance(payload.get("location"), dict) else {}
        consent = payload.get("consent") if isinstance(payload.get("consent"), dict) else {}

        ip, reason = normalize_ip(get_client_ip())
        user_agent = None
        if has_request_context():
            user_agent = request.headers.get("User-Agent")
        user_agent = user_agent or device.get("userAgent")

        client = _compact({
            "ip": ip,
            "userAgent": user_agent,
            "deviceType": device.get("type"),
            "os": device.get("os"),
            "browser": device.get("browser"),
        })
        geo = None
        if location:
            geo = _compact({
                "latitude": location.get("latitude"),
                "longitude": location.get("longitude"),
                "accuracyMeters": location.get("accuracyMeters"),
                "city": location.get("city"),
                "state": location.get("state"),
                "country": location.get("country"),
                "capturedAt": location.get("capturedAt"),
            })
            if geo:
                geo["source"] = "recipient"
        consent_snapshot = None
        if consent:
            consent_snapshot = _compact({
                "locationGranted": consent.get("locationGranted"),
                "grantedAt": consent.get("grantedAt"),
                "method": consent.get("method") or "other",
            })

        return cls(
            client_timestamp=parse_datetime(payload.get("clientTimestamp")),
            ip=ip,
            ip_unavailable_reason=reason,
            user_agent=(user_agent or "")[:512] or None,
            client=client,
            geo=geo,
            consent=consent_snapshot,
            device=device or None,
            location=location or None,
        )

    def apply_to(self, recipient: Recipient) -> None:
        """Copy the evidence onto the recipient's last-action snapshot."""
        if self.device:
            recipient.device = self.device
        if self.location:
            recipient.location = self.location
        if self.consent:
            recipient.consent = self.consent
        recipient.network = _compact({"ip": self.ip, "ipUnavailableReason": self.ip_unavailable_reason})


# ── Append ───────────────────────────────────────────────────────────────────


def next_sequence(document: Document) -> int:
    return max((e.sequence for e in document.events), default=0) + 1


def append_event(
    document: Document,
    action: str,
    *,
    recipient: Recipient | None = None,
    base_version: int | None = None,
    version: int | None = None,
    evidence: Evidence | None = None,
    event_fields: list[dict] | None = None,
    fields_digest: str | None = None,
    reason: str | None = None,
) -> SigningEvent:
    """Append one entry.  Prior entries are never touched."""
    evidence = evidence or Evidence()
    entry = SigningEvent(
        sequence=next_sequence(document),
        recipient_id=recipient.recipient_id if recipient else None,
        email=recipient.email if recipient else None,
        role=recipient.role if recipient else None,
        order=recipient.order if recipient else None,
        action=action,
        base_version=base_version,
        version=version,
        client_timestamp=evidence.client_timestamp,
        server_timestamp=utcnow(),
        ip=evidence.ip,
        ip_unavailable_reason=evidence.ip_unavailable_reason,
        user_agent=evidence.user_agent,
        client=evidence.client,
        geo=evidence.geo,
        consent=evidence.consent,
        fields=event_fields or [],
        fields_digest=fields_digest,
        reason=reason,
    )
    document.events.append(entry)
    return entry


# ── Replay ───────────────────────────────────────────────────────────────────


def replay(document: Document, records: list) -> list[dict]:
    """Reconstruct who did what, when and from where, in ledger order.

    ``records`` are the document's ``SignedFieldRecord`` rows.  Each signing
    entry reports ``consistent=False`` if its digest no longer matches its
    field list, or any field hash disagrees with the committed record.
    """
    by_key = {(r.version, r.recipient_id, r.field_id): r for r in records}
    trail = []
    for entry in document.events:
        item = {
            "sequence": entry.sequence,
            "action": entry.action,
            "recipient_id": entry.recipient_id,
            "email": entry.email,
            "role": entry.role,
            "order": entry.order,
            "base_version": entry.base_version,
            "version": entry.version,
            "server_timestamp": isoformat(entry.server_timestamp),
            "client_timestamp": isoformat(entry.client_timestamp),
            "ip": entry.ip,
            "ip_unavailable_reason": entry.ip_unavailable_reason,
            "user_agent": entry.user_agent,
            "geo": entry.geo,
            "consent": entry.consent,
            "fields": [],
            "consistent": True,
        }
        if entry.fields_digest is not None:
            if sha256_hex(canonical_json(list(entry.fields or []))) != entry.fields_digest:
                item["consistent"] = False
            for field in entry.fields or []:
                record = by_key.get((entry.version, entry.recipient_id, field["fieldId"]))
                matches = record is not None and record.field_hash == field["fieldHash"]
                if not matches:
                    item["consistent"] = False
                item["fields"].append({
                    "fieldId": field["fieldId"],
                    "fieldHash": field["fieldHash"],
                    "value": record.value if record is not None else None,
                    "committed": matches,
                })
        if not item["consistent"]:
            logger.warning(
                "Ledger entry disagrees with committed fields",
                extra={"document_id": document.id, "sequence": entry.sequence},
            )
        trail.append(item)
    return trail
