"""
Cross-entity consistency rules for the Document aggregate.

``check_invariants`` is pure and returns every violated rule; the
repository calls ``enforce_invariants`` right before commit and a single
violation rejects the whole write.

Rules:
    - Version numbers run 0..n without gaps, each chained to an earlier one.
    - ``current_version`` points at an existing version.
    - ``current_version`` equals the highest ``signed_version`` among
      recipients, whenever any recipient has one.
    - A recipient has ``signed_version`` iff its status is ``signed``.
    - Only ``prepared`` versions carry a field layout.
    - A ``signed*`` version's ``signed_by`` has exactly one entry per signer
      whose ``signed_version`` is at or below that version.
"""

from __future__ import annotations

from signflow.core.exceptions import InvariantViolation
from signflow.models.document import LABEL_PREPARED, is_signed_label


def check_invariants(document) -> list[str]:
    violations: list[str] = []
    versions = sorted(document.versions or [], key=lambda v: v.version)
    recipients = list(document.recipients or [])

    numbers = [v.version for v in versions]
    if numbers and numbers != list(range(len(numbers))):
        violations.append(f"version numbers {numbers} are not a gapless sequence from 0")
    for v in versions:
        if v.version > 0 and (v.derived_from_version is None or v.derived_from_version >= v.version):
            violations.append(f"version {v.version} is not chained to an earlier version")

    if versions and document.current_version not in numbers:
        violations.append(f"current_version {document.current_version} does not exist")

    signed_versions = [r.signed_version for r in recipients if r.signed_version is not None]
    if signed_versions and document.current_version != max(signed_versions):
        violations.append(
            f"current_version {document.current_version} != latest signed version {max(signed_versions)}"
        )

    for r in recipients:
        if (r.signed_version is not None) != (r.status == "signed"):
            violations.append(
                f"recipient {r.recipient_id} has status {r.status} with signed_version {r.signed_version}"
            )

    for v in versions:
        if v.label != LABEL_PREPARED and v.fields:
            violations.append(f"version {v.version} ({v.label}) carries a field layout")
        if is_signed_label(v.label):
            expected = sum(
                1 for r in recipients
                if r.role == "signer" and r.signed_version is not None and r.signed_version <= v.version
            )
            actual = len(v.signed_by or [])
            if actual != expected:
                violations.append(
                    f"version {v.version} signed_by has {actual} entries, expected {expected}"
                )

    return violations


def enforce_invariants(document) -> None:
    """Raise ``InvariantViolation`` listing every broken rule."""
    violations = check_invariants(document)
    if violations:
        raise InvariantViolation(violations)
