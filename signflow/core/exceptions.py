"""
Signing engine exception hierarchy.

Services raise these; blueprints register a single handler against
``SigningError`` and render ``{"error": ..., "code": ...}`` with the HTTP
status carried by the exception class.

Messages are user-visible.  They must distinguish the recovery path
("not your turn", "link expired", "already completed") without leaking
database ids or storage keys.

Usage:
    from signflow.core.exceptions import NotFoundError, SequenceViolation

    raise NotFoundError(resource="Document", resource_id=doc_id)
    raise SequenceViolation("It is not your turn to sign this document yet")
"""


class SigningError(Exception):
    """Base class.  Subclasses set ``status_code`` and ``code``."""

    status_code = 500
    code = "ERR_INTERNAL"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(SigningError):
    """Malformed or missing request fields, or a missing required consent."""

    status_code = 400
    code = "ERR_VALIDATION"


class AuthorizationError(SigningError):
    """Invalid or already-consumed signing link, or missing owner session."""

    status_code = 401
    code = "ERR_UNAUTHORIZED"


class LinkExpiredError(AuthorizationError):
    status_code = 410
    code = "ERR_LINK_EXPIRED"


class SequenceViolation(SigningError):
    """Out-of-turn action in sequential mode, or an action the role may not take."""

    status_code = 403
    code = "ERR_SEQUENCE"


class NotFoundError(SigningError):
    """Raised when a document, recipient or version cannot be resolved.

    Args:
        resource: Human-readable entity name (e.g. "Document", "Recipient").
        resource_id: The key that was looked up.  Kept for logs, never put
                     into the HTTP message.
    """

    status_code = 404
    code = "ERR_NOT_FOUND"

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found")


class ConflictError(SigningError):
    """Document already terminal, or a concurrent write won the race."""

    status_code = 409
    code = "ERR_CONFLICT"


class InvariantViolation(ConflictError):
    """A mutated aggregate failed one or more consistency rules.

    ``violations`` lists every rule that failed; nothing was persisted.
    """

    code = "ERR_INVARIANT"

    def __init__(self, violations: list[str]) -> None:
        self.violations = list(violations)
        super().__init__(
            "Document state is inconsistent; the change was not saved",
            details={"violations": self.violations},
        )


class IntegrityError(SigningError):
    """Stored bytes no longer match the digest recorded for a version."""

    status_code = 409
    code = "ERR_INTEGRITY"

    def __init__(self, version: int, expected: str, actual: str) -> None:
        self.version = version
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Content of version {version} does not match its recorded digest",
            details={"expected": expected, "actual": actual},
        )


class StorageError(SigningError):
    """Blob store unavailable or object missing.  Not retried here."""

    status_code = 500
    code = "ERR_STORAGE"


class ConfigurationError(SigningError):
    """Key material or other required configuration is missing."""

    status_code = 500
    code = "ERR_CONFIGURATION"
