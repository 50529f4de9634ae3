"""
Owner document blueprint.

Every route except the retention purge requires an owner session
(``Authorization: Bearer <jwt>``).  Documents of other owners are
reported as not found.

Endpoints:
    POST   /api/v1/documents                                   multipart: file, name, owner_email?
    GET    /api/v1/documents                                   ?status=&deleted=&limit=&offset=
    GET    /api/v1/documents/<id>
    DELETE /api/v1/documents/<id>                              soft delete
    POST   /api/v1/documents/<id>/restore
    POST   /api/v1/documents/<id>/prepare                      {fields[], changeLog?}
    POST   /api/v1/documents/<id>/send                         {recipients[], signingMode, fields?, expiresInDays?}
    POST   /api/v1/documents/<id>/recipients/<rid>/resend
    POST   /api/v1/documents/<id>/void                         {reason?}
    POST   /api/v1/documents/<id>/derive
    GET    /api/v1/documents/<id>/file                         current version bytes
    GET    /api/v1/documents/<id>/versions/<n>/file
    GET    /api/v1/documents/<id>/versions/<n>/integrity
    GET    /api/v1/documents/<id>/events
    GET    /api/v1/documents/<id>/audit-trail
    GET    /api/v1/documents/<id>/signed-fields                ?version=&recipient=
    POST   /api/v1/documents/retention-purge                   X-Retention-Token

Layer contract:
    - Blueprint: parse + validate input shape, call services, return JSON.
    - NO db.session calls here; services own every write.
"""

import logging

from flask import Blueprint, g, jsonify, request, send_file

from signflow.blueprints import json_body, paginate_query
from signflow.core.exceptions import SigningError, ValidationError
from signflow.middleware.owner_auth import bearer_token, owner_required
from signflow.services import document_repository, document_service, retention, signing_workflow, version_chain
from signflow.utils.errors import error_response

logger = logging.getLogger(__name__)

documents_bp = Blueprint("documents", __name__, url_prefix="/api/v1")


@documents_bp.errorhandler(SigningError)
def _handle_signing_error(exc):
    if exc.status_code >= 500:
        logger.error("Document request failed: %s", exc.message, exc_info=exc)
    return error_response(exc)


def _owned(document_id: str, include_deleted: bool = False):
    return document_repository.get_document(document_id, owner_id=g.owner_id,
                                            include_deleted=include_deleted)


def _int_arg(name: str):
    raw = request.args.get(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(f"{name} must be an integer") from exc


# ── Collection ───────────────────────────────────────────────────────────────


@documents_bp.route("/documents", methods=["POST"])
@owner_required
def upload_document():
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        raise ValidationError("A file is required")
    name = (request.form.get("name") or upload.filename).strip()
    document = document_service.upload_document(
        owner_id=g.owner_id,
        owner_email=request.form.get("owner_email") or g.owner_email,
        name=name,
        content=upload.stream,
        file_name=upload.filename,
        mime_type=upload.mimetype,
    )
    return jsonify(document.to_dict()), 201


@documents_bp.route("/documents", methods=["GET"])
@owner_required
def list_documents():
    query = document_repository.documents_query(
        g.owner_id,
        status=request.args.get("status"),
        deleted=request.args.get("deleted", "false").lower() == "true",
    )
    items, total = paginate_query(query)
    return jsonify({"items": [d.to_dict(include_children=False) for d in items], "total": total})


@documents_bp.route("/documents/retention-purge", methods=["POST"])
def retention_purge():
    retention.check_purge_token(request.headers.get("X-Retention-Token") or bearer_token())
    data = json_body()
    document_ids = data.get("documentIds")
    if document_ids is not None and not isinstance(document_ids, list):
        raise ValidationError("documentIds must be a list")
    result = retention.purge(
        document_ids=document_ids,
        retention_before=data.get("retentionBefore"),
        retention_years=data.get("retentionYears"),
        dry_run=bool(data.get("dryRun")),
        limit=data.get("limit"),
    )
    return jsonify(result)


# ── Single document ──────────────────────────────────────────────────────────


@documents_bp.route("/documents/<document_id>", methods=["GET"])
@owner_required
def get_document(document_id):
    return jsonify(_owned(document_id).to_dict())


@documents_bp.route("/documents/<document_id>", methods=["DELETE"])
@owner_required
def delete_document(document_id):
    document_service.soft_delete(_owned(document_id), actor=g.owner_id)
    return jsonify({"success": True})


@documents_bp.route("/documents/<document_id>/restore", methods=["POST"])
@owner_required
def restore_document(document_id):
    document = document_service.restore(_owned(document_id, include_deleted=True), actor=g.owner_id)
    return jsonify(document.to_dict())


@documents_bp.route("/documents/<document_id>/prepare", methods=["POST"])
@owner_required
def prepare_document(document_id):
    data = json_body()
    if "fields" not in data:
        raise ValidationError("fields is required")
    document = document_service.prepare(
        _owned(document_id), actor=g.owner_id,
        fields=data["fields"], change_log=data.get("changeLog"),
    )
    return jsonify(document.to_dict())


@documents_bp.route("/documents/<document_id>/send", methods=["POST"])
@owner_required
def send_document(document_id):
    data = json_body()
    result = signing_workflow.send_for_signing(
        _owned(document_id),
        actor=g.owner_id,
        recipients=data.get("recipients"),
        signing_mode=data.get("signingMode"),
        fields=data.get("fields"),
        expires_in_days=data.get("expiresInDays"),
    )
    return jsonify(result)


@documents_bp.route("/documents/<document_id>/recipients/<recipient_id>/resend", methods=["POST"])
@owner_required
def resend_invitation(document_id, recipient_id):
    return jsonify(signing_workflow.resend(_owned(document_id), recipient_id, actor=g.owner_id))


@documents_bp.route("/documents/<document_id>/void", methods=["POST"])
@owner_required
def void_document(document_id):
    data = json_body()
    return jsonify(signing_workflow.void_document(
        _owned(document_id), actor=g.owner_id, reason=data.get("reason"),
    ))


@documents_bp.route("/documents/<document_id>/derive", methods=["POST"])
@owner_required
def derive_document(document_id):
    derived = document_service.derive(_owned(document_id), actor=g.owner_id)
    return jsonify({
        "documentId": derived.id,
        "derivedFromDocumentId": derived.derived_from_document_id,
        "derivedFromVersion": derived.derived_from_version,
        "document": derived.to_dict(),
    })


# ── Evidence ─────────────────────────────────────────────────────────────────


@documents_bp.route("/documents/<document_id>/file", methods=["GET"])
@documents_bp.route("/documents/<document_id>/versions/<int:version>/file", methods=["GET"])
@owner_required
def download_version(document_id, version=None):
    document = _owned(document_id)
    stored, stream = document_service.open_content(document, version)
    response = send_file(
        stream,
        mimetype=stored.mime_type,
        download_name=f"{document.name}-v{stored.version}-{stored.label}.pdf",
        max_age=0,
    )
    response.headers["X-Content-SHA256"] = stored.hash
    response.headers["X-Document-Version"] = str(stored.version)
    return response


@documents_bp.route("/documents/<document_id>/versions/<int:version>/integrity", methods=["GET"])
@owner_required
def check_integrity(document_id, version):
    return jsonify(version_chain.assert_integrity(_owned(document_id), version))


@documents_bp.route("/documents/<document_id>/events", methods=["GET"])
@owner_required
def list_events(document_id):
    document = _owned(document_id)
    return jsonify({"items": [e.to_dict() for e in document.events], "total": len(document.events)})


@documents_bp.route("/documents/<document_id>/audit-trail", methods=["GET"])
@owner_required
def audit_trail(document_id):
    return jsonify(document_service.audit_trail(_owned(document_id)))


@documents_bp.route("/documents/<document_id>/signed-fields", methods=["GET"])
@owner_required
def signed_fields(document_id):
    records = document_service.signed_field_records(
        _owned(document_id),
        version=_int_arg("version"),
        recipient_id=request.args.get("recipient") or None,
    )
    return jsonify({"items": records, "total": len(records)})
