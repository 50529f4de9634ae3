"""
Recipient signing blueprint.

The signing token is the only credential on these routes.  No owner
session is read and no internal identifier beyond what the token already
reveals is returned.

Endpoints:
    GET  /api/v1/signing/document?token=   recipient view (first open → viewed)
    GET  /api/v1/signing/file?token=       current version bytes
    POST /api/v1/sign                      {token, recipientId, fields[], device?, location?, consent?}
    POST /api/v1/signed-document-action    {token, action, fields?, reason?, device?, location?, consent?}

Layer contract:
    - Blueprint: read query/body, call signing_workflow, return JSON.
    - NO db.session calls here; the workflow owns every write.
"""

import logging

from flask import Blueprint, jsonify, request, send_file

from signflow.blueprints import json_body
from signflow.core.exceptions import SigningError
from signflow.services import signing_workflow
from signflow.utils.errors import error_response

logger = logging.getLogger(__name__)

signing_bp = Blueprint("signing", __name__, url_prefix="/api/v1")


@signing_bp.errorhandler(SigningError)
def _handle_signing_error(exc):
    if exc.status_code >= 500:
        logger.error("Signing request failed: %s", exc.message, exc_info=exc)
    return error_response(exc)


@signing_bp.route("/signing/document", methods=["GET"])
def view_document():
    return jsonify(signing_workflow.view_document(request.args.get("token", "")))


@signing_bp.route("/signing/file", methods=["GET"])
def download_file():
    document, version, stream = signing_workflow.open_signing_file(request.args.get("token", ""))
    response = send_file(
        stream,
        mimetype=version.mime_type,
        download_name=document.original_file_name or f"{document.name}.pdf",
        max_age=0,
    )
    response.headers["X-Content-SHA256"] = version.hash
    return response


@signing_bp.route("/sign", methods=["POST"])
def sign():
    data = json_body()
    result = signing_workflow.sign(
        data.get("token"),
        data.get("recipientId"),
        data.get("fields"),
        payload=data,
    )
    return jsonify(result)


@signing_bp.route("/signed-document-action", methods=["POST"])
def signed_document_action():
    data = json_body()
    result = signing_workflow.perform_action(data.get("token"), data.get("action"), payload=data)
    return jsonify(result)
