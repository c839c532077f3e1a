from __future__ import annotations

import os

from flask import (
    Blueprint,
    abort,
    current_app,
    jsonify,
    request,
    send_file,
    session as flask_session,
)

from ..services.certificates import CertificateNotFoundError, certificate_file_path
from ..shared.ratelimit import client_ip

bp = Blueprint("certificates", __name__, url_prefix="/certificates")
verify_bp = Blueprint("verify", __name__, url_prefix="/verify")


def client_details() -> tuple[str, str]:
    return client_ip(request.headers, request.remote_addr), request.headers.get("User-Agent", "")


def _service():
    return current_app.extensions["certificate_service"]


def _publisher_id() -> str:
    if not flask_session.get("user_id"):
        abort(401)
    org_id = flask_session.get("organization_id")
    if not org_id:
        abort(403)
    return org_id


def _owned(key: str) -> dict:
    publisher_id = _publisher_id()
    certificate = _service().get_by_key(key)
    if certificate is None:
        abort(404)
    if certificate["publisher_id"] != publisher_id:
        abort(403)
    return certificate


@bp.get("")
def index():
    publisher_id = _publisher_id()
    items = _service().list_for_publisher(
        publisher_id,
        template_id=request.args.get("template_id"),
        status=request.args.get("status"),
    )
    return jsonify({"certificates": items})


@bp.get("/<key>.pdf")
def download(key: str):
    certificate = _service().get_by_key(key)
    if certificate is None:
        abort(404)
    full_path = certificate_file_path(certificate)
    if not full_path or not os.path.isfile(full_path):
        current_app.logger.warning("[CERT-MISSING] key=%s path=%s", key, full_path)
        abort(404)
    return send_file(
        full_path,
        mimetype="application/pdf",
        as_attachment=True,
        download_name=f"{key}.pdf",
    )


@bp.post("/<key>/revoke")
def revoke(key: str):
    _owned(key)
    try:
        certificate = _service().revoke(key)
    except CertificateNotFoundError:
        abort(404)
    return jsonify(certificate.to_dict())


@bp.post("/<key>/delete")
def delete(key: str):
    _owned(key)
    try:
        _service().delete(key)
    except CertificateNotFoundError:
        abort(404)
    return "", 204


@verify_bp.get("/<key>")
def verify(key: str):
    ip, user_agent = client_details()
    result = _service().verify(key, ip=ip, user_agent=user_agent)
    if result["status"] != "not_found":
        base_url = current_app.config.get("PUBLIC_BASE_URL") or request.host_url
        result["share"] = _service().share_data(result, base_url)
    return jsonify(result), 200 if result["status"] != "not_found" else 404


@verify_bp.post("/pdf")
def verify_pdf():
    upload = request.files.get("file")
    if upload is None:
        return jsonify({"error": "No file uploaded."}), 400
    ip, user_agent = client_details()
    result = _service().verify_pdf(upload.read(), ip=ip, user_agent=user_agent)
    return jsonify(result), 200 if "error" not in result else 400
