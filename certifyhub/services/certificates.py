from __future__ import annotations

import os
from datetime import datetime

from flask import current_app
from PyPDF2.errors import PdfReadError

from ..app import db
from ..models import Certificate, CertificateVerification, Organization, Template
from ..shared.cache import TTLCache
from ..shared.render import read_pdf_metadata
from ..shared.sharing import open_graph
from ..shared.storage import certificates_root, remove_quietly, safe_join
from ..shared.time import as_utc, now_utc

_RESULT_FOR_STATUS = {"active": "valid", "revoked": "revoked", "expired": "expired"}


class CertificateNotFoundError(LookupError):
    """Raised when no certificate matches the given key."""


def certificate_file_path(certificate: Certificate | dict) -> str | None:
    rel_path = (
        certificate.get("pdf_path")
        if isinstance(certificate, dict)
        else certificate.pdf_path
    )
    return safe_join(certificates_root(), rel_path)


def effective_status(certificate: Certificate) -> str:
    expires_at = as_utc(certificate.expires_at)
    if certificate.status == "active" and expires_at and expires_at < now_utc():
        return "expired"
    return certificate.status


class CertificateService:
    def __init__(self, cache: TTLCache):
        self.cache = cache

    def get_by_key(self, key: str) -> dict | None:
        cache_key = TTLCache.key("get_by_key", key=key)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return dict(cached)
        certificate = Certificate.query.filter_by(certificate_key=key).one_or_none()
        if certificate is None:
            return None
        data = certificate.to_dict()
        data["pdf_path"] = certificate.pdf_path
        self.cache.set(cache_key, data)
        return dict(data)

    def list_for_publisher(
        self, publisher_id: str, template_id: str | None = None, status: str | None = None
    ) -> list[dict]:
        cache_key = TTLCache.key(
            "list_for_publisher", publisher=publisher_id, template=template_id, status=status
        )
        cached = self.cache.get(cache_key)
        if cached is not None:
            return list(cached)
        query = Certificate.query.filter_by(publisher_id=publisher_id)
        if template_id:
            query = query.filter_by(template_id=template_id)
        if status:
            query = query.filter_by(status=status)
        items = [c.to_dict() for c in query.order_by(Certificate.issued_at.desc()).all()]
        self.cache.set(cache_key, items)
        return list(items)

    def verify(
        self,
        key: str,
        ip: str | None = None,
        user_agent: str | None = None,
        verification_type: str = "online",
    ) -> dict:
        """Look up a certificate by key and record the attempt.

        Always reads the database so revocations are visible immediately.
        """
        certificate = Certificate.query.filter_by(certificate_key=key).one_or_none()
        if certificate is None:
            status = "not_found"
            result = "not_found"
        else:
            status = effective_status(certificate)
            result = _RESULT_FOR_STATUS.get(status, "invalid")

        db.session.add(
            CertificateVerification(
                certificate_key=key,
                ip_address=ip,
                user_agent=user_agent,
                verification_result=result,
                verification_type=verification_type,
            )
        )
        db.session.commit()

        payload = {"valid": result == "valid", "status": status, "certificate_key": key}
        if certificate is not None:
            organization = db.session.get(Organization, certificate.publisher_id)
            template = db.session.get(Template, certificate.template_id)
            payload["certificate"] = certificate.to_dict()
            payload["publisher"] = organization.name if organization else None
            payload["template"] = template.name if template else None
        return payload

    def verify_pdf(self, data: bytes, ip: str | None = None, user_agent: str | None = None) -> dict:
        """Verify an uploaded certificate PDF through its stamped key."""
        try:
            metadata = read_pdf_metadata(data)
        except (PdfReadError, ValueError, OSError) as exc:
            current_app.logger.info("[CERT-VERIFY] unreadable pdf: %s", exc)
            return {"valid": False, "status": "invalid", "error": "Not a readable PDF"}
        key = metadata.get("CertificateKey")
        if not key:
            return {"valid": False, "status": "invalid", "error": "No certificate key found in PDF"}
        return self.verify(key, ip=ip, user_agent=user_agent, verification_type="pdf")

    def share_data(self, verification: dict, base_url: str = "") -> dict:
        certificate = verification.get("certificate") or {}
        values = certificate.get("metadata_values") or {}
        url = f"{base_url.rstrip('/')}/verify/{verification['certificate_key']}"
        issued_at = certificate.get("issued_at")
        return open_graph(
            url,
            recipient_name=values.get("name"),
            organization_name=verification.get("publisher"),
            template_name=verification.get("template"),
            issued_at=datetime.fromisoformat(issued_at) if issued_at else None,
        )

    def revoke(self, key: str) -> Certificate:
        certificate = Certificate.query.filter_by(certificate_key=key).one_or_none()
        if certificate is None:
            raise CertificateNotFoundError(key)
        certificate.status = "revoked"
        db.session.commit()
        self.cache.clear()
        current_app.logger.info("[CERT-REVOKE] key=%s", key)
        return certificate

    def delete(self, key: str) -> None:
        certificate = Certificate.query.filter_by(certificate_key=key).one_or_none()
        if certificate is None:
            raise CertificateNotFoundError(key)
        pdf_path = certificate_file_path(certificate)
        db.session.delete(certificate)
        db.session.commit()
        self.cache.clear()
        if pdf_path and os.path.exists(pdf_path):
            remove_quietly(pdf_path)
        current_app.logger.info("[CERT-DELETE] key=%s", key)
