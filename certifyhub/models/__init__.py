from __future__ import annotations

import uuid

from sqlalchemy.orm import validates

from ..app import db
from ..shared.fields import Field, FieldValidationError, fields_from_json


def _uuid() -> str:
    return str(uuid.uuid4())


ORGANIZATION_STATUSES = ("pending", "approved", "rejected")
CERTIFICATE_STATUSES = ("active", "revoked", "expired")
VERIFICATION_RESULTS = ("valid", "invalid", "expired", "revoked", "not_found")
VERIFICATION_TYPES = ("online", "offline", "pdf")


class Organization(db.Model):
    __tablename__ = "organizations"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=False, unique=True)
    description = db.Column(db.Text)
    website = db.Column(db.String(500))
    contact_person = db.Column(db.String(255), nullable=False, default="")
    status = db.Column(
        db.String(20), nullable=False, default="pending", server_default="pending"
    )
    owner_id = db.Column(db.String(36))
    created_at = db.Column(db.DateTime(timezone=True), server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now(), onupdate=db.func.now()
    )

    @validates("email")
    def lower_email(self, key, value):  # pragma: no cover - simple normalizer
        return (value or "").lower()

    @validates("status")
    def check_status(self, key, value):
        if value not in ORGANIZATION_STATUSES:
            raise ValueError(f"Unsupported organization status: {value!r}")
        return value

    @property
    def is_approved(self) -> bool:
        return self.status == "approved"


class Template(db.Model):
    __tablename__ = "templates"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    file_name = db.Column(db.String(255), nullable=False)
    file_size = db.Column(db.BigInteger, nullable=False, default=0)
    file_type = db.Column(db.String(100), nullable=False, default="image/png")
    is_public = db.Column(db.Boolean, nullable=False, default=False)
    user_id = db.Column(db.String(36), nullable=False)
    organization_id = db.Column(
        db.String(36), db.ForeignKey("organizations.id", ondelete="CASCADE")
    )
    organization = db.relationship("Organization")
    created_at = db.Column(db.DateTime(timezone=True), server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now(), onupdate=db.func.now()
    )


class TemplateMetadata(db.Model):
    __tablename__ = "template_metadata"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    template_id = db.Column(
        db.String(36), db.ForeignKey("templates.id", ondelete="CASCADE"), nullable=False
    )
    template = db.relationship(
        "Template", backref=db.backref("metadata_sets", cascade="all, delete-orphan")
    )
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    user_id = db.Column(db.String(36), nullable=False)
    metadata_json = db.Column("metadata", db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime(timezone=True), server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now(), onupdate=db.func.now()
    )

    def fields(self) -> list[Field]:
        """Stored layout as validated Field records.

        Raises FieldValidationError when the stored JSON is malformed.
        """
        return fields_from_json(self.metadata_json)


class Certificate(db.Model):
    __tablename__ = "certificates"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    template_id = db.Column(
        db.String(36), db.ForeignKey("templates.id", ondelete="CASCADE"), nullable=False
    )
    template = db.relationship("Template")
    publisher_id = db.Column(
        db.String(36),
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    publisher = db.relationship("Organization")
    recipient_email = db.Column(db.String(255), nullable=False)
    metadata_values = db.Column(db.JSON, nullable=False, default=dict)
    content_hash = db.Column(db.String(64), nullable=False, index=True)
    certificate_key = db.Column(db.String(64), nullable=False, unique=True)
    watermark_data = db.Column(db.JSON, nullable=False, default=dict)
    pdf_path = db.Column(db.String(512))
    issued_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True))
    status = db.Column(
        db.String(20), nullable=False, default="active", server_default="active"
    )
    created_at = db.Column(db.DateTime(timezone=True), server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now(), onupdate=db.func.now()
    )
    __table_args__ = (
        db.Index("ix_certificates_publisher_status", "publisher_id", "status"),
        db.Index("ix_certificates_recipient_email", "recipient_email"),
    )

    @validates("status")
    def check_status(self, key, value):
        if value not in CERTIFICATE_STATUSES:
            raise ValueError(f"Unsupported certificate status: {value!r}")
        return value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "template_id": self.template_id,
            "publisher_id": self.publisher_id,
            "recipient_email": self.recipient_email,
            "metadata_values": dict(self.metadata_values or {}),
            "certificate_key": self.certificate_key,
            "content_hash": self.content_hash,
            "status": self.status,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


class CertificateVerification(db.Model):
    __tablename__ = "certificate_verifications"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    certificate_key = db.Column(db.String(64), nullable=False, index=True)
    verified_at = db.Column(db.DateTime(timezone=True), server_default=db.func.now())
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.Text)
    verification_result = db.Column(db.String(20), nullable=False)
    verification_type = db.Column(db.String(20), nullable=False, default="online")


__all__ = [
    "Certificate",
    "CertificateVerification",
    "Field",
    "FieldValidationError",
    "Organization",
    "Template",
    "TemplateMetadata",
]
