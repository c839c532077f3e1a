"""Issuance of verifiable certificates from bulk rows.

Every issued certificate is fingerprinted twice: ``content_hash`` identifies
the content (template, publisher, recipient and values) and drives duplicate
detection, while ``certificate_key`` additionally folds in the issue time and
is the public lookup key used by verification.
"""

from __future__ import annotations

import hashlib
import json
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Sequence

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..app import db
from ..models import Certificate, Organization, Template
from .fields import BulkRow, DuplicateCertificate, Field
from .render import RenderError, merge_row, render_certificate_pdf
from .storage import certificates_root, remove_quietly, template_file_path, write_atomic
from .time import iso_utc, now_utc

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

MISSING_VALUES_ERROR = "All fields must be filled before issuing certificates"
INVALID_EMAIL_ERROR = "Row {row}: a valid recipient email is required"


class IssuanceError(RuntimeError):
    """Raised when a batch cannot be issued."""


class IssuanceForbiddenError(PermissionError):
    """Raised when the current identity may not issue certificates."""


@dataclass(frozen=True)
class IssuanceEntry:
    row_id: str
    recipient_email: str
    metadata_values: dict
    fields: list
    content_hash: str


@dataclass
class IssuanceResult:
    success: bool
    issued_count: int = 0
    duplicate_count: int = 0
    duplicates: list[DuplicateCertificate] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict:
        data = {
            "success": self.success,
            "issued_count": self.issued_count,
            "duplicate_count": self.duplicate_count,
            "duplicates": [d.to_dict() for d in self.duplicates],
        }
        if self.error:
            data["error"] = self.error
        return data


def content_hash(
    template_id: str, publisher_id: str, recipient_email: str, metadata_values: dict
) -> str:
    values = json.dumps(metadata_values, separators=(",", ":"), ensure_ascii=False)
    raw = f"{template_id}|{publisher_id}|{recipient_email}|{values}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def certificate_key(content_hash_value: str, issued_at_iso: str) -> str:
    raw = f"{content_hash_value}|{issued_at_iso}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def ensure_can_issue(organization: Organization | None) -> None:
    if organization is None:
        raise IssuanceForbiddenError("An organization identity is required to issue certificates.")
    if not organization.is_approved:
        raise IssuanceForbiddenError("Organization must be verified to issue certificates.")


def validate_rows(fields: Sequence[Field], rows: Sequence[BulkRow]) -> None:
    """Raise IssuanceError unless every row is complete and addressed."""
    for row in rows:
        if any(not row.get(f.id).strip() for f in fields):
            raise IssuanceError(MISSING_VALUES_ERROR)
    for number, row in enumerate(rows, start=1):
        email = (row.recipient_email or "").strip()
        if not EMAIL_RE.match(email):
            raise IssuanceError(INVALID_EMAIL_ERROR.format(row=number))


def build_entries(
    template: Template,
    fields: Sequence[Field],
    rows: Sequence[BulkRow],
    organization: Organization,
) -> list[IssuanceEntry]:
    entries = []
    for row in rows:
        email = (row.recipient_email or "").strip()
        values = {f.id: row.get(f.id) for f in fields}
        entries.append(
            IssuanceEntry(
                row_id=row.id,
                recipient_email=email,
                metadata_values=values,
                fields=merge_row(fields, row),
                content_hash=content_hash(template.id, organization.id, email, values),
            )
        )
    return entries


def find_duplicates(entries: Sequence[IssuanceEntry]) -> list[DuplicateCertificate]:
    duplicates = []
    for entry in entries:
        existing = (
            Certificate.query.filter_by(content_hash=entry.content_hash, status="active")
            .order_by(Certificate.issued_at.desc())
            .first()
        )
        if existing:
            duplicates.append(
                DuplicateCertificate(
                    recipient_email=entry.recipient_email,
                    metadata_values=dict(entry.metadata_values),
                    existing_certificate_key=existing.certificate_key,
                )
            )
    return duplicates


class _IssueClock:
    """Hands out strictly increasing millisecond timestamps within one batch."""

    def __init__(self):
        self._last: datetime | None = None

    def next(self) -> datetime:
        now = now_utc()
        now = now.replace(microsecond=now.microsecond // 1000 * 1000)
        if self._last is not None and now <= self._last:
            now = self._last + timedelta(milliseconds=1)
        self._last = now
        return now


def _watermark(entry_hash: str, key: str, issued_at_iso: str, template_id: str,
               publisher_id: str, base_url: str) -> dict:
    return {
        "certificateKey": key,
        "contentHash": entry_hash,
        "issuedAt": issued_at_iso,
        "publisherId": publisher_id,
        "templateId": template_id,
        "verificationUrl": f"{base_url.rstrip('/')}/verify/{key}",
    }


def _write_pdf(template_path: str, entry: IssuanceEntry, watermark: dict) -> str:
    metadata = {
        "CertificateKey": watermark["certificateKey"],
        "ContentHash": watermark["contentHash"],
        "IssuedAt": watermark["issuedAt"],
        "VerificationUrl": watermark["verificationUrl"],
    }
    pdf_bytes = render_certificate_pdf(template_path, entry.fields, metadata)
    rel_path = f"{watermark['certificateKey']}.pdf"
    write_atomic(os.path.join(certificates_root(), rel_path), pdf_bytes)
    return rel_path


def issue_rows(
    template: Template,
    fields: Sequence[Field],
    rows: Sequence[BulkRow],
    organization: Organization | None,
    update_duplicates: bool = False,
    progress: Callable[[int], None] | None = None,
    base_url: str = "",
) -> IssuanceResult:
    """Issue one certificate per row.

    Rows whose content already has an active certificate are reported as
    duplicates and skipped, or re-issued in place when ``update_duplicates``
    is set. The whole batch is one transaction.
    """
    ensure_can_issue(organization)
    try:
        validate_rows(fields, rows)
    except IssuanceError as exc:
        return IssuanceResult(success=False, error=str(exc))

    template_path = template_file_path(template.file_name)
    if not template_path or not os.path.isfile(template_path):
        return IssuanceResult(success=False, error="Template image not found")

    entries = build_entries(template, fields, rows, organization)
    duplicates = find_duplicates(entries)
    duplicate_hashes = {
        content_hash(template.id, organization.id, d.recipient_email, d.metadata_values)
        for d in duplicates
    }
    new_entries = [e for e in entries if e.content_hash not in duplicate_hashes]

    clock = _IssueClock()
    written: list[str] = []
    superseded: list[str] = []
    issued = 0
    updated = 0

    def report(value: float) -> None:
        if progress:
            progress(int(value))

    report(0)
    try:
        for index, entry in enumerate(new_entries, start=1):
            issued_at = clock.next()
            issued_at_iso = iso_utc(issued_at)
            key = certificate_key(entry.content_hash, issued_at_iso)
            watermark = _watermark(
                entry.content_hash, key, issued_at_iso, template.id, organization.id, base_url
            )
            rel_path = _write_pdf(template_path, entry, watermark)
            written.append(rel_path)
            db.session.add(
                Certificate(
                    template_id=template.id,
                    publisher_id=organization.id,
                    recipient_email=entry.recipient_email,
                    metadata_values=entry.metadata_values,
                    content_hash=entry.content_hash,
                    certificate_key=key,
                    watermark_data=watermark,
                    pdf_path=rel_path,
                    issued_at=issued_at,
                    status="active",
                )
            )
            issued += 1
            report(index / len(new_entries) * 50)

        report(50)
        if update_duplicates:
            by_hash = {e.content_hash: e for e in entries}
            for index, duplicate in enumerate(duplicates, start=1):
                existing = Certificate.query.filter_by(
                    certificate_key=duplicate.existing_certificate_key
                ).one_or_none()
                if existing is None:
                    continue
                entry = by_hash[existing.content_hash]
                issued_at = clock.next()
                issued_at_iso = iso_utc(issued_at)
                key = certificate_key(entry.content_hash, issued_at_iso)
                watermark = _watermark(
                    entry.content_hash, key, issued_at_iso, template.id, organization.id, base_url
                )
                rel_path = _write_pdf(template_path, entry, watermark)
                written.append(rel_path)
                if existing.pdf_path:
                    superseded.append(existing.pdf_path)
                existing.metadata_values = entry.metadata_values
                existing.content_hash = entry.content_hash
                existing.certificate_key = key
                existing.watermark_data = watermark
                existing.pdf_path = rel_path
                existing.issued_at = issued_at
                updated += 1
                report(50 + index / len(duplicates) * 50)

        db.session.commit()
    except (SQLAlchemyError, OSError, RenderError) as exc:
        db.session.rollback()
        current_app.logger.exception(
            "[CERT-ISSUE] failed template=%s publisher=%s", template.id, organization.id
        )
        root = certificates_root()
        for rel_path in written:
            remove_quietly(os.path.join(root, rel_path))
        return IssuanceResult(
            success=False,
            duplicates=duplicates,
            error=f"Failed to issue certificates: {exc}",
        )

    root = certificates_root()
    for rel_path in superseded:
        remove_quietly(os.path.join(root, rel_path))
    report(100)

    current_app.logger.info(
        "[CERT-ISSUE] template=%s publisher=%s issued=%s duplicates=%s updated=%s",
        template.id,
        organization.id,
        issued,
        len(duplicates),
        updated,
    )
    return IssuanceResult(
        success=True,
        issued_count=issued,
        duplicate_count=updated if update_duplicates else len(duplicates),
        duplicates=duplicates,
    )
