import os
from datetime import datetime, timedelta, timezone

import pytest

from certifyhub.app import db
from certifyhub.models import Certificate, CertificateVerification, Template, TemplateMetadata
from certifyhub.services.certificates import CertificateNotFoundError
from certifyhub.services.templates import Identity
from certifyhub.shared.fields import DEFAULT_FIELDS, BulkRow
from certifyhub.shared.issuance import issue_rows


@pytest.fixture
def templates(app):
    return app.extensions["template_service"]


@pytest.fixture
def certificates(app):
    return app.extensions["certificate_service"]


@pytest.fixture
def issued(app, template, organization, templates):
    fields = templates.get_default_fields(template.id, "user-1")
    rows = [
        BulkRow(values={"name": "Alice", "date": "2024-01-01"}, recipient_email="alice@example.com"),
        BulkRow(values={"name": "Bob", "date": "2024-01-02"}, recipient_email="bob@example.com"),
    ]
    result = issue_rows(template, fields, rows, organization)
    assert result.success, result.error
    return Certificate.query.order_by(Certificate.recipient_email).all()


def test_get_template_is_cached(app, template, templates):
    record = templates.get_template(template.id)
    assert record.name == "Course Completion"
    template.name = "Renamed"
    db.session.commit()
    assert templates.get_template(template.id).name == "Course Completion"
    templates.invalidate(template.id)
    assert templates.get_template(template.id).name == "Renamed"
    assert templates.get_template("missing") is None


def test_list_for_identity(app, template, organization, templates):
    personal = Template(name="Mine", file_name="mine.png", user_id="user-9")
    public = Template(name="Shared", file_name="shared.png", user_id="user-7", is_public=True)
    other = Template(name="Theirs", file_name="theirs.png", user_id="user-8")
    db.session.add_all([personal, public, other])
    db.session.commit()

    org_names = {t.name for t in templates.list_for_identity(Identity("user-1", organization.id))}
    assert org_names == {"Course Completion", "Shared"}
    personal_names = {t.name for t in templates.list_for_identity(Identity("user-9"))}
    assert personal_names == {"Mine", "Shared"}


def test_default_fields_from_metadata_or_builtin(app, template, templates):
    fields = templates.get_default_fields(template.id, "user-1")
    assert [f.id for f in fields] == ["name", "date"]
    bare = Template(name="Bare", file_name="bare.png", user_id="user-1")
    db.session.add(bare)
    db.session.commit()
    assert templates.get_default_fields(bare.id, "user-1") == list(DEFAULT_FIELDS)


def test_malformed_metadata_falls_back_to_builtin(app, templates, caplog):
    tpl = Template(name="Broken", file_name="broken.png", user_id="user-1")
    db.session.add(tpl)
    db.session.flush()
    db.session.add(
        TemplateMetadata(
            template_id=tpl.id,
            name="bad",
            is_default=True,
            user_id="user-1",
            metadata_json=[{"id": "name"}],
        )
    )
    db.session.commit()
    assert templates.get_default_fields(tpl.id, "user-1") == list(DEFAULT_FIELDS)
    assert "[TEMPLATE-METADATA]" in caplog.text


def test_template_path_stays_under_root(app, template, templates):
    assert templates.template_path(template).endswith(os.path.join("templates", "landscape.png"))
    escaped = Template(name="x", file_name="../../etc/passwd", user_id="u")
    assert templates.template_path(escaped) is None


def test_verify_records_attempts(app, issued, certificates):
    key = issued[0].certificate_key
    result = certificates.verify(key, ip="9.9.9.9", user_agent="pytest")
    assert result["valid"] is True
    assert result["status"] == "active"
    assert result["publisher"] == "Acme Academy"
    assert result["certificate"]["metadata_values"]["name"] == "Alice"

    missing = certificates.verify("nope")
    assert missing == {"valid": False, "status": "not_found", "certificate_key": "nope"}
    audit = CertificateVerification.query.order_by(CertificateVerification.verification_result).all()
    assert [a.verification_result for a in audit] == ["not_found", "valid"]
    assert audit[1].ip_address == "9.9.9.9"


def test_verify_reports_expired(app, issued, certificates):
    cert = issued[0]
    cert.expires_at = datetime.now(timezone.utc) - timedelta(days=1)
    db.session.commit()
    result = certificates.verify(cert.certificate_key)
    assert result["status"] == "expired"
    assert result["valid"] is False


def test_verify_pdf_reads_stamped_key(app, issued, certificates):
    cert = issued[1]
    path = os.path.join(app.config["SITE_ROOT"], "certificates", cert.pdf_path)
    with open(path, "rb") as fh:
        result = certificates.verify_pdf(fh.read())
    assert result["valid"] is True
    assert result["certificate_key"] == cert.certificate_key
    audit = CertificateVerification.query.one()
    assert audit.verification_type == "pdf"

    bad = certificates.verify_pdf(b"plain text")
    assert bad["valid"] is False
    assert bad["status"] == "invalid"


def test_revoke_invalidates_cache(app, issued, certificates, organization):
    key = issued[0].certificate_key
    assert certificates.get_by_key(key)["status"] == "active"
    assert len(certificates.list_for_publisher(organization.id)) == 2
    certificates.revoke(key)
    assert certificates.get_by_key(key)["status"] == "revoked"
    assert certificates.verify(key)["status"] == "revoked"
    assert len(certificates.list_for_publisher(organization.id, status="active")) == 1
    with pytest.raises(CertificateNotFoundError):
        certificates.revoke("missing")


def test_delete_removes_record_and_file(app, issued, certificates):
    cert = issued[0]
    key = cert.certificate_key
    path = os.path.join(app.config["SITE_ROOT"], "certificates", cert.pdf_path)
    certificates.delete(key)
    assert certificates.get_by_key(key) is None
    assert not os.path.exists(path)


def test_delete_tolerates_missing_file(app, issued, certificates):
    cert = issued[1]
    os.remove(os.path.join(app.config["SITE_ROOT"], "certificates", cert.pdf_path))
    certificates.delete(cert.certificate_key)
    assert Certificate.query.count() == 1


def test_share_data(app, issued, certificates):
    verification = certificates.verify(issued[0].certificate_key)
    share = certificates.share_data(verification, "https://certs.example.org/")
    assert share["url"] == f"https://certs.example.org/verify/{issued[0].certificate_key}"
    assert share["title"] == "Alice - Digital Certificate from Acme Academy"
    assert set(share["share"]) == {"facebook", "twitter", "linkedin", "reddit", "whatsapp", "telegram"}
