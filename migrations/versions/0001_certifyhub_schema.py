"""create organizations, templates, certificates and verification tables"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_certifyhub_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("description", sa.Text),
        sa.Column("website", sa.String(length=500)),
        sa.Column("contact_person", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("owner_id", sa.String(length=36)),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')", name="ck_organizations_status"
        ),
    )
    op.create_table(
        "templates",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("file_name", sa.String(length=255), nullable=False),
        sa.Column("file_size", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("file_type", sa.String(length=100), nullable=False, server_default="image/png"),
        sa.Column("is_public", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column(
            "organization_id",
            sa.String(length=36),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
        ),
        *_timestamps(),
    )
    op.create_index("ix_templates_organization_id", "templates", ["organization_id"])
    op.create_table(
        "template_metadata",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "template_id",
            sa.String(length=36),
            sa.ForeignKey("templates.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("is_default", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("metadata", sa.JSON, nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_template_metadata_template_id", "template_metadata", ["template_id"])
    op.create_table(
        "certificates",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "template_id",
            sa.String(length=36),
            sa.ForeignKey("templates.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "publisher_id",
            sa.String(length=36),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("recipient_email", sa.String(length=255), nullable=False),
        sa.Column("metadata_values", sa.JSON, nullable=False),
        sa.Column("content_hash", sa.String(length=64), nullable=False),
        sa.Column("certificate_key", sa.String(length=64), nullable=False, unique=True),
        sa.Column("watermark_data", sa.JSON, nullable=False),
        sa.Column("pdf_path", sa.String(length=512)),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True)),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('active', 'revoked', 'expired')", name="ck_certificates_status"
        ),
    )
    op.create_index("ix_certificates_content_hash", "certificates", ["content_hash"])
    op.create_index(
        "ix_certificates_publisher_status", "certificates", ["publisher_id", "status"]
    )
    op.create_index("ix_certificates_recipient_email", "certificates", ["recipient_email"])
    op.create_table(
        "certificate_verifications",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("certificate_key", sa.String(length=64), nullable=False),
        sa.Column("verified_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("ip_address", sa.String(length=64)),
        sa.Column("user_agent", sa.Text),
        sa.Column("verification_result", sa.String(length=20), nullable=False),
        sa.Column("verification_type", sa.String(length=20), nullable=False, server_default="online"),
    )
    op.create_index(
        "ix_certificate_verifications_certificate_key",
        "certificate_verifications",
        ["certificate_key"],
    )


def downgrade() -> None:
    op.drop_index(
        "ix_certificate_verifications_certificate_key", table_name="certificate_verifications"
    )
    op.drop_table("certificate_verifications")
    op.drop_index("ix_certificates_recipient_email", table_name="certificates")
    op.drop_index("ix_certificates_publisher_status", table_name="certificates")
    op.drop_index("ix_certificates_content_hash", table_name="certificates")
    op.drop_table("certificates")
    op.drop_index("ix_template_metadata_template_id", table_name="template_metadata")
    op.drop_table("template_metadata")
    op.drop_index("ix_templates_organization_id", table_name="templates")
    op.drop_table("templates")
    op.drop_table("organizations")
