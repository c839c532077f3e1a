import os

import click
from flask import current_app
from flask.cli import FlaskGroup
from flask_migrate import Migrate

from certifyhub.app import create_app, db
from certifyhub.models import Certificate
from certifyhub.shared.bulk_parser import parse_spreadsheet
from certifyhub.shared.export import export_zip
from certifyhub.shared.fields import editable_fields
from certifyhub.shared.storage import certificates_root, write_atomic


migrate = Migrate()


def create_certifyhub_app():
    app = create_app()
    migrate.init_app(app, db)
    return app


cli = FlaskGroup(create_app=create_certifyhub_app)


@cli.command("bulk_export")
@click.option("--template", "template_id", required=True)
@click.option(
    "--data",
    "data_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="CSV or XLSX file whose first row names the template fields",
)
@click.option("--output", "output_path", required=True, type=click.Path(dir_okay=False))
@click.option("--user", "user_id", default=None, help="Use this user's default layout")
def bulk_export(template_id: str, data_path: str, output_path: str, user_id: str | None):
    """Render every data row to a PDF and write them as one ZIP archive."""
    templates = current_app.extensions["template_service"]
    template = templates.get_template(template_id)
    if template is None:
        click.echo("Template not found", err=True)
        raise SystemExit(1)
    template_path = templates.template_path(template)
    if not template_path or not os.path.isfile(template_path):
        click.echo("Template image missing", err=True)
        raise SystemExit(1)
    fields = editable_fields(templates.get_default_fields(template.id, user_id))
    with open(data_path, "rb") as fh:
        result = parse_spreadsheet(fh.read(), fields, os.path.basename(data_path))
    if not result.ok:
        click.echo(result.error, err=True)
        raise SystemExit(1)

    def report(percent: int) -> None:
        click.echo(f"\r{percent:3d}%", nl=False, err=True)

    archive = export_zip(template_path, fields, result.rows, progress=report)
    click.echo("", err=True)
    write_atomic(os.path.abspath(output_path), archive)
    current_app.logger.info(
        "[BULK-EXPORT] template=%s rows=%s output=%s", template.id, len(result.rows), output_path
    )
    click.echo(f"exported={len(result.rows)} path={output_path}")


@cli.command("purge_orphan_certs")
@click.option(
    "--dry-run", is_flag=True, help="List orphaned certificate PDFs without deleting"
)
def purge_orphan_certs(dry_run: bool):
    cert_root = certificates_root()
    if not os.path.isdir(cert_root):
        click.echo("Certificate directory missing", err=True)
        return
    if (
        not dry_run
        and current_app.config.get("ENV") == "production"
        and os.getenv("ALLOW_CERT_PURGE") != "1"
    ):
        click.echo(
            "Refusing to delete in production without ALLOW_CERT_PURGE=1", err=True
        )
        return

    known = {path for (path,) in db.session.query(Certificate.pdf_path) if path}
    total = deleted = kept = errors = 0
    samples: list[str] = []
    for root, dirs, files in os.walk(cert_root):
        dirs[:] = [d for d in dirs if not d.startswith("_")]
        for name in files:
            if not name.lower().endswith(".pdf"):
                continue
            full_path = os.path.join(root, name)
            rel_path = os.path.relpath(full_path, cert_root)
            total += 1
            if rel_path in known:
                kept += 1
                continue
            if len(samples) < 5:
                samples.append(full_path)
            if dry_run:
                continue
            try:
                os.remove(full_path)
                deleted += 1
            except OSError:
                errors += 1
                current_app.logger.exception(
                    "[CERT-PURGE] failed to remove %s", full_path
                )
    summary = f"scanned={total} deleted={deleted} kept={kept} errors={errors}"
    for path in samples:
        click.echo(path)
    click.echo(summary)
    current_app.logger.info("[CERT-PURGE] %s", summary)


if __name__ == "__main__":
    cli()
