from __future__ import annotations

import io
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable

from flask import (
    Blueprint,
    abort,
    current_app,
    jsonify,
    request,
    send_file,
    session as flask_session,
)

from ..app import db
from ..models import Organization
from ..services.templates import Identity, TemplateRecord
from ..shared.bulk_parser import ParseResult, parse_spreadsheet, parse_text
from ..shared.export import ZIP_FILENAME, export_zip
from ..shared.fields import Field, editable_fields
from ..shared.issuance import IssuanceForbiddenError, IssuanceResult, ensure_can_issue, issue_rows
from ..shared.render import RenderError
from ..shared.row_store import RowStore

bp = Blueprint("bulk", __name__, url_prefix="/bulk")

MODES = ("export", "issue")

SESSION_IDLE_SECONDS = 30 * 60
MAX_SESSIONS_PER_USER = 5


@dataclass
class BulkSession:
    """Server-side state of one bulk generation dialog."""

    template: TemplateRecord
    fields: list[Field]
    user_id: str
    organization_id: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    mode: str = "export"
    exporting: bool = False
    issuing: bool = False
    progress: int = 0
    store: RowStore = None

    def __post_init__(self):
        if self.store is None:
            self.store = RowStore(field_ids=[f.id for f in self.fields])

    @property
    def busy(self) -> bool:
        return self.exporting or self.issuing

    def set_progress(self, value: int) -> None:
        self.progress = max(0, min(100, int(value)))

    def run_export(self, template_path: str) -> bytes:
        self.exporting = True
        self.progress = 0
        try:
            return export_zip(template_path, self.fields, self.store.rows, self.set_progress)
        finally:
            self.exporting = False
            self.progress = 0

    def run_issue(self, organization: Organization, update_duplicates: bool, base_url: str) -> IssuanceResult:
        self.issuing = True
        self.progress = 0
        try:
            return issue_rows(
                self.template,
                self.fields,
                self.store.rows,
                organization,
                update_duplicates=update_duplicates,
                progress=self.set_progress,
                base_url=base_url,
            )
        finally:
            self.issuing = False
            self.progress = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "template": self.template.to_dict(),
            "fields": [f.to_dict() for f in self.fields],
            "rows": self.store.to_list(),
            "mode": self.mode,
            "exporting": self.exporting,
            "issuing": self.issuing,
            "progress": self.progress,
        }


class BulkSessionRegistry:
    """Open bulk sessions, dropped after ``idle_seconds`` without use.

    Each user keeps at most ``max_per_user`` sessions; opening another evicts
    that user's least recently used one. Sessions with a generation running
    are never evicted.
    """

    def __init__(
        self,
        idle_seconds: float = SESSION_IDLE_SECONDS,
        max_per_user: int = MAX_SESSIONS_PER_USER,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.idle_seconds = idle_seconds
        self.max_per_user = max_per_user
        self._clock = clock
        self._sessions: dict[str, BulkSession] = {}
        self._last_used: dict[str, float] = {}
        self._lock = threading.Lock()

    def add(self, bulk: BulkSession) -> BulkSession:
        with self._lock:
            now = self._clock()
            self._evict_idle(now)
            owned = sorted(
                (sid for sid, s in self._sessions.items()
                 if s.user_id == bulk.user_id and not s.busy),
                key=self._last_used.__getitem__,
            )
            while owned and len(owned) >= self.max_per_user:
                self._drop(owned.pop(0))
            self._sessions[bulk.id] = bulk
            self._last_used[bulk.id] = now
        return bulk

    def get(self, session_id: str) -> BulkSession | None:
        with self._lock:
            now = self._clock()
            self._evict_idle(now)
            bulk = self._sessions.get(session_id)
            if bulk is not None:
                self._last_used[session_id] = now
            return bulk

    def discard(self, session_id: str) -> None:
        with self._lock:
            self._drop(session_id)

    def count_for(self, user_id: str) -> int:
        with self._lock:
            return sum(1 for s in self._sessions.values() if s.user_id == user_id)

    def _evict_idle(self, now: float) -> None:
        stale = [
            sid
            for sid, last in self._last_used.items()
            if now - last >= self.idle_seconds and not self._sessions[sid].busy
        ]
        for sid in stale:
            self._drop(sid)

    def _drop(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._last_used.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)


def _registry() -> BulkSessionRegistry:
    return current_app.extensions["bulk_sessions"]


def _identity() -> Identity:
    user_id = flask_session.get("user_id")
    if not user_id:
        abort(401)
    return Identity(user_id=user_id, organization_id=flask_session.get("organization_id"))


def _can_use_template(template: TemplateRecord, identity: Identity) -> bool:
    if template.is_public:
        return True
    if identity.organization_id:
        return template.organization_id == identity.organization_id
    return template.user_id == identity.user_id and template.organization_id is None


def _load(session_id: str) -> BulkSession:
    identity = _identity()
    bulk = _registry().get(session_id)
    if bulk is None or bulk.user_id != identity.user_id:
        abort(404)
    return bulk


def _current_organization() -> Organization | None:
    org_id = flask_session.get("organization_id")
    return db.session.get(Organization, org_id) if org_id else None


def _max_rows() -> int:
    return current_app.config.get("BULK_MAX_ROWS", 500)


def _apply_parse(bulk: BulkSession, result: ParseResult, source: str):
    if not result.ok:
        current_app.logger.info(
            "[BULK-PARSE] session=%s source=%s error=%s", bulk.id, source, result.error
        )
        return jsonify({"error": result.error}), 400
    if len(result.rows) > _max_rows():
        return jsonify({"error": f"Too many rows. At most {_max_rows()} rows are allowed."}), 400
    bulk.store.replace(result.rows)
    current_app.logger.info(
        "[BULK-PARSE] session=%s source=%s rows=%s", bulk.id, source, len(result.rows)
    )
    return jsonify(bulk.to_dict())


def _row_index(bulk: BulkSession, index: int) -> int:
    if index < 0 or index >= len(bulk.store):
        abort(404)
    return index


@bp.post("")
def open_session():
    identity = _identity()
    data = request.get_json(silent=True) or {}
    template_id = data.get("template_id")
    if not template_id:
        return jsonify({"error": "template_id is required"}), 400
    templates = current_app.extensions["template_service"]
    template = templates.get_template(template_id)
    if template is None or not _can_use_template(template, identity):
        abort(404)
    fields = editable_fields(templates.get_default_fields(template.id, identity.user_id))
    bulk = _registry().add(
        BulkSession(
            template=template,
            fields=fields,
            user_id=identity.user_id,
            organization_id=identity.organization_id,
        )
    )
    return jsonify(bulk.to_dict()), 201


@bp.get("/<session_id>")
def show(session_id: str):
    return jsonify(_load(session_id).to_dict())


@bp.post("/<session_id>/close")
def close(session_id: str):
    bulk = _load(session_id)
    _registry().discard(bulk.id)
    return "", 204


@bp.post("/<session_id>/paste")
def paste(session_id: str):
    bulk = _load(session_id)
    data = request.get_json(silent=True) or {}
    text = data.get("text") or ""
    return _apply_parse(bulk, parse_text(text, bulk.fields), "paste")


@bp.post("/<session_id>/upload")
def upload(session_id: str):
    bulk = _load(session_id)
    upload_file = request.files.get("file")
    if upload_file is None or not upload_file.filename:
        return jsonify({"error": "No file uploaded."}), 400
    result = parse_spreadsheet(upload_file.read(), bulk.fields, upload_file.filename)
    return _apply_parse(bulk, result, upload_file.filename)


@bp.post("/<session_id>/rows")
def add_row(session_id: str):
    bulk = _load(session_id)
    if len(bulk.store) >= _max_rows():
        return jsonify({"error": f"Too many rows. At most {_max_rows()} rows are allowed."}), 400
    bulk.store.add_row()
    return jsonify(bulk.to_dict()), 201


@bp.post("/<session_id>/rows/<int:index>/delete")
def delete_row(session_id: str, index: int):
    bulk = _load(session_id)
    bulk.store.delete_row(_row_index(bulk, index))
    return jsonify(bulk.to_dict())


@bp.post("/<session_id>/rows/<int:index>")
def edit_row(session_id: str, index: int):
    bulk = _load(session_id)
    index = _row_index(bulk, index)
    data = request.get_json(silent=True) or {}
    if "recipient_email" in data:
        bulk.store.set_recipient_email(index, data.get("recipient_email"))
    if "field_id" in data:
        value = data.get("value")
        try:
            bulk.store.set_value(index, data["field_id"], "" if value is None else str(value))
        except KeyError:
            return jsonify({"error": f"Unknown field: {data['field_id']}"}), 400
    elif "recipient_email" not in data:
        return jsonify({"error": "field_id or recipient_email is required"}), 400
    return jsonify(bulk.to_dict())


@bp.post("/<session_id>/mode")
def set_mode(session_id: str):
    bulk = _load(session_id)
    data = request.get_json(silent=True) or {}
    mode = data.get("mode")
    if mode not in MODES:
        return jsonify({"error": f"mode must be one of: {', '.join(MODES)}"}), 400
    if mode == "issue":
        try:
            ensure_can_issue(_current_organization())
        except IssuanceForbiddenError as exc:
            return jsonify({"error": str(exc)}), 403
    bulk.mode = mode
    return jsonify(bulk.to_dict())


@bp.post("/<session_id>/export")
def export(session_id: str):
    bulk = _load(session_id)
    if bulk.mode != "export":
        return jsonify({"error": "Switch the session to export mode first."}), 409
    if bulk.busy:
        return jsonify({"error": "A generation is already running for this session."}), 409
    template_path = current_app.extensions["template_service"].template_path(bulk.template)
    if not template_path:
        abort(404)
    try:
        archive = bulk.run_export(template_path)
    except RenderError as exc:
        current_app.logger.warning("[BULK-EXPORT] session=%s failed: %s", bulk.id, exc)
        return jsonify({"error": str(exc)}), 500
    current_app.logger.info(
        "[BULK-EXPORT] session=%s template=%s rows=%s", bulk.id, bulk.template.id, len(bulk.store)
    )
    return send_file(
        io.BytesIO(archive),
        mimetype="application/zip",
        as_attachment=True,
        download_name=ZIP_FILENAME,
    )


@bp.post("/<session_id>/issue")
def issue(session_id: str):
    bulk = _load(session_id)
    if bulk.mode != "issue":
        return jsonify({"error": "Switch the session to issue mode first."}), 409
    if bulk.busy:
        return jsonify({"error": "A generation is already running for this session."}), 409
    organization = _current_organization()
    data = request.get_json(silent=True) or {}
    base_url = current_app.config.get("PUBLIC_BASE_URL") or request.host_url
    try:
        result = bulk.run_issue(
            organization, bool(data.get("update_duplicates")), base_url
        )
    except IssuanceForbiddenError as exc:
        return jsonify({"error": str(exc)}), 403
    if result.success:
        current_app.extensions["certificate_service"].cache.clear()
    return jsonify(result.to_dict()), 200 if result.success else 400
