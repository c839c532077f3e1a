import io
import zipfile

from openpyxl import Workbook

from certifyhub.app import db
from certifyhub.models import Certificate
from certifyhub.routes.bulk import BulkSession, BulkSessionRegistry
from certifyhub.services.templates import TemplateRecord
from conftest import login


def _open(client, template, organization=None):
    login(client, "user-1", organization.id if organization else None)
    resp = client.post("/bulk", json={"template_id": template.id})
    assert resp.status_code == 201
    return resp.get_json()


def test_requires_login(client, template):
    assert client.post("/bulk", json={"template_id": template.id}).status_code == 401


def test_open_session_starts_with_one_blank_row(client, template, organization):
    state = _open(client, template, organization)
    assert [f["label"] for f in state["fields"]] == ["Name", "Date"]
    assert len(state["rows"]) == 1
    assert state["mode"] == "export"
    assert state["exporting"] is False
    assert client.get(f"/bulk/{state['id']}").get_json()["id"] == state["id"]


def test_unknown_template_and_session(client, template):
    login(client)
    assert client.post("/bulk", json={"template_id": "nope"}).status_code == 404
    assert client.post("/bulk", json={}).status_code == 400
    assert client.get("/bulk/nope").status_code == 404


def test_private_template_hidden_from_other_identity(client, template):
    login(client, "someone-else")
    assert client.post("/bulk", json={"template_id": template.id}).status_code == 404


def test_paste_replaces_rows(client, template, organization):
    sid = _open(client, template, organization)["id"]
    resp = client.post(
        f"/bulk/{sid}/paste",
        json={"text": "Name\tDate\nAlice\t2024-01-01\nBob\t2024-01-02"},
    )
    assert resp.status_code == 200
    rows = resp.get_json()["rows"]
    assert [r["values"] for r in rows] == [
        {"name": "Alice", "date": "2024-01-01"},
        {"name": "Bob", "date": "2024-01-02"},
    ]


def test_paste_header_error_keeps_rows(client, template, organization):
    sid = _open(client, template, organization)["id"]
    resp = client.post(f"/bulk/{sid}/paste", json={"text": "Name\tWrongDate\nAlice\tx"})
    assert resp.status_code == 400
    assert "Missing fields: Date" in resp.get_json()["error"]
    assert len(client.get(f"/bulk/{sid}").get_json()["rows"]) == 1


def test_paste_respects_row_limit(app, client, template, organization):
    app.config["BULK_MAX_ROWS"] = 1
    sid = _open(client, template, organization)["id"]
    resp = client.post(f"/bulk/{sid}/paste", json={"text": "Name\tDate\nA\t1\nB\t2"})
    assert resp.status_code == 400
    assert client.post(f"/bulk/{sid}/rows").status_code == 400


def test_upload_spreadsheet(client, template, organization):
    wb = Workbook()
    ws = wb.active
    ws.append(["Name", "Date", "Recipient Email"])
    ws.append(["Alice", "2024-01-01", "alice@example.com"])
    buf = io.BytesIO()
    wb.save(buf)
    buf.seek(0)
    sid = _open(client, template, organization)["id"]
    resp = client.post(
        f"/bulk/{sid}/upload",
        data={"file": (buf, "people.xlsx")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 200
    row = resp.get_json()["rows"][0]
    assert row["values"] == {"name": "Alice", "date": "2024-01-01"}
    assert row["recipient_email"] == "alice@example.com"
    assert client.post(f"/bulk/{sid}/upload", data={}).status_code == 400


def test_row_editing(client, template, organization):
    sid = _open(client, template, organization)["id"]
    assert len(client.post(f"/bulk/{sid}/rows/0/delete").get_json()["rows"]) == 1
    client.post(f"/bulk/{sid}/rows")
    resp = client.post(f"/bulk/{sid}/rows/1", json={"field_id": "name", "value": "Zed"})
    assert resp.get_json()["rows"][1]["values"] == {"name": "Zed"}
    resp = client.post(f"/bulk/{sid}/rows/1", json={"recipient_email": "zed@example.com"})
    assert resp.get_json()["rows"][1]["recipient_email"] == "zed@example.com"
    assert client.post(f"/bulk/{sid}/rows/1", json={"field_id": "bogus", "value": "x"}).status_code == 400
    assert client.post(f"/bulk/{sid}/rows/5", json={"field_id": "name", "value": "x"}).status_code == 404
    rows = client.post(f"/bulk/{sid}/rows/0/delete").get_json()["rows"]
    assert [r["values"] for r in rows] == [{"name": "Zed"}]


def test_issue_mode_requires_approved_organization(client, template, pending_organization):
    template.organization_id = pending_organization.id
    db.session.commit()
    sid = _open(client, template, pending_organization)["id"]
    resp = client.post(f"/bulk/{sid}/mode", json={"mode": "issue"})
    assert resp.status_code == 403
    assert client.post(f"/bulk/{sid}/mode", json={"mode": "export"}).status_code == 200
    assert client.post(f"/bulk/{sid}/mode", json={"mode": "other"}).status_code == 400
    assert client.post(f"/bulk/{sid}/issue", json={}).status_code == 409


def test_export_downloads_zip(client, template, organization):
    sid = _open(client, template, organization)["id"]
    client.post(f"/bulk/{sid}/paste", json={"text": "Name\tDate\nAlice\t2024-01-01\nBob\t2024-01-02"})
    resp = client.post(f"/bulk/{sid}/export")
    assert resp.status_code == 200
    assert resp.mimetype == "application/zip"
    assert "certificates.zip" in resp.headers["Content-Disposition"]
    with zipfile.ZipFile(io.BytesIO(resp.data)) as zf:
        assert zf.namelist() == ["certificate_1.pdf", "certificate_2.pdf"]
    state = client.get(f"/bulk/{sid}").get_json()
    assert state["exporting"] is False
    assert state["progress"] == 0


def test_issue_flow_skip_then_update(client, template, organization):
    sid = _open(client, template, organization)["id"]
    assert client.post(f"/bulk/{sid}/mode", json={"mode": "issue"}).status_code == 200
    text = (
        "Name\tDate\tRecipient Email\n"
        "Alice\t2024-01-01\talice@example.com\n"
        "Bob\t2024-01-02\tbob@example.com\n"
        "Carol\t2024-01-03\tcarol@example.com"
    )
    client.post(f"/bulk/{sid}/paste", json={"text": text})
    first = client.post(f"/bulk/{sid}/issue", json={}).get_json()
    assert first["success"] is True
    assert first["issued_count"] == 3

    again = client.post(f"/bulk/{sid}/issue", json={"update_duplicates": False}).get_json()
    assert again["issued_count"] == 0
    assert again["duplicate_count"] == 3
    assert {d["recipient_email"] for d in again["duplicates"]} == {
        "alice@example.com", "bob@example.com", "carol@example.com",
    }

    updated = client.post(f"/bulk/{sid}/issue", json={"update_duplicates": True}).get_json()
    assert updated["success"] is True
    assert updated["duplicate_count"] == 3
    db.session.expire_all()
    assert Certificate.query.count() == 3


def test_issue_rejects_incomplete_rows(client, template, organization):
    sid = _open(client, template, organization)["id"]
    client.post(f"/bulk/{sid}/mode", json={"mode": "issue"})
    client.post(f"/bulk/{sid}/rows/0", json={"field_id": "name", "value": "Solo"})
    resp = client.post(f"/bulk/{sid}/issue", json={})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "All fields must be filled before issuing certificates"


def test_issue_refused_while_in_export_mode(client, template, organization):
    sid = _open(client, template, organization)["id"]
    client.post(
        f"/bulk/{sid}/paste",
        json={"text": "Name\tDate\tRecipient Email\nAlice\t2024-01-01\talice@example.com"},
    )
    resp = client.post(f"/bulk/{sid}/issue", json={})
    assert resp.status_code == 409
    assert "issue mode" in resp.get_json()["error"]
    assert Certificate.query.count() == 0


def test_export_refused_while_in_issue_mode(client, template, organization):
    sid = _open(client, template, organization)["id"]
    client.post(f"/bulk/{sid}/paste", json={"text": "Name\tDate\nAlice\t2024-01-01"})
    client.post(f"/bulk/{sid}/mode", json={"mode": "issue"})
    resp = client.post(f"/bulk/{sid}/export")
    assert resp.status_code == 409
    assert "export mode" in resp.get_json()["error"]


def test_opening_many_sessions_keeps_only_the_latest(app, client, template, organization):
    opened = [_open(client, template, organization)["id"] for _ in range(50)]
    registry = app.extensions["bulk_sessions"]
    assert registry.count_for("user-1") == app.config["BULK_SESSIONS_PER_USER"]
    assert client.get(f"/bulk/{opened[0]}").status_code == 404
    assert client.get(f"/bulk/{opened[-1]}").status_code == 200


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def _session(template, user_id="user-1"):
    return BulkSession(template=TemplateRecord.from_model(template), fields=[], user_id=user_id)


def test_registry_evicts_idle_sessions(template):
    clock = FakeClock()
    registry = BulkSessionRegistry(idle_seconds=60, max_per_user=5, clock=clock)
    stale = registry.add(_session(template))
    active = registry.add(_session(template))
    clock.now = 40
    assert registry.get(active.id) is active
    clock.now = 70
    assert registry.get(stale.id) is None
    assert registry.get(active.id) is active
    clock.now = 200
    registry.add(_session(template, "user-2"))
    assert len(registry) == 1


def test_registry_keeps_busy_sessions(template):
    clock = FakeClock()
    registry = BulkSessionRegistry(idle_seconds=60, max_per_user=1, clock=clock)
    busy = registry.add(_session(template))
    busy.issuing = True
    registry.add(_session(template))
    clock.now = 500
    assert registry.get(busy.id) is busy
