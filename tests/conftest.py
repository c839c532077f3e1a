import os
import pathlib
import sys

import pytest
from PIL import Image

PROJECT_ROOT = pathlib.Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from certifyhub.app import create_app, db
from certifyhub.models import Organization, Template, TemplateMetadata


def pytest_collection_modifyitems(config, items):
    for item in items:
        if "slow" in item.keywords or "quarantine" in item.keywords:
            continue
        item.add_marker("full")
        if "no_smoke" in item.keywords:
            continue
        item.add_marker("smoke")


NAME_DATE_LAYOUT = [
    {
        "id": "name",
        "label": "Name",
        "value": "",
        "position": {"x": 400, "y": 250},
        "fontSize": 32,
        "fontFamily": "serif",
        "color": "#1a237e",
        "textAlign": "center",
        "showInPreview": True,
    },
    {
        "id": "date",
        "label": "Date",
        "value": "",
        "position": {"x": 400, "y": 350},
        "fontSize": 20,
        "fontFamily": "sans-serif",
        "color": "#333333",
        "textAlign": "center",
        "showInPreview": True,
    },
]


@pytest.fixture
def site_root(tmp_path):
    root = tmp_path / "srv"
    (root / "templates").mkdir(parents=True)
    (root / "certificates").mkdir(parents=True)
    return root


@pytest.fixture
def app(site_root):
    os.environ["DATABASE_URL"] = "sqlite:///:memory:"
    application = create_app(
        {
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "SITE_ROOT": str(site_root),
            "RATE_LIMIT_ENABLED": False,
            "PUBLIC_BASE_URL": "https://certs.example.org",
            "TESTING": True,
        }
    )
    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def template_image(site_root):
    path = site_root / "templates" / "landscape.png"
    Image.new("RGB", (800, 600), "white").save(path)
    return "landscape.png"


@pytest.fixture
def organization(app):
    org = Organization(
        name="Acme Academy",
        email="Team@Acme.example",
        contact_person="Ada",
        status="approved",
        owner_id="user-1",
    )
    db.session.add(org)
    db.session.commit()
    return org


@pytest.fixture
def pending_organization(app):
    org = Organization(
        name="Pending Org",
        email="pending@example.org",
        contact_person="Pat",
        status="pending",
        owner_id="user-2",
    )
    db.session.add(org)
    db.session.commit()
    return org


@pytest.fixture
def template(app, organization, template_image):
    tpl = Template(
        name="Course Completion",
        file_name=template_image,
        file_size=1024,
        user_id="user-1",
        organization_id=organization.id,
    )
    db.session.add(tpl)
    db.session.flush()
    db.session.add(
        TemplateMetadata(
            template_id=tpl.id,
            name="Default layout",
            is_default=True,
            user_id="user-1",
            metadata_json=NAME_DATE_LAYOUT,
        )
    )
    db.session.commit()
    return tpl


def login(client, user_id="user-1", organization_id=None):
    with client.session_transaction() as sess:
        sess["user_id"] = user_id
        if organization_id:
            sess["organization_id"] = organization_id
