import io
import pytest

from college_app import create_app, db
from college_app.models import User, Department
from werkzeug.security import generate_password_hash


@pytest.fixture()
def app():
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "RATELIMIT_ENABLED": False,
        "CSRF_ENABLED": False,
    })
    with app.app_context():
        db.create_all()
        db.session.add(User(username="admin", password_hash=generate_password_hash("secret"), role="admin"))
        db.session.add(User(username="teacher1", password_hash=generate_password_hash("secret"), role="teacher"))
        db.session.add(Department(name="Computer Science"))
        db.session.add(Department(name="Mathematics"))
        db.session.commit()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


def login(client, username="admin", password="secret"):
    return client.post("/login", data={"username": username, "password": password}, follow_redirects=True)


def upload(client, content, record_type="students", filename=None, dry_run=False, url="/admin/bulk-upload"):
    if isinstance(content, str):
        content = content.encode("utf-8")
    data = {
        "upload_type": record_type,
        "file": (io.BytesIO(content), filename or f"{record_type}.csv"),
    }
    if dry_run:
        data["dry_run"] = "1"
    return client.post(url, data=data, content_type="multipart/form-data", follow_redirects=True)


@pytest.fixture()
def admin_client(client):
    login(client)
    return client
