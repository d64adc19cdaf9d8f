import pytest

from app import create_app
from extensions import db
from models import ROLE_STAFF, ROLE_STUDENT, Role, User

PASSWORD = "Str0ng!Passw0rd"


@pytest.fixture
def app(tmp_path):
    app = create_app(
        "testing",
        {
            "LOG_DIR": str(tmp_path / "logs"),
            "DEFAULT_ADMIN_EMAIL": "admin@campus.edu",
            "DEFAULT_ADMIN_PASSWORD": PASSWORD,
        },
    )
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def app_ctx(app):
    with app.app_context():
        yield app


def make_user(email: str, role_name: str, full_name: str = "Test User") -> str:
    role = Role.get_or_create(role_name)
    user = User(full_name=full_name, email=email, role=role, is_active=True)
    user.set_password(PASSWORD)
    db.session.add(user)
    db.session.commit()
    return user.id


@pytest.fixture
def student_id(app):
    with app.app_context():
        return make_user("asha@campus.edu", ROLE_STUDENT, "Asha Rao")


@pytest.fixture
def other_student_id(app):
    with app.app_context():
        return make_user("ben@campus.edu", ROLE_STUDENT, "Ben Okafor")


@pytest.fixture
def staff_id(app):
    with app.app_context():
        return make_user("desk@campus.edu", ROLE_STAFF, "Help Desk")


def login(client, email: str, password: str = PASSWORD):
    resp = client.post("/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.get_json()
    return resp


@pytest.fixture
def student_client(app, student_id):
    client = app.test_client()
    login(client, "asha@campus.edu")
    return client


@pytest.fixture
def other_student_client(app, other_student_id):
    client = app.test_client()
    login(client, "ben@campus.edu")
    return client


@pytest.fixture
def staff_client(app, staff_id):
    client = app.test_client()
    login(client, "desk@campus.edu")
    return client
