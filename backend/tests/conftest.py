"""
Pytest fixtures for EduNexia backend tests.

Provides the application on an in-memory database, a per-test wipe,
seeded roles/permissions, users per role and auth header helpers.
"""

import pytest
from edunexia import create_app
from edunexia.extensions import db
from edunexia.models import Institution, Polo, User
from edunexia.services import auth_service, permission_service


PASSWORD = "Password123!"


@pytest.fixture(scope='session')
def app(tmp_path_factory):
    """Create application for testing."""
    upload_root = tmp_path_factory.mktemp("uploads")
    app = create_app({
        'TESTING': True,
        'SECRET_KEY': 'test',
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'UPLOAD_ROOT': str(upload_root),
        'ASAAS_API_KEY': 'test-asaas-key',
        'ASAAS_API_URL': 'https://sandbox.asaas.test/api/v3',
        'REPLICATE_API_TOKEN': 'test-replicate-token',
        'REPLICATE_API_URL': 'https://replicate.test/v1',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def seed(db_session):
    """Default permissions, system roles and grants."""
    permission_service.seed_all()
    return db_session


@pytest.fixture(scope='function')
def institution(db_session):
    inst = Institution(name="Instituto Alfa", code="ALFA", phase="active")
    db_session.add(inst)
    db_session.commit()
    return inst


@pytest.fixture(scope='function')
def other_institution(db_session):
    inst = Institution(name="Instituto Beta", code="BETA", phase="active")
    db_session.add(inst)
    db_session.commit()
    return inst


@pytest.fixture(scope='function')
def polo(db_session, institution):
    p = Polo(institution_id=institution.id, name="Polo Centro", code="CENTRO")
    db_session.add(p)
    db_session.commit()
    return p


def make_user(username: str, role: str | None = None, portal: str = "student",
              institution_id: int | None = None, polo_id: int | None = None) -> User:
    """Create a user and optionally assign a seeded role in the matching scope."""
    user = auth_service.create_user(
        username=username,
        email=f"{username}@edunexia.test",
        password=PASSWORD,
        portal_type=portal,
        institution_id=institution_id,
        polo_id=polo_id,
    )
    if role:
        role_obj = permission_service.get_role_by_name(role)
        if role_obj.scope == "institution":
            permission_service.assign_role_to_user(user.id, role_obj.id, institution_id=institution_id)
        elif role_obj.scope == "polo":
            permission_service.assign_role_to_user(user.id, role_obj.id, polo_id=polo_id)
        else:
            permission_service.assign_role_to_user(user.id, role_obj.id)
    return user


def get_auth_token(app, username: str, password: str = PASSWORD) -> str:
    """Helper to get auth token for a user (fresh client, so no cookie leaks)."""
    response = app.test_client().post('/api/auth/login', json={
        'username': username,
        'password': password
    })
    if response.status_code == 200:
        return response.get_json().get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def super_admin(seed, institution):
    user = make_user("root", portal="admin", institution_id=institution.id)
    auth_service.make_super_admin(user.username)
    return user


@pytest.fixture(scope='function')
def admin_user(seed, institution):
    return make_user("admin_user", role="admin", portal="admin", institution_id=institution.id)


@pytest.fixture(scope='function')
def sales_user(seed, institution):
    return make_user("sales_user", role="sales", portal="partner", institution_id=institution.id)


@pytest.fixture(scope='function')
def student_user(seed, institution):
    return make_user("student_user", role="student", institution_id=institution.id)


@pytest.fixture(scope='function')
def super_admin_headers(app, super_admin):
    return auth_headers(get_auth_token(app, super_admin.username))


@pytest.fixture(scope='function')
def admin_headers(app, admin_user):
    return auth_headers(get_auth_token(app, admin_user.username))


@pytest.fixture(scope='function')
def sales_headers(app, sales_user):
    return auth_headers(get_auth_token(app, sales_user.username))


@pytest.fixture(scope='function')
def student_headers(app, student_user):
    return auth_headers(get_auth_token(app, student_user.username))
