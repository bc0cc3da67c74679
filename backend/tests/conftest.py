"""
Pytest fixtures for the consignment backend tests.

Provides test database setup, seeded roles/permissions, users for each
default role, a consignment agreement with products, and a test client.
"""

import pytest

from consigna import create_app
from consigna.extensions import db
from consigna.models import Agreement, ConsignedProduct, Role, User, UserRole
from consigna.services.auth_service import hash_password, create_default_roles
from consigna.services import permission_service


PASSWORD = "Password123!"

# bcrypt is slow on purpose; hash once per test run
PASSWORD_HASH = hash_password(PASSWORD)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
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
def setup_roles(db_session):
    """Setup default roles and permissions."""
    create_default_roles()
    permission_service.initialize_permissions()
    permission_service.assign_default_role_permissions()
    db_session.commit()


def make_user(session, username: str, role_name: str | None = None, full_name: str | None = None) -> User:
    """Create a user (pre-hashed password) and optionally attach a role."""
    user = User(
        username=username,
        email=f"{username}@consigna.test",
        full_name=full_name,
        password_hash=PASSWORD_HASH,
    )
    session.add(user)
    session.commit()

    if role_name:
        role = session.query(Role).filter_by(name=role_name).first()
        session.add(UserRole(user_id=user.id, role_id=role.id))
        session.commit()

    return user


@pytest.fixture(scope='function')
def admin(db_session, setup_roles):
    return make_user(db_session, "admin", "admin", full_name="Ada Admin")


@pytest.fixture(scope='function')
def supervisor(db_session, setup_roles):
    return make_user(db_session, "supervisor", "supervisor", full_name="Sam Supervisor")


@pytest.fixture(scope='function')
def counter(db_session, setup_roles):
    return make_user(db_session, "counter", "counter", full_name="Carla Counter")


@pytest.fixture(scope='function')
def counter_b(db_session, setup_roles):
    # No full name: history and lock errors fall back to the username
    return make_user(db_session, "counter_b", "counter")


@pytest.fixture(scope='function')
def outsider(db_session, setup_roles):
    """Active user with no role at all."""
    return make_user(db_session, "outsider")


def make_agreement(session, client_id: str, next_number: int = 1, products=None) -> Agreement:
    agreement = Agreement(
        client_id=client_id,
        client_name=f"Client {client_id}",
        next_boleta_number=next_number,
    )
    session.add(agreement)
    session.flush()

    for product_id, description, client_code, max_stock, price_cents in products or []:
        session.add(ConsignedProduct(
            agreement_id=agreement.id,
            product_id=product_id,
            description=description,
            client_product_code=client_code,
            max_stock=max_stock,
            price_cents=price_cents,
        ))

    session.commit()
    return agreement


@pytest.fixture(scope='function')
def agreement(db_session):
    """Agreement X: numbering starts at 7, product P has max stock 10."""
    return make_agreement(
        db_session,
        "CLI-X",
        next_number=7,
        products=[
            ("P", "Product P", "CX-P", 10, 500),
            ("Q", "Product Q", "CX-Q", 5, 1200),
            ("R", "Product R", None, 8, 300),
        ],
    )


@pytest.fixture(scope='function')
def other_agreement(db_session):
    """Agreement Y with its own numbering and catalog."""
    return make_agreement(
        db_session,
        "CLI-Y",
        next_number=1,
        products=[("Z", "Product Z", None, 4, 900)],
    )


def get_auth_token(client, username: str, password: str = PASSWORD) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'username': username,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def counter_headers(client, counter):
    return auth_headers(get_auth_token(client, counter.username))


@pytest.fixture(scope='function')
def supervisor_headers(client, supervisor):
    return auth_headers(get_auth_token(client, supervisor.username))
