from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from todo_backend.auth_service import AuthService
from todo_backend.main import create_app
from todo_backend.repositories import in_memory_repositories
from todo_backend.security import PasswordHasher, TokenSigner
from todo_backend.settings import Settings

TEST_SECRET = "test-secret-0123456789abcdef0123456789abcdef"
PASSWORD = "Passw0rd!"
ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "Adm1nPassw0rd"


def make_settings(**overrides) -> Settings:
    values = dict(
        jwt_secret=TEST_SECRET,
        password_hash_rounds=1000,
        bootstrap_admin_email=ADMIN_EMAIL,
        bootstrap_admin_password=ADMIN_PASSWORD,
    )
    values.update(overrides)
    return Settings(**values)


class FakeClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def repos():
    return in_memory_repositories()


@pytest.fixture
def client(repos):
    return TestClient(create_app(settings=make_settings(), repositories=repos))


@pytest.fixture
def register(client):
    def _register(email, password=PASSWORD, display_name="Tester"):
        return client.post(
            "/auth/register",
            json={"email": email, "password": password, "displayName": display_name},
        )

    return _register


@pytest.fixture
def login(client):
    """Return a callable that logs in and yields an Authorization header dict."""

    def _login(email, password=PASSWORD):
        res = client.post("/auth/login", json={"email": email, "password": password})
        assert res.status_code == 200, res.text
        return {"Authorization": f"Bearer {res.json()['accessToken']}"}

    return _login


@pytest.fixture
def alice(register, login):
    assert register("alice@example.com", display_name="Alice").status_code == 201
    return login("alice@example.com")


@pytest.fixture
def bob(register, login):
    assert register("bob@example.com", display_name="Bob").status_code == 201
    return login("bob@example.com")


@pytest.fixture
def admin(login):
    return login(ADMIN_EMAIL, ADMIN_PASSWORD)


@pytest.fixture
def clock():
    return FakeClock(datetime.now(timezone.utc))


@pytest.fixture
def auth_service(repos, clock):
    return AuthService(
        users=repos.users,
        refresh_tokens=repos.refresh_tokens,
        hasher=PasswordHasher(1000),
        signer=TokenSigner(TEST_SECRET, "HS256", 900),
        refresh_ttl_seconds=3600,
        clock=clock,
    )
