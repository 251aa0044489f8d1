"""
Pytest configuration and fixtures for testing.
Provides test database, test client, seeded users/threads and fake sockets.
"""
import os

# Must be set before the application settings are imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SEED_DEMO_DATA", "false")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("TRACING_ENABLED", "false")

import pytest  # noqa: E402
from typing import Callable, Dict, Generator  # noqa: E402
from unittest.mock import AsyncMock  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker, Session  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from db.database import Base  # noqa: E402
from db.models import User, UserRole, Task, Conversation  # noqa: E402
from db.repository import Repository  # noqa: E402
from core.security import create_access_token  # noqa: E402
from api.dependencies import get_db  # noqa: E402
from api.websocket_manager import ConnectionManager  # noqa: E402
from main import app  # noqa: E402


# One in-memory SQLite database shared by every session and thread of a test
test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a fresh database for each test.
    Automatically creates and destroys tables.
    """
    Base.metadata.create_all(bind=test_engine)
    db = TestSessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def test_client(test_db: Session) -> Generator[TestClient, None, None]:
    """
    Create a test client with test database dependency override.

    Entered as a context manager so the lifespan runs (connection manager,
    heartbeat task) and every WebSocket session shares one event loop.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def users(test_db: Session) -> Dict[str, User]:
    """
    Seed a client, a freelancer, an unrelated user and a suspended user.
    """
    seeded = {
        "client": User(email="ana@example.com", name="Ana Client", role=UserRole.CLIENT),
        "freelancer": User(email="bruno@example.com", name="Bruno Freelancer", role=UserRole.FREELANCER),
        "outsider": User(email="carla@example.com", role=UserRole.CLIENT),
        "suspended": User(email="dario@example.com", name="Dario", role=UserRole.FREELANCER, is_suspended=True),
    }
    test_db.add_all(seeded.values())
    test_db.commit()
    return seeded


@pytest.fixture(scope="function")
def task(test_db: Session, users: Dict[str, User]) -> Task:
    """A task with the seeded client and a hired freelancer."""
    task = Task(title="Logo design", client_id=users["client"].id, freelancer_id=users["freelancer"].id)
    test_db.add(task)
    test_db.commit()
    return task


@pytest.fixture(scope="function")
def conversation(test_db: Session, users: Dict[str, User]) -> Conversation:
    """A conversation between the seeded client and freelancer."""
    return Repository(test_db).create_conversation([users["client"].id, users["freelancer"].id])


@pytest.fixture
def auth_headers() -> Callable[[User], Dict[str, str]]:
    """Build an Authorization header carrying a fresh access token for a user."""
    def _headers(user: User) -> Dict[str, str]:
        token = create_access_token(user.id, role=user.role.value)
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def connection_manager() -> ConnectionManager:
    return ConnectionManager(max_connections_per_user=5)


@pytest.fixture
def fake_socket() -> Callable[[], AsyncMock]:
    """Factory for accepted-socket doubles that record what was sent to them."""
    def _make() -> AsyncMock:
        ws = AsyncMock(spec_set=["accept", "send_json", "close"])
        ws.accept = AsyncMock()
        ws.send_json = AsyncMock()
        ws.close = AsyncMock()
        return ws
    return _make


def sent_frames(ws: AsyncMock) -> list:
    """Frames passed to send_json on a fake socket, in order."""
    return [call.args[0] for call in ws.send_json.await_args_list]


@pytest.fixture
def frames_of() -> Callable[[AsyncMock], list]:
    return sent_frames
