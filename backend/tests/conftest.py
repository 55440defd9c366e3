import asyncio
import os
import sys
import tempfile
from pathlib import Path
from typing import Optional

import pytest
import pytest_asyncio
from fastapi import Header, HTTPException
from fastapi.testclient import TestClient
from sqlalchemy.pool import NullPool


BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

# Must be set before config/db are first imported
_BOOTSTRAP_DIR = tempfile.mkdtemp(prefix="collab_notes_")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_BOOTSTRAP_DIR}/bootstrap.db"
os.environ["LOG_DIR"] = os.path.join(_BOOTSTRAP_DIR, "logs")
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["ENVIRONMENT"] = "development"


def claims_for(name: str) -> dict:
    """Identity assertion for a fake user called ``name``"""
    return {
        "uid": f"uid-{name}",
        "email": f"{name}@example.com",
        "name": name.capitalize(),
        "firebase": {"sign_in_provider": "google.com"},
    }


def auth(name: str) -> dict:
    return {"Authorization": f"Bearer {name}"}


async def fake_verify_token(authorization: Optional[str] = Header(None)):
    if not authorization:
        raise HTTPException(status_code=401, detail="Authentication token is missing")
    return claims_for(authorization.split(" ")[-1])


class FakeSocketServer:
    """Records emits instead of writing to sockets"""

    def __init__(self):
        self.emitted = []

    async def emit(self, event, data=None, to=None, **kwargs):
        self.emitted.append((event, data, to))

    def events(self, event, to=None):
        return [data for name, data, sid in self.emitted if name == event and (to is None or sid == to)]

    def clear(self):
        self.emitted.clear()


@pytest.fixture(scope="session")
def app_module():
    import main  # pylint: disable=import-error,import-outside-toplevel

    return main


@pytest.fixture()
def client_and_db(app_module, tmp_path):
    from db import init_db, make_engine, make_session_factory  # pylint: disable=import-error,import-outside-toplevel
    from auth import verify_firebase_token  # pylint: disable=import-error,import-outside-toplevel

    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    asyncio.run(init_db(engine))
    TestingSessionLocal = make_session_factory(engine)

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    app_module.fastapi_app.dependency_overrides[app_module.get_db] = override_get_db
    app_module.fastapi_app.dependency_overrides[verify_firebase_token] = fake_verify_token

    with TestClient(app_module.fastapi_app) as client:
        yield client, TestingSessionLocal

    app_module.fastapi_app.dependency_overrides.clear()
    asyncio.run(engine.dispose())


@pytest.fixture()
def client(client_and_db):
    return client_and_db[0]


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    from db import init_db, make_engine, make_session_factory  # pylint: disable=import-error,import-outside-toplevel

    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'service.db'}", poolclass=NullPool)
    await init_db(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def users(session_factory):
    from auth import resolve_user  # pylint: disable=import-error,import-outside-toplevel

    ids = {}
    async with session_factory() as session:
        for name in ("alice", "bob", "carol"):
            user = await resolve_user(session, claims_for(name))
            ids[name] = user.id
    return ids


@pytest.fixture()
def fake_sio():
    return FakeSocketServer()


@pytest_asyncio.fixture
async def presence(session_factory, fake_sio):
    """Presence manager wired to the service database; tokens are user ids"""
    from errors import UnauthenticatedError  # pylint: disable=import-error,import-outside-toplevel
    from notes import NoteLocks, NoteStore  # pylint: disable=import-error,import-outside-toplevel
    from presence import PresenceManager  # pylint: disable=import-error,import-outside-toplevel

    locks = NoteLocks()
    manager = PresenceManager(fake_sio)

    async def authenticate(token):
        if token == "bad-token":
            raise UnauthenticatedError("Invalid authentication token")
        return token

    async def check_access(user_id, note_id):
        async with session_factory() as session:
            return await NoteStore(session, locks=locks).check_access(user_id, note_id)

    async def save_note(user_id, note_id, content, title):
        async with session_factory() as session:
            await NoteStore(session, presence=manager, locks=locks).update_note(
                note_id, user_id, title=title, content=content, broadcast=False
            )

    manager.bind(authenticate, check_access, save_note)
    manager.locks = locks
    return manager
