import asyncio
import os
import tempfile

import pytest

# Tests focus on business logic, not authentication; keep auth disabled here.
os.environ["DISABLE_AUTH"] = "1"
# Never talk to real Redis or the WhatsApp Graph API from tests.
os.environ["REDIS_URL"] = ""
os.environ["WHATSAPP_ACCESS_TOKEN"] = ""
os.environ["WHATSAPP_PHONE_NUMBER_ID"] = ""
os.environ["META_APP_SECRET"] = ""
os.environ["VERIFY_TOKEN"] = "verify-me"
_TMP = tempfile.mkdtemp(prefix="chatsphere-tests-")
os.environ["DB_PATH"] = os.path.join(_TMP, "import.sqlite")
os.environ["MEDIA_DIR"] = os.path.join(_TMP, "media")
os.environ["CONSOLE_STORAGE_DIR"] = os.path.join(_TMP, "console")

from chatsphere import main
from chatsphere.db import DatabaseManager


@pytest.fixture
def db_manager(tmp_path, monkeypatch):
    db_path = tmp_path / "db.sqlite"
    dm = DatabaseManager(str(db_path))
    asyncio.run(dm.init_db())
    monkeypatch.setattr(main, "db_manager", dm)
    monkeypatch.setattr(main.message_processor, "db_manager", dm)
    monkeypatch.setattr(main.webhook_runtime, "db_manager", dm)
    return dm


@pytest.fixture
def client(db_manager):
    from fastapi.testclient import TestClient
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def broadcasts(monkeypatch):
    """Record every push event instead of sending it."""
    sent = []

    async def fake_broadcast(event, data):
        sent.append((event, data))
        return 0

    monkeypatch.setattr(main.connection_manager, "broadcast", fake_broadcast)
    return sent
