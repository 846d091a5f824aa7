import time

import pytest
import yaml
from fastapi.testclient import TestClient

from mcpanel.files import FileGateway
from mcpanel.main import create_app
from mcpanel.process import RUNNING_STATES, BackendError
from mcpanel.registry import ServerRegistry

TEST_USER = {"username": "admin", "password": "admin123"}


class FakeBackend:
    """
    In-memory stand-in for LocalProcessBackend.

    Records every call and flips states synchronously; no process is spawned.
    """

    def __init__(self):
        self.procs = {}
        self.calls = []
        self.sent = []
        self.listeners = []
        self.fail_start = False

    def add_listener(self, listener):
        self.listeners.append(listener)

    async def list(self):
        return list(self.procs.values())

    async def describe(self, name):
        info = self.procs.get(name)
        return dict(info) if info else None

    async def start(self, spec):
        self.calls.append(("start", spec.name))
        info = self.procs.get(spec.name)
        if info and info["status"] in RUNNING_STATES:
            raise BackendError(f"Process '{spec.name}' is already running")
        if self.fail_start:
            raise BackendError("spawn java ENOENT")
        self.procs[spec.name] = {
            "name": spec.name, "status": "online", "pid": 4242,
            "started_at": time.time(), "restarts": info["restarts"] if info else 0,
            "exit_code": None, "spec": spec,
        }
        return dict(self.procs[spec.name])

    async def stop(self, name):
        self.calls.append(("stop", name))
        if name not in self.procs:
            raise BackendError(f"Process or namespace '{name}' not found")
        self.procs[name]["status"] = "stopped"
        return dict(self.procs[name])

    async def restart(self, name):
        self.calls.append(("restart", name))
        if name not in self.procs:
            raise BackendError(f"Process or namespace '{name}' not found")
        self.procs[name]["status"] = "online"
        self.procs[name]["restarts"] += 1
        return dict(self.procs[name])

    async def send(self, name, line):
        self.sent.append((name, line))

    async def shutdown(self):
        self.calls.append(("shutdown", None))


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def root(tmp_path):
    """An empty server root."""
    path = tmp_path / "servers" / "survival"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def gateway():
    return FileGateway(max_upload_bytes=1024)


@pytest.fixture
def registry(tmp_path):
    return ServerRegistry(str(tmp_path / "servers"), str(tmp_path / "backups"))


@pytest.fixture
def project_dir(tmp_path):
    """Installation root with a single seeded account to keep bcrypt work low."""
    config = {"auth": {"default_users": [TEST_USER]}}
    (tmp_path / "config.yaml").write_text(yaml.safe_dump(config), encoding="utf-8")
    return tmp_path


@pytest.fixture
def client(project_dir, fake_backend):
    """Unauthenticated TestClient."""
    app = create_app(str(project_dir), backend=fake_backend)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth_client(client):
    """TestClient holding a session cookie for the seeded account."""
    resp = client.post("/login", json=TEST_USER)
    assert resp.status_code == 200
    return client
