import sys
from pathlib import Path

import pytest

# Ensure the repo root is on sys.path for absolute imports.
REPO_ROOT = Path(__file__).resolve().parents[1]
repo_root_str = str(REPO_ROOT)
if repo_root_str not in sys.path:
    sys.path.insert(0, repo_root_str)

from canvasflow.app import create_app  # noqa: E402
from canvasflow.config import Settings  # noqa: E402
from canvasflow.relay import BroadcastBus, CrossTabRelay  # noqa: E402
from canvasflow.storage import MemoryStorage  # noqa: E402
from canvasflow.store import ContentStore  # noqa: E402
from canvasflow.workspace import Workspace  # noqa: E402


class FakeFetcher:
    def __init__(self, result=None):
        self.result = result if result is not None else {"title": "Example Domain"}
        self.calls = []

    def __call__(self, url, timeout):
        self.calls.append(url)
        return dict(self.result)


def run_now(target, *args):
    target(*args)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def store(storage):
    return ContentStore(storage=storage)


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def bus():
    return BroadcastBus()


def make_workspace(bus=None, fetcher=None, session_id="local", **settings_kw):
    settings = Settings(session_id=session_id, **settings_kw)
    storage = MemoryStorage()
    return Workspace(
        store=ContentStore(storage=storage),
        relay=CrossTabRelay(bus or BroadcastBus(), session_id),
        storage=storage,
        settings=settings,
        fetcher=fetcher or FakeFetcher(),
        spawn=run_now,
    )


@pytest.fixture
def workspace(bus, fetcher):
    return make_workspace(bus=bus, fetcher=fetcher)


@pytest.fixture
def client(workspace):
    app = create_app(workspace=workspace)
    app.config["TESTING"] = True
    return app.test_client()
