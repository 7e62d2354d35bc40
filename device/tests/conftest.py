import os
import sys

import pytest


# Tests import `device.*` and `shopline.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from device.agent.store import LocalStore  # noqa: E402
from device.tests.fake_server import FakeServerApi  # noqa: E402


@pytest.fixture
def store(tmp_path):
    s = LocalStore.open(str(tmp_path / "pos.sqlite"))
    yield s
    s.close()


@pytest.fixture
def api(store):
    return FakeServerApi(store.get_token)


@pytest.fixture
def logged_in(store):
    store.set_token("tok-1")
    return store
