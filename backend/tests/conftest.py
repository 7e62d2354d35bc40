import os
import sys


# Tests import `backend.*` and `shopline.*` (and the in-memory DB double in
# `backend.tests.fake_db`), so the repo root must be importable whether pytest
# runs from the root or from `backend/`.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)
