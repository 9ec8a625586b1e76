import os
import sys

import pytest


MASTER_ACCOUNT_ID = "111111111111"


def pytest_configure():
    # Ensure `src/` is importable as top-level for `state.*` and `common.*` imports
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    src_path = os.path.join(root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)


@pytest.fixture
def master_account_id() -> str:
    return MASTER_ACCOUNT_ID


@pytest.fixture
def memory_provider():
    from state.storage import InMemoryStorageProvider

    return InMemoryStorageProvider()
