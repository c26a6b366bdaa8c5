import os
import shutil
from pathlib import Path

import pytest

TEST_DATA_DIR = Path("data-tests")

# backend.app builds a default app at import time; keep it out of ./data
os.environ["DATA_DIR"] = str(TEST_DATA_DIR)
os.environ.pop("QMUD_API_KEY", None)
os.environ.pop("ATERNA_BASE", None)


@pytest.fixture(autouse=True)
def clean_test_data():
    """Wipe data-tests/ before every test."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    TEST_DATA_DIR.mkdir()
    yield
    # leave data-tests around after tests for inspection; CI can ignore it
