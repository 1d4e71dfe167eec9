import os
import tempfile

import pytest

# repo.py builds its engine at import time; point it at SQLite before that.
os.environ.setdefault(
    "DATABASE_URL", "sqlite:///" + os.path.join(tempfile.gettempdir(), "inventory-tests.sqlite3")
)

from sqlalchemy import create_engine  # noqa: E402

import repo as ledger  # noqa: E402


@pytest.fixture
def db_engine(tmp_path):
    """Fresh SQLite ledger per test (file-backed so threads share it)."""
    eng = create_engine(
        f"sqlite:///{tmp_path / 'inventory.sqlite3'}",
        connect_args={"timeout": 30, "check_same_thread": False},
    )
    ledger.init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def inventory(db_engine):
    r = ledger.InventoryRepo(db_engine)
    r.upsert("1984", "Nineteen Eighty-Four", 1399, 40)
    r.upsert("dune", "Dune", 1050, 3)
    return r
