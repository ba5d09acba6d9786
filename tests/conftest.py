import os
import sys
from unittest.mock import patch

import pytest

os.environ["ADSCAPE_SCHEDULER_AUTOSTART"] = "0"

TESTS_DIR = os.path.dirname(__file__)
BACKEND_DIR = os.path.join(os.path.dirname(TESTS_DIR), "backend")
for path in (TESTS_DIR, BACKEND_DIR):
    if path not in sys.path:
        sys.path.insert(0, path)

from fakes import FakeSupabase  # noqa: E402


@pytest.fixture
def fake_db():
    """Substitui o client de tabelas (Supabase/Postgres) por um fake em memória."""
    db = FakeSupabase()
    with patch("postgres_client.get_table_client", return_value=db), \
            patch("postgres_client.get_postgres_client", return_value=None), \
            patch("cache.get_table_client", return_value=db), \
            patch("landing.get_table_client", return_value=db), \
            patch("auth_utils.get_supabase_client", return_value=db):
        yield db


def link(db, manager_id="manager-1", client_id="client-1", **extra):
    row = {"manager_id": manager_id, "client_user_id": client_id, "client_label": "Loja Azul", "is_demo": False}
    row.update(extra)
    db.rows("client_manager_links").append(row)
    return row
