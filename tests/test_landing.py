from unittest.mock import patch

import pytest

import landing
from errors import ServiceError

ADMIN = {"id": "admin-1", "role": "admin"}


def test_default_content_without_storage():
    with patch("landing.get_table_client", return_value=None):
        result = landing.get_landing_content()
    assert result["source"] == "default"
    assert result["content"]["plan_title"] == "Plano Fundadores"


def test_default_content_when_table_empty(fake_db):
    assert landing.get_landing_content()["source"] == "default"


def test_update_then_read(fake_db):
    landing.update_landing_content(ADMIN, {"hero_title": "Novo título", "benefits": ["Rápido"]})
    landing.update_landing_content(ADMIN, {"hero_title": "Título final"})

    rows = fake_db.rows("landing_page_content")
    assert len(rows) == 1
    assert rows[0]["updated_by"] == "admin-1"

    result = landing.get_landing_content()
    assert result["source"] == "database"
    assert result["content"] == {"hero_title": "Título final"}


def test_update_requires_admin(fake_db):
    with pytest.raises(ServiceError) as exc:
        landing.update_landing_content({"id": "m1", "role": "manager"}, {"hero_title": "x"})
    assert exc.value.status == 403


@pytest.mark.parametrize("content", [None, {}, ["hero"], {"plan_price": 97}, {"steps": ["ok", 2]}])
def test_update_rejects_invalid_content(fake_db, content):
    with pytest.raises(ServiceError) as exc:
        landing.update_landing_content(ADMIN, content)
    assert exc.value.status == 400
