from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

import clients
from conftest import link
from errors import ServiceError


@pytest.fixture
def manager_db(fake_db):
    fake_db.rows("user_roles").extend(
        [{"user_id": "m1", "role": "manager"}, {"user_id": "c1", "role": "client"}]
    )
    return fake_db


def test_only_managers_can_manage(manager_db):
    with pytest.raises(ServiceError) as exc:
        clients.manage_clients("c1", {"action": "list"})
    assert exc.value.status == 403


def test_unknown_action(manager_db):
    with pytest.raises(ServiceError) as exc:
        clients.manage_clients("m1", {"action": "explode"})
    assert exc.value.status == 400


def test_list_clients_with_assignments(manager_db):
    link(manager_db, "m1", "c1")
    manager_db.rows("profiles").append({"id": "c1", "email": "c1@x.com", "full_name": "Cliente Um"})
    manager_db.rows("client_meta_ad_accounts").append({"client_user_id": "c1", "ad_account_id": "act_1"})
    manager_db.rows("manager_meta_ad_accounts").append(
        {"manager_id": "m1", "ad_account_id": "act_1", "account_name": "Conta", "is_active": True}
    )
    manager_db.rows("oauth_connections").append(
        {
            "manager_id": "m1",
            "provider": "ga4",
            "connected": True,
            "account_data": [{"id": "p1", "name": "Site", "selected": True}, {"id": "p2", "selected": False}],
        }
    )

    result = clients.manage_clients("m1", {"action": "list"})

    entry = result["clients"][0]
    assert entry["email"] == "c1@x.com"
    assert entry["meta_accounts"] == ["act_1"]
    assert entry["google_accounts"] == []
    assert result["available_accounts"]["meta"] == [{"ad_account_id": "act_1", "account_name": "Conta"}]
    assert result["available_accounts"]["ga4"] == [{"property_id": "p1", "name": "Site"}]


def test_create_client(manager_db):
    auth_client = MagicMock()
    auth_client.auth.admin.create_user.return_value = SimpleNamespace(user=SimpleNamespace(id="new-client"))
    manager_db.rows("user_roles").append({"user_id": "new-client", "role": "manager"})

    with patch("clients.require_supabase_client", return_value=auth_client):
        result = clients.manage_clients(
            "m1",
            {"action": "create", "email": "novo@x.com", "password": "123456", "strategy_type": "message"},
        )

    assert result == {"success": True, "client_user_id": "new-client"}
    roles = {row["user_id"]: row["role"] for row in manager_db.rows("user_roles")}
    assert roles["new-client"] == "client"
    created = manager_db.rows("client_manager_links")[0]
    assert created["strategy_type"] == "MESSAGE"
    assert created["client_label"] == "novo@x.com"


def test_create_client_requires_credentials(manager_db):
    with pytest.raises(ServiceError):
        clients.manage_clients("m1", {"action": "create", "email": "x@x.com"})


def test_save_accounts_replaces_assignments(manager_db):
    link(manager_db, "m1", "c1")
    manager_db.rows("client_ad_accounts").append({"client_user_id": "c1", "customer_id": "old"})

    clients.manage_clients("m1", {"action": "save_accounts", "client_user_id": "c1", "google_accounts": ["111", "222"]})

    assert clients.assigned_ids(manager_db, "client_ad_accounts", "customer_id", "c1") == ["111", "222"]


def test_save_accounts_requires_link(manager_db):
    with pytest.raises(ServiceError) as exc:
        clients.manage_clients("m1", {"action": "save_accounts", "client_user_id": "c9"})
    assert exc.value.status == 403


def test_update_and_delete_link(manager_db):
    row = link(manager_db, "m1", "c1", id="link-1")
    clients.manage_clients("m1", {"action": "update", "link_id": row["id"], "client_label": "Novo", "strategy_type": "REVENUE"})
    assert manager_db.rows("client_manager_links")[0]["client_label"] == "Novo"

    clients.manage_clients("m1", {"action": "delete", "link_id": "link-1"})
    assert manager_db.rows("client_manager_links") == []


def test_manager_for_client(manager_db):
    link(manager_db, "m1", "c1")
    assert clients.manager_for_client(manager_db, "c1") == "m1"
    assert clients.manager_for_client(manager_db, "c9") is None
