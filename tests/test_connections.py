import pytest

import connections
from errors import ServiceError


@pytest.fixture
def seeded(fake_db):
    fake_db.rows("oauth_connections").append(
        {"manager_id": "m1", "provider": "meta_ads", "access_token": "secret", "connected": True, "account_data": []}
    )
    fake_db.rows("manager_meta_ad_accounts").extend(
        [
            {"manager_id": "m1", "ad_account_id": "act_1", "is_active": True},
            {"manager_id": "m1", "ad_account_id": "act_2", "is_active": False},
            {"manager_id": "m2", "ad_account_id": "act_9", "is_active": True},
        ]
    )
    return fake_db


def test_list_hides_tokens(seeded):
    result = connections.manage_connections("m1", {})
    assert "access_token" not in result["connections"][0]
    assert len(result["meta_accounts"]) == 2


def test_save_selected_accounts_resets_previous(seeded):
    connections.manage_connections("m1", {"action": "save_meta_accounts", "accounts": ["act_2"]})
    active = {row["ad_account_id"]: row["is_active"] for row in seeded.rows("manager_meta_ad_accounts")}
    assert active == {"act_1": False, "act_2": True, "act_9": True}


def test_accounts_must_be_list(seeded):
    with pytest.raises(ServiceError) as exc:
        connections.manage_connections("m1", {"action": "save_meta_accounts", "accounts": "act_1"})
    assert exc.value.status == 400


def test_update_account_data(seeded):
    data = [{"id": "act_1", "selected": True}]
    connections.manage_connections("m1", {"provider": "meta_ads", "account_data": data})
    assert seeded.rows("oauth_connections")[0]["account_data"] == data


def test_disconnect(seeded):
    assert connections.disconnect("m1", "meta_ads") == {"success": True}
    assert seeded.rows("oauth_connections") == []
