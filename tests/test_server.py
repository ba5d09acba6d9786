from unittest.mock import patch

import pytest

import server
from conftest import link
from errors import ServiceError
from meta import MetaAPIError

AUTH = {"Authorization": "Bearer token-123"}


@pytest.fixture
def app_client(fake_db):
    server.app.config["TESTING"] = True
    with server.app.test_client() as client:
        yield client


@pytest.fixture
def as_user(fake_db):
    """Autentica as requisições como o usuário/papel informado."""
    patches = []

    def login(user_id="m1", role="manager", email="gestor@example.com"):
        for target, value in (
            ("server.get_supabase_client", fake_db),
            ("server.resolve_user", {"id": user_id, "email": email}),
            ("server.get_user_role", role),
        ):
            active = patch(target, return_value=value)
            active.start()
            patches.append(active)

    yield login
    for active in patches:
        active.stop()


def test_health(app_client):
    response = app_client.get("/api/health")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}


def test_missing_token(app_client):
    response = app_client.get("/api/me")
    assert response.status_code == 401
    assert response.get_json() == {"error": "missing token"}


def test_supabase_not_configured(app_client):
    with patch("server.get_supabase_client", return_value=None):
        response = app_client.get("/api/me", headers=AUTH)
    assert response.status_code == 503


def test_invalid_token(app_client, fake_db):
    with patch("server.get_supabase_client", return_value=fake_db), patch("server.resolve_user", return_value=None):
        response = app_client.get("/api/me", headers=AUTH)
    assert response.status_code == 401
    assert response.get_json() == {"error": "Unauthorized"}


def test_me_returns_role_and_subscription(app_client, as_user):
    as_user("m1", "manager")
    response = app_client.get("/api/me", headers=AUTH)

    body = response.get_json()
    assert response.status_code == 200
    assert body["user"] == {"id": "m1", "email": "gestor@example.com"}
    assert body["role"] == "manager"
    assert body["subscription"]["is_active"] is False


def test_manager_only_routes_reject_clients(app_client, as_user):
    as_user("c1", "client")
    response = app_client.post("/api/ads/fetch", json={}, headers=AUTH)
    assert response.status_code == 403
    assert response.get_json()["error"] == "Forbidden: managers only"


def test_provider_errors_become_502(app_client, as_user):
    as_user()
    error = MetaAPIError(400, "Invalid OAuth access token", code=190, error_type="OAuthException")
    with patch("server.get_ads_overview", side_effect=error):
        response = app_client.post("/api/ads/fetch", json={}, headers=AUTH)

    assert response.status_code == 502
    body = response.get_json()
    assert body["provider"] == {"name": "meta", "status": 400, "code": 190, "type": "OAuthException"}


def test_ads_refresh_partial_errors(app_client, as_user):
    as_user()
    payload = {"google_ads": None, "meta_ads": {}, "errors": ["Google Ads: token expirado"]}
    with patch("server.get_ads_overview", return_value=(payload, {"source": "refresh"})) as overview:
        response = app_client.post("/api/ads/refresh", json={"date_range": "LAST_7_DAYS"}, headers=AUTH)

    assert response.status_code == 207
    assert response.get_json()["errors"] == ["Google Ads: token expirado"]
    assert overview.call_args.kwargs == {"force": True, "refresh_reason": "manual"}


def test_unexpected_errors_become_500(app_client):
    with patch("landing.get_landing_content", side_effect=RuntimeError("boom")):
        response = app_client.get("/api/landing")
    assert response.status_code == 500
    assert response.get_json() == {"error": "boom"}


def test_oauth_callback_error_redirects(app_client):
    response = app_client.get("/api/oauth/callback?error=access_denied")
    assert response.status_code == 302


def test_client_dashboard_route(app_client, as_user, fake_db):
    as_user("m1", "manager")
    link(fake_db, "m1", "c1")

    response = app_client.get("/api/clients/c1/dashboard?range=LAST_7_DAYS&platform=meta", headers=AUTH)
    assert response.status_code == 200
    assert response.get_json()["platform"] == "meta"

    response = app_client.get("/api/clients/c1/dashboard?start=2024-03-10&end=2024-03-01", headers=AUTH)
    assert response.status_code == 400

    response = app_client.get("/api/clients/c9/dashboard", headers=AUTH)
    assert response.status_code == 403


def test_tasks_flow(app_client, as_user, fake_db):
    as_user("m1", "manager")
    link(fake_db, "m1", "c1")

    created = app_client.post("/api/clients/c1/tasks", json={"title": "Ajustar lances"}, headers=AUTH)
    assert created.status_code == 201
    task_id = created.get_json()["task"]["id"]

    updated = app_client.patch(f"/api/tasks/{task_id}", json={"status": "DONE"}, headers=AUTH)
    assert updated.status_code == 200
    assert updated.get_json()["task"]["status"] == "DONE"

    listed = app_client.get("/api/clients/c1/tasks", headers=AUTH)
    assert [task["title"] for task in listed.get_json()["tasks"]] == ["Ajustar lances"]

    missing = app_client.patch("/api/tasks/nope", json={"status": "DONE"}, headers=AUTH)
    assert missing.status_code == 404

    unlinked = app_client.post("/api/clients/c2/tasks", json={"title": "x"}, headers=AUTH)
    assert unlinked.status_code == 403


def test_campaign_plans_flow(app_client, as_user):
    as_user("m1", "manager")

    created = app_client.post("/api/campaign-plans", json={"campaign_name": "Lançamento"}, headers=AUTH)
    assert created.status_code == 201
    campaign_id = created.get_json()["campaign"]["id"]

    moved = app_client.patch(f"/api/campaign-plans/{campaign_id}", json={"status": "PRONTO"}, headers=AUTH)
    assert moved.get_json()["campaign"]["status"] == "PRONTO"

    advanced = app_client.post(f"/api/campaign-plans/{campaign_id}/advance", headers=AUTH)
    assert advanced.get_json()["campaign"]["status"] == "VEICULACAO"

    board = app_client.get("/api/campaign-plans?status=VEICULACAO", headers=AUTH).get_json()
    assert [item["id"] for item in board["campaigns"]] == [campaign_id]

    invalid = app_client.patch(f"/api/campaign-plans/{campaign_id}", json={"status": "PERDIDO"}, headers=AUTH)
    assert invalid.status_code == 400

    deleted = app_client.delete(f"/api/campaign-plans/{campaign_id}", headers=AUTH)
    assert deleted.get_json() == {"success": True}


def test_metric_visibility_routes(app_client, as_user, fake_db):
    as_user("m1", "manager")
    link(fake_db, "m1", "c1")

    saved = app_client.put("/api/clients/c1/metric-visibility", json={"visibility": {"revenue": False}}, headers=AUTH)
    assert saved.status_code == 200

    response = app_client.get("/api/clients/c1/metric-visibility", headers=AUTH)
    assert response.get_json() == {"visibility": {"revenue": False}, "hidden_metrics": ["revenue"]}


def test_landing_update_requires_admin(app_client, as_user):
    as_user("m1", "manager")
    response = app_client.put("/api/landing", json={"content": {"hero_title": "x"}}, headers=AUTH)
    assert response.status_code == 403


def test_hotmart_webhook_rejects_bad_token(app_client):
    with patch("hotmart.HOTMART_TOKEN", "hot-secret"):
        response = app_client.post("/api/webhooks/hotmart", json={"hottok": "nope"})
    assert response.status_code == 401


# ---- jobs ----


def test_job_routes_accept_cron_secret(app_client):
    with patch("server.CRON_SECRET", "cron-s3cret"), \
            patch("server.sync_daily_metrics", return_value={"success": True, "date": "2024-03-09", "upserted": 0}) as sync:
        response = app_client.post(
            "/api/jobs/sync-daily-metrics", json={"date": "2024-03-09"}, headers={"X-Cron-Secret": "cron-s3cret"}
        )
    assert response.status_code == 200
    assert sync.call_args[0][0].isoformat() == "2024-03-09"


def test_job_routes_reject_wrong_secret(app_client):
    with patch("server.CRON_SECRET", "cron-s3cret"):
        response = app_client.post("/api/jobs/whatsapp-reports", headers={"X-Cron-Secret": "errado"})
    assert response.status_code == 401


def test_job_route_invalid_date(app_client):
    with patch("server.CRON_SECRET", "cron-s3cret"):
        response = app_client.post(
            "/api/jobs/sync-daily-metrics", json={"date": "ontem"}, headers={"X-Cron-Secret": "cron-s3cret"}
        )
    assert response.status_code == 400


def test_backfill_allowed_for_linked_manager(app_client, as_user, fake_db):
    as_user("m1", "manager")
    link(fake_db, "m1", "c1")

    with patch("server.backfill_client", return_value={"success": True}) as backfill:
        allowed = app_client.post("/api/jobs/backfill-metrics", json={"client_id": "c1", "days": 7}, headers=AUTH)
        denied = app_client.post("/api/jobs/backfill-metrics", json={"client_id": "c2"}, headers=AUTH)

    assert allowed.status_code == 200
    backfill.assert_called_once_with("c1", 7)
    assert denied.status_code == 403


def test_balance_alerts_job_for_admin(app_client, as_user):
    as_user("admin-1", "admin")
    with patch("server.check_balance_alerts", return_value={"processed": 0, "results": []}):
        response = app_client.post("/api/jobs/balance-alerts", headers=AUTH)
    assert response.status_code == 200


def test_manager_cannot_trigger_global_jobs(app_client, as_user):
    as_user("m1", "manager")
    response = app_client.post("/api/jobs/whatsapp-reports", headers=AUTH)
    assert response.status_code == 403


def test_service_error_payload(app_client):
    with patch("landing.get_landing_content", side_effect=ServiceError("indisponível", status=503)):
        response = app_client.get("/api/landing")
    assert response.status_code == 503
    assert response.get_json() == {"error": "indisponível"}
