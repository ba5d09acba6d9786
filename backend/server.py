# backend/server.py
import hmac
import logging
import os
from typing import Any, Dict, List, Optional, Union

from flask import Flask, jsonify, redirect, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

import agency_control
import campaign_board
import client_settings
import connections
import dashboard
import hotmart
import landing
import oauth
import reports
import whatsapp
from ads_data import get_ads_overview
from auth_utils import extract_bearer_token, get_user_role, is_manager_role, resolve_user
from clients import get_link, manage_clients
from errors import ServiceError
from evolution import EvolutionAPIError
from google_ads import GoogleAPIError
from jobs.backfill_metrics import backfill_client
from jobs.balance_alerts import check_balance_alerts
from jobs.sync_daily_metrics import sync_daily_metrics
from jobs.whatsapp_reports import dispatch_reports, preview_report
from meta import MetaAPIError
from periods import parse_date
from postgres_client import require_table_client
from scheduler import AdscapeScheduler
from supabase_client import get_supabase_client

# Configurar logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


DEFAULT_DEV_ORIGINS = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]

CRON_SECRET = os.getenv("CRON_SECRET")

PROVIDER_ERRORS = {
    MetaAPIError: "meta",
    GoogleAPIError: "google",
    EvolutionAPIError: "evolution",
}


def _resolve_allowed_origins() -> Union[str, List[str]]:
    raw_values = []
    env_multiple = os.getenv("FRONTEND_ORIGINS")
    env_single = os.getenv("FRONTEND_ORIGIN")
    if env_multiple:
        raw_values.append(env_multiple)
    if env_single:
        raw_values.append(env_single)

    if raw_values:
        normalized: List[str] = []
        for chunk in raw_values:
            pieces = [item.strip() for item in chunk.split(",")]
            for item in pieces:
                if item and item not in normalized:
                    normalized.append(item)
        if not normalized:
            return DEFAULT_DEV_ORIGINS
        if len(normalized) == 1:
            return normalized[0]
        return normalized

    return DEFAULT_DEV_ORIGINS


app = Flask(__name__)
CORS(
    app,
    resources={r"/api/*": {"origins": _resolve_allowed_origins()}},
    supports_credentials=True,
)


# ---- erros ----

@app.errorhandler(ServiceError)
def _handle_service_error(err: ServiceError):
    return jsonify(err.to_payload()), err.status


def _handle_provider_error(err):
    provider = PROVIDER_ERRORS.get(type(err), "unknown")
    logger.error("Erro do provedor %s: %s", provider, err)
    return jsonify({
        "error": str(err),
        "provider": {
            "name": provider,
            "status": getattr(err, "status", None),
            "code": getattr(err, "code", None),
            "type": getattr(err, "error_type", None),
        },
    }), 502


for _error_cls in PROVIDER_ERRORS:
    app.register_error_handler(_error_cls, _handle_provider_error)


@app.errorhandler(Exception)
def _handle_unexpected(err: Exception):
    if isinstance(err, HTTPException):
        return err
    logger.exception("Erro inesperado em %s %s", request.method, request.path)
    return jsonify({"error": str(err) or "internal error"}), 500


# ---- autenticação ----

def _authenticate_request(req):
    token = extract_bearer_token(req)
    if not token:
        return None, (jsonify({"error": "missing token"}), 401)
    if get_supabase_client() is None:
        return None, (jsonify({"error": "supabase not configured"}), 503)
    user = resolve_user(token)
    if not user:
        return None, (jsonify({"error": "Unauthorized"}), 401)
    user["role"] = get_user_role(user["id"])
    return user, None


def _require_manager(user: Dict[str, Any]) -> None:
    if not is_manager_role(user.get("role")):
        raise ServiceError("Forbidden: managers only", status=403)


def _json_body() -> Dict[str, Any]:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _has_cron_secret(req) -> bool:
    provided = req.headers.get("X-Cron-Secret")
    return bool(CRON_SECRET and provided and hmac.compare_digest(provided, CRON_SECRET))


def _authorize_job(req, client_id: Optional[str] = None):
    """
    Rotas de job aceitam o segredo do cron, um admin, ou (backfill) o gestor do cliente.
    """
    if _has_cron_secret(req):
        return None
    user, error = _authenticate_request(req)
    if error:
        return error
    if user.get("role") == "admin":
        return None
    if client_id and user.get("role") == "manager":
        if get_link(require_table_client(), user["id"], client_id):
            return None
    return jsonify({"error": "Forbidden"}), 403


# ---- rotas públicas ----

@app.get("/api/health")
def health():
    return jsonify({"status": "ok"})


@app.get("/api/oauth/callback")
def oauth_callback():
    return redirect(oauth.handle_callback(request.args), code=302)


@app.get("/api/whatsapp/meta/callback")
def whatsapp_meta_callback():
    return redirect(oauth.handle_whatsapp_callback(request.args), code=302)


@app.get("/api/landing")
def get_landing():
    return jsonify(landing.get_landing_content())


@app.post("/api/webhooks/hotmart")
def hotmart_webhook():
    return jsonify(hotmart.process_webhook(_json_body()))


# ---- sessão ----

@app.get("/api/me")
def me():
    user, error = _authenticate_request(request)
    if error:
        return error
    subscription = hotmart.get_subscription(user["id"])
    return jsonify({"user": {"id": user["id"], "email": user.get("email")}, "role": user.get("role"),
                    "subscription": subscription})


@app.put("/api/landing")
def put_landing():
    user, error = _authenticate_request(request)
    if error:
        return error
    return jsonify(landing.update_landing_content(user, _json_body().get("content")))


# ---- conexões e dados de anúncios ----

@app.post("/api/oauth/init")
def oauth_init():
    user, error = _authenticate_request(request)
    if error:
        return error
    provider = _json_body().get("provider")
    return jsonify({"url": oauth.build_authorization_url(provider, user["id"])})


@app.post("/api/ads/fetch")
def ads_fetch():
    user, error = _authenticate_request(request)
    if error:
        return error
    _require_manager(user)
    body = _json_body()
    payload, meta = get_ads_overview(user["id"], body, force=bool(body.get("force")))
    return jsonify({"data": payload, "cache": meta})


@app.post("/api/ads/refresh")
def ads_refresh():
    user, error = _authenticate_request(request)
    if error:
        return error
    _require_manager(user)
    payload, meta = get_ads_overview(user["id"], _json_body(), force=True, refresh_reason="manual")
    errors = (payload or {}).get("errors") or []
    status = 207 if errors else 200
    return jsonify({"data": payload, "cache": meta, "errors": errors}), status


@app.post("/api/connections")
def manage_connections_route():
    user, error = _authenticate_request(request)
    if error:
        return error
    _require_manager(user)
    return jsonify(connections.manage_connections(user["id"], _json_body()))


@app.delete("/api/connections/<provider>")
def disconnect_route(provider: str):
    user, error = _authenticate_request(request)
    if error:
        return error
    _require_manager(user)
    return jsonify(connections.disconnect(user["id"], provider))


# ---- clientes ----

@app.post("/api/clients")
def manage_clients_route():
    user, error = _authenticate_request(request)
    if error:
        return error
    return jsonify(manage_clients(user["id"], _json_body()))


def _dashboard_range():
    start = request.args.get("start")
    end = request.args.get("end")
    if start or end:
        return {"start": start, "end": end}
    return request.args.get("range") or "LAST_30_DAYS"


@app.get("/api/clients/<client_id>/dashboard")
def client_dashboard_route(client_id: str):
    user, error = _authenticate_request(request)
    if error:
        return error
    payload = dashboard.client_dashboard(
        user,
        client_id,
        _dashboard_range(),
        platform=request.args.get("platform") or None,
    )
    return jsonify(payload)


@app.route("/api/clients/<client_id>/metric-visibility", methods=["GET", "PUT"])
def metric_visibility_route(client_id: str):
    user, error = _authenticate_request(request)
    if error:
        return error
    if request.method == "PUT":
        _require_manager(user)
        return jsonify(client_settings.save_metric_visibility(user["id"], client_id, _json_body().get("visibility")))

    client = require_table_client()
    if not dashboard.can_view_client(client, user, client_id):
        raise ServiceError("Forbidden", status=403)
    visibility = client_settings.get_metric_visibility(client_id, client)
    return jsonify({"visibility": visibility, "hidden_metrics": client_settings.hidden_metrics(visibility)})


@app.route("/api/clients/<client_id>/report-settings", methods=["GET", "PUT"])
def report_settings_route(client_id: str):
    user, error = _authenticate_request(request)
    if error:
        return error
    _require_manager(user)
    if request.method == "PUT":
        return jsonify(client_settings.save_report_settings(user["id"], client_id, _json_body()))
    return jsonify(client_settings.get_report_settings(user["id"], client_id))


@app.post("/api/clients/<client_id>/report-preview")
def report_preview_route(client_id: str):
    user, error = _authenticate_request(request)
    if error:
        return error
    _require_manager(user)
    return jsonify(preview_report(user["id"], client_id, _json_body()))


@app.route("/api/clients/<client_id>/balance-alerts", methods=["GET", "PUT"])
def balance_alerts_route(client_id: str):
    user, error = _authenticate_request(request)
    if error:
        return error
    _require_manager(user)
    if request.method == "PUT":
        return jsonify(client_settings.save_balance_alerts(user["id"], client_id, _json_body().get("alerts")))
    return jsonify(client_settings.list_balance_alerts(user["id"], client_id))


@app.put("/api/clients/<client_id>/report-defaults")
def report_defaults_route(client_id: str):
    user, error = _authenticate_request(request)
    if error:
        return error
    _require_manager(user)
    return jsonify(reports.save_client_report_settings(user["id"], client_id, _json_body()))


# ---- tarefas de otimização ----

@app.route("/api/clients/<client_id>/tasks", methods=["GET", "POST"])
def tasks_route(client_id: str):
    user, error = _authenticate_request(request)
    if error:
        return error
    client = require_table_client()
    if request.method == "POST":
        _require_manager(user)
        client_settings.require_link(client, user["id"], client_id)
        body = _json_body()
        task = campaign_board.create_task(client_id, body.get("title"), body.get("description"))
        return jsonify({"task": task}), 201

    if not dashboard.can_view_client(client, user, client_id):
        raise ServiceError("Forbidden", status=403)
    return jsonify({"tasks": campaign_board.list_tasks(client_id)})


@app.patch("/api/tasks/<task_id>")
def task_status_route(task_id: str):
    user, error = _authenticate_request(request)
    if error:
        return error
    _require_manager(user)
    task = campaign_board.get_task(task_id)
    if task is None:
        raise ServiceError("Task not found", status=404)
    if user.get("role") != "admin":
        client_settings.require_link(require_table_client(), user["id"], task.get("client_id"))
    return jsonify({"task": campaign_board.update_task_status(task_id, _json_body().get("status"))})


@app.get("/api/agency/control")
def agency_control_route():
    user, error = _authenticate_request(request)
    if error:
        return error
    _require_manager(user)
    generate = (request.args.get("generate_tasks") or "").lower() in {"1", "true", "yes"}
    return jsonify(
        agency_control.agency_health(
            user["id"],
            request.args.get("range") or "LAST_7_DAYS",
            generate_tasks=generate,
        )
    )


# ---- board de campanhas ----

@app.route("/api/campaign-plans", methods=["GET", "POST"])
def campaign_plans_route():
    user, error = _authenticate_request(request)
    if error:
        return error
    _require_manager(user)
    if request.method == "POST":
        return jsonify({"campaign": campaign_board.create_campaign(user["id"], _json_body())}), 201
    return jsonify(campaign_board.list_campaigns(user["id"], request.args.to_dict()))


@app.route("/api/campaign-plans/<campaign_id>", methods=["PATCH", "DELETE"])
def campaign_plan_route(campaign_id: str):
    user, error = _authenticate_request(request)
    if error:
        return error
    _require_manager(user)
    if request.method == "DELETE":
        return jsonify(campaign_board.delete_campaign(user["id"], campaign_id))
    body = _json_body()
    if set(body) == {"status"}:
        return jsonify({"campaign": campaign_board.move_campaign(user["id"], campaign_id, body["status"])})
    return jsonify({"campaign": campaign_board.update_campaign(user["id"], campaign_id, body)})


@app.post("/api/campaign-plans/<campaign_id>/duplicate")
def campaign_plan_duplicate(campaign_id: str):
    user, error = _authenticate_request(request)
    if error:
        return error
    _require_manager(user)
    return jsonify({"campaign": campaign_board.duplicate_campaign(user["id"], campaign_id)}), 201


@app.post("/api/campaign-plans/<campaign_id>/advance")
def campaign_plan_advance(campaign_id: str):
    user, error = _authenticate_request(request)
    if error:
        return error
    _require_manager(user)
    return jsonify({"campaign": campaign_board.move_next(user["id"], campaign_id)})


# ---- relatórios ----

@app.get("/api/report-templates")
def report_templates_route():
    user, error = _authenticate_request(request)
    if error:
        return error
    return jsonify({"templates": reports.list_templates()})


@app.post("/api/reports")
def create_report_route():
    user, error = _authenticate_request(request)
    if error:
        return error
    _require_manager(user)
    return jsonify({"report": reports.create_report_instance(user["id"], _json_body())}), 201


@app.get("/api/reports/<report_id>")
def get_report_route(report_id: str):
    user, error = _authenticate_request(request)
    if error:
        return error
    return jsonify({"report": reports.get_report_instance(user, report_id)})


# ---- WhatsApp ----

@app.post("/api/whatsapp/evolution")
def whatsapp_evolution_route():
    user, error = _authenticate_request(request)
    if error:
        return error
    _require_manager(user)
    return jsonify(whatsapp.evolution_action(user["id"], _json_body()))


@app.get("/api/whatsapp/meta/init")
def whatsapp_meta_init():
    user, error = _authenticate_request(request)
    if error:
        return error
    _require_manager(user)
    return jsonify({"url": oauth.build_whatsapp_authorization_url(user["id"])})


@app.get("/api/whatsapp/pending")
def whatsapp_pending_route():
    user, error = _authenticate_request(request)
    if error:
        return error
    return jsonify(whatsapp.get_pending_accounts(user["id"]))


@app.post("/api/whatsapp/confirm")
def whatsapp_confirm_route():
    user, error = _authenticate_request(request)
    if error:
        return error
    _require_manager(user)
    return jsonify(whatsapp.confirm_selection(user["id"], _json_body()))


@app.get("/api/whatsapp/status")
def whatsapp_status_route():
    user, error = _authenticate_request(request)
    if error:
        return error
    return jsonify(whatsapp.get_connection_status(user["id"]))


# ---- jobs ----

@app.post("/api/jobs/sync-daily-metrics")
def job_sync_daily_metrics():
    denied = _authorize_job(request)
    if denied:
        return denied
    raw_date = _json_body().get("date")
    try:
        target = parse_date(raw_date) if raw_date else None
    except ValueError:
        raise ServiceError("date must be YYYY-MM-DD", status=400)
    return jsonify(sync_daily_metrics(target))


@app.post("/api/jobs/backfill-metrics")
def job_backfill_metrics():
    body = _json_body()
    client_id = body.get("client_id")
    denied = _authorize_job(request, client_id=client_id)
    if denied:
        return denied
    return jsonify(backfill_client(client_id, body.get("days")))


@app.post("/api/jobs/whatsapp-reports")
def job_whatsapp_reports():
    denied = _authorize_job(request)
    if denied:
        return denied
    return jsonify(dispatch_reports())


@app.post("/api/jobs/balance-alerts")
def job_balance_alerts():
    denied = _authorize_job(request)
    if denied:
        return denied
    return jsonify(check_balance_alerts())


_scheduler: Optional[AdscapeScheduler] = None
if os.getenv("ADSCAPE_SCHEDULER_AUTOSTART", "1") != "0":
    should_start_scheduler = True
    if app.debug:
        should_start_scheduler = os.getenv("WERKZEUG_RUN_MAIN") == "true"
    if should_start_scheduler:
        _scheduler = AdscapeScheduler()
        _scheduler.start()


if __name__ == "__main__":
    debug_env = os.getenv("FLASK_DEBUG")
    debug_mode = True
    if debug_env is not None:
        debug_mode = debug_env.lower() not in {"0", "false", "no"}
    run_host = os.getenv("FLASK_RUN_HOST") or os.getenv("HOST") or "0.0.0.0"
    run_port = int(os.getenv("PORT", "3001"))
    app.run(host=run_host, port=run_port, debug=debug_mode)
