import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from errors import ServiceError
from postgres_client import get_table_client, require_table_client

logger = logging.getLogger(__name__)

LANDING_TABLE = "landing_page_content"

DEFAULT_CONTENT: Dict[str, Any] = {
    "hero_title": "Você roda tráfego profissional.\nPor que apresenta como amador?",
    "hero_subtitle": (
        "Pare de mandar PDF, planilha ou print do gerenciador.\n"
        "Mostre seus resultados em um dashboard visual e organizado, em tempo real."
    ),
    "hero_cta": "Quero mostrar meus resultados direito",
    "pain_title": "Se você ainda faz isso…",
    "pain_items": [
        "Envia relatório em PDF todo mês",
        "Tira print do Ads",
        "Monta planilha manual",
        "Explica número por número no WhatsApp",
    ],
    "pain_conclusion": "Você está perdendo autoridade.",
    "solution_title": "Resultados bons merecem apresentação boa.",
    "solution_text": (
        "Organize Google Ads, Meta Ads e GA4 em um único painel visual. Seus clientes acessam os "
        "resultados em tempo real, sem precisar de PDF, planilha ou print."
    ),
    "benefits": [
        "Consolidado geral de investimento e resultados",
        "Separação por plataforma",
        "Controle do que o cliente pode ver",
        "Dados atualizados em tempo real",
        "Visual limpo e profissional",
    ],
    "steps_title": "Como funciona",
    "steps": [
        "Conecte suas contas",
        "Selecione quais entram no painel",
        "Crie o cliente",
        "Compartilhe o acesso",
    ],
    "plan_title": "Plano Fundadores",
    "plan_price": "R$97/mês",
    "plan_features": ["Até 3 clientes", "Google + Meta + GA4", "Dashboard completo", "Controle por cliente"],
    "plan_cta": "Começar agora",
    "final_cta_title": "Se seus resultados são profissionais,\nsua apresentação também deveria ser.",
    "final_cta_button": "Quero parar de mandar PDF",
}


def _first_row(client) -> Optional[Dict[str, Any]]:
    rows = client.table(LANDING_TABLE).select("*").limit(1).execute().data or []
    return rows[0] if rows else None


def get_landing_content() -> Dict[str, Any]:
    client = get_table_client()
    if client is None:
        return {"content": dict(DEFAULT_CONTENT), "source": "default"}
    try:
        row = _first_row(client)
    except Exception as err:  # noqa: BLE001
        logger.error("Falha ao carregar conteúdo da landing: %s", err)
        row = None
    if not row or not row.get("content"):
        return {"content": dict(DEFAULT_CONTENT), "source": "default"}
    return {"content": row["content"], "source": "database", "updated_at": row.get("updated_at")}


def validate_content(content: Any) -> Dict[str, Any]:
    if not isinstance(content, dict) or not content:
        raise ServiceError("content must be an object", status=400)
    for key, value in content.items():
        if isinstance(value, str):
            continue
        if isinstance(value, list) and all(isinstance(item, str) for item in value):
            continue
        raise ServiceError(f"Invalid value for '{key}': expected text or list of texts", status=400)
    return content


def update_landing_content(user: Dict[str, Any], content: Any) -> Dict[str, Any]:
    if user.get("role") != "admin":
        raise ServiceError("Forbidden: admin only", status=403)
    content = validate_content(content)

    client = require_table_client()
    payload = {
        "content": content,
        "updated_at": datetime.now(timezone.utc).isoformat(),
        "updated_by": user.get("id"),
    }
    row = _first_row(client)
    if row:
        client.table(LANDING_TABLE).update(payload).eq("id", row["id"]).execute()
    else:
        client.table(LANDING_TABLE).insert(payload).execute()
    logger.info("Conteúdo da landing atualizado por %s", user.get("id"))
    return {"success": True, "content": content}
