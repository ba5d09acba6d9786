import logging
import os
from datetime import datetime
from typing import Tuple
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler

from cache import refresh_due_entries
from jobs.balance_alerts import check_balance_alerts
from jobs.sync_daily_metrics import sync_daily_metrics
from jobs.whatsapp_reports import dispatch_reports
from postgres_client import get_table_client

logger = logging.getLogger(__name__)

DEFAULT_DAILY_SYNC_ENABLED = os.getenv("DAILY_SYNC_ENABLED", "1") != "0"
DEFAULT_DAILY_SYNC_TIME = os.getenv("DAILY_SYNC_TIME", "03:00")
DEFAULT_DAILY_SYNC_TZ = os.getenv("DAILY_SYNC_TZ", "America/Sao_Paulo")
DEFAULT_REPORTS_INTERVAL_MINUTES = int(os.getenv("WHATSAPP_REPORTS_INTERVAL_MINUTES", "5"))
DEFAULT_BALANCE_INTERVAL_MINUTES = int(os.getenv("BALANCE_ALERTS_INTERVAL_MINUTES", "60"))
DEFAULT_CACHE_INTERVAL_MINUTES = int(os.getenv("ADS_CACHE_REFRESH_MINUTES", "60"))
CACHE_REFRESH_BATCH = 25


class AdscapeScheduler:
    def __init__(
        self,
        reports_interval: int = DEFAULT_REPORTS_INTERVAL_MINUTES,
        balance_interval: int = DEFAULT_BALANCE_INTERVAL_MINUTES,
        cache_interval: int = DEFAULT_CACHE_INTERVAL_MINUTES,
    ):
        self.reports_interval = max(1, reports_interval)
        self.balance_interval = max(5, balance_interval)
        self.cache_interval = max(5, cache_interval)
        self._scheduler = BackgroundScheduler(timezone="UTC")
        self._started = False

        self._sync_enabled = DEFAULT_DAILY_SYNC_ENABLED
        self._sync_time = DEFAULT_DAILY_SYNC_TIME
        self._sync_timezone = DEFAULT_DAILY_SYNC_TZ

    @property
    def running(self) -> bool:
        return self._started

    def job_ids(self):
        return [job.id for job in self._scheduler.get_jobs()]

    def start(self) -> None:
        if self._started:
            return

        if get_table_client() is None:
            logger.warning("Banco não configurado. Scheduler não iniciado.")
            return

        self._add_jobs()
        self._scheduler.start()
        self._started = True
        logger.info(
            "Scheduler iniciado (relatórios %s min, saldo %s min, cache %s min).",
            self.reports_interval,
            self.balance_interval,
            self.cache_interval,
        )

    def _add_jobs(self) -> None:
        if self._sync_enabled:
            sync_hour, sync_minute = self._parse_time(self._sync_time)
            sync_tz = self._resolve_timezone(self._sync_timezone)
            self._scheduler.add_job(
                self._run_daily_sync,
                "cron",
                hour=sync_hour,
                minute=sync_minute,
                id="daily_metrics_sync",
                max_instances=1,
                coalesce=True,
                timezone=sync_tz,
            )
            logger.info("Sincronização diária agendada para %02d:%02d (%s).", sync_hour, sync_minute, sync_tz.key)

        self._scheduler.add_job(
            self._run_reports,
            "interval",
            minutes=self.reports_interval,
            id="whatsapp_reports",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self._run_balance_alerts,
            "interval",
            minutes=self.balance_interval,
            id="balance_alerts",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self._run_cache_cycle,
            "interval",
            minutes=self.cache_interval,
            id="ads_cache_refresh",
            max_instances=1,
            coalesce=True,
        )

    def shutdown(self) -> None:
        if self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False

    def _parse_time(self, config_time: str) -> Tuple[int, int]:
        try:
            hour_str, minute_str = config_time.split(":")
            hour, minute = int(hour_str), int(minute_str)
        except ValueError:
            logger.error("DAILY_SYNC_TIME inválido (%s). Usando 03:00.", config_time)
            return 3, 0
        if not (0 <= hour < 24 and 0 <= minute < 60):
            logger.error("DAILY_SYNC_TIME fora do intervalo (%s). Usando 03:00.", config_time)
            return 3, 0
        return hour, minute

    def _resolve_timezone(self, tz_name: str) -> ZoneInfo:
        try:
            return ZoneInfo(tz_name)
        except Exception as err:  # noqa: BLE001
            logger.error("Timezone %s inválido (%s). Usando UTC.", tz_name, err)
            return ZoneInfo("UTC")

    def _run_daily_sync(self) -> None:
        try:
            result = sync_daily_metrics()
            logger.info("Sync diário %s: %s linha(s).", result["date"], result["upserted"])
        except Exception as err:  # noqa: BLE001
            logger.exception("Falha no sync diário: %s", err)

    def _run_reports(self) -> None:
        try:
            result = dispatch_reports(datetime.now(ZoneInfo("UTC")))
            if result.get("sent") or result.get("failed"):
                logger.info("Relatórios WhatsApp: enviados=%s falhas=%s", result["sent"], result["failed"])
        except Exception as err:  # noqa: BLE001
            logger.exception("Falha no ciclo de relatórios: %s", err)

    def _run_balance_alerts(self) -> None:
        try:
            result = check_balance_alerts()
            logger.info("Alertas de saldo verificados: %s", result["processed"])
        except Exception as err:  # noqa: BLE001
            logger.exception("Falha na verificação de saldo: %s", err)

    def _run_cache_cycle(self) -> None:
        try:
            stats = refresh_due_entries(limit=CACHE_REFRESH_BATCH)
            if stats.get("refreshed") or stats.get("failed"):
                logger.info("Cache de anúncios: %s", stats)
        except Exception as err:  # noqa: BLE001
            logger.exception("Falha ao atualizar cache: %s", err)
