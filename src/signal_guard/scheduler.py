from __future__ import annotations

from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from .engine import ConsensusEngine, CycleReport
from .settings import settings


class RefreshScheduler:
    def __init__(
        self,
        engine: ConsensusEngine,
        symbol: str | None = None,
        interval_minutes: int | None = None,
        on_report: Callable[[CycleReport], None] | None = None,
    ) -> None:
        self.engine = engine
        self.symbol = (symbol or settings.default_symbol).upper()
        self.interval_minutes = interval_minutes or settings.refresh_interval_minutes
        self.on_report = on_report
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def run_once(self) -> CycleReport | None:
        try:
            report = self.engine.run_cycle(self.symbol)
        except Exception as exc:
            # keep the schedule alive; the next tick retries from scratch
            logger.exception("Refresh cycle for {} failed: {}", self.symbol, exc)
            return None
        if self.on_report is not None:
            self.on_report(report)
        return report

    def start(self) -> None:
        trigger = IntervalTrigger(minutes=self.interval_minutes)
        self.scheduler.add_job(
            self.run_once,
            trigger=trigger,
            id=f"refresh_{self.symbol.lower()}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(
            "Scheduler started. Refreshing {} every {} min ({})",
            self.symbol,
            self.interval_minutes,
            settings.timezone,
        )

    def stop(self) -> None:
        self.scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
