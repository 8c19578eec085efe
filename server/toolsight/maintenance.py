"""后台维护 — APScheduler 定时任务：零点配额滚动、训练日志落盘。"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from toolsight.config import TrainingLogConfig
    from toolsight.quota import QuotaTracker
    from toolsight.training_log import TrainingLog

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """配额窗口在每次请求时也会惰性检查，这里的零点任务只是提前滚动。"""

    def __init__(
        self,
        config: TrainingLogConfig,
        quota: QuotaTracker,
        training_log: TrainingLog,
    ) -> None:
        self.config = config
        self._quota = quota
        self._training_log = training_log
        self._scheduler = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    async def start(self) -> None:
        from apscheduler.schedulers.asyncio import AsyncIOScheduler

        self._scheduler = AsyncIOScheduler()

        # 零点配额滚动
        self._scheduler.add_job(
            self._sweep_quota,
            "cron",
            hour=0,
            minute=0,
            id="quota_sweep",
        )

        # 训练日志落盘
        if self._training_log.path is not None:
            self._scheduler.add_job(
                self._flush_training_log,
                "interval",
                seconds=self.config.flush_interval_seconds,
                id="training_log_flush",
            )

        self._scheduler.start()
        logger.info("Maintenance scheduler started")

    async def stop(self) -> None:
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        await self._flush_training_log()

    async def _sweep_quota(self) -> None:
        try:
            self._quota.sweep()
        except Exception:
            logger.exception("Quota sweep failed")

    async def _flush_training_log(self) -> None:
        """有变更时才写文件。失败只记日志。"""
        if self._training_log.path is None or not self._training_log.has_changes:
            return
        try:
            self._training_log.save()
            logger.info(
                "Training log flushed: %d entries → %s",
                len(self._training_log), self._training_log.path,
            )
        except Exception:
            logger.exception("Training log flush failed")
