import logging
from datetime import timedelta
from typing import List, Optional

import pytz
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from domain.clock import RoundClock, round_clock, utcnow
from domain.errors import BettingError
from domain.models import Bet, BetResult
from domain.services import SettlementReport, SettlementService, WalletService
from infra.db import AsyncSessionLocal
from infra.monitoring import prometheus_metrics
from infra.redis import RedisPubSub, pub_sub
from infra.settings import settings

logger = logging.getLogger(__name__)


class SchedulerService:
    """Single authoritative trigger for round settlement.

    Every round length, shortly after a window closes, settles every closed
    window that still holds PENDING bets. Settlement is idempotent, so a
    redundant trigger from another process is harmless.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        clock: RoundClock = round_clock,
        publisher: Optional[RedisPubSub] = pub_sub,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.publisher = publisher
        self.scheduler = self._create_scheduler()

    def _create_scheduler(self) -> AsyncIOScheduler:
        """Create and configure APScheduler"""
        executors = {
            'default': AsyncIOExecutor(),
        }

        job_defaults = {
            'coalesce': True,
            'max_instances': 1
        }

        return AsyncIOScheduler(
            executors=executors,
            job_defaults=job_defaults,
            timezone=pytz.timezone(settings.timezone)
        )

    async def start(self):
        """Start the scheduler and schedule settlement after every round"""
        self.scheduler.start()

        current = self.clock.current_phase()
        first_run = current.window_end + timedelta(seconds=settings.settle_delay_seconds)
        self.scheduler.add_job(
            self.settle_closed_rounds,
            'interval',
            seconds=self.clock.round_seconds,
            start_date=first_run,
            id='round_settlement',
            replace_existing=True
        )

        logger.info(f"Scheduler started, settling every {self.clock.round_seconds}s from {first_run.isoformat()}")

    async def stop(self):
        """Stop the scheduler"""
        self.scheduler.shutdown()
        logger.info("Scheduler stopped")

    async def _closed_rounds_with_pending_bets(self, db: AsyncSession) -> List[int]:
        current_round = self.clock.round_id_at(utcnow())
        result = await db.execute(
            select(Bet.round_id)
            .where(Bet.result == BetResult.PENDING, Bet.round_id < current_round)
            .distinct()
            .order_by(Bet.round_id)
        )
        return list(result.scalars().all())

    async def settle_closed_rounds(self) -> List[SettlementReport]:
        """Settle every elapsed round that still has PENDING bets"""
        reports = []
        async with self.session_factory() as db:
            round_ids = await self._closed_rounds_with_pending_bets(db)
            await db.commit()

            if not round_ids:
                logger.debug("No closed rounds awaiting settlement")
                return reports

            settlement = SettlementService(db, WalletService(db), clock=self.clock)
            for round_id in round_ids:
                try:
                    report = await settlement.settle_window(self.clock.window_for(round_id))
                except BettingError as e:
                    prometheus_metrics.record_error(e)
                    logger.error(f"Settlement failed for round {round_id}: {e.to_dict()}")
                    continue

                reports.append(report)
                await self._publish(report)

        return reports

    async def _publish(self, report: SettlementReport):
        if self.publisher is None or report.outcome is None:
            return
        try:
            await self.publisher.publish_round_result(report.to_dict())
        except Exception as e:
            # The round is already committed; clients can still poll for it
            logger.warning(f"Failed to publish result of round {report.round_id}: {e}")

    def get_scheduler_status(self) -> dict:
        """Get scheduler status and job information"""
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append({
                'id': job.id,
                'next_run': job.next_run_time,
                'trigger': str(job.trigger),
            })

        return {
            'running': self.scheduler.running,
            'jobs': jobs
        }
