"""
Monitoring infrastructure.

Prometheus metrics for wallet, betting and settlement activity plus the
health checks behind the /health endpoint.
"""

import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from domain.errors import BettingError
from domain.models import Bet, BetResult


logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    """Health check status levels"""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthCheck:
    """Individual health check result"""
    name: str
    status: HealthStatus
    message: str
    latency_ms: Optional[float] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class SystemHealth:
    """Overall system health status"""
    status: HealthStatus
    timestamp: datetime
    checks: List[HealthCheck]
    uptime_seconds: float

    def to_dict(self) -> Dict[str, Any]:
        checks = []
        for check in self.checks:
            data = asdict(check)
            data["status"] = check.status.value
            checks.append(data)
        return {
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "uptime_seconds": self.uptime_seconds,
            "checks": checks,
        }


class PrometheusMetrics:
    """Prometheus metrics collection for the colour trading service"""

    def __init__(self):
        self.registry = CollectorRegistry()

        # Business metrics
        self.bets_total = Counter(
            'bets_total',
            'Total bets placed',
            ['color'],
            registry=self.registry
        )

        self.bet_amount_total = Counter(
            'bet_amount_total',
            'Total staked amount',
            ['color'],
            registry=self.registry
        )

        self.bets_settled_total = Counter(
            'bets_settled_total',
            'Total bets resolved by settlement',
            ['result'],
            registry=self.registry
        )

        self.payout_amount_total = Counter(
            'payout_amount_total',
            'Total amount credited to winners',
            registry=self.registry
        )

        self.transactions_total = Counter(
            'wallet_transactions_total',
            'Total deposits and withdrawals',
            ['type'],
            registry=self.registry
        )

        self.errors_total = Counter(
            'errors_total',
            'Errors surfaced to callers',
            ['category', 'error'],
            registry=self.registry
        )

        # Performance metrics
        self.settlement_duration = Histogram(
            'settlement_duration_seconds',
            'Round settlement duration',
            registry=self.registry
        )

        self.pending_bets = Gauge(
            'pending_bets',
            'Bets awaiting settlement',
            registry=self.registry
        )

        self.system_uptime = Gauge(
            'system_uptime_seconds',
            'System uptime in seconds',
            registry=self.registry
        )

        self.startup_time = time.time()

    def record_bet(self, color: str, amount: int):
        """Record bet metrics"""
        self.bets_total.labels(color).inc()
        self.bet_amount_total.labels(color).inc(amount)

    def record_settled_bet(self, result: str, payout: int = 0):
        """Record the resolution of one bet"""
        self.bets_settled_total.labels(result).inc()
        if payout:
            self.payout_amount_total.inc(payout)

    def record_transaction(self, transaction_type: str):
        self.transactions_total.labels(transaction_type).inc()

    def record_error(self, error: BettingError):
        """Record an error returned to a caller"""
        self.errors_total.labels(error.category.value, type(error).__name__).inc()

    def get_metrics_text(self) -> bytes:
        """Get Prometheus metrics in text format"""
        self.system_uptime.set(time.time() - self.startup_time)
        return generate_latest(self.registry)


class HealthChecker:
    """Health checks for the store"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def check_database(self) -> HealthCheck:
        """Check database connectivity and count unsettled bets"""
        start_time = time.time()

        try:
            result = await self.db.execute(
                select(func.count()).select_from(Bet).where(Bet.result == BetResult.PENDING)
            )
            pending = result.scalar() or 0
            prometheus_metrics.pending_bets.set(pending)

            latency_ms = (time.time() - start_time) * 1000

            if latency_ms > 5000:  # 5 seconds is too slow
                return HealthCheck(
                    name="database",
                    status=HealthStatus.DEGRADED,
                    message=f"Database responding slowly: {latency_ms:.0f}ms",
                    latency_ms=latency_ms,
                    metadata={"pending_bets": pending}
                )

            return HealthCheck(
                name="database",
                status=HealthStatus.HEALTHY,
                message=f"Database operational ({pending} pending bets)",
                latency_ms=latency_ms,
                metadata={"pending_bets": pending}
            )

        except Exception as e:
            latency_ms = (time.time() - start_time) * 1000
            logger.error(f"Database health check failed: {e}")
            return HealthCheck(
                name="database",
                status=HealthStatus.UNHEALTHY,
                message=f"Database connectivity failed: {e}",
                latency_ms=latency_ms,
                metadata={"error": str(e)}
            )

    async def get_system_health(self) -> SystemHealth:
        checks = [await self.check_database()]

        if any(check.status == HealthStatus.UNHEALTHY for check in checks):
            overall = HealthStatus.UNHEALTHY
        elif any(check.status == HealthStatus.DEGRADED for check in checks):
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.HEALTHY

        return SystemHealth(
            status=overall,
            timestamp=datetime.now(timezone.utc),
            checks=checks,
            uptime_seconds=time.time() - prometheus_metrics.startup_time,
        )


prometheus_metrics = PrometheusMetrics()
