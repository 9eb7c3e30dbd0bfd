from datetime import timedelta
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, case
from audit_swarm.models.db import RequestLog
from audit_swarm.models.job import AuditJob, JobStatus
from audit_swarm.models.metrics import MetricsSummary, ProviderSplit, TimeRange, QueueStats
from audit_swarm.utils.clock import utcnow

_RANGES = {
    TimeRange.last_1h: timedelta(hours=1),
    TimeRange.last_24h: timedelta(hours=24),
    TimeRange.last_7d: timedelta(days=7),
}

class MetricsService:
    @staticmethod
    async def get_summary(db: AsyncSession, time_range: TimeRange) -> MetricsSummary:
        start_time = utcnow() - _RANGES.get(time_range, timedelta(hours=24))
        base_filter = RequestLog.timestamp >= start_time

        # 1. Main aggregates
        agg_query = select(
            func.count(RequestLog.id).label("total"),
            func.avg(RequestLog.latency_ms).label("avg_latency"),
            func.sum(case((RequestLog.fallback_used == True, 1), else_=0)).label("fallback_count"),
            func.sum(case((RequestLog.succeeded == False, 1), else_=0)).label("failed_count"),
            func.sum(RequestLog.tokens_used).label("tokens"),
            func.sum(RequestLog.estimated_cost).label("cost"),
        ).where(base_filter)

        result = await db.execute(agg_query)
        agg_data = result.first()

        total_requests = agg_data.total or 0
        avg_latency = float(agg_data.avg_latency or 0.0)
        fallback_count = agg_data.fallback_count or 0

        fallback_rate = 0.0
        if total_requests > 0:
            fallback_rate = (fallback_count / total_requests) * 100

        # 2. Provider split
        split_query = select(
            RequestLog.provider_used,
            func.count(RequestLog.id)
        ).where(base_filter).group_by(RequestLog.provider_used)

        split_result = await db.execute(split_query)

        provider_data = []
        for provider, count in split_result.all():
            percentage = (count / total_requests * 100) if total_requests > 0 else 0
            provider_data.append(ProviderSplit(
                provider=provider,
                count=count,
                percentage=round(percentage, 2)
            ))

        # 3. P95 latency: percentile_cont on Postgres, in-memory elsewhere
        dialect_name = db.bind.dialect.name
        p95_latency = 0.0

        if dialect_name == "postgresql" and total_requests > 0:
            p95_stmt = select(
                func.percentile_cont(0.95).within_group(RequestLog.latency_ms)
            ).where(base_filter)
            p95_res = await db.execute(p95_stmt)
            p95_latency = float(p95_res.scalar() or 0.0)
        elif total_requests > 0:
            lat_stmt = select(RequestLog.latency_ms).where(base_filter).order_by(RequestLog.latency_ms)
            lat_res = await db.execute(lat_stmt)
            latencies = [row[0] for row in lat_res.all()]

            if latencies:
                index = min(int(len(latencies) * 0.95), len(latencies) - 1)
                p95_latency = float(latencies[index])

        return MetricsSummary(
            total_requests=total_requests,
            failed_requests=agg_data.failed_count or 0,
            avg_latency_ms=round(avg_latency, 2),
            p95_latency_ms=round(p95_latency, 2),
            fallback_rate_percent=round(fallback_rate, 2),
            total_tokens=int(agg_data.tokens or 0),
            estimated_cost_usd=round(float(agg_data.cost or 0.0), 6),
            provider_split=provider_data
        )

    @staticmethod
    async def get_queue_stats(db: AsyncSession) -> QueueStats:
        counts_res = await db.execute(
            select(AuditJob.status, func.count(AuditJob.id)).group_by(AuditJob.status)
        )
        counts = {status: count for status, count in counts_res.all()}

        # Durations are computed in Python; date arithmetic differs per dialect
        done_res = await db.execute(
            select(AuditJob.started_at, AuditJob.completed_at).where(
                AuditJob.status == JobStatus.succeeded.value,
                AuditJob.started_at.isnot(None),
                AuditJob.completed_at.isnot(None),
            )
        )
        durations = [(done - started).total_seconds() for started, done in done_res.all()]

        oldest_res = await db.execute(
            select(func.min(AuditJob.scheduled_at)).where(AuditJob.status == JobStatus.pending.value)
        )
        oldest = oldest_res.scalar()

        return QueueStats(
            pending=counts.get(JobStatus.pending.value, 0),
            processing=counts.get(JobStatus.processing.value, 0),
            succeeded=counts.get(JobStatus.succeeded.value, 0),
            failed=counts.get(JobStatus.failed.value, 0),
            avg_processing_seconds=round(sum(durations) / len(durations), 2) if durations else 0.0,
            oldest_pending_age_seconds=round((utcnow() - oldest).total_seconds(), 2) if oldest else None,
        )
