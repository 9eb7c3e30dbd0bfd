import logging
from typing import Callable, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from audit_swarm.models.db import RequestLog

logger = logging.getLogger("request_logger")

class LoggingService:
    @staticmethod
    async def log_request(
        db: AsyncSession,
        prompt: str,
        provider: str,
        model: str,
        latency_ms: float,
        fallback_used: bool,
        tokens_used: int = 0,
        estimated_cost: float = 0.0,
        routing_reason: Optional[str] = None,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        role: Optional[str] = None,
        succeeded: bool = True,
    ):
        """
        Persist one reasoning call, including token usage, cost and the
        routing decision that selected the provider.
        """
        log_entry = RequestLog(
            job_id=job_id,
            stage=stage,
            role=role,
            prompt=prompt,
            provider_used=provider,
            model_used=model,
            latency_ms=latency_ms,
            fallback_used=fallback_used,
            succeeded=succeeded,
            tokens_used=tokens_used,
            estimated_cost=estimated_cost,
            routing_reason=routing_reason,
        )
        db.add(log_entry)
        await db.commit()

    @staticmethod
    def session_logger(session_factory: Callable):
        """
        Build a request-log hook that manages its own session, so a failing
        log write never touches the caller's transaction.
        """
        async def _log(**fields):
            async with session_factory() as session:
                try:
                    await LoggingService.log_request(session, **fields)
                except Exception as e:
                    logger.error(f"Failed to log request: {e}")
        return _log
