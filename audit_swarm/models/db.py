from sqlalchemy import Column, String, Float, DateTime, Integer, Boolean, Text
from audit_swarm.utils.db import Base
from audit_swarm.utils.clock import utcnow

class RequestLog(Base):
    """One row per reasoning-service call."""
    __tablename__ = "request_logs"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(String, nullable=True, index=True)
    stage = Column(String, nullable=True)         # planner | worker | synthesizer
    role = Column(String, nullable=True)          # worker role label
    prompt = Column(Text, nullable=False)         # truncated preview
    provider_used = Column(String, nullable=False)
    model_used = Column(String, nullable=False)
    latency_ms = Column(Float, nullable=False)
    fallback_used = Column(Boolean, default=False)
    succeeded = Column(Boolean, default=True)
    tokens_used = Column(Integer, default=0)
    estimated_cost = Column(Float, default=0.0)
    routing_reason = Column(String, nullable=True)
    timestamp = Column(DateTime, default=utcnow)
