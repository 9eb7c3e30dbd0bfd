from enum import Enum
from typing import List, Optional
from pydantic import BaseModel

class TimeRange(str, Enum):
    last_1h = "last_1h"
    last_24h = "last_24h"
    last_7d = "last_7d"

class ProviderSplit(BaseModel):
    provider: str
    count: int
    percentage: float

class MetricsSummary(BaseModel):
    total_requests: int
    failed_requests: int
    avg_latency_ms: float
    p95_latency_ms: float
    fallback_rate_percent: float
    total_tokens: int
    estimated_cost_usd: float
    provider_split: List[ProviderSplit]

class QueueStats(BaseModel):
    pending: int = 0
    processing: int = 0
    succeeded: int = 0
    failed: int = 0
    avg_processing_seconds: float = 0.0
    oldest_pending_age_seconds: Optional[float] = None
