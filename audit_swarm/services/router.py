"""
Cost-Aware Reasoning Router.

Routing logic:
  1. Score each provider using: latency × weight + fallback_rate × weight + cost × weight
  2. Apply policy overrides:
     - If daily cost > threshold → deprioritize
     - If avg latency > spike threshold → deprioritize
     - If the provider's circuit breaker is open → skip
  3. Try the lowest-score provider first, fall back to the rest in order
  4. Every provider failing surfaces as DependencyUnavailable("reasoning")

All thresholds are configurable via environment variables.
"""

import time
import logging
from typing import Dict, Any, List, Optional, Callable, Awaitable
from dataclasses import dataclass
from collections import defaultdict
from datetime import date

from audit_swarm.adapters.base import BaseModelAdapter
from audit_swarm.models.api import ReasoningRequest
from audit_swarm.config import get_settings
from audit_swarm.services.exceptions import DependencyUnavailable
from audit_swarm.services.resilience import CircuitBreakerRegistry, BreakerState, breakers as default_breakers
from audit_swarm.services.telemetry import MetricsSink, LoggingMetricsSink

logger = logging.getLogger("routing_service")
settings = get_settings()


# ─── Cost Tracker ───────────────────────────────────────

class CostTracker:
    """
    Daily cost accumulator per provider.
    Resets automatically on date rollover.
    """

    def __init__(self, today: Callable[[], date] = date.today):
        self._today = today
        self._costs: Dict[str, float] = defaultdict(float)    # provider → daily USD
        self._requests: Dict[str, int] = defaultdict(int)     # provider → request count
        self._latencies: Dict[str, List[float]] = defaultdict(list)  # provider → recent latencies
        self._failures: Dict[str, int] = defaultdict(int)     # provider → failure count
        self._date: date = today()

    def _check_rollover(self) -> None:
        today = self._today()
        if today != self._date:
            logger.info(f"[CostTracker] Date rollover {self._date} → {today}, resetting counters")
            self._costs.clear()
            self._requests.clear()
            self._latencies.clear()
            self._failures.clear()
            self._date = today

    def record(self, provider: str, cost: float, latency_ms: float) -> None:
        self._check_rollover()
        self._costs[provider] += cost
        self._requests[provider] += 1
        # Keep last 50 latencies for avg calculation
        lats = self._latencies[provider]
        lats.append(latency_ms)
        if len(lats) > 50:
            self._latencies[provider] = lats[-50:]

    def record_failure(self, provider: str) -> None:
        self._check_rollover()
        self._failures[provider] += 1

    def get_daily_cost(self, provider: str) -> float:
        self._check_rollover()
        return self._costs.get(provider, 0.0)

    def get_avg_latency(self, provider: str) -> float:
        self._check_rollover()
        lats = self._latencies.get(provider, [])
        return sum(lats) / len(lats) if lats else 0.0

    def get_fallback_rate(self, provider: str) -> float:
        self._check_rollover()
        total = self._requests.get(provider, 0) + self._failures.get(provider, 0)
        if total == 0:
            return 0.0
        return self._failures.get(provider, 0) / total

    def get_snapshot(self) -> Dict[str, Any]:
        """Full snapshot for /metrics/cost endpoint."""
        self._check_rollover()
        providers = set(self._costs) | set(self._requests) | set(self._failures)
        result = {}
        for p in sorted(providers):
            result[p] = {
                "daily_cost_usd": round(self._costs.get(p, 0.0), 6),
                "requests_today": self._requests.get(p, 0),
                "failures_today": self._failures.get(p, 0),
                "avg_latency_ms": round(self.get_avg_latency(p), 2),
                "fallback_rate": round(self.get_fallback_rate(p), 4),
            }
        return result


# ─── Provider Scoring ───────────────────────────────────

@dataclass
class ProviderScore:
    name: str
    score: float
    reason: str
    cost_per_1k: float
    daily_cost: float
    avg_latency: float
    fallback_rate: float
    deprioritized: bool = False


def _estimate_cost(tokens: int, cost_per_1k: float) -> float:
    return (tokens / 1000.0) * cost_per_1k


def score_provider(
    tracker: CostTracker,
    name: str,
    cost_per_1k: float,
    daily_limit: float,
) -> ProviderScore:
    """
    Compute provider score. Lower = better.

    score = (avg_latency_normalized * weight_latency)
          + (fallback_rate * weight_fallback)
          + (cost_per_1k * weight_cost * 1000)

    Apply penalty if daily cost exceeds limit or latency spikes.
    """
    avg_lat = tracker.get_avg_latency(name)
    fb_rate = tracker.get_fallback_rate(name)
    daily_cost = tracker.get_daily_cost(name)

    # Normalize latency to 0-1 range (5000ms = 1.0)
    lat_norm = min(avg_lat / 5000.0, 2.0)

    base_score = (
        lat_norm * settings.WEIGHT_LATENCY +
        fb_rate * settings.WEIGHT_FALLBACK +
        cost_per_1k * settings.WEIGHT_COST * 1000
    )

    reason_parts = []
    deprioritized = False

    if daily_cost >= daily_limit:
        base_score += 10.0
        deprioritized = True
        reason_parts.append(f"cost_exceeded(${daily_cost:.4f}>=${daily_limit})")

    if avg_lat > settings.LATENCY_SPIKE_MS:
        base_score += 5.0
        deprioritized = True
        reason_parts.append(f"latency_spike({avg_lat:.0f}ms>{settings.LATENCY_SPIKE_MS}ms)")

    reason = ", ".join(reason_parts) if reason_parts else "nominal"

    return ProviderScore(
        name=name,
        score=round(base_score, 4),
        reason=reason,
        cost_per_1k=cost_per_1k,
        daily_cost=daily_cost,
        avg_latency=avg_lat,
        fallback_rate=fb_rate,
        deprioritized=deprioritized,
    )


# ─── Routing Service ───────────────────────────────────

RequestLogHook = Callable[..., Awaitable[None]]


class RoutingService:
    def __init__(
        self,
        providers: Optional[Dict[str, BaseModelAdapter]] = None,
        cost_tracker: Optional[CostTracker] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        sink: Optional[MetricsSink] = None,
        request_log: Optional[RequestLogHook] = None,
        cost_rates: Optional[Dict[str, float]] = None,
        daily_limits: Optional[Dict[str, float]] = None,
    ):
        if providers is None:
            from audit_swarm.adapters.groq import GroqAdapter
            from audit_swarm.adapters.openrouter import OpenRouterAdapter
            providers = {
                "openrouter": OpenRouterAdapter(),
                "groq": GroqAdapter(),
            }
        self.providers = providers
        self.cost_tracker = cost_tracker or CostTracker()
        self.breakers = breakers or default_breakers
        self.sink = sink or LoggingMetricsSink()
        self.request_log = request_log
        self.cost_rates = cost_rates or {
            "groq": settings.COST_PER_1K_GROQ,
            "openrouter": settings.COST_PER_1K_OPENROUTER,
        }
        self.daily_limits = daily_limits or {
            "groq": settings.DAILY_COST_LIMIT_GROQ,
            "openrouter": settings.DAILY_COST_LIMIT_OPENROUTER,
        }

    def _breaker(self, provider: str):
        return self.breakers.get(f"reasoning:{provider}")

    def _score(self, name: str) -> ProviderScore:
        return score_provider(
            self.cost_tracker,
            name=name,
            cost_per_1k=self.cost_rates.get(name, 0.0),
            daily_limit=self.daily_limits.get(name, float("inf")),
        )

    def evaluate_policy(self) -> List[ProviderScore]:
        """Score all providers and return sorted (best first). Open circuits sort last."""
        scores = [self._score(name) for name in self.providers]
        for s in scores:
            if self._breaker(s.name).state == BreakerState.open:
                s.score += 100.0
                s.deprioritized = True
                s.reason = "circuit_open" if s.reason == "nominal" else f"{s.reason}, circuit_open"
        scores.sort(key=lambda s: s.score)
        return scores

    async def _log(self, request: ReasoningRequest, **fields) -> None:
        if self.request_log is None:
            return
        try:
            await self.request_log(
                prompt=request.prompt[:2000],
                job_id=request.job_id,
                stage=request.stage,
                role=request.role,
                **fields,
            )
        except Exception as e:
            logger.error(f"[Routing] Failed to log request: {e}")

    async def route_request(self, request: ReasoningRequest) -> Dict[str, Any]:
        """
        Scores providers → tries best first → falls back to next.
        Returns result dict with cost metadata.
        """
        start_time = time.time()

        if request.preferred_provider and request.preferred_provider in self.providers:
            scores = [self._score(request.preferred_provider)]
            logger.info(f"[Routing] Explicit provider requested: {request.preferred_provider}")
        else:
            scores = self.evaluate_policy()
            logger.info(
                f"[Routing] Provider scores: "
                + ", ".join(f"{s.name}={s.score}({'⚠' if s.deprioritized else '✓'})" for s in scores)
            )

        last_error: Optional[Exception] = None
        routing_reason = f"policy:{scores[0].name}({scores[0].reason})"
        tags = {"stage": request.stage or "unknown"}

        for i, ps in enumerate(scores):
            provider_name = ps.name
            adapter = self.providers[provider_name]
            breaker = self._breaker(provider_name)
            attempt_start = time.time()

            try:
                logger.info(f"[Routing] Attempting {provider_name} (score={ps.score}, reason={ps.reason})")

                result = await breaker.call(lambda: adapter.generate(
                    prompt=request.prompt,
                    system_prompt=request.system_prompt,
                    model=request.preferred_model,
                    max_tokens=request.max_tokens,
                    reasoning_budget=request.reasoning_budget,
                    temperature=request.temperature,
                ))

                latency_ms = (time.time() - start_time) * 1000
                tokens = result.get("tokens_used", 0) or 0
                est_cost = _estimate_cost(tokens, self.cost_rates.get(provider_name, 0.0))

                self.cost_tracker.record(provider_name, est_cost, latency_ms)
                self.sink.increment("reasoning.calls", tags={**tags, "provider": provider_name})
                self.sink.observe("reasoning.latency_ms", latency_ms, tags={**tags, "provider": provider_name})

                result["latency_ms"] = latency_ms
                result["fallback_used"] = i > 0
                result["tokens_used"] = tokens
                result["estimated_cost"] = round(est_cost, 8)
                result["routing_reason"] = routing_reason

                logger.info(
                    f"[Routing] ✓ {provider_name} | {latency_ms:.0f}ms | "
                    f"{tokens} tokens | ${est_cost:.6f} | "
                    f"daily_total=${self.cost_tracker.get_daily_cost(provider_name):.4f}"
                )

                await self._log(
                    request,
                    provider=provider_name,
                    model=result.get("model", "unknown"),
                    latency_ms=latency_ms,
                    fallback_used=i > 0,
                    tokens_used=tokens,
                    estimated_cost=est_cost,
                    routing_reason=routing_reason,
                )
                return result

            except Exception as e:
                self.cost_tracker.record_failure(provider_name)
                self.sink.increment("reasoning.failures", tags={**tags, "provider": provider_name})
                logger.error(f"[Routing] ✗ {provider_name} failed: {e}")
                await self._log(
                    request,
                    provider=provider_name,
                    model=request.preferred_model or "unknown",
                    latency_ms=(time.time() - attempt_start) * 1000,
                    fallback_used=i > 0,
                    succeeded=False,
                    routing_reason=routing_reason,
                )
                last_error = e
                routing_reason = f"fallback:{provider_name}_failed→{scores[min(i+1, len(scores)-1)].name}"
                continue

        logger.critical("[Routing] All providers exhausted.")
        raise DependencyUnavailable(
            "reasoning", f"All reasoning providers unavailable: {last_error}"
        ) from last_error
