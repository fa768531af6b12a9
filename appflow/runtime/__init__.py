"""Runtime: app management, execution lifecycle, guardrails, statistics and events."""

from appflow.runtime.app_runtime import AppRuntime
from appflow.runtime.event_bus import EventBus, EventType, FlowEvent
from appflow.runtime.guardrails import GuardrailEnforcer
from appflow.runtime.rate_limiter import RateLimitResult, TokenBucketLimiter
from appflow.runtime.statistics import StatisticsAggregator, running_average

__all__ = [
    "AppRuntime",
    "EventBus",
    "EventType",
    "FlowEvent",
    "GuardrailEnforcer",
    "RateLimitResult",
    "StatisticsAggregator",
    "TokenBucketLimiter",
    "running_average",
]
