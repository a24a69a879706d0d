"""
Usage/cost ledger.

Every outbound provider call appends one UsageRecord with a flat per-endpoint
cost estimate. Ledger writes never raise: a failing store is logged and the
pipeline carries on.
"""

import logging
from typing import Optional

from .pipeline.models import CostSummary, UsageCreate, UsageRecord, UsageStatus
from .pipeline.store import JobStore

logger = logging.getLogger(__name__)

# USD per request
COST_MULTIPLIERS: dict[str, float] = {
    "replicate/video-generation": 0.05,
    "replicate/face-swap": 0.03,
    "replicate/face-extraction": 0.02,
    "replicate/status-check": 0.001,
    "fal/train": 0.10,
    "fal/check-training": 0.001,
    "fal/generate": 0.05,
    "fal/check-generation": 0.001,
    "default": 0.01,
}


def estimate_cost(endpoint: str) -> float:
    return COST_MULTIPLIERS.get(endpoint, COST_MULTIPLIERS["default"])


class CostTracker:
    def __init__(self, store: JobStore):
        self._store = store

    async def track(
        self,
        user_id: int,
        endpoint: str,
        request_id: Optional[str],
        request_size: int,
        response_size: int,
        status: UsageStatus,
        error_message: Optional[str] = None,
        duration_ms: int = 0,
    ) -> Optional[UsageRecord]:
        """Append one usage record. Returns None if the ledger write failed."""
        usage = UsageCreate(
            user_id=user_id,
            endpoint=endpoint,
            request_id=request_id,
            request_payload_size=request_size,
            response_payload_size=response_size,
            status=status,
            error_message=error_message,
            duration_ms=duration_ms,
            estimated_cost=estimate_cost(endpoint),
        )
        try:
            return await self._store.create_usage(usage)
        except Exception as e:
            logger.error(f"Error tracking API usage for {endpoint} (user {user_id}): {e}")
            return None

    async def user_costs(self, user_id: int) -> CostSummary:
        try:
            return await self._store.usage_summary(user_id)
        except Exception as e:
            logger.error(f"Error getting costs for user {user_id}: {e}")
            return CostSummary()

    async def total_costs(self) -> float:
        try:
            return await self._store.total_cost()
        except Exception as e:
            logger.error(f"Error getting total costs: {e}")
            return 0.0
