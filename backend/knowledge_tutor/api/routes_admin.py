"""Administrative routes for Knowledge Tutor."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from knowledge_tutor.api.dependencies import get_owner_id, get_reputation_ledger
from knowledge_tutor.core.metrics import metrics_response
from knowledge_tutor.db.reputation import ReputationLedger

router = APIRouter()


@router.get("/reputation", summary="Reputation total for the caller")
async def get_reputation(
    owner_id: str = Depends(get_owner_id),
    ledger: ReputationLedger = Depends(get_reputation_ledger),
) -> dict[str, int | str]:
    return {"user_id": owner_id, "total": ledger.total(owner_id)}


@router.get("/metrics", summary="Prometheus metrics")
async def get_metrics():
    return metrics_response()


__all__ = ["router"]
