"""Read-only reporting routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from abjudge.api.deps import get_store
from abjudge.api.schemas import AbTestOut, RunningTestOut
from abjudge.errors import StoreUnavailable
from abjudge.repos.ab_test_repo import AbTestStore
from abjudge.services.analytics import list_completed_results, list_running_tests, performance_analytics

router = APIRouter(tags=["reports"])


@router.get("/running", response_model=list[RunningTestOut])
def running_endpoint(store: AbTestStore = Depends(get_store)):
    try:
        summaries = list_running_tests(store)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail="Store unavailable") from e
    return [RunningTestOut(test=AbTestOut.from_test(s.test), variant_count=s.variant_count) for s in summaries]


@router.get("/results", response_model=list[AbTestOut])
def results_endpoint(store: AbTestStore = Depends(get_store)):
    try:
        completed = list_completed_results(store)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail="Store unavailable") from e
    return [AbTestOut.from_test(r.test, variants=list(r.variants)) for r in completed]


@router.get("/analytics")
def analytics_endpoint(store: AbTestStore = Depends(get_store)) -> dict:
    try:
        return performance_analytics(store).to_dict()
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail="Store unavailable") from e
