from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

from ..pipeline.session import SessionRegistry


router = APIRouter(prefix="/api/reviews", tags=["reviews"])


def _registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


@router.get("/pending")
def get_pending_review(request: Request) -> dict[str, Any]:
    pending = _registry(request).review_gate.pending
    return {"pending": pending.to_json() if pending else None}


def _decide(request: Request, review_id: str, approved: bool) -> dict[str, Any]:
    if not _registry(request).review_gate.resolve(review_id, approved):
        raise HTTPException(status_code=404, detail="Review not found")
    return {"ok": True, "review_id": review_id, "approved": approved}


@router.post("/{review_id}/approve")
def approve_review(review_id: str, request: Request) -> dict[str, Any]:
    return _decide(request, review_id, True)


@router.post("/{review_id}/reject")
def reject_review(review_id: str, request: Request) -> dict[str, Any]:
    return _decide(request, review_id, False)
