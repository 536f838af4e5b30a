"""巡检 API."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from magnetsync.api.deps import get_context
from magnetsync.context import AppContext
from magnetsync.core.reconciler import SweepInProgress, SweepResult

router = APIRouter(prefix="/api/sync", tags=["sync"])


def _result_to_dict(result: SweepResult) -> dict[str, Any]:
    refresh = result.refresh
    return {
        "total": refresh.total,
        "success": refresh.success,
        "failed": refresh.failed,
        "skipped": refresh.skipped,
        "total_new_items": refresh.total_new_items,
        "results": [
            {
                "subscription_id": r.subscription_id,
                "success": r.success,
                "new_items": r.new_items,
                "skipped": r.skipped,
                "error": r.error,
            }
            for r in refresh.results
        ],
        "submissions": {
            "total": result.submissions.total,
            "success": result.submissions.success,
            "failed": result.submissions.failed,
            "skipped": result.submissions.skipped,
        },
        "polls": {
            "total": result.polls.total,
            "completed": result.polls.completed,
            "failed": result.polls.failed,
            "in_progress": result.polls.in_progress,
            "errors": result.polls.errors,
        },
        "started_at": result.started_at.isoformat(),
        "completed_at": result.completed_at.isoformat() if result.completed_at else None,
    }


@router.post("")
async def trigger_sweep(
    force: bool = Query(False, description="忽略刷新间隔"),
    context: AppContext = Depends(get_context),
) -> dict:
    """触发一次完整巡检."""
    try:
        result = await context.reconciler.run_sweep(forced=force)
    except SweepInProgress as e:
        raise HTTPException(status_code=409, detail=str(e)) from e

    return _result_to_dict(result)


@router.get("/status")
async def get_sweep_status(
    context: AppContext = Depends(get_context),
) -> dict:
    """获取巡检状态."""
    last = context.reconciler.last_result
    return {
        "running": context.reconciler.is_running,
        "last_result": _result_to_dict(last) if last else None,
    }
