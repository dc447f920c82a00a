"""
Memory status API router.
"""
from fastapi import APIRouter, Request

from app.models import MemoryUsage

router = APIRouter()


@router.get("", response_model=MemoryUsage)
async def get_memory_usage(request: Request):
    """Get current process memory usage and thresholds."""
    return request.app.state.memory_monitor.get_usage()


@router.post("/cleanup")
async def force_cleanup(request: Request):
    """Run the emergency cleanup now, regardless of current usage."""
    monitor = request.app.state.memory_monitor
    before = monitor.get_usage()
    completed = monitor.perform_emergency_cleanup()
    after = monitor.get_usage()
    return {
        "success": True,
        "callbacks_completed": completed,
        "before_mb": before.rss_mb,
        "after_mb": after.rss_mb,
    }
