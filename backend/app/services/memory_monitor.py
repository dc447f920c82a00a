"""
Memory monitor - samples process RSS and sheds caches under pressure.
"""

import asyncio
import gc
import logging
from enum import Enum
from typing import Callable, List, Optional

import psutil

from app.config.settings import MetadataSettings, get_settings
from app.models import MemoryUsage

logger = logging.getLogger(__name__)

MB = 1024 * 1024


class MemoryLevel(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


class MemoryMonitor:
    """
    Periodically checks resident memory against three thresholds.

    Above warning it logs, above critical it forces a garbage collection,
    and above emergency it also runs every registered cleanup callback.
    """

    def __init__(
        self,
        settings: Optional[MetadataSettings] = None,
        process: Optional[psutil.Process] = None,
    ):
        settings = settings or get_settings()
        self.warning_mb = settings.memory_warning_mb
        self.critical_mb = settings.memory_critical_mb
        self.emergency_mb = settings.memory_emergency_mb
        self._interval = settings.memory_check_interval
        self._process = process or psutil.Process()
        self._cleanup_callbacks: List[Callable[[], None]] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def is_monitoring(self) -> bool:
        return self._task is not None and not self._task.done()

    def register_cleanup_callback(self, callback: Callable[[], None]):
        """Register a callback run on emergency cleanup."""
        self._cleanup_callbacks.append(callback)

    def get_usage(self) -> MemoryUsage:
        """Get current process memory usage in MB."""
        info = self._process.memory_info()
        rss_mb = round(info.rss / MB)
        return MemoryUsage(
            rss_mb=rss_mb,
            vms_mb=round(info.vms / MB),
            warning_mb=self.warning_mb,
            critical_mb=self.critical_mb,
            emergency_mb=self.emergency_mb,
            level=self.classify(rss_mb).value,
        )

    def classify(self, rss_mb: int) -> MemoryLevel:
        if rss_mb > self.emergency_mb:
            return MemoryLevel.EMERGENCY
        if rss_mb > self.critical_mb:
            return MemoryLevel.CRITICAL
        if rss_mb > self.warning_mb:
            return MemoryLevel.WARNING
        return MemoryLevel.NORMAL

    def is_emergency(self) -> bool:
        return self.classify(self.get_usage().rss_mb) is MemoryLevel.EMERGENCY

    def perform_emergency_cleanup(self) -> int:
        """
        Run every cleanup callback, then collect garbage.

        A failing callback is logged and does not stop the others.

        Returns:
            Number of callbacks that completed.
        """
        logger.warning("Memory usage critical, performing emergency cleanup")
        completed = 0
        for index, callback in enumerate(self._cleanup_callbacks, start=1):
            try:
                callback()
                completed += 1
            except Exception as e:
                logger.error(f"Emergency cleanup {index} failed: {e}")
        gc.collect()
        logger.info(f"Memory after emergency cleanup: {self.get_usage().rss_mb}MB")
        return completed

    def check(self) -> MemoryLevel:
        """Sample memory once and react to the current level."""
        usage = self.get_usage()
        level = MemoryLevel(usage.level)

        if level is MemoryLevel.EMERGENCY:
            self.perform_emergency_cleanup()
        elif level is MemoryLevel.CRITICAL:
            logger.warning(
                f"Memory usage critical: {usage.rss_mb}MB (threshold: {self.critical_mb}MB)"
            )
            gc.collect()
        elif level is MemoryLevel.WARNING:
            logger.info(f"Memory usage high: {usage.rss_mb}MB")
        return level

    async def _monitor_loop(self):
        while True:
            await asyncio.sleep(self._interval)
            try:
                self.check()
            except psutil.Error as e:
                logger.error(f"Memory check failed: {e}")

    def start(self):
        """Start the background sampling task."""
        if self.is_monitoring:
            return
        self._task = asyncio.get_running_loop().create_task(self._monitor_loop())
        logger.info(f"Memory monitoring started (every {self._interval:g}s)")

    async def stop(self):
        """Stop the background sampling task."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Memory monitoring stopped")
