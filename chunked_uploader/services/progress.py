"""
Progress tracking for active uploads.

One tracker per uploading record samples the registry on a fixed interval and
writes speed and remaining-time estimates back through the registry.
"""

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple

from chunked_uploader.models.upload import UploadRecord, UploadStatus
from chunked_uploader.services.registry import UploadRegistry
from chunked_uploader.services.upload_errors import UploadNotFoundError

logger = logging.getLogger(__name__)

SampleCallback = Callable[[UploadRecord], Awaitable[None]]


def estimate_uploaded_bytes(record: UploadRecord) -> float:
    """Uploaded chunk count scaled by the average chunk size."""
    if not record.total_count:
        return 0.0
    return record.uploaded_count * (record.file_size / record.total_count)


def calculate_upload_metrics(
    uploaded_bytes: float, total_bytes: float, elapsed_seconds: float
) -> Tuple[float, Optional[float]]:
    """
    Return ``(speed, remaining_time)`` in bytes/second and seconds.

    Speed falls back to 0 when it cannot be computed; remaining time is None
    (unknown) when it is undefined or negative.
    """
    if elapsed_seconds <= 0 or uploaded_bytes <= 0:
        return 0.0, None
    speed = uploaded_bytes / elapsed_seconds
    if not math.isfinite(speed) or speed <= 0:
        return 0.0, None
    remaining = (total_bytes - uploaded_bytes) / speed
    if not math.isfinite(remaining) or remaining < 0:
        return speed, None
    return speed, remaining


def format_file_size(num_bytes: float) -> str:
    if num_bytes <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(num_bytes)
    for unit in units:
        if value < 1024 or unit == units[-1]:
            break
        value /= 1024
    return f"{round(value, 2):g} {unit}"


def format_speed(bytes_per_second: float) -> str:
    return f"{format_file_size(bytes_per_second)}/s"


def format_time_remaining(seconds: Optional[float]) -> str:
    if seconds is None or not math.isfinite(seconds) or seconds < 0:
        return "Calculating..."
    seconds = int(round(seconds))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


class ProgressTracker:
    """Periodic speed/ETA sampler for a single upload."""

    def __init__(
        self,
        upload_id: str,
        registry: UploadRegistry,
        interval: float = 1.0,
        on_sample: Optional[SampleCallback] = None,
    ):
        self.upload_id = upload_id
        self.registry = registry
        self.interval = interval
        self.on_sample = on_sample

        self._task: Optional[asyncio.Task] = None
        self._start_time: float = 0.0
        self._baseline_bytes: float = 0.0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            logger.warning(f"Progress tracker already active for upload {self.upload_id}")
            return
        record = self.registry.require(self.upload_id)
        self._start_time = time.monotonic()
        # Bytes sent before this run (e.g. before a pause) do not count towards speed.
        self._baseline_bytes = estimate_uploaded_bytes(record)
        self._task = asyncio.create_task(self._sampling_loop())
        logger.debug(f"Started progress tracking for upload {self.upload_id}")

    def stop(self) -> None:
        """Tear the timer down immediately; safe to call from the status-changing step."""
        if self._task is None:
            return
        self._task.cancel()
        self._task = None
        logger.debug(f"Stopped progress tracking for upload {self.upload_id}")

    async def sample(self) -> Optional[UploadRecord]:
        record = self.registry.get(self.upload_id)
        if record is None or record.status != UploadStatus.UPLOADING:
            return None

        uploaded = estimate_uploaded_bytes(record)
        elapsed = time.monotonic() - self._start_time
        speed, _ = calculate_upload_metrics(uploaded - self._baseline_bytes, record.file_size, elapsed)
        remaining: Optional[float] = None
        if speed > 0:
            remaining = (record.file_size - uploaded) / speed
            if remaining < 0:
                remaining = None

        record = self.registry.update(self.upload_id, speed=speed, remaining_time=remaining)
        logger.debug(
            "Upload %s: %.1f%% at %s, %s remaining",
            self.upload_id,
            record.progress_percent,
            format_speed(speed),
            format_time_remaining(remaining),
        )
        if self.on_sample is not None:
            await self.on_sample(record)
        return record

    async def _sampling_loop(self):
        try:
            while True:
                await asyncio.sleep(self.interval)
                if await self.sample() is None:
                    break
        except asyncio.CancelledError:
            pass
        except UploadNotFoundError:
            logger.debug(f"Upload {self.upload_id} removed while tracking progress")
        except Exception as e:
            logger.error(f"Error in progress tracking for upload {self.upload_id}: {e}")


class ProgressManager:
    """Owns the progress trackers of all active uploads."""

    def __init__(self, registry: UploadRegistry, interval: float = 1.0, on_sample: Optional[SampleCallback] = None):
        self.registry = registry
        self.interval = interval
        self.on_sample = on_sample
        self._trackers: Dict[str, ProgressTracker] = {}

    def start(self, upload_id: str) -> ProgressTracker:
        self.stop(upload_id)
        tracker = ProgressTracker(upload_id, self.registry, self.interval, self.on_sample)
        self._trackers[upload_id] = tracker
        tracker.start()
        return tracker

    def stop(self, upload_id: str) -> None:
        tracker = self._trackers.pop(upload_id, None)
        if tracker is not None:
            tracker.stop()

    def is_tracking(self, upload_id: str) -> bool:
        tracker = self._trackers.get(upload_id)
        return tracker is not None and tracker.running

    def stop_all(self) -> None:
        for upload_id in list(self._trackers):
            self.stop(upload_id)
