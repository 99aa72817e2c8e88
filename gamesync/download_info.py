"""Progress, speed and ETA tracking for multi-job game downloads.

A download is split in jobs (usually one per depot). Progress is computed
from byte counts once the total size is known and from the weighted job
fractions before that. The byte count is persisted next to the game files
so a download that died with the process can be resumed.
"""

import concurrent.futures
import math
import os
import threading
import time
from collections import deque
from datetime import timedelta
from enum import Enum
from typing import Callable, Deque, Dict, List, NamedTuple, Optional, Tuple

from gamesync import settings
from gamesync.util.log import logger
from gamesync.util.strings import format_time_left
from gamesync.util.system import write_file_atomically

# `time.time` can skip ahead or even go backwards if the current
# system time is changed between invocations. Use `time.monotonic`
# so we never show negative download speeds.
get_time = time.monotonic

PERSISTENCE_DIR = ".DownloadInfo"
PERSISTENCE_FILE = "bytes_downloaded"

SPEED_SAMPLE_RETENTION = 30.0  # seconds
CURRENT_SPEED_WINDOW = 5.0
ETA_SPEED_WINDOW = 30.0
ETA_SMOOTHING_FACTOR = 0.3
PROGRESS_EMIT_INTERVAL = 0.1

_PERSISTENCE_IO_LOCK = threading.Lock()


class DownloadPhase(Enum):
    UNKNOWN = "unknown"
    PREPARING = "preparing"
    DOWNLOADING = "downloading"
    PAUSED = "paused"
    FAILED = "failed"
    VERIFYING = "verifying"
    PATCHING = "patching"
    APPLYING_DATA = "applying_data"
    FINALIZING = "finalizing"
    COMPLETE = "complete"

    @classmethod
    def from_message(cls, message: str) -> Optional["DownloadPhase"]:
        """Guess the phase from a free form status message sent by a depot downloader"""
        lower = message.lower()
        for phase, keywords in _PHASE_KEYWORDS:
            if any(keyword in lower for keyword in keywords):
                return phase
        return None


# Order matters, "failed to verify" is a failure before being a verification.
_PHASE_KEYWORDS = [
    (DownloadPhase.FAILED, ("fail", "error", "abort", "cancelled")),
    (DownloadPhase.PAUSED, ("pause",)),
    (DownloadPhase.VERIFYING, ("verify", "validat", "checksum", "hash", "integrity", "scan")),
    (DownloadPhase.PATCHING, ("patch", "delta", "differential")),
    (DownloadPhase.FINALIZING, ("final", "finishing", "commit", "cleanup", "clean up", "register", "ready")),
    (
        DownloadPhase.APPLYING_DATA,
        ("decompress", "extract", "unpack", "decrypt", "assemble", "apply", "install", "writing", "moving", "processing"),
    ),
    (
        DownloadPhase.PREPARING,
        ("queue", "waiting", "prepar", "initial", "manifest", "resolve", "starting", "setup", "init"),
    ),
    (
        DownloadPhase.DOWNLOADING,
        ("download", "retriev", "fetch", "allocat", "reserve", "chunk", "transfer", "cdn"),
    ),
]


class SpeedSample(NamedTuple):
    timestamp: float
    cumulative_bytes: int


def get_persistence_path(app_dir: str) -> str:
    return os.path.join(app_dir, PERSISTENCE_DIR, PERSISTENCE_FILE)


def load_persisted_bytes(app_dir: str) -> int:
    """Return the byte count saved for a download in app_dir, 0 if there is
    none or it can't be read."""
    path = get_persistence_path(app_dir)
    try:
        with open(path, encoding="utf-8") as persisted_file:
            content = persisted_file.read().strip()
    except FileNotFoundError:
        return 0
    except OSError as ex:
        logger.error("Failed to read download progress from %s: %s", path, ex)
        return 0
    if not content:
        return 0
    try:
        return max(int(content), 0)
    except ValueError:
        logger.warning("Ignoring corrupt download progress file %s", path)
        return 0


def clear_persisted_bytes(app_dir: str) -> None:
    path = get_persistence_path(app_dir)
    with _PERSISTENCE_IO_LOCK:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as ex:
            logger.error("Failed to clear download progress in %s: %s", app_dir, ex)


class DownloadProgressTracker:
    """Tracks bytes, speed and ETA of a download made of one or more jobs.

    Byte updates can come from several worker threads; every read and write
    of the byte counters and speed samples happens under one lock.
    """

    def __init__(
        self,
        job_count: int = 1,
        game_id: Optional[str] = None,
        app_dir: Optional[str] = None,
        persist_interval: Optional[float] = None,
    ) -> None:
        self.job_count = job_count
        self.game_id = game_id
        self.app_dir = app_dir
        if persist_interval is None:
            persist_interval = settings.PROGRESS_PERSIST_INTERVAL_MS / 1000
        self.persist_interval = persist_interval

        self._lock = threading.Lock()
        self._progresses: List[float] = [0.0] * job_count
        self._weights: List[float] = [1.0] * job_count
        self._weight_sum = float(job_count)
        self._total_expected_bytes = 0
        self._bytes_downloaded = 0
        self._speed_samples: Deque[SpeedSample] = deque()
        self._ema_speed: Optional[float] = None
        self._active = True
        self._last_persist_time: Optional[float] = None

        self.status = DownloadPhase.UNKNOWN
        self.status_message: Optional[str] = None

        self._job = None
        self._listeners: List[Callable[[float], None]] = []
        self._last_emit_time = 0.0
        self._last_emitted_progress = -1.0

    def __repr__(self):
        return "download progress for %s" % self.game_id

    # Bytes

    def set_total_expected_bytes(self, total: int) -> None:
        with self._lock:
            self._total_expected_bytes = max(total, 0)
            if self._total_expected_bytes:
                self._bytes_downloaded = min(self._bytes_downloaded, self._total_expected_bytes)

    def initialize_bytes_downloaded(self, value: int) -> None:
        """Seed the byte count, used when resuming a download"""
        with self._lock:
            value = max(value, 0)
            if self._total_expected_bytes:
                value = min(value, self._total_expected_bytes)
            self._bytes_downloaded = value

    def resume_from_disk(self) -> int:
        """Seed the byte count from the progress saved in app_dir"""
        if not self.app_dir:
            return 0
        persisted = load_persisted_bytes(self.app_dir)
        self.initialize_bytes_downloaded(persisted)
        if persisted:
            logger.info("Resuming download of %s from %d bytes", self.game_id, persisted)
        return self.get_bytes_downloaded()

    def update_bytes_downloaded(self, delta: int, timestamp: Optional[float] = None) -> None:
        """Add delta bytes to the count and record a speed sample.

        A zero or negative delta leaves the count alone but still records a
        sample, so the measured speed drops while the download stalls.
        """
        if not self._active:
            return
        if timestamp is None:
            timestamp = get_time()
        with self._lock:
            current = self._bytes_downloaded
            if delta > 0:
                current += delta
            current = max(current, 0)
            if self._total_expected_bytes:
                current = min(current, self._total_expected_bytes)
            self._bytes_downloaded = current
            self._add_speed_sample(timestamp, current)
        if delta > 0:
            self.persist_progress_snapshot()
            self.emit_progress_change()

    def get_bytes_downloaded(self) -> int:
        with self._lock:
            return self._bytes_downloaded

    def get_total_expected_bytes(self) -> int:
        with self._lock:
            return self._total_expected_bytes

    def get_bytes_progress(self) -> Tuple[int, int]:
        """Return (downloaded, total), or (0, 0) while the total is unknown"""
        with self._lock:
            if not self._total_expected_bytes:
                return 0, 0
            return min(self._bytes_downloaded, self._total_expected_bytes), self._total_expected_bytes

    # Job progress

    def set_progress(self, amount: float, job_index: int = 0) -> None:
        self._progresses[job_index] = min(max(amount, 0.0), 1.0)
        self.emit_progress_change()

    def set_weight(self, job_index: int, weight_bytes: int) -> None:
        self._weights[job_index] = float(max(weight_bytes, 0))
        self._weight_sum = sum(self._weights)

    def get_progress(self) -> float:
        """Return the overall progress between 0.0 and 1.0"""
        with self._lock:
            total = self._total_expected_bytes
            downloaded = self._bytes_downloaded
        if total > 0:
            return min(max(downloaded / total, 0.0), 1.0)
        if not self._weight_sum:
            return 0.0
        weighted = sum(progress * weight for progress, weight in zip(self._progresses, self._weights))
        return weighted / self._weight_sum

    # Speed and ETA

    def _add_speed_sample(self, timestamp: float, cumulative_bytes: int) -> None:
        # Must be called with self._lock held
        if self._speed_samples and timestamp < self._speed_samples[-1].timestamp:
            return
        self._speed_samples.append(SpeedSample(timestamp, cumulative_bytes))
        cutoff = timestamp - SPEED_SAMPLE_RETENTION
        while self._speed_samples and self._speed_samples[0].timestamp < cutoff:
            self._speed_samples.popleft()

    def _get_window(self, window_seconds: float) -> List[SpeedSample]:
        # Must be called with self._lock held
        if not self._speed_samples:
            return []
        cutoff = self._speed_samples[-1].timestamp - window_seconds
        return [sample for sample in self._speed_samples if sample.timestamp >= cutoff]

    def reset_speed_tracking(self) -> None:
        with self._lock:
            self._speed_samples.clear()
            self._ema_speed = None

    def get_current_download_speed(self) -> Optional[int]:
        """Return the speed in bytes per second over the last few seconds"""
        if not self._active:
            return None
        with self._lock:
            samples = self._get_window(CURRENT_SPEED_WINDOW)
        if len(samples) < 2:
            return None
        elapsed = samples[-1].timestamp - samples[0].timestamp
        if elapsed <= 0:
            return None
        delta = samples[-1].cumulative_bytes - samples[0].cumulative_bytes
        if delta <= 0:
            return 0
        return int(delta / elapsed)

    def get_estimated_time_remaining(self, window_seconds: float = ETA_SPEED_WINDOW) -> Optional[timedelta]:
        """Return the time left based on the smoothed recent speed, or None
        if there isn't enough information to tell."""
        if not self._active:
            return None
        if self.status not in (DownloadPhase.UNKNOWN, DownloadPhase.DOWNLOADING):
            return None
        with self._lock:
            total = self._total_expected_bytes
            downloaded = self._bytes_downloaded
            if total <= 0 or downloaded >= total:
                return None
            samples = self._get_window(window_seconds)
            if len(samples) < 2:
                return None
            first, last = samples[0], samples[-1]
            elapsed = last.timestamp - first.timestamp
            if elapsed <= 0:
                return None
            bytes_delta = last.cumulative_bytes - first.cumulative_bytes
            if bytes_delta <= 0:
                return None
            speed = bytes_delta / elapsed
            if speed <= 0 or not math.isfinite(speed):
                return None
            if self._ema_speed is None:
                self._ema_speed = speed
            else:
                self._ema_speed = ETA_SMOOTHING_FACTOR * speed + (1 - ETA_SMOOTHING_FACTOR) * self._ema_speed
            smoothed_speed = self._ema_speed

        if smoothed_speed <= 0:
            return None
        seconds = (total - downloaded) / smoothed_speed
        if math.isnan(seconds) or math.isinf(seconds) or seconds <= 0:
            return None
        return timedelta(seconds=seconds)

    def get_time_left(self) -> str:
        """Return the time left as a string, '???' if unknown"""
        eta = self.get_estimated_time_remaining()
        if eta is None:
            return "???"
        return format_time_left(eta.total_seconds())

    # State

    def is_active(self) -> bool:
        return self._active

    def set_active(self, active: bool) -> None:
        self._active = active
        if not active:
            self.reset_speed_tracking()

    def update_status(self, status: DownloadPhase, message: Optional[str] = None) -> None:
        previous_status = self.status
        if previous_status == status and message is None:
            return
        self.status = status
        # Speed measured during another phase says nothing about the transfer rate
        if (
            status == DownloadPhase.DOWNLOADING
            and previous_status not in (DownloadPhase.DOWNLOADING, DownloadPhase.UNKNOWN)
        ):
            self.reset_speed_tracking()
        self.status_message = message

    def update_status_message(self, message: Optional[str]) -> None:
        """Store a status message, updating the phase if the message tells it"""
        self.status_message = message
        if message:
            phase = DownloadPhase.from_message(message)
            if phase:
                self.update_status(phase, message)

    def set_download_job(self, job) -> None:
        """Attach the thread (jobs.AsyncCall) or future doing the transfer"""
        self._job = job

    def _stop_job(self) -> None:
        job = self._job
        if job is None:
            return
        if hasattr(job, "stop"):
            job.stop()
        elif hasattr(job, "cancel"):
            job.cancel()

    def await_completion(self, timeout: float = 5.0) -> None:
        """Wait up to timeout seconds for the job to finish. The job keeps
        running if it doesn't make it in time."""
        job = self._job
        if job is None:
            return
        if isinstance(job, concurrent.futures.Future):
            concurrent.futures.wait([job], timeout=timeout)
        else:
            job.join(timeout)

    def cancel(self, reason: str = "Cancelled by user") -> None:
        logger.info("Download of %s cancelled: %s", self.game_id, reason)
        self.persist_progress_snapshot(force=True)
        self.set_active(False)
        self._stop_job()

    def failed_to_download(self) -> None:
        logger.error("Download of %s failed at %d bytes", self.game_id, self.get_bytes_downloaded())
        self.persist_progress_snapshot(force=True)
        self.status = DownloadPhase.FAILED
        self.set_active(False)
        self._stop_job()

    def complete(self) -> None:
        self.status = DownloadPhase.COMPLETE
        self.set_active(False)
        if self.app_dir:
            clear_persisted_bytes(self.app_dir)
        self._notify_listeners(self.get_progress())

    # Persistence

    def persist_progress_snapshot(self, force: bool = False) -> None:
        """Write the byte count to the sidecar file. Failures are logged and
        never interrupt the download."""
        if not self.app_dir:
            return
        now = get_time()
        if (
            not force
            and self.persist_interval
            and self._last_persist_time is not None
            and now - self._last_persist_time < self.persist_interval
        ):
            return
        path = get_persistence_path(self.app_dir)
        with _PERSISTENCE_IO_LOCK:
            try:
                os.makedirs(os.path.dirname(path), exist_ok=True)
                write_file_atomically(path, str(self.get_bytes_downloaded()))
                self._last_persist_time = now
            except OSError as ex:
                logger.error("Failed to persist download progress to %s: %s", path, ex)

    # Listeners

    def add_progress_listener(self, listener: Callable[[float], None]) -> None:
        self._listeners.append(listener)

    def remove_progress_listener(self, listener: Callable[[float], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit_progress_change(self) -> None:
        now = get_time()
        progress = self.get_progress()
        if not (progress >= 1.0 or progress <= 0.0):
            if now - self._last_emit_time < PROGRESS_EMIT_INTERVAL:
                return
            if abs(progress - self._last_emitted_progress) < 0.001:
                return
        self._last_emit_time = now
        self._last_emitted_progress = progress
        self._notify_listeners(progress)

    def _notify_listeners(self, progress: float) -> None:
        for listener in list(self._listeners):
            try:
                listener(progress)
            except Exception as ex:  # pylint: disable=broad-except
                logger.exception("Progress listener %s failed: %s", listener, ex)


class DownloadRegistry:
    """Downloads currently known to the launcher, by game id"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._downloads: Dict[str, DownloadProgressTracker] = {}

    def add(self, tracker: DownloadProgressTracker) -> None:
        with self._lock:
            self._downloads[str(tracker.game_id)] = tracker

    def get(self, game_id) -> Optional[DownloadProgressTracker]:
        with self._lock:
            return self._downloads.get(str(game_id))

    def remove(self, game_id) -> None:
        with self._lock:
            self._downloads.pop(str(game_id), None)

    def is_downloading(self, game_id) -> bool:
        """True while a download for the game is in flight, in which case its
        files aren't ready to be launched or synced."""
        tracker = self.get(game_id)
        return bool(tracker and tracker.is_active())

    def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel every active download and give each a moment to stop"""
        with self._lock:
            trackers = list(self._downloads.values())
        for tracker in trackers:
            if tracker.is_active():
                tracker.cancel("Shutting down")
            tracker.await_completion(timeout)
