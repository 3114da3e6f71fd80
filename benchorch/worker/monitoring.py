"""Resource sampling for worker health reports."""

import os
import time
from dataclasses import dataclass
from threading import Event, Lock, Thread
from typing import Any, Dict, List, Optional

import numpy as np
import psutil

from ..utils.logging import get_logger

logger = get_logger('worker.monitoring')


@dataclass
class ResourceSample:
    """One resource sample."""
    timestamp: float
    cpu_percent: float
    memory_percent: float
    process_rss_mb: float


class SystemMonitor:
    """Samples host and process resource usage on a background thread.

    Samples are kept in a bounded window; ``snapshot()`` describes the
    latest sample and ``get_stats()`` aggregates the window.
    """

    def __init__(self, interval: float = 1.0, window: int = 300):
        """Initialize system monitor.

        Args:
            interval: Sampling interval in seconds
            window: Number of samples retained
        """
        self.interval = interval
        self.window = window
        self.samples: List[ResourceSample] = []
        self._lock = Lock()
        self._stop_event = Event()
        self._thread: Optional[Thread] = None
        self._process = psutil.Process(os.getpid())

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start sampling."""
        if self.running:
            logger.warning("System monitor is already running")
            return

        self._stop_event.clear()
        psutil.cpu_percent(interval=None)
        self._thread = Thread(target=self._sample_loop, name="system-monitor", daemon=True)
        self._thread.start()
        logger.debug("System monitoring started")

    def stop(self) -> None:
        """Stop sampling."""
        if not self.running:
            return

        self._stop_event.set()
        self._thread.join(timeout=5.0)
        self._thread = None
        logger.debug(f"System monitoring stopped. Collected {len(self.samples)} samples")

    def sample(self) -> ResourceSample:
        """Take one sample and add it to the window."""
        sample = ResourceSample(
            timestamp=time.time(),
            cpu_percent=psutil.cpu_percent(interval=None),
            memory_percent=psutil.virtual_memory().percent,
            process_rss_mb=self._process.memory_info().rss / (1024 * 1024),
        )
        with self._lock:
            self.samples.append(sample)
            if len(self.samples) > self.window:
                del self.samples[:-self.window]
        return sample

    def _sample_loop(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.sample()
            except psutil.Error as e:
                logger.error(f"Error collecting system metrics: {e}")

    def snapshot(self) -> Dict[str, Any]:
        """Latest sample, taking one if none exists yet."""
        with self._lock:
            latest = self.samples[-1] if self.samples else None
        if latest is None:
            latest = self.sample()
        return {
            'cpu_percent': latest.cpu_percent,
            'memory_percent': latest.memory_percent,
            'process_rss_mb': round(latest.process_rss_mb, 2),
            'cpu_count': psutil.cpu_count(),
            'sampled_at': latest.timestamp,
        }

    def get_stats(self, since: Optional[float] = None) -> Dict[str, Dict[str, float]]:
        """Aggregate samples taken at or after ``since``."""
        with self._lock:
            samples = [s for s in self.samples if since is None or s.timestamp >= since]
        if not samples:
            return {}

        cpu = np.array([s.cpu_percent for s in samples])
        memory = np.array([s.memory_percent for s in samples])
        rss = np.array([s.process_rss_mb for s in samples])
        return {
            'cpu': {
                'avg': float(np.mean(cpu)),
                'max': float(np.max(cpu)),
                'p95': float(np.percentile(cpu, 95)),
            },
            'memory': {
                'avg': float(np.mean(memory)),
                'max': float(np.max(memory)),
            },
            'process_rss_mb': {
                'avg': float(np.mean(rss)),
                'max': float(np.max(rss)),
            },
            'samples': {'count': float(len(samples))},
        }

    def __enter__(self):
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.stop()
