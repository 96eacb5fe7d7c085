# rule_scheduler/services/resource_monitor.py
import logging
import time
from typing import Optional

import psutil

from rule_scheduler.core.config import Settings, get_settings
from rule_scheduler.core.monitoring import SYSTEM_RESOURCES
from rule_scheduler.models.schemas import ResourceMetrics

logger = logging.getLogger(__name__)

BYTES_PER_MEGABIT = 125_000


class ResourceSampler:
    """Source of the host's current ResourceMetrics"""

    def sample(self) -> ResourceMetrics:
        raise NotImplementedError


class StaticResourceSampler(ResourceSampler):
    """Always reports the same metrics"""

    def __init__(self, metrics: Optional[ResourceMetrics] = None):
        self.metrics = metrics or ResourceMetrics()

    def sample(self) -> ResourceMetrics:
        return self.metrics.model_copy()


class PsutilResourceSampler(ResourceSampler):
    """Samples CPU, memory, disk and network through psutil.

    Disk and network are rates between consecutive samples, so the first
    sample reports them as zero.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._last_disk_bytes: Optional[int] = None
        self._last_net_bytes: Optional[int] = None
        self._last_sampled_at: Optional[float] = None
        # Prime cpu_percent so the next non-blocking call has a baseline
        psutil.cpu_percent(interval=None)

    def sample(self) -> ResourceMetrics:
        now = time.monotonic()
        cpu_percent = psutil.cpu_percent(interval=None)
        memory_info = psutil.virtual_memory()

        disk_bytes = self._disk_bytes()
        net_bytes = self._net_bytes()
        disk_io = network_io = 0.0

        if self._last_sampled_at is not None:
            elapsed = max(now - self._last_sampled_at, 1e-6)
            if disk_bytes is not None and self._last_disk_bytes is not None:
                disk_mb_per_s = (disk_bytes - self._last_disk_bytes) / elapsed / (1024 * 1024)
                disk_io = disk_mb_per_s / self.settings.disk_capacity_mb * 100
            if net_bytes is not None and self._last_net_bytes is not None:
                mbps = (net_bytes - self._last_net_bytes) / elapsed / BYTES_PER_MEGABIT
                network_io = mbps / self.settings.network_capacity_mbps * 100

        self._last_disk_bytes = disk_bytes
        self._last_net_bytes = net_bytes
        self._last_sampled_at = now

        metrics = ResourceMetrics(
            cpu_usage=cpu_percent,
            memory_usage=memory_info.percent,
            disk_io=max(disk_io, 0.0),
            network_io=max(network_io, 0.0),
            concurrent_tasks=0.0
        )

        SYSTEM_RESOURCES.labels(resource_type='cpu').set(metrics.cpu_usage)
        SYSTEM_RESOURCES.labels(resource_type='memory').set(metrics.memory_usage)
        SYSTEM_RESOURCES.labels(resource_type='disk_io').set(metrics.disk_io)
        SYSTEM_RESOURCES.labels(resource_type='network_io').set(metrics.network_io)
        return metrics

    @staticmethod
    def _disk_bytes() -> Optional[int]:
        counters = psutil.disk_io_counters()
        if counters is None:
            return None
        return counters.read_bytes + counters.write_bytes

    @staticmethod
    def _net_bytes() -> Optional[int]:
        counters = psutil.net_io_counters()
        if counters is None:
            return None
        return counters.bytes_sent + counters.bytes_recv
