"""
Publishes attributed GPU memory usage as per-pod gauges.

Series that were published in the previous cycle but are absent from the
current one are removed, so pods and processes that went away stop being
reported instead of freezing at their last value.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from .metrics import ExporterMetrics
from .models import AttributedUsage

logger = logging.getLogger(__name__)

SeriesKey = tuple[str, str]


@dataclass
class SeriesValue:
    used_memory_bytes: int = 0
    # Only devices with a positive total count towards the percentage
    percent_used_bytes: int = 0
    device_total_bytes: int = 0

    @property
    def percent(self) -> Optional[float]:
        if self.device_total_bytes <= 0:
            return None
        return self.percent_used_bytes * 100 / self.device_total_bytes


def merge_records(records: Iterable[AttributedUsage]) -> dict[SeriesKey, SeriesValue]:
    """
    Collapse records sharing a (pid, pod) series key.

    A process holding memory on several GPUs yields one record per device;
    bytes are summed and the percentage is taken against the summed totals
    of those devices. Devices without a usable total add to the bytes only.
    """
    merged: dict[SeriesKey, SeriesValue] = {}
    for record in records:
        value = merged.setdefault(record.series_key, SeriesValue())
        value.used_memory_bytes += record.used_memory_bytes
        if record.percent_of_device_total is not None:
            value.percent_used_bytes += record.used_memory_bytes
            value.device_total_bytes += record.device_total_bytes
    return merged


class MetricsPublisher:
    """
    Writes attributed usage into the gauge families.

    Keeps the series keys written in the previous cycle; nothing else
    survives from one cycle to the next.
    """

    def __init__(self, metrics: ExporterMetrics):
        self.metrics = metrics
        self._published_used: set[SeriesKey] = set()
        self._published_percent: set[SeriesKey] = set()

    def publish(self, records: Iterable[AttributedUsage]) -> int:
        """
        Set gauges for this cycle's records and drop stale series.

        Returns:
            Number of series published
        """
        merged = merge_records(records)

        used_keys: set[SeriesKey] = set()
        percent_keys: set[SeriesKey] = set()
        for key, value in merged.items():
            self.metrics.memory_used.labels(*key).set(value.used_memory_bytes)
            used_keys.add(key)

            percent = value.percent
            if percent is not None:
                self.metrics.memory_percent.labels(*key).set(percent)
                percent_keys.add(key)

        self._remove_stale(self.metrics.memory_used, self._published_used - used_keys)
        self._remove_stale(
            self.metrics.memory_percent, self._published_percent - percent_keys
        )

        self._published_used = used_keys
        self._published_percent = percent_keys
        return len(used_keys)

    def published_series(self) -> set[SeriesKey]:
        """Series keys currently live in the used-memory family."""
        return set(self._published_used)

    def _remove_stale(self, gauge, stale: set[SeriesKey]):
        for key in sorted(stale):
            try:
                gauge.remove(*key)
            except KeyError:
                # Already gone from the registry
                pass
            logger.debug(f"Removed stale series pid={key[0]} pod={key[1]}")
