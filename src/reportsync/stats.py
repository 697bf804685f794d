"""Queue statistics and health reporting."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from .models import ItemStatus, QueueItem, QueueStats, utcnow


def compute_queue_stats(items: Iterable[QueueItem]) -> QueueStats:
    """Project a queue snapshot onto status counts.

    ``completed`` is always 0 because delivered items are removed.
    """
    stats = QueueStats()
    for item in items:
        stats.total += 1
        stats.retry_count += item.retry_count
        if item.status == ItemStatus.PENDING:
            stats.pending += 1
        elif item.status == ItemStatus.PROCESSING:
            stats.processing += 1
        elif item.status == ItemStatus.FAILED:
            stats.failed += 1
    return stats


@dataclass
class HealthThresholds:
    max_failed: int = 10
    max_pending: int = 100
    max_total_retries: int = 50


def collect_queue_health(
    stats: QueueStats,
    *,
    online: Optional[bool] = None,
    syncing: bool = False,
    thresholds: Optional[HealthThresholds] = None,
    store_warning: Optional[str] = None,
) -> Dict[str, Any]:
    """Summarize queue health for operators."""

    limits = thresholds or HealthThresholds()
    issues: List[str] = []

    if stats.failed > limits.max_failed:
        issues.append("High number of failed items")
    if stats.pending > limits.max_pending:
        issues.append("Large queue backlog")
    if stats.retry_count > limits.max_total_retries:
        issues.append("High retry count indicates persistent failures")
    if store_warning:
        issues.append(f"Queue store warning: {store_warning}")

    return {
        "status": "warning" if issues else "healthy",
        "timestamp": utcnow().isoformat(),
        "online": online,
        "syncing": syncing,
        "stats": stats.to_dict(),
        "issues": issues,
    }


__all__ = ["HealthThresholds", "collect_queue_health", "compute_queue_stats"]
