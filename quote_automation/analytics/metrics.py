"""Run metrics"""

from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Optional

from loguru import logger


def _empty_metrics() -> Dict[str, Any]:
    return {
        'quotes_completed': 0,
        'quotes_failed': 0,
        'items_skipped': 0,
        'reset_failures': 0,
        'status_write_failures': 0,
        'by_provider': defaultdict(int),
        'failed_steps': defaultdict(int),
        'durations': [],
        'items': [],  # Per-item outcome log
    }


class RunMetrics:
    """Track per-item outcomes for one automation run"""

    def __init__(self):
        self.metrics = _empty_metrics()
        logger.debug("Run metrics initialized")

    def record_item(
        self,
        vehicle_id: str,
        provider: str,
        status: str,
        duration: float,
        step: Optional[str] = None,
        error: Optional[str] = None,
    ):
        """
        Record one item's outcome

        Args:
            vehicle_id: Queue item id
            provider: Provider name
            status: complete or error
            duration: Seconds from running to outcome
            step: Failing driver step, if any
            error: Failure message, if any
        """
        if status == 'complete':
            self.metrics['quotes_completed'] += 1
        else:
            self.metrics['quotes_failed'] += 1
            if step:
                self.metrics['failed_steps'][step] += 1

        self.metrics['by_provider'][provider] += 1
        self.metrics['durations'].append(duration)
        self.metrics['items'].append({
            'timestamp': datetime.now().isoformat(),
            'vehicle_id': vehicle_id,
            'provider': provider,
            'status': status,
            'duration_seconds': round(duration, 2),
            'step': step,
            'error': error[:200] if error else None,
        })

    def record_skipped(self, count: int = 1):
        self.metrics['items_skipped'] += count

    def record_reset_failure(self):
        self.metrics['reset_failures'] += 1

    def record_status_write_failure(self):
        self.metrics['status_write_failures'] += 1

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary"""
        durations = self.metrics['durations']
        attempted = self.metrics['quotes_completed'] + self.metrics['quotes_failed']

        return {
            'quotes_completed': self.metrics['quotes_completed'],
            'quotes_failed': self.metrics['quotes_failed'],
            'items_skipped': self.metrics['items_skipped'],
            'success_rate': self.metrics['quotes_completed'] / attempted if attempted > 0 else 0,
            'avg_duration_seconds': sum(durations) / len(durations) if durations else 0,
            'reset_failures': self.metrics['reset_failures'],
            'status_write_failures': self.metrics['status_write_failures'],
            'by_provider': dict(self.metrics['by_provider']),
            'failed_steps': dict(self.metrics['failed_steps']),
            'items': self.metrics['items'],
        }

    def reset(self):
        """Reset metrics"""
        self.metrics = _empty_metrics()
