"""NAV history: bounded in-memory ring buffer plus summary statistics."""
from collections import deque
from decimal import Decimal
from threading import Lock
from typing import Dict, List, Optional
import logging

import numpy as np
import pandas as pd

from settlement.models import NavPoint

logger = logging.getLogger(__name__)


def nav_point_from_row(row: Dict) -> NavPoint:
    """Build a NavPoint from a ``nav_snapshots`` row."""
    pps = row.get('price_per_share')
    return NavPoint(
        timestamp=row['recorded_at'],
        total_value=Decimal(row['total_value']),
        price_per_share=Decimal(pps) if pps is not None else None,
        circulating_shares=int(row['circulating_shares']),
        max_drift_bps=int(row['max_drift_bps']),
        actual_weights_bps={k: int(v) for k, v in (row.get('actual_weights_bps') or {}).items()},
    )


class NavHistoryBuffer:
    """
    Ordered NAV points recorded once per rebalance cycle.

    Timestamps must strictly increase; with ``persist`` set each accepted
    point is also written to ``nav_snapshots``.
    """

    def __init__(self, maxlen: int = 5000, persist: bool = False):
        self._points: deque[NavPoint] = deque(maxlen=maxlen)
        self._persist = persist
        self._lock = Lock()

    def _accept(self, point: NavPoint) -> bool:
        with self._lock:
            if self._points and point.timestamp <= self._points[-1].timestamp:
                logger.warning(
                    "NAV point at %s not after %s; dropped",
                    point.timestamp, self._points[-1].timestamp,
                )
                return False
            self._points.append(point)
            return True

    def append(self, point: NavPoint) -> None:
        if not self._accept(point) or not self._persist:
            return
        from settlement.db.queries import write_nav_snapshot

        write_nav_snapshot({
            'recorded_at': point.timestamp,
            'total_value': point.total_value,
            'price_per_share': point.price_per_share,
            'circulating_shares': point.circulating_shares,
            'max_drift_bps': point.max_drift_bps,
            'actual_weights_bps': point.actual_weights_bps,
        })

    def load_persisted(self) -> int:
        """Seed the buffer from ``nav_snapshots`` after a restart; returns points loaded."""
        from settlement.db.queries import get_nav_history

        loaded = 0
        for row in get_nav_history(limit=self._points.maxlen):
            if self._accept(nav_point_from_row(row)):
                loaded += 1
        logger.info("Loaded %d persisted NAV point(s)", loaded)
        return loaded

    def latest(self) -> Optional[NavPoint]:
        with self._lock:
            return self._points[-1] if self._points else None

    def history(self, n: Optional[int] = None) -> List[NavPoint]:
        """Oldest first; ``n`` limits to the most recent points."""
        with self._lock:
            points = list(self._points)
        if n is None:
            return points
        return points[-n:] if n > 0 else []

    def size(self) -> int:
        with self._lock:
            return len(self._points)


def nav_stats(points: List[NavPoint]) -> Optional[dict]:
    """
    Summarize price-per-share over ``points``.

    Points recorded before any shares circulated are ignored.

    Returns:
        Dict with count, latest, min, max, mean, std, change and change_pct,
        or None when there is nothing to summarize.
    """
    rows = [
        {'timestamp': p.timestamp, 'pps': float(p.price_per_share), 'total': float(p.total_value),
         'drift': p.max_drift_bps}
        for p in points if p.price_per_share is not None
    ]
    if not rows:
        return None

    df = pd.DataFrame(rows).sort_values('timestamp')
    pps = df['pps'].values
    first, last = float(pps[0]), float(pps[-1])

    return {
        'count': int(len(pps)),
        'from': df['timestamp'].iloc[0].isoformat(),
        'to': df['timestamp'].iloc[-1].isoformat(),
        'latest': last,
        'min': float(np.min(pps)),
        'max': float(np.max(pps)),
        'mean': float(np.mean(pps)),
        'std': float(np.std(pps)),
        'change': last - first,
        'change_pct': ((last - first) / first * 100.0) if first else 0.0,
        'max_drift_bps': int(df['drift'].max()),
        'latest_total_value': float(df['total'].iloc[-1]),
    }
