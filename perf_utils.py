"""
Performance Utilities for the Inventory Auditor
================================================
Timing instrumentation and a keyed cache with optional TTL.
"""

import functools
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("inventory_audit.perf")


# =============================================================================
# TIMING INSTRUMENTATION
# =============================================================================

@dataclass
class TimingResult:
    """Result of a timed operation"""
    operation: str
    duration_ms: float
    timestamp: str
    success: bool = True
    error: Optional[str] = None


class PerfLogger:
    """Keeps the last N timings and logs each one at DEBUG"""

    def __init__(self, max_results: int = 100):
        self.enabled = True
        self.results: List[TimingResult] = []
        self.max_results = max_results
        self._lock = threading.Lock()

    def log(self, result: TimingResult):
        """Log a timing result"""
        if not self.enabled:
            return

        with self._lock:
            self.results.append(result)
            if len(self.results) > self.max_results:
                self.results.pop(0)

        status = "OK" if result.success else f"FAIL: {result.error}"
        logger.debug("[PERF] %s: %.1fms [%s]", result.operation, result.duration_ms, status)

    def get_summary(self) -> Dict[str, Dict]:
        """Get summary statistics by operation"""
        summary = {}
        with self._lock:
            results = list(self.results)

        for result in results:
            if result.operation not in summary:
                summary[result.operation] = {
                    'count': 0,
                    'total_ms': 0.0,
                    'min_ms': float('inf'),
                    'max_ms': 0.0,
                    'failures': 0
                }

            s = summary[result.operation]
            s['count'] += 1
            s['total_ms'] += result.duration_ms
            s['min_ms'] = min(s['min_ms'], result.duration_ms)
            s['max_ms'] = max(s['max_ms'], result.duration_ms)
            if not result.success:
                s['failures'] += 1

        for s in summary.values():
            s['avg_ms'] = s['total_ms'] / s['count'] if s['count'] > 0 else 0

        return summary

    def clear(self):
        """Clear all logged results"""
        with self._lock:
            self.results.clear()


# Global perf logger instance
perf_logger = PerfLogger()


def timed(operation_name: Optional[str] = None):
    """Decorator to time function execution"""
    def decorator(func: Callable) -> Callable:
        op_name = operation_name or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            error = None
            success = True
            try:
                return func(*args, **kwargs)
            except Exception as e:
                error = str(e)
                success = False
                raise
            finally:
                duration_ms = (time.perf_counter() - start) * 1000
                perf_logger.log(TimingResult(
                    operation=op_name,
                    duration_ms=duration_ms,
                    timestamp=datetime.now().isoformat(),
                    success=success,
                    error=error
                ))

        return wrapper
    return decorator


class TimingContext:
    """Context manager for timing code blocks"""

    def __init__(self, operation_name: str):
        self.operation_name = operation_name
        self.start_time = 0.0
        self.duration_ms = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000
        perf_logger.log(TimingResult(
            operation=self.operation_name,
            duration_ms=self.duration_ms,
            timestamp=datetime.now().isoformat(),
            success=exc_type is None,
            error=str(exc_val) if exc_val else None
        ))
        return False


# =============================================================================
# CACHING
# =============================================================================

@dataclass
class CacheEntry:
    """Single cache entry, optionally expiring"""
    value: Any
    expires_at: Optional[float] = None  # time.time() timestamp, None = until invalidated

    def is_expired(self) -> bool:
        return self.expires_at is not None and time.time() > self.expires_at


class DataCache:
    """Thread-safe keyed cache.

    Used as the per-service ACL detail cache: populated lazily when a detail
    is requested and cleared wholesale whenever the service list is refreshed.
    """

    def __init__(self, default_ttl: Optional[float] = None):
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self.default_ttl = default_ttl

    def get(self, key: str) -> Optional[Any]:
        """Get cached value if present and not expired"""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None or entry.is_expired():
                return None
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None):
        """Set cached value; falls back to the cache default TTL"""
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl
        with self._lock:
            self._cache[key] = CacheEntry(
                value=value,
                expires_at=time.time() + ttl if ttl is not None else None
            )

    def get_or_load(self, key: str, loader: Callable[[], Any]) -> Any:
        """Return the cached value, calling loader once on a miss"""
        value = self.get(key)
        if value is not None:
            logger.debug("[CACHE] HIT: %s", key)
            return value
        logger.debug("[CACHE] MISS: %s", key)
        value = loader()
        self.set(key, value)
        return value

    def invalidate(self, key: str):
        """Remove a specific cache entry"""
        with self._lock:
            self._cache.pop(key, None)

    def clear(self):
        """Clear all cached data"""
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)
