"""
Incremental Batch Scheduler
===========================
Runs a slow per-item analysis over hundreds of devices or services without
blocking the caller for more than one small batch at a time.

Three ways to drive it:
- BatchScheduler.iter_batches() - generator, caller resumes it one batch at a time
- run_pooled()                  - bounded thread pool with a progress callback (headless)
- QtBatchRunner                 - re-enters the scheduler through the Qt event loop
                                  with a zero-delay QTimer between batches

Per-item failures never abort a batch: the item gets a placeholder result and
the scan carries on.

Usage:
    scheduler = BatchScheduler(analyze_device, batch_size=5)
    session = scheduler.new_session(devices, domain="drivers")
    for _ in scheduler.iter_batches(session):
        print(session.progress_text)
    results = session.results
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from PyQt6.QtCore import QObject, QTimer, pyqtSignal

logger = logging.getLogger("inventory_audit.scheduler")

DEFAULT_BATCH_SIZE = 5

ProgressCallback = Callable[[int, int, str], None]
Placeholder = Callable[[Any, Exception], Any]


# =============================================================================
# SCAN SESSION
# =============================================================================

class ScanState(Enum):
    """Lifecycle of one scan"""
    IDLE = "Idle"
    ENUMERATING = "Enumerating"
    ANALYZING = "Analyzing"
    COMPLETE = "Complete"
    FAILED = "Failed"


class ScanBusyError(RuntimeError):
    """A scan of the same domain is already in flight"""


@dataclass
class ScanSession:
    """All mutable state of one scan, passed explicitly to every batch step"""
    domain: str = ""
    items: List[Any] = field(default_factory=list)
    batch_size: int = DEFAULT_BATCH_SIZE
    state: ScanState = ScanState.IDLE
    processed: int = 0
    results: List[Any] = field(default_factory=list)
    status_message: str = ""
    batches_run: int = 0
    failures: int = 0
    error: str = ""

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def done(self) -> bool:
        return self.state in (ScanState.COMPLETE, ScanState.FAILED)

    @property
    def progress_text(self) -> str:
        return f"{self.processed}/{self.total}"


# =============================================================================
# REFRESH GUARD
# =============================================================================

class RefreshGuard:
    """Serializes refreshes of one domain.

    Stands in for disabling the refresh button: a second refresh while one is
    running is refused instead of interleaving with it.
    """

    def __init__(self, domain: str = ""):
        self.domain = domain
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self):
        if self._lock.locked():
            self._lock.release()

    def __enter__(self):
        if not self.try_acquire():
            raise ScanBusyError(f"A {self.domain or 'scan'} refresh is already running")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


_guards: Dict[str, RefreshGuard] = {}
_guards_lock = threading.Lock()


def guard_for(domain: str) -> RefreshGuard:
    """Return the process-wide guard for a domain"""
    with _guards_lock:
        if domain not in _guards:
            _guards[domain] = RefreshGuard(domain)
        return _guards[domain]


# =============================================================================
# SCHEDULER
# =============================================================================

class BatchScheduler:
    """Partitions items into fixed-size batches and analyzes one batch per step"""

    def __init__(
        self,
        analyze: Callable[[Any], Any],
        batch_size: int = DEFAULT_BATCH_SIZE,
        placeholder: Optional[Placeholder] = None,
        on_progress: Optional[ProgressCallback] = None,
        describe: Optional[Callable[[Any], str]] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.analyze = analyze
        self.batch_size = batch_size
        self.placeholder = placeholder
        self.on_progress = on_progress
        self.describe = describe or str

    def new_session(self, items: Sequence[Any], domain: str = "") -> ScanSession:
        return ScanSession(
            domain=domain,
            items=list(items),
            batch_size=self.batch_size,
            state=ScanState.ANALYZING,
            status_message=f"Analyzing {domain or 'items'} 0/{len(items)}...",
        )

    def enumerate_session(
        self,
        enumerate_items: Callable[[], Sequence[Any]],
        domain: str = "",
    ) -> ScanSession:
        """Run the enumeration step and return a session ready for analysis.

        An enumeration that raises leaves the session FAILED with no items.
        """
        session = ScanSession(domain=domain, batch_size=self.batch_size, state=ScanState.ENUMERATING)
        session.status_message = f"Enumerating {domain or 'items'}..."
        self._report(session)
        try:
            items = list(enumerate_items() or [])
        except Exception as e:
            logger.warning("Enumeration of %s failed: %s", domain or "items", e)
            session.state = ScanState.FAILED
            session.error = str(e)
            session.status_message = f"Enumeration failed: {e}"
            self._report(session)
            return session

        session.items = items
        session.state = ScanState.ANALYZING
        session.status_message = f"Analyzing {domain or 'items'} 0/{len(items)}..."
        return session

    def _analyze_one(self, session: ScanSession, item: Any) -> Any:
        try:
            return self.analyze(item)
        except Exception as e:
            session.failures += 1
            logger.warning("Analysis failed for %s: %s", self.describe(item), e)
            if self.placeholder is not None:
                return self.placeholder(item, e)
            return None

    def _report(self, session: ScanSession):
        if self.on_progress is not None:
            try:
                self.on_progress(session.processed, session.total, session.status_message)
            except Exception as e:
                logger.debug("Progress callback raised: %s", e)

    def step(self, session: ScanSession) -> bool:
        """Process one batch. Returns True while items remain."""
        if session.done:
            return False

        start = session.processed
        end = min(start + session.batch_size, session.total)
        for item in session.items[start:end]:
            session.results.append(self._analyze_one(session, item))
        session.processed = end
        session.batches_run += 1 if end > start else 0

        if session.processed >= session.total:
            session.state = ScanState.COMPLETE
            session.status_message = f"Complete: {session.progress_text}"
        else:
            session.status_message = (
                f"Analyzing {session.domain or 'items'} {session.progress_text}..."
            )
        self._report(session)
        return not session.done

    def iter_batches(self, session: ScanSession) -> Iterator[ScanSession]:
        """Yield after every batch; the caller decides when to resume"""
        while not session.done:
            self.step(session)
            yield session

    def run(self, items: Sequence[Any], domain: str = "") -> List[Any]:
        """Analyze everything in one go (headless, responsiveness not a concern)"""
        session = self.new_session(items, domain)
        for _ in self.iter_batches(session):
            pass
        return session.results


def run_pooled(
    items: Sequence[Any],
    analyze: Callable[[Any], Any],
    max_workers: int = 4,
    on_progress: Optional[ProgressCallback] = None,
    placeholder: Optional[Placeholder] = None,
) -> List[Any]:
    """Analyze items on a bounded thread pool, preserving input order"""
    items = list(items)
    total = len(items)
    results: List[Any] = [None] * total
    if not items:
        return results

    done = 0
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        future_to_index = {
            executor.submit(analyze, item): index
            for index, item in enumerate(items)
        }

        for future in as_completed(future_to_index):
            index = future_to_index[future]
            try:
                results[index] = future.result()
            except Exception as e:
                logger.warning("Analysis failed for %s: %s", items[index], e)
                results[index] = placeholder(items[index], e) if placeholder else None
            done += 1
            if on_progress is not None:
                on_progress(done, total, f"Analyzed {done}/{total}")

    return results


# =============================================================================
# QT DRIVER
# =============================================================================

class QtBatchRunner(QObject):
    """Drives a BatchScheduler from the Qt event loop.

    After each batch control returns to the event loop; the next batch is
    queued with a zero-delay timer so pending input and paint events run first.
    """
    progress = pyqtSignal(int, int, str)  # processed, total, status
    finished = pyqtSignal(list)           # ordered results
    busy_changed = pyqtSignal(bool)

    def __init__(self, scheduler: BatchScheduler, parent=None):
        super().__init__(parent)
        self.scheduler = scheduler
        self.session: Optional[ScanSession] = None
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    def start(self, items: Sequence[Any], domain: str = "") -> bool:
        """Begin a scan. Returns False if one is already running."""
        if self._busy:
            return False
        self._busy = True
        self.busy_changed.emit(True)
        self.session = self.scheduler.new_session(items, domain)
        QTimer.singleShot(0, self._step)
        return True

    def _step(self):
        session = self.session
        if session is None:
            return
        more = self.scheduler.step(session)
        self.progress.emit(session.processed, session.total, session.status_message)
        if more:
            QTimer.singleShot(0, self._step)
            return
        self._busy = False
        self.busy_changed.emit(False)
        self.finished.emit(list(session.results))
