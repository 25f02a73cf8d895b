"""
Action Runner
=============
Offloads long-running external operations (driver backup, driver install,
bulk install, service control) to one auxiliary worker per operation type.

The caller gets an ActionHandle back immediately and either polls it on a
fixed interval or blocks on wait(). Every handle yields exactly one terminal
ActionResult; exceptions inside the operation become failure results.

Usage:
    runner = ActionRunner()
    handle = runner.submit("backup", manager.backup_drivers, "D:/DriverBackup")
    result = runner.wait(handle, on_tick=lambda: print(".", end=""))
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Dict, Optional

from PyQt6.QtCore import QObject, QThread, pyqtSignal

from entities import ActionResult

logger = logging.getLogger("inventory_audit.actions")

DEFAULT_POLL_INTERVAL = 0.5  # seconds


class ActionBusyError(RuntimeError):
    """An operation of the same type is still running"""


class ActionHandle:
    """Result channel for one submitted operation"""

    def __init__(self, operation: str, future: Future, cancel_event: threading.Event):
        self.operation = operation
        self.future = future
        self.cancel_event = cancel_event

    @property
    def done(self) -> bool:
        return self.future.done()

    def cancel(self):
        """Ask the running operation to stop; its process is terminated on the next poll"""
        self.cancel_event.set()
        self.future.cancel()

    def result(self, timeout: Optional[float] = None) -> ActionResult:
        if self.future.cancelled():
            return ActionResult(success=False, message="Cancelled")
        return self.future.result(timeout=timeout)


class ActionRunner:
    """One single-worker executor per operation type"""

    def __init__(self, poll_interval: float = DEFAULT_POLL_INTERVAL):
        self.poll_interval = poll_interval
        self._executors: Dict[str, ThreadPoolExecutor] = {}
        self._running: Dict[str, ActionHandle] = {}
        self._lock = threading.Lock()

    def is_busy(self, operation: str) -> bool:
        with self._lock:
            handle = self._running.get(operation)
            return handle is not None and not handle.done

    def submit(self, operation: str, func: Callable[..., ActionResult], *args, **kwargs) -> ActionHandle:
        """Start an operation. func must accept a cancel_event keyword.

        Raises:
            ActionBusyError: if the same operation type is still running
        """
        with self._lock:
            running = self._running.get(operation)
            if running is not None and not running.done:
                raise ActionBusyError(f"{operation} is already running")

            executor = self._executors.get(operation)
            if executor is None:
                executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"action-{operation}")
                self._executors[operation] = executor

            cancel_event = threading.Event()
            future = executor.submit(self._invoke, operation, func, cancel_event, args, kwargs)
            handle = ActionHandle(operation, future, cancel_event)
            self._running[operation] = handle

        logger.info("[ACTION] %s started", operation)
        return handle

    @staticmethod
    def _invoke(operation, func, cancel_event, args, kwargs) -> ActionResult:
        try:
            result = func(*args, cancel_event=cancel_event, **kwargs)
        except Exception as e:
            logger.error("%s failed: %s", operation, e, exc_info=True)
            return ActionResult(success=False, message=str(e))
        if not isinstance(result, ActionResult):
            return ActionResult(success=bool(result), message=str(result or ""))
        level = logging.INFO if result.success else logging.WARNING
        logger.log(level, "[ACTION] %s finished: %s", operation, result.message)
        return result

    def poll(self, handle: ActionHandle) -> Optional[ActionResult]:
        """Non-blocking: the terminal result if finished, else None"""
        if not handle.done:
            return None
        return handle.result()

    def wait(self, handle: ActionHandle, on_tick: Optional[Callable[[], None]] = None) -> ActionResult:
        """Block until the operation finishes, calling on_tick every poll interval"""
        while True:
            try:
                return handle.result(timeout=self.poll_interval)
            except FutureTimeout:
                if on_tick is not None:
                    on_tick()

    def shutdown(self, cancel_running: bool = False):
        with self._lock:
            if cancel_running:
                for handle in self._running.values():
                    handle.cancel_event.set()
            executors = list(self._executors.values())
            self._executors.clear()
        for executor in executors:
            executor.shutdown(wait=True)


# =============================================================================
# QT WORKER
# =============================================================================

class ActionWorker(QObject):
    """Runs one operation on a QThread and emits its ActionResult"""
    finished = pyqtSignal(object)  # ActionResult

    def __init__(self, func: Callable[..., ActionResult], *args):
        super().__init__()
        self.func = func
        self.args = args
        self.cancel_event = threading.Event()

    def run(self):
        try:
            result = self.func(*self.args, cancel_event=self.cancel_event)
        except Exception as e:
            logger.error("Action failed: %s", e, exc_info=True)
            result = ActionResult(success=False, message=str(e))
        self.finished.emit(result)


def start_action(parent: QObject, func: Callable[..., ActionResult], *args,
                 on_finished: Optional[Callable[[ActionResult], None]] = None):
    """Wire an ActionWorker onto a fresh QThread and start it.

    Returns (thread, worker); keep references to both until finished fires.
    """
    thread = QThread(parent)
    worker = ActionWorker(func, *args)
    worker.moveToThread(thread)

    thread.started.connect(worker.run)
    if on_finished is not None:
        worker.finished.connect(on_finished)
    worker.finished.connect(thread.quit)
    worker.finished.connect(worker.deleteLater)
    thread.finished.connect(thread.deleteLater)

    thread.start()
    return thread, worker
