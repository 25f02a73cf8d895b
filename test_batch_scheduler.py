"""
Tests for the incremental batch scheduler

1. Batch partitioning and progress reporting
2. Per-item failure handling
3. Enumeration failure -> Failed session
4. Refresh guard
5. Thread-pool and Qt event-loop drivers
"""

import sys
import unittest

from PyQt6.QtCore import QCoreApplication, QEventLoop, QTimer

from batch_scheduler import (
    BatchScheduler, RefreshGuard, ScanBusyError, ScanState, guard_for, run_pooled,
    QtBatchRunner,
)


def _app():
    return QCoreApplication.instance() or QCoreApplication(sys.argv[:1])


class TestBatchScheduler(unittest.TestCase):

    def test_twelve_items_batch_of_five(self):
        progress = []
        scheduler = BatchScheduler(lambda x: x * 10, batch_size=5,
                                   on_progress=lambda i, n, s: progress.append((i, n)))
        session = scheduler.new_session(list(range(12)), domain="drivers")

        batch_ends = [s.processed for s in scheduler.iter_batches(session)]

        self.assertEqual(batch_ends, [5, 10, 12])
        self.assertEqual(session.batches_run, 3)
        self.assertEqual(session.progress_text, "12/12")
        self.assertEqual(session.state, ScanState.COMPLETE)
        self.assertEqual(session.status_message, "Complete: 12/12")
        self.assertEqual(session.results, [x * 10 for x in range(12)])
        self.assertEqual(progress[-1], (12, 12))

    def test_completeness_for_any_batch_size(self):
        items = list(range(17))
        for size in (1, 2, 5, 16, 17, 100):
            results = BatchScheduler(lambda x: ("done", x), batch_size=size).run(items)
            self.assertEqual(len(results), 17, size)
            self.assertEqual([r[1] for r in results], items, size)

    def test_empty_session_completes(self):
        scheduler = BatchScheduler(lambda x: x)
        session = scheduler.new_session([])
        self.assertFalse(scheduler.step(session))
        self.assertEqual(session.state, ScanState.COMPLETE)
        self.assertEqual(session.batches_run, 0)

    def test_step_after_complete_is_noop(self):
        scheduler = BatchScheduler(lambda x: x, batch_size=10)
        session = scheduler.new_session([1, 2])
        scheduler.step(session)
        self.assertFalse(scheduler.step(session))
        self.assertEqual(session.results, [1, 2])

    def test_failure_uses_placeholder(self):
        def analyze(x):
            if x == 3:
                raise RuntimeError("query hung")
            return x

        scheduler = BatchScheduler(analyze, batch_size=2, placeholder=lambda item, e: f"N/A:{item}")
        with self.assertLogs("inventory_audit.scheduler", level="WARNING"):
            results = scheduler.run([1, 2, 3, 4])
        self.assertEqual(results, [1, 2, "N/A:3", 4])

    def test_failure_without_placeholder(self):
        scheduler = BatchScheduler(lambda x: 1 / x, batch_size=5)
        session = scheduler.new_session([1, 0, 2])
        for _ in scheduler.iter_batches(session):
            pass
        self.assertEqual(session.results, [1.0, None, 0.5])
        self.assertEqual(session.failures, 1)
        self.assertEqual(session.state, ScanState.COMPLETE)

    def test_enumeration_failure(self):
        def enumerate_items():
            raise OSError("CIM unavailable")

        scheduler = BatchScheduler(lambda x: x)
        session = scheduler.enumerate_session(enumerate_items, "services")
        self.assertEqual(session.state, ScanState.FAILED)
        self.assertEqual(session.total, 0)
        self.assertIn("CIM unavailable", session.error)
        self.assertEqual(list(scheduler.iter_batches(session)), [])

    def test_enumeration_success(self):
        scheduler = BatchScheduler(lambda x: x)
        session = scheduler.enumerate_session(lambda: ["a", "b"], "services")
        self.assertEqual(session.state, ScanState.ANALYZING)
        self.assertEqual(session.total, 2)

    def test_invalid_batch_size(self):
        with self.assertRaises(ValueError):
            BatchScheduler(lambda x: x, batch_size=0)

    def test_progress_callback_errors_ignored(self):
        def bad_progress(i, n, s):
            raise ValueError("ui gone")
        results = BatchScheduler(lambda x: x, batch_size=1, on_progress=bad_progress).run([1, 2])
        self.assertEqual(results, [1, 2])


class TestRefreshGuard(unittest.TestCase):

    def test_second_refresh_refused(self):
        guard = RefreshGuard("drivers")
        with guard:
            self.assertTrue(guard.busy)
            with self.assertRaises(ScanBusyError):
                with guard:
                    pass
        self.assertFalse(guard.busy)

    def test_released_on_error(self):
        guard = RefreshGuard("services")
        with self.assertRaises(KeyError):
            with guard:
                raise KeyError("x")
        self.assertTrue(guard.try_acquire())
        guard.release()

    def test_guard_for_is_shared(self):
        self.assertIs(guard_for("software"), guard_for("software"))
        self.assertIsNot(guard_for("software"), guard_for("drivers"))


class TestRunPooled(unittest.TestCase):

    def test_order_preserved(self):
        progress = []
        results = run_pooled(range(20), lambda x: x * x, max_workers=4,
                             on_progress=lambda i, n, s: progress.append(i))
        self.assertEqual(results, [x * x for x in range(20)])
        self.assertEqual(sorted(progress), list(range(1, 21)))

    def test_failure_placeholder(self):
        def analyze(x):
            if x == 2:
                raise RuntimeError("boom")
            return x
        results = run_pooled([1, 2, 3], analyze, placeholder=lambda item, e: -1)
        self.assertEqual(results, [1, -1, 3])

    def test_empty(self):
        self.assertEqual(run_pooled([], lambda x: x), [])


class TestQtBatchRunner(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.app = _app()

    def test_runs_through_event_loop(self):
        runner = QtBatchRunner(BatchScheduler(lambda x: x + 1, batch_size=5))
        loop = QEventLoop()
        progress = []
        finished = []

        runner.progress.connect(lambda i, n, s: progress.append((i, n)))
        runner.finished.connect(lambda results: (finished.append(results), loop.quit()))
        QTimer.singleShot(5000, loop.quit)

        self.assertTrue(runner.start(list(range(12)), "drivers"))
        self.assertTrue(runner.busy)
        self.assertFalse(runner.start([1], "drivers"))

        loop.exec()

        self.assertEqual(progress, [(5, 12), (10, 12), (12, 12)])
        self.assertEqual(finished, [[x + 1 for x in range(12)]])
        self.assertFalse(runner.busy)

    def test_empty_scan_finishes(self):
        runner = QtBatchRunner(BatchScheduler(lambda x: x))
        loop = QEventLoop()
        finished = []
        runner.finished.connect(lambda results: (finished.append(results), loop.quit()))
        QTimer.singleShot(5000, loop.quit)

        runner.start([])
        loop.exec()

        self.assertEqual(finished, [[]])


if __name__ == "__main__":
    unittest.main()
