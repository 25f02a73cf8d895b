"""
Tests for the long-running action runner
"""

import sys
import threading
import unittest

from PyQt6.QtCore import QCoreApplication, QEventLoop, QObject, QTimer

from action_runner import ActionBusyError, ActionRunner, start_action
from entities import ActionResult


def blocking_action(release: threading.Event, cancel_event=None):
    while not release.wait(0.01):
        if cancel_event.is_set():
            return ActionResult(success=False, message="Cancelled")
    return ActionResult(success=True, message="Exported 4 packages")


class TestActionRunner(unittest.TestCase):

    def setUp(self):
        self.runner = ActionRunner(poll_interval=0.01)

    def tearDown(self):
        self.runner.shutdown(cancel_running=True)

    def test_single_terminal_result(self):
        release = threading.Event()
        handle = self.runner.submit("backup", blocking_action, release)
        self.assertIsNone(self.runner.poll(handle))

        ticks = []

        def tick():
            ticks.append(1)
            release.set()

        result = self.runner.wait(handle, on_tick=tick)
        self.assertTrue(result.success)
        self.assertEqual(result.message, "Exported 4 packages")
        self.assertTrue(ticks)
        self.assertEqual(self.runner.poll(handle), result)

    def test_one_per_operation_type(self):
        release = threading.Event()
        self.runner.submit("install", blocking_action, release)
        self.assertTrue(self.runner.is_busy("install"))
        with self.assertRaises(ActionBusyError):
            self.runner.submit("install", blocking_action, release)

        other = self.runner.submit("service", lambda cancel_event=None: ActionResult(True, "Running"))
        self.assertTrue(self.runner.wait(other).success)

        release.set()

    def test_resubmit_after_finish(self):
        first = self.runner.submit("service", lambda cancel_event=None: ActionResult(True, "a"))
        self.runner.wait(first)
        second = self.runner.submit("service", lambda cancel_event=None: ActionResult(True, "b"))
        self.assertEqual(self.runner.wait(second).message, "b")

    def test_exception_becomes_failure(self):
        def explode(cancel_event=None):
            raise OSError("pnputil missing")

        with self.assertLogs("inventory_audit.actions", level="ERROR"):
            result = self.runner.wait(self.runner.submit("backup", explode))
        self.assertFalse(result.success)
        self.assertEqual(result.message, "pnputil missing")
        self.assertFalse(result.requires_reboot)

    def test_cancel(self):
        release = threading.Event()
        handle = self.runner.submit("backup", blocking_action, release)
        handle.cancel()
        result = self.runner.wait(handle)
        self.assertFalse(result.success)
        self.assertEqual(result.message, "Cancelled")

    def test_non_result_return_wrapped(self):
        result = self.runner.wait(self.runner.submit("misc", lambda cancel_event=None: True))
        self.assertTrue(result.success)


class TestQtActionWorker(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.app = QCoreApplication.instance() or QCoreApplication(sys.argv[:1])

    def test_worker_emits_result(self):
        parent = QObject()
        loop = QEventLoop()
        results = []

        def done(result):
            results.append(result)

        def action(name, cancel_event=None):
            return ActionResult(success=True, message=f"{name}: Running")

        thread, worker = start_action(parent, action, "Spooler", on_finished=done)
        thread.finished.connect(loop.quit)
        QTimer.singleShot(5000, loop.quit)
        loop.exec()

        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].message, "Spooler: Running")

    def test_worker_failure(self):
        parent = QObject()
        loop = QEventLoop()
        results = []

        def done(result):
            results.append(result)

        def action(cancel_event=None):
            raise RuntimeError("access denied")

        thread, _ = start_action(parent, action, on_finished=done)
        thread.finished.connect(loop.quit)
        QTimer.singleShot(5000, loop.quit)
        loop.exec()

        self.assertFalse(results[0].success)
        self.assertEqual(results[0].message, "access denied")


if __name__ == "__main__":
    unittest.main()
