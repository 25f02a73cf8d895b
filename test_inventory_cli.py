"""
Tests for the command-line front end

1. Audit logging setup and event format
2. Inventory export / compare flows (scanners mocked)
3. Fatal configuration and baseline errors
4. Action commands
"""

import io
import json
import logging
import os
import shutil
import tempfile
import unittest
from contextlib import redirect_stdout
from unittest.mock import patch

import inventory_cli as cli
from entities import ActionResult, ServiceControlRisk, ServiceRecord


SERVICES = [
    ServiceRecord(name="Spooler", display_name="Print Spooler", state="Running",
                  startup_type="Automatic", service_control_risk=ServiceControlRisk.OK),
    ServiceRecord(name="VulnSvc", display_name="Vulnerable", state="Stopped",
                  startup_type="Manual", service_control_risk=ServiceControlRisk.WEAK),
]


class TestLogging(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()

    def tearDown(self):
        for handler in list(cli.logger.handlers):
            handler.close()
        cli.logger.handlers.clear()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_audit_event_format(self):
        with self.assertLogs("inventory_audit", level="INFO") as cm:
            cli.log_audit_event("SCAN_END", "Services inventory completed", total=12, domain="services")
        self.assertIn("[SCAN_END] Services inventory completed | total=12 | domain=services", cm.output[0])

    def test_setup_logging_writes_file(self):
        log_file = os.path.join(self.tmp, "logs", "audit.log")
        cli.setup_logging(log_file=log_file, verbose=True)
        cli.log_audit_event("SESSION_START", "hello")
        logging.getLogger("inventory_audit.backend").debug("child record")
        for handler in cli.logger.handlers:
            handler.flush()

        with open(log_file, encoding="utf-8") as f:
            content = f.read()
        self.assertIn("| INFO     | [SESSION_START] hello", content)
        self.assertIn("child record", content)
        self.assertEqual(cli.logger.level, logging.DEBUG)

    def test_setup_logging_idempotent(self):
        cli.setup_logging()
        cli.setup_logging()
        self.assertEqual(len(cli.logger.handlers), 1)
        self.assertEqual(cli.logger.handlers[0].level, logging.WARNING)


class CliTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.config_path = os.path.join(self.tmp, "settings.json")
        patcher = patch("inventory_cli.InventoryCollector.scan_services", autospec=True)
        self.scan_services = patcher.start()
        self.addCleanup(patcher.stop)

        def fake_scan(collector, on_progress=None):
            collector.services = list(SERVICES)
            return collector.services

        self.scan_services.side_effect = fake_scan

    def tearDown(self):
        for handler in list(cli.logger.handlers):
            handler.close()
        cli.logger.handlers.clear()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def run_cli(self, *argv):
        out = io.StringIO()
        with redirect_stdout(out):
            code = cli.main(["--config", self.config_path, "--quiet", *argv])
        return code, out.getvalue()


class TestInventoryCommands(CliTestCase):

    def test_table_output(self):
        code, out = self.run_cli("services")
        self.assertEqual(code, 0)
        self.assertIn("Spooler", out)
        self.assertIn("! Weak", out)
        self.assertIn("2 items", out)

    def test_export_then_compare_unchanged(self):
        export = os.path.join(self.tmp, "services.json")
        code, _ = self.run_cli("services", "--export", export, "--format", "json")
        self.assertEqual(code, 0)
        with open(export, encoding="utf-8") as f:
            self.assertEqual(len(json.load(f)), 2)

        code, out = self.run_cli("services", "--compare", export)
        self.assertEqual(code, 0)
        self.assertIn("Added: 0  Removed: 0  Changed: 0  Unchanged: 2", out)

    def test_compare_exports_diff(self):
        baseline = os.path.join(self.tmp, "base.csv")
        with open(baseline, "w", encoding="utf-8") as f:
            f.write('"Name","State"\n"Spooler","Stopped"\n"OldSvc","Running"\n')
        diff_file = os.path.join(self.tmp, "diff.csv")

        code, out = self.run_cli("services", "--compare", baseline, "--export", diff_file)

        self.assertEqual(code, 0)
        self.assertIn("Added: 1  Removed: 1  Changed: 1", out)
        self.assertIn("Spooler -> State: 'Stopped' -> 'Running'", out)
        self.assertTrue(os.path.exists(diff_file))

    def test_bad_baseline_exit_code(self):
        baseline = os.path.join(self.tmp, "empty.csv")
        open(baseline, "w").close()
        code, _ = self.run_cli("services", "--compare", baseline)
        self.assertEqual(code, 1)

    def test_bad_config_exit_code(self):
        with open(self.config_path, "w", encoding="utf-8") as f:
            f.write("{oops")
        code, _ = self.run_cli("services")
        self.assertEqual(code, 1)
        self.scan_services.assert_not_called()

    def test_detail(self):
        with patch("inventory_cli.InventoryCollector.acl_detail") as mock_detail:
            from security_analyzers import analyze_service_sddl
            result = analyze_service_sddl("D:(A;;DC;;;BU)")
            mock_detail.return_value = {"control": result, "exe": result}
            code, out = self.run_cli("services", "--detail", "VulnSvc")
        self.assertEqual(code, 0)
        self.assertIn("Non-admin control rights: Built-in Users [ChangeConfig]", out)
        self.assertIn("risky", out)

    def test_detail_unknown_service(self):
        code, _ = self.run_cli("services", "--detail", "Nope")
        self.assertEqual(code, 1)


class TestActionCommands(CliTestCase):

    @patch("inventory_cli.is_admin", return_value=True)
    @patch("inventory_cli.ServiceController.control",
           return_value=ActionResult(True, "Spooler: Running"))
    def test_service_restart(self, mock_control, _):
        code, out = self.run_cli("service", "restart", "Spooler")
        self.assertEqual(code, 0)
        self.assertIn("OK: Spooler: Running", out)
        args, kwargs = mock_control.call_args
        self.assertEqual(args, ("Spooler", "restart"))
        self.assertIn("cancel_event", kwargs)

    @patch("inventory_cli.is_admin", return_value=True)
    @patch("inventory_cli.DriverManager.install_driver",
           return_value=ActionResult(True, "Driver package added", requires_reboot=True))
    def test_install_reboot_notice(self, *_):
        code, out = self.run_cli("install-driver", "C:\\drivers\\net.inf")
        self.assertEqual(code, 0)
        self.assertIn("restart is required", out)

    @patch("inventory_cli.is_admin", return_value=False)
    @patch("inventory_cli.DriverManager.backup_drivers",
           return_value=ActionResult(False, "Access is denied."))
    def test_backup_failure(self, *_):
        code, out = self.run_cli("backup-drivers", os.path.join(self.tmp, "bk"))
        self.assertEqual(code, 1)
        self.assertIn("FAILED: Access is denied.", out)


if __name__ == "__main__":
    unittest.main()
