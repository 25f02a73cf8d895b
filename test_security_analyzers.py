"""
Tests for the permission analyzers

1. Service SDDL parsing and classification
2. Fail-closed behaviour on unreadable / malformed input
3. Executable ACL classification and per-ACE tags
4. Service image path resolution
"""

import os
import tempfile
import unittest
from unittest.mock import patch

from entities import AceRisk, ExeWriteRisk, ServiceControlRisk
from security_analyzers import (
    FILE_APPEND_DATA, FILE_WRITE_DATA, FULL_CONTROL, GENERIC_WRITE, MODIFY,
    READ_AND_EXECUTE, WRITE_DAC,
    analyze_executable_acl, analyze_file_aces, analyze_service_control,
    analyze_service_sddl, classify_file_ace, describe_file_rights,
    exe_write_risk, extract_executable_path, parse_sddl_aces,
    resolve_executable_path, service_control_risk, service_risky_rights,
)

DEFAULT_SDDL = (
    "D:(A;;CCLCSWRPWPDTLOCRRC;;;SY)(A;;CCDCLCSWRPWPDTLOCRSDRCWDWO;;;BA)"
    "(A;;CCLCSWLOCRRC;;;IU)(A;;CCLCSWLOCRRC;;;SU)"
    "S:(AU;FA;CCDCLCSWRPWPDTLOCRSDRCWDWO;;;WD)"
)


class TestSddlParsing(unittest.TestCase):

    def test_parse_aces(self):
        aces = parse_sddl_aces("D:(A;;CCLC;;;SY)(D;;WD;;;BU)")
        self.assertEqual(aces, [("A", "CCLC", "SY"), ("D", "WD", "BU")])

    def test_short_entries_skipped(self):
        self.assertEqual(parse_sddl_aces("D:(A;;CC;;SY)(garbage)"), [])

    def test_tokenized_rights(self):
        # SD + CC must not be read as DC
        self.assertEqual(service_risky_rights("SDCC"), [])
        self.assertEqual(service_risky_rights("CCDCLC"), ["ChangeConfig"])
        self.assertEqual(service_risky_rights("WDWO"), ["WriteDAC", "WriteOwner"])

    def test_hex_rights(self):
        self.assertEqual(service_risky_rights("0x2"), ["ChangeConfig"])
        self.assertEqual(service_risky_rights("0x000C0000"), ["WriteDAC", "WriteOwner"])
        self.assertEqual(service_risky_rights("0x1"), [])
        self.assertEqual(service_risky_rights("0xZZ"), [])


class TestServiceControl(unittest.TestCase):

    def test_everyone_change_config_is_weak(self):
        result = analyze_service_sddl("D:(A;;CCDCLCSWRPWPDTLOCRRC;;;WD)")
        self.assertTrue(result.risky)
        self.assertEqual(service_control_risk(result), ServiceControlRisk.WEAK)
        self.assertEqual(service_control_risk(result).value, "! Weak")
        self.assertEqual(result.principals, ["Everyone"])
        self.assertIn("Everyone [ChangeConfig]", result.summary)

    def test_default_descriptor_is_ok(self):
        result = analyze_service_sddl(DEFAULT_SDDL)
        self.assertFalse(result.risky)
        self.assertEqual(service_control_risk(result), ServiceControlRisk.OK)
        tags = {e.identity: e.risk for e in result.entries}
        self.assertEqual(tags["BA"], AceRisk.PRIVILEGED_WRITE)

    def test_sid_form_principal(self):
        result = analyze_service_sddl("D:(A;;RPWPDC;;;S-1-5-11)")
        self.assertTrue(result.risky)
        self.assertEqual(result.principals, ["Authenticated Users"])

    def test_deny_ace_never_risky(self):
        result = analyze_service_sddl("D:(D;;DCWDWO;;;WD)")
        self.assertFalse(result.risky)

    def test_start_stop_only_not_risky(self):
        result = analyze_service_sddl("D:(A;;RPWPLC;;;BU)")
        self.assertFalse(result.risky)

    def test_unreadable_is_not_queried(self):
        for sddl in (None, "", "   "):
            result = analyze_service_sddl(sddl)
            self.assertFalse(result.risky)
            self.assertFalse(result.queried)
            self.assertEqual(service_control_risk(result).value, "N/A")

    def test_malformed_never_risky(self):
        result = analyze_service_sddl("D:(A;;DC;WD)(((")
        self.assertFalse(result.risky)

    def test_query_exception_degrades(self):
        def boom(name):
            raise OSError("access denied")
        result = analyze_service_control("Spooler", boom)
        self.assertFalse(result.risky)
        self.assertEqual(result.summary, "Unable to read SD")


class TestFileAcl(unittest.TestCase):

    def test_users_modify_is_risky(self):
        result = analyze_file_aces([
            ("BUILTIN\\Users", MODIFY, "Allow"),
            ("NT AUTHORITY\\SYSTEM", FULL_CONTROL, "Allow"),
        ])
        self.assertTrue(result.risky)
        self.assertEqual(result.summary, "Writable by: BUILTIN\\Users")
        self.assertEqual(exe_write_risk(result), ExeWriteRisk.RISKY)

    def test_privileged_write_is_ok(self):
        result = analyze_file_aces([
            ("BUILTIN\\Administrators", FULL_CONTROL, "Allow"),
            ("NT SERVICE\\TrustedInstaller", FULL_CONTROL, "Allow"),
            ("BUILTIN\\Users", READ_AND_EXECUTE, "Allow"),
        ])
        self.assertFalse(result.risky)
        self.assertEqual(exe_write_risk(result).value, "OK")
        self.assertEqual(
            [e.risk for e in result.entries],
            [AceRisk.PRIVILEGED_WRITE, AceRisk.PRIVILEGED_WRITE, AceRisk.NONE],
        )

    def test_append_only_not_risky(self):
        self.assertEqual(classify_file_ace("Users", FILE_APPEND_DATA, "Allow"), AceRisk.NONE)

    def test_generic_write_mapped(self):
        self.assertEqual(classify_file_ace("Everyone", GENERIC_WRITE, "Allow"), AceRisk.RISKY)

    def test_write_dac_risky(self):
        self.assertEqual(classify_file_ace("DOMAIN\\bob", WRITE_DAC, "Allow"), AceRisk.RISKY)

    def test_deny_not_risky(self):
        self.assertEqual(classify_file_ace("Everyone", FILE_WRITE_DATA, "Deny"), AceRisk.NONE)

    def test_describe_rights(self):
        self.assertEqual(describe_file_rights(FULL_CONTROL), "FullControl")
        self.assertEqual(describe_file_rights(MODIFY), "Modify")
        self.assertEqual(describe_file_rights(READ_AND_EXECUTE), "ReadAndExecute")
        self.assertEqual(describe_file_rights(FILE_WRITE_DATA), "WriteData")


class TestExecutableAcl(unittest.TestCase):

    def test_missing_file_is_not_applicable(self):
        result = analyze_executable_acl(
            "C:\\definitely\\not\\here\\svc.exe",
            lambda p: [("Everyone", FULL_CONTROL, "Allow")],
        )
        self.assertFalse(result.risky)
        self.assertFalse(result.queried)
        self.assertEqual(exe_write_risk(result).value, "N/A")
        self.assertTrue(result.summary.startswith("Not found"))

    def test_empty_path(self):
        result = analyze_executable_acl("", lambda p: [])
        self.assertEqual(exe_write_risk(result), ExeWriteRisk.NOT_QUERIED)
        self.assertEqual(result.summary, "No executable path")

    def test_existing_file(self):
        with tempfile.NamedTemporaryFile(suffix=".exe", delete=False) as f:
            path = f.name
        try:
            result = analyze_executable_acl(
                f'"{path}" -k netsvcs',
                lambda p: [("BUILTIN\\Users", MODIFY, "Allow")],
            )
            self.assertTrue(result.risky)
            self.assertEqual(exe_write_risk(result).value, "! Risky")
        finally:
            os.remove(path)

    def test_unreadable_acl(self):
        with tempfile.NamedTemporaryFile(suffix=".exe", delete=False) as f:
            path = f.name
        try:
            result = analyze_executable_acl(path, lambda p: None)
            self.assertEqual(result.summary, "Unable to read ACL")
            self.assertFalse(result.queried)

            def boom(p):
                raise PermissionError(p)
            self.assertFalse(analyze_executable_acl(path, boom).risky)
        finally:
            os.remove(path)


class TestPathResolution(unittest.TestCase):

    def test_quoted(self):
        self.assertEqual(
            extract_executable_path('"C:\\Program Files\\App\\svc.exe" -run'),
            "C:\\Program Files\\App\\svc.exe",
        )

    def test_unquoted_with_spaces(self):
        self.assertEqual(
            extract_executable_path("C:\\Program Files\\App\\svc.exe /service"),
            "C:\\Program Files\\App\\svc.exe",
        )

    def test_first_token(self):
        self.assertEqual(extract_executable_path("C:\\tools\\run /x"), "C:\\tools\\run")

    def test_empty(self):
        self.assertEqual(resolve_executable_path(""), "")
        self.assertEqual(resolve_executable_path(None), "")

    @patch.dict(os.environ, {"SystemRoot": "C:\\Windows"})
    def test_system_root_forms(self):
        self.assertEqual(
            resolve_executable_path("\\SystemRoot\\System32\\drivers\\foo.sys"),
            "C:\\Windows\\System32\\drivers\\foo.sys",
        )
        self.assertEqual(
            resolve_executable_path("system32\\svchost.exe -k netsvcs"),
            "C:\\Windows\\system32\\svchost.exe",
        )
        self.assertEqual(
            resolve_executable_path("%systemroot%\\system32\\svchost.exe -k LocalService"),
            "C:\\Windows\\system32\\svchost.exe",
        )

    def test_nt_prefix_stripped(self):
        self.assertEqual(resolve_executable_path("\\??\\C:\\drv\\x.sys"), "C:\\drv\\x.sys")

    def test_unknown_variable_kept(self):
        self.assertEqual(resolve_executable_path("%NO_SUCH_VAR_123%\\a.exe"), "%NO_SUCH_VAR_123%\\a.exe")


if __name__ == "__main__":
    unittest.main()
