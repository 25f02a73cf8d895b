"""
Inventory Backend
=================
Data-source adapters, per-item analysis and long-running system operations.

Sources:
1. Registry Uninstall keys, AppX packages, winget  -> SoftwareItem
2. PnP devices + per-device driver properties       -> DriverDevice
3. Win32_Service + startup types + SDDL + file ACL  -> ServiceRecord

Every adapter degrades to an empty result (or an empty field) when its source is
unavailable; nothing here raises into the scan loop.

Usage:
    from inventory_backend import InventoryCollector
    collector = InventoryCollector(config, callback=print)
    services = collector.scan_services()
"""

import ctypes
import json
import logging
import os
import re
import subprocess
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from batch_scheduler import BatchScheduler, ProgressCallback, ScanSession, guard_for
from entities import (
    ActionResult, DeviceStatus, DriverDevice, ServiceRecord, SoftwareItem,
    SoftwareSource,
)
from entity_filter import EntityFilter
from perf_utils import DataCache, TimingContext, timed
from security_analyzers import (
    FILE_ALL_ACCESS, analyze_executable_acl, analyze_service_control,
    exe_write_risk, resolve_executable_path, service_control_risk,
)

logger = logging.getLogger("inventory_audit.backend")

_NO_WINDOW = getattr(subprocess, "CREATE_NO_WINDOW", 0)

# pnputil / msiexec convention for "succeeded, reboot needed"
ERROR_SUCCESS_REBOOT_REQUIRED = 3010
_REBOOT_PATTERN = re.compile(r"\b(reboot|restart)\b", re.IGNORECASE)


# =============================================================================
# HELPERS
# =============================================================================

def run_powershell(command: str, timeout: int = 30) -> str:
    """Execute a PowerShell command and return stdout ('' on any failure)"""
    try:
        result = subprocess.run(
            ["powershell", "-NoProfile", "-NoLogo", "-WindowStyle", "Hidden",
             "-ExecutionPolicy", "Bypass", "-Command", command],
            capture_output=True,
            text=True,
            timeout=timeout,
            encoding="utf-8",
            errors="replace",
            creationflags=_NO_WINDOW
        )
        return result.stdout or ""
    except subprocess.TimeoutExpired:
        logger.warning("PowerShell command timed out after %ss", timeout)
        return ""
    except OSError as e:
        logger.warning("PowerShell unavailable: %s", e)
        return ""


def parse_json_records(output: str) -> List[Dict[str, Any]]:
    """Parse ConvertTo-Json output; a single object becomes a one-item list"""
    if not output or not output.strip():
        return []
    try:
        data = json.loads(output)
    except json.JSONDecodeError as e:
        logger.warning("Failed to parse PowerShell JSON: %s", e)
        return []
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        return []
    return [item for item in data if isinstance(item, dict)]


def ps_quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted string"""
    return "'" + str(value).replace("'", "''") + "'"


def format_cim_date(value: Any) -> str:
    """Turn '/Date(1577836800000)/' or an ISO string into YYYY-MM-DD"""
    if not value:
        return ""
    date_str = str(value)
    try:
        if '/Date(' in date_str:
            timestamp = int(date_str.replace('/Date(', '').replace(')/', '').split('-')[0].split('+')[0])
            return datetime.fromtimestamp(timestamp / 1000).strftime('%Y-%m-%d')
        return date_str[:10]
    except (ValueError, OverflowError, OSError):
        return date_str[:10]


def format_install_date(date_str: Optional[str]) -> str:
    """Format install date from YYYYMMDD to YYYY-MM-DD"""
    if not date_str or len(str(date_str)) != 8:
        return ""
    try:
        return datetime.strptime(str(date_str), "%Y%m%d").strftime("%Y-%m-%d")
    except ValueError:
        return ""


def format_size_kb(size_kb: Any) -> str:
    try:
        kb = int(size_kb)
    except (TypeError, ValueError):
        return ""
    if kb <= 0:
        return ""
    return f"{kb / 1024:.1f} MB"


def is_admin() -> bool:
    """Check if running with admin privileges"""
    try:
        return bool(ctypes.windll.shell32.IsUserAnAdmin())
    except (AttributeError, OSError):
        return False


class _Logged:
    """Status callback + module logger, the way every scanner reports progress"""

    def __init__(self, callback: Callable[[str], None] = None):
        self.callback = callback

    def log(self, message: str, level: int = logging.INFO):
        logger.log(level, message)
        if self.callback:
            self.callback(message)


# =============================================================================
# SOFTWARE
# =============================================================================

_APPX_ARCH = {0: "x86", 5: "ARM", 9: "Neutral", 11: "x64", 12: "ARM64"}
_APPX_SIGNATURE_SYSTEM = {4, "System"}


def software_from_registry(values: Dict[str, Any], subkey_name: str, architecture: str) -> Optional[SoftwareItem]:
    """Build a SoftwareItem from one Uninstall subkey's values"""
    name = values.get("DisplayName")
    if not name:
        return None
    return SoftwareItem(
        name=str(name).strip(),
        source=SoftwareSource.REGISTRY,
        version=str(values.get("DisplayVersion") or ""),
        publisher=str(values.get("Publisher") or ""),
        install_date=format_install_date(values.get("InstallDate")),
        install_location=str(values.get("InstallLocation") or ""),
        architecture=architecture,
        size=format_size_kb(values.get("EstimatedSize")),
        unique_id=subkey_name,
        is_system_component=values.get("SystemComponent") == 1,
        uninstall_string=str(values.get("UninstallString") or ""),
        help_link=str(values.get("HelpLink") or ""),
        comments=str(values.get("Comments") or ""),
    )


def software_from_appx(item: Dict[str, Any]) -> Optional[SoftwareItem]:
    """Build a SoftwareItem from one Get-AppxPackage object"""
    name = item.get("Name")
    if not name:
        return None
    publisher = str(item.get("Publisher") or "")
    if publisher.startswith("CN="):
        publisher = publisher[3:].split(",")[0]
    arch = item.get("Architecture")
    return SoftwareItem(
        name=str(name),
        source=SoftwareSource.APPX,
        version=str(item.get("Version") or ""),
        publisher=publisher,
        install_location=str(item.get("InstallLocation") or ""),
        architecture=_APPX_ARCH.get(arch, str(arch) if arch is not None else ""),
        unique_id=str(item.get("PackageFullName") or ""),
        is_framework=bool(item.get("IsFramework")),
        is_system_component=item.get("SignatureKind") in _APPX_SIGNATURE_SYSTEM,
    )


def parse_winget_list(output: str) -> List[SoftwareItem]:
    """Parse the fixed-width table printed by `winget list`.

    Only rows with a Source column (winget / msstore) are kept; the rest
    duplicate what the registry already reports.
    """
    items: List[SoftwareItem] = []
    lines = output.replace("\r", "").split("\n")

    header_idx = -1
    for i, line in enumerate(lines):
        if 'Name' in line and 'Id' in line and 'Version' in line:
            header_idx = i
            break
    if header_idx == -1:
        return items

    header_line = lines[header_idx]
    # Progress spinners can precede the header on the same line
    offset = header_line.find('Name')
    header_line = header_line[offset:]
    id_pos = header_line.find('Id')
    version_pos = header_line.find('Version')
    available_pos = header_line.find('Available')
    source_pos = header_line.find('Source')
    if id_pos == -1 or version_pos == -1:
        return items

    version_end = available_pos if available_pos != -1 else source_pos
    for line in lines[header_idx + 1:]:
        if not line.strip() or set(line.strip()) <= set("-─"):
            continue
        if source_pos == -1 or len(line) <= source_pos:
            continue
        name = line[:id_pos].strip()
        package_id = line[id_pos:version_pos].strip()
        version = (line[version_pos:version_end] if version_end != -1 else line[version_pos:]).strip()
        source = line[source_pos:].strip()
        if not name or not package_id or not source:
            continue
        items.append(SoftwareItem(
            name=name,
            source=SoftwareSource.WINGET,
            version=version,
            unique_id=package_id,
            comments=f"source: {source}",
        ))
    return items


class SoftwareScanner(_Logged):
    """Enumerates installed software from registry, AppX and winget"""

    REGISTRY_PATHS = [
        ("HKLM", r"SOFTWARE\Microsoft\Windows\CurrentVersion\Uninstall", "x64"),
        ("HKLM", r"SOFTWARE\WOW6432Node\Microsoft\Windows\CurrentVersion\Uninstall", "x86"),
        ("HKCU", r"SOFTWARE\Microsoft\Windows\CurrentVersion\Uninstall", "User"),
    ]

    REGISTRY_VALUES = [
        "DisplayName", "DisplayVersion", "Publisher", "InstallDate", "InstallLocation",
        "EstimatedSize", "SystemComponent", "UninstallString", "HelpLink", "Comments",
    ]

    def __init__(self, callback: Callable[[str], None] = None, timeout: int = 60):
        super().__init__(callback)
        self.timeout = timeout

    def _read_uninstall_key(self, hive_name: str, path: str, architecture: str) -> List[SoftwareItem]:
        import winreg

        hive = winreg.HKEY_LOCAL_MACHINE if hive_name == "HKLM" else winreg.HKEY_CURRENT_USER
        items = []
        try:
            key = winreg.OpenKey(hive, path, 0, winreg.KEY_READ | winreg.KEY_WOW64_64KEY)
        except OSError:
            return items

        with key:
            subkey_count = winreg.QueryInfoKey(key)[0]
            for i in range(subkey_count):
                try:
                    subkey_name = winreg.EnumKey(key, i)
                    with winreg.OpenKey(key, subkey_name) as subkey:
                        values = {}
                        for value_name in self.REGISTRY_VALUES:
                            try:
                                values[value_name], _ = winreg.QueryValueEx(subkey, value_name)
                            except OSError:
                                pass
                except OSError:
                    continue
                item = software_from_registry(values, subkey_name, architecture)
                if item:
                    items.append(item)
        return items

    @timed("scan_registry_software")
    def scan_registry(self) -> List[SoftwareItem]:
        items: List[SoftwareItem] = []
        try:
            for hive_name, path, arch in self.REGISTRY_PATHS:
                items.extend(self._read_uninstall_key(hive_name, path, arch))
        except Exception as e:
            self.log(f"Registry scan failed: {e}", logging.WARNING)
            return []
        self.log(f"Registry: {len(items)} entries")
        return items

    @timed("scan_appx_software")
    def scan_appx(self) -> List[SoftwareItem]:
        command = (
            "Get-AppxPackage | Select-Object Name, PackageFullName, Version, Publisher, "
            "InstallLocation, Architecture, IsFramework, SignatureKind | ConvertTo-Json -Compress"
        )
        output = run_powershell(command, timeout=self.timeout)
        items = [i for i in (software_from_appx(r) for r in parse_json_records(output)) if i]
        self.log(f"AppX: {len(items)} packages")
        return items

    @timed("scan_winget_software")
    def scan_winget(self) -> List[SoftwareItem]:
        try:
            result = subprocess.run(
                ["winget", "list", "--disable-interactivity", "--accept-source-agreements"],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                encoding="utf-8",
                errors="replace",
                creationflags=_NO_WINDOW
            )
        except subprocess.TimeoutExpired:
            self.log("winget list timed out", logging.WARNING)
            return []
        except OSError:
            self.log("winget not found", logging.WARNING)
            return []
        items = parse_winget_list(result.stdout or "")
        self.log(f"Winget: {len(items)} packages")
        return items

    def scan_all(self, sources: Dict[str, bool]) -> List[SoftwareItem]:
        """Scan every enabled source; a failing source contributes nothing"""
        scans = [
            ("registry", self.scan_registry),
            ("appx", self.scan_appx),
            ("winget", self.scan_winget),
        ]
        items: List[SoftwareItem] = []
        for name, scan in scans:
            if not sources.get(name, False):
                continue
            try:
                items.extend(scan())
            except Exception as e:
                self.log(f"Error scanning {name}: {e}", logging.WARNING)
        return items


# =============================================================================
# DRIVERS
# =============================================================================

DRIVER_PROPERTY_KEYS = {
    "DEVPKEY_Device_DriverVersion": "driver_version",
    "DEVPKEY_Device_DriverProvider": "driver_provider",
    "DEVPKEY_Device_DriverDate": "driver_date",
    "DEVPKEY_Device_DriverInfPath": "driver_inf_path",
}


def device_status(value: Any) -> DeviceStatus:
    text = str(value or "").strip().lower()
    for status in (DeviceStatus.OK, DeviceStatus.ERROR, DeviceStatus.DEGRADED):
        if text == status.value.lower():
            return status
    return DeviceStatus.UNKNOWN


def device_from_raw(raw: Dict[str, Any], properties: Optional[Dict[str, str]] = None) -> DriverDevice:
    """Combine a Get-PnpDevice object with its driver properties"""
    properties = properties or {}
    return DriverDevice(
        friendly_name=str(raw.get("FriendlyName") or raw.get("Name") or raw.get("InstanceId") or ""),
        instance_id=str(raw.get("InstanceId") or ""),
        device_class=str(raw.get("Class") or ""),
        status=device_status(raw.get("Status")),
        present=bool(raw.get("Present")),
        driver_version=properties.get("driver_version", ""),
        driver_provider=properties.get("driver_provider", ""),
        driver_date=format_cim_date(properties.get("driver_date", "")),
        driver_inf_path=properties.get("driver_inf_path", ""),
    )


def parse_device_properties(output: str) -> Dict[str, str]:
    """Map Get-PnpDeviceProperty output onto DriverDevice attribute names"""
    props = {}
    for item in parse_json_records(output):
        attr = DRIVER_PROPERTY_KEYS.get(str(item.get("KeyName") or ""))
        if attr and item.get("Data") is not None:
            props[attr] = str(item.get("Data"))
    return props


class DriverScanner(_Logged):
    """Enumerates PnP devices and queries each one's driver"""

    def __init__(self, callback: Callable[[str], None] = None, timeout: int = 30):
        super().__init__(callback)
        self.timeout = timeout

    @timed("enumerate_devices")
    def enumerate_devices(self) -> List[Dict[str, Any]]:
        self.log("Enumerating devices...")
        command = (
            "Get-PnpDevice | Select-Object FriendlyName, Class, Status, Present, InstanceId "
            "| ConvertTo-Json -Compress"
        )
        devices = [d for d in parse_json_records(run_powershell(command, timeout=self.timeout * 4))
                   if d.get("InstanceId")]
        self.log(f"Found {len(devices)} devices")
        return devices

    def query_driver_properties(self, instance_id: str) -> Dict[str, str]:
        keys = ",".join(DRIVER_PROPERTY_KEYS)
        command = (
            f"Get-PnpDeviceProperty -InstanceId {ps_quote(instance_id)} -KeyName {keys} "
            "-ErrorAction SilentlyContinue | Select-Object KeyName, Data | ConvertTo-Json -Compress"
        )
        return parse_device_properties(run_powershell(command, timeout=self.timeout))

    def analyze_device(self, raw: Dict[str, Any]) -> DriverDevice:
        """Per-item step of the batched driver scan"""
        try:
            props = self.query_driver_properties(str(raw.get("InstanceId") or ""))
        except Exception as e:
            logger.warning("Driver property query failed for %s: %s", raw.get("InstanceId"), e)
            props = {}
        return device_from_raw(raw, props)

    @staticmethod
    def placeholder(raw: Dict[str, Any], error: Exception) -> DriverDevice:
        return device_from_raw(raw)


# =============================================================================
# SERVICES
# =============================================================================

_START_TYPES = {0: "Boot", 1: "System", 2: "Automatic", 3: "Manual", 4: "Disabled"}
_COARSE_START_MODES = {
    "auto": "Automatic",
    "manual": "Manual",
    "disabled": "Disabled",
    "boot": "Boot",
    "system": "System",
}


def startup_type_from_registry(start: Any, delayed: Any) -> str:
    try:
        start = int(start)
    except (TypeError, ValueError):
        return ""
    if start == 2 and str(delayed) == "1":
        return "Automatic (Delayed)"
    return _START_TYPES.get(start, "")


def resolve_startup_type(name: str, bulk: Dict[str, str], coarse: str) -> str:
    """Prefer the registry-derived type; fall back to the CIM StartMode"""
    resolved = bulk.get(name.lower(), "")
    if resolved:
        return resolved
    coarse = (coarse or "").strip()
    return _COARSE_START_MODES.get(coarse.lower(), coarse)


class ServiceScanner(_Logged):
    """Enumerates services and runs both permission analyzers per service"""

    SERVICES_KEY = r"SYSTEM\CurrentControlSet\Services"

    def __init__(self, callback: Callable[[str], None] = None, timeout: int = 30):
        super().__init__(callback)
        self.timeout = timeout

    @timed("enumerate_services")
    def enumerate_services(self) -> List[Dict[str, Any]]:
        self.log("Enumerating services...")
        command = (
            "Get-CimInstance -ClassName Win32_Service | "
            "Select-Object Name, DisplayName, State, StartMode, StartName, PathName | "
            "ConvertTo-Json -Compress"
        )
        services = [s for s in parse_json_records(run_powershell(command, timeout=self.timeout * 2))
                    if s.get("Name")]
        self.log(f"Found {len(services)} services")
        return services

    @timed("query_startup_types")
    def query_startup_types(self) -> Dict[str, str]:
        """Bulk-read Start/DelayedAutostart for every service (lowercased names)"""
        types: Dict[str, str] = {}
        try:
            import winreg

            with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, self.SERVICES_KEY) as root:
                count = winreg.QueryInfoKey(root)[0]
                for i in range(count):
                    try:
                        name = winreg.EnumKey(root, i)
                        with winreg.OpenKey(root, name) as key:
                            start, _ = winreg.QueryValueEx(key, "Start")
                            try:
                                delayed, _ = winreg.QueryValueEx(key, "DelayedAutostart")
                            except OSError:
                                delayed = 0
                    except OSError:
                        continue
                    resolved = startup_type_from_registry(start, delayed)
                    if resolved:
                        types[name.lower()] = resolved
        except Exception as e:
            self.log(f"Bulk startup type query failed: {e}", logging.WARNING)
        return types

    def query_service_sd(self, name: str) -> Optional[str]:
        """Raw SDDL of a service, or None if it cannot be read"""
        try:
            result = subprocess.run(
                ["sc.exe", "sdshow", name],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                creationflags=_NO_WINDOW
            )
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.warning("sdshow failed for %s: %s", name, e)
            return None
        text = (result.stdout or "").strip()
        if result.returncode != 0 or "D:" not in text:
            return None
        return text

    def query_file_acl(self, path: str) -> Optional[List[Tuple[str, int, str]]]:
        """DACL of a file as (principal, mask, 'Allow'|'Deny'), or None if unreadable"""
        try:
            import win32security
            import ntsecuritycon

            sd = win32security.GetFileSecurity(path, win32security.DACL_SECURITY_INFORMATION)
            dacl = sd.GetSecurityDescriptorDacl()
            if dacl is None:
                # NULL DACL grants everyone full access
                return [("Everyone", FILE_ALL_ACCESS, "Allow")]

            aces = []
            for i in range(dacl.GetAceCount()):
                (ace_type, ace_flags), mask, sid = dacl.GetAce(i)[:3]
                if ace_flags & ntsecuritycon.INHERIT_ONLY_ACE:
                    continue
                if ace_type == ntsecuritycon.ACCESS_ALLOWED_ACE_TYPE:
                    kind = "Allow"
                elif ace_type == ntsecuritycon.ACCESS_DENIED_ACE_TYPE:
                    kind = "Deny"
                else:
                    continue
                try:
                    name, domain, _ = win32security.LookupAccountSid(None, sid)
                    principal = f"{domain}\\{name}" if domain else name
                except win32security.error:
                    principal = win32security.ConvertSidToStringSid(sid)
                aces.append((principal, mask & 0xFFFFFFFF, kind))
            return aces
        except Exception as e:
            logger.warning("ACL read failed for %s: %s", path, e)
            return None

    def analyze_service(self, raw: Dict[str, Any], startup_types: Dict[str, str]) -> ServiceRecord:
        """Per-item step of the batched service scan"""
        name = str(raw.get("Name") or "")
        path_raw = str(raw.get("PathName") or "")
        record = ServiceRecord(
            name=name,
            display_name=str(raw.get("DisplayName") or ""),
            state=str(raw.get("State") or ""),
            startup_type=resolve_startup_type(name, startup_types, str(raw.get("StartMode") or "")),
            log_on_as=str(raw.get("StartName") or ""),
            exe_path=resolve_executable_path(path_raw),
            exe_path_raw=path_raw,
        )

        control = analyze_service_control(name, self.query_service_sd)
        record.service_control_risk = service_control_risk(control)
        record.service_control_detail = control.summary

        exe = analyze_executable_acl(path_raw, self.query_file_acl)
        record.exe_write_risk = exe_write_risk(exe)
        record.exe_acl_summary = exe.summary
        return record

    @staticmethod
    def placeholder(raw: Dict[str, Any], error: Exception) -> ServiceRecord:
        name = str(raw.get("Name") or "")
        return ServiceRecord(
            name=name,
            display_name=str(raw.get("DisplayName") or ""),
            state=str(raw.get("State") or ""),
            startup_type=resolve_startup_type(name, {}, str(raw.get("StartMode") or "")),
            log_on_as=str(raw.get("StartName") or ""),
            exe_path_raw=str(raw.get("PathName") or ""),
            service_control_detail=f"Analysis failed: {error}",
            exe_acl_summary="N/A",
        )


# =============================================================================
# COLLECTOR
# =============================================================================

class InventoryCollector(_Logged):
    """Owns the canonical collection of each domain and refreshes it wholesale.

    Refreshes of one domain are serialized; the ACL-detail cache is dropped on
    every service refresh and repopulated lazily per service.
    """

    def __init__(self, config, callback: Callable[[str], None] = None,
                 entity_filter: Optional[EntityFilter] = None):
        super().__init__(callback)
        self.config = config
        self.filter = entity_filter or EntityFilter.from_config(config)
        self.software_scanner = SoftwareScanner(callback, timeout=config.query_timeout * 2)
        self.driver_scanner = DriverScanner(callback, timeout=config.query_timeout)
        self.service_scanner = ServiceScanner(callback, timeout=config.query_timeout)
        self.software: List[SoftwareItem] = []
        self.drivers: List[DriverDevice] = []
        self.services: List[ServiceRecord] = []
        self.acl_cache = DataCache()
        self.last_session: Optional[ScanSession] = None

    def scan_software(self) -> List[SoftwareItem]:
        with guard_for("software"):
            with TimingContext("scan_software"):
                items = self.software_scanner.scan_all(self.config.sources)
            self.software = self.filter.filter_software(items)
            self.log(f"Software: {len(self.software)} items")
            return self.software

    def _run_batched(self, domain: str, enumerate_items, analyze, placeholder,
                     on_progress: Optional[ProgressCallback]) -> List[Any]:
        scheduler = BatchScheduler(
            analyze,
            batch_size=self.config.batch_size,
            placeholder=placeholder,
            on_progress=on_progress,
            describe=lambda raw: str(raw.get("Name") or raw.get("InstanceId") or raw),
        )
        session = scheduler.enumerate_session(enumerate_items, domain)
        for _ in scheduler.iter_batches(session):
            pass
        self.last_session = session
        if session.failures:
            self.log(f"{session.failures} {domain} could not be fully analyzed", logging.WARNING)
        return [r for r in session.results if r is not None]

    def scan_drivers(self, on_progress: Optional[ProgressCallback] = None) -> List[DriverDevice]:
        with guard_for("drivers"):
            devices = self._run_batched(
                "drivers",
                self.driver_scanner.enumerate_devices,
                self.driver_scanner.analyze_device,
                self.driver_scanner.placeholder,
                on_progress,
            )
            self.drivers = self.filter.filter_drivers(devices)
            return self.drivers

    def scan_services(self, on_progress: Optional[ProgressCallback] = None) -> List[ServiceRecord]:
        with guard_for("services"):
            self.acl_cache.clear()
            startup_types = self.service_scanner.query_startup_types()
            services = self._run_batched(
                "services",
                self.service_scanner.enumerate_services,
                lambda raw: self.service_scanner.analyze_service(raw, startup_types),
                self.service_scanner.placeholder,
                on_progress,
            )
            self.services = self.filter.filter_services(services)
            return self.services

    def acl_detail(self, service_name: str) -> Dict[str, Any]:
        """Per-ACE breakdown for one service, cached until the next refresh"""
        service = next((s for s in self.services if s.name.lower() == service_name.lower()), None)
        if service is None:
            raise KeyError(service_name)

        def load():
            scanner = self.service_scanner
            return {
                "control": analyze_service_control(service.name, scanner.query_service_sd),
                "exe": analyze_executable_acl(service.exe_path_raw, scanner.query_file_acl),
            }

        return self.acl_cache.get_or_load(service.name.lower(), load)


# =============================================================================
# LONG-RUNNING OPERATIONS
# =============================================================================

def result_from_output(returncode: int, output: str) -> ActionResult:
    """Map an exit code + output onto the success / reboot convention"""
    text = (output or "").strip()
    lines = [l.strip() for l in text.splitlines() if l.strip()]
    message = lines[-1] if lines else f"Exit code {returncode}"
    requires_reboot = returncode == ERROR_SUCCESS_REBOOT_REQUIRED or bool(_REBOOT_PATTERN.search(text))
    success = returncode in (0, ERROR_SUCCESS_REBOOT_REQUIRED)
    return ActionResult(success=success, message=message, requires_reboot=requires_reboot)


def run_command(
    args: Sequence[str],
    timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    poll_interval: float = 0.5,
) -> ActionResult:
    """Run an external command to completion, polling for cancellation"""
    try:
        proc = subprocess.Popen(
            list(args),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            creationflags=_NO_WINDOW
        )
    except OSError as e:
        return ActionResult(success=False, message=f"Unable to start {args[0]}: {e}")

    waited = 0.0
    while True:
        try:
            output, _ = proc.communicate(timeout=poll_interval)
            break
        except subprocess.TimeoutExpired:
            waited += poll_interval
            if cancel_event is not None and cancel_event.is_set():
                proc.kill()
                proc.communicate()
                return ActionResult(success=False, message="Cancelled")
            if timeout is not None and waited >= timeout:
                proc.kill()
                proc.communicate()
                return ActionResult(success=False, message=f"Timed out after {timeout:.0f}s")

    return result_from_output(proc.returncode, output)


class DriverManager(_Logged):
    """Driver store operations via pnputil"""

    def backup_drivers(self, destination: str, cancel_event: Optional[threading.Event] = None) -> ActionResult:
        self.log(f"Exporting third-party drivers to {destination}")
        try:
            os.makedirs(destination, exist_ok=True)
        except OSError as e:
            return ActionResult(success=False, message=f"Cannot create {destination}: {e}")
        return run_command(["pnputil", "/export-driver", "*", destination], cancel_event=cancel_event)

    def install_driver(self, inf_path: str, cancel_event: Optional[threading.Event] = None) -> ActionResult:
        if not inf_path.lower().endswith(".inf") or not os.path.isfile(inf_path):
            return ActionResult(success=False, message=f"Not an INF file: {inf_path}")
        self.log(f"Installing driver {inf_path}")
        return run_command(["pnputil", "/add-driver", inf_path, "/install"], cancel_event=cancel_event)

    def install_driver_folder(self, folder: str, cancel_event: Optional[threading.Event] = None) -> ActionResult:
        if not os.path.isdir(folder):
            return ActionResult(success=False, message=f"Folder not found: {folder}")
        self.log(f"Installing all drivers under {folder}")
        pattern = os.path.join(folder, "*.inf")
        return run_command(["pnputil", "/add-driver", pattern, "/subdirs", "/install"], cancel_event=cancel_event)


class ServiceController(_Logged):
    """Start / stop / restart a service"""

    ACTIONS = {
        "start": "Start-Service",
        "stop": "Stop-Service",
        "restart": "Restart-Service",
    }

    def control(self, name: str, action: str, cancel_event: Optional[threading.Event] = None) -> ActionResult:
        cmdlet = self.ACTIONS.get(action.lower())
        if cmdlet is None:
            return ActionResult(success=False, message=f"Unknown service action: {action}")
        if not name:
            return ActionResult(success=False, message="No service name given")
        self.log(f"{cmdlet} {name}")
        command = (
            f"{cmdlet} -Name {ps_quote(name)} -Force -ErrorAction Stop; "
            f"(Get-Service -Name {ps_quote(name)}).Status"
        )
        result = run_command(
            ["powershell", "-NoProfile", "-NonInteractive", "-Command", command],
            cancel_event=cancel_event,
        )
        # Service control never requires a reboot
        result.requires_reboot = False
        if result.success:
            result.message = f"{name}: {result.message}"
        return result
