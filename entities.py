"""
Inventory Entities
==================
Canonical shapes for everything the scanners produce and the diff engine consumes.

Each domain (software, drivers, services) has a dataclass used by the scanners and
a pair of adapters that convert it to and from the open-schema record shape
(``Dict[str, str]`` keyed by export field names). Exports, baseline imports and
the snapshot diff engine only ever see records.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


# =============================================================================
# ENUMS
# =============================================================================

class SoftwareSource(Enum):
    """Where a software item was discovered"""
    REGISTRY = "Registry"
    APPX = "AppX"
    WINGET = "Winget"


class ChangeStatus(Enum):
    """Change marker set on software items after a baseline comparison"""
    NONE = ""
    NEW = "NEW"
    UPDATED = "UPDATED"
    REMOVED = "REMOVED"


class DeviceStatus(Enum):
    """Device status as reported by PnP"""
    OK = "OK"
    ERROR = "Error"
    DEGRADED = "Degraded"
    UNKNOWN = "Unknown"


class ServiceControlRisk(Enum):
    """Display classification for a service security descriptor"""
    OK = "OK"
    WEAK = "! Weak"
    NOT_QUERIED = "N/A"


class ExeWriteRisk(Enum):
    """Display classification for a service executable ACL"""
    OK = "OK"
    RISKY = "! Risky"
    NOT_QUERIED = "N/A"


class AceRisk(Enum):
    """Per-ACE tag produced by the executable ACL analyzer"""
    RISKY = "risky"
    PRIVILEGED_WRITE = "privileged-write"
    NONE = "none"


class ChangeType(Enum):
    """Classification of one key in a snapshot diff"""
    ADDED = "Added"
    REMOVED = "Removed"
    CHANGED = "Changed"
    UNCHANGED = "Unchanged"


# =============================================================================
# FIELD NAMES
# =============================================================================

SOFTWARE_FIELDS = [
    "IdentityKey", "Name", "CustomName", "Version", "Publisher", "InstallDate",
    "Source", "InstallLocation", "Architecture", "Size", "UniqueId",
    "IsSystemComponent", "IsFramework", "UninstallString", "HelpLink",
    "Comments", "ChangeStatus", "PreviousVersion",
]

DRIVER_FIELDS = [
    "FriendlyName", "Class", "Status", "Present", "DriverVersion",
    "DriverProvider", "DriverDate", "DriverInfPath", "InstanceId",
]

SERVICE_FIELDS = [
    "Name", "DisplayName", "State", "StartupType", "LogOnAs", "ExePath",
    "ExePathRaw", "ServiceControlRisk", "ServiceControlDetail",
    "ExeWriteRisk", "ExeAclSummary",
]

DIFF_FIELDS = ["ChangeType", "Key", "Field", "OldValue", "NewValue", "Summary"]

# Identity field and default compare fields per domain
SOFTWARE_KEY = "IdentityKey"
DRIVER_KEY = "InstanceId"
SERVICE_KEY = "Name"

SOFTWARE_COMPARE_FIELDS = ["Name", "Version", "Publisher", "InstallLocation"]
DRIVER_COMPARE_FIELDS = [
    "FriendlyName", "Class", "Status", "Present", "DriverVersion",
    "DriverProvider", "DriverDate", "DriverInfPath",
]
SERVICE_COMPARE_FIELDS = [
    "DisplayName", "State", "StartupType", "LogOnAs", "ExePath",
    "ServiceControlRisk", "ExeWriteRisk",
]


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass
class SoftwareItem:
    """One installed software package from any source"""
    name: str
    source: SoftwareSource
    version: str = ""
    publisher: str = ""
    install_date: str = ""
    install_location: str = ""
    architecture: str = ""
    size: str = ""
    unique_id: str = ""  # source-scoped (registry subkey, package full name, winget id)
    is_system_component: bool = False
    is_framework: bool = False
    uninstall_string: str = ""
    help_link: str = ""
    comments: str = ""
    custom_name: str = ""
    change_status: ChangeStatus = ChangeStatus.NONE
    previous_version: str = ""

    @property
    def identity_key(self) -> str:
        return software_identity(self.source.value, self.unique_id, self.name)

    @property
    def display_name(self) -> str:
        return self.custom_name or self.name


@dataclass
class DriverDevice:
    """A PnP device and the driver bound to it"""
    friendly_name: str
    instance_id: str
    device_class: str = ""
    status: DeviceStatus = DeviceStatus.UNKNOWN
    present: bool = False
    driver_version: str = ""
    driver_provider: str = ""
    driver_date: str = ""
    driver_inf_path: str = ""


@dataclass
class AclEntry:
    """One access-control entry with its risk tag"""
    identity: str
    rights: str
    ace_type: str  # "Allow" | "Deny"
    risk: AceRisk = AceRisk.NONE

    @property
    def is_risky(self) -> bool:
        return self.risk == AceRisk.RISKY


@dataclass
class ServiceRecord:
    """A Windows service plus its permission analysis"""
    name: str
    display_name: str = ""
    state: str = ""
    startup_type: str = ""
    log_on_as: str = ""
    exe_path: str = ""
    exe_path_raw: str = ""
    service_control_risk: ServiceControlRisk = ServiceControlRisk.NOT_QUERIED
    service_control_detail: str = ""
    exe_write_risk: ExeWriteRisk = ExeWriteRisk.NOT_QUERIED
    exe_acl_summary: str = ""


@dataclass
class DiffRecord:
    """One line of snapshot diff output"""
    change_type: ChangeType
    key: str
    field: str = ""
    old_value: str = ""
    new_value: str = ""
    summary: str = ""


@dataclass
class ActionResult:
    """Terminal result of a long-running external action"""
    success: bool
    message: str = ""
    requires_reboot: bool = False


@dataclass
class AnalysisResult:
    """Outcome of one security analyzer run"""
    risky: bool
    summary: str
    queried: bool = True  # False when the object could not be read at all
    entries: List[AclEntry] = field(default_factory=list)
    principals: List[str] = field(default_factory=list)


# =============================================================================
# IDENTITY & CONVERSION
# =============================================================================

def software_identity(source: str, unique_id: str, name: str) -> str:
    """Build the Source::UniqueId identity, falling back to Source::Name"""
    ident = (unique_id or "").strip() or (name or "").strip()
    return f"{source}::{ident}"


def format_bool(value: bool) -> str:
    return "True" if value else "False"


def parse_bool(value: Optional[str]) -> bool:
    return str(value or "").strip().lower() in ("true", "1", "yes")


def _enum_or_default(enum_cls, value: Optional[str], default):
    value = (value or "").strip()
    for member in enum_cls:
        if member.value == value:
            return member
    return default


def software_to_record(item: SoftwareItem) -> Dict[str, str]:
    return {
        "IdentityKey": item.identity_key,
        "Name": item.name,
        "CustomName": item.custom_name,
        "Version": item.version,
        "Publisher": item.publisher,
        "InstallDate": item.install_date,
        "Source": item.source.value,
        "InstallLocation": item.install_location,
        "Architecture": item.architecture,
        "Size": item.size,
        "UniqueId": item.unique_id,
        "IsSystemComponent": format_bool(item.is_system_component),
        "IsFramework": format_bool(item.is_framework),
        "UninstallString": item.uninstall_string,
        "HelpLink": item.help_link,
        "Comments": item.comments,
        "ChangeStatus": item.change_status.value,
        "PreviousVersion": item.previous_version,
    }


def software_from_record(record: Dict[str, str]) -> SoftwareItem:
    return SoftwareItem(
        name=record.get("Name", "") or "",
        source=_enum_or_default(SoftwareSource, record.get("Source"), SoftwareSource.REGISTRY),
        version=record.get("Version", "") or "",
        publisher=record.get("Publisher", "") or "",
        install_date=record.get("InstallDate", "") or "",
        install_location=record.get("InstallLocation", "") or "",
        architecture=record.get("Architecture", "") or "",
        size=record.get("Size", "") or "",
        unique_id=record.get("UniqueId", "") or "",
        is_system_component=parse_bool(record.get("IsSystemComponent")),
        is_framework=parse_bool(record.get("IsFramework")),
        uninstall_string=record.get("UninstallString", "") or "",
        help_link=record.get("HelpLink", "") or "",
        comments=record.get("Comments", "") or "",
        custom_name=record.get("CustomName", "") or "",
        change_status=_enum_or_default(ChangeStatus, record.get("ChangeStatus"), ChangeStatus.NONE),
        previous_version=record.get("PreviousVersion", "") or "",
    )


def driver_to_record(device: DriverDevice) -> Dict[str, str]:
    return {
        "FriendlyName": device.friendly_name,
        "Class": device.device_class,
        "Status": device.status.value,
        "Present": format_bool(device.present),
        "DriverVersion": device.driver_version,
        "DriverProvider": device.driver_provider,
        "DriverDate": device.driver_date,
        "DriverInfPath": device.driver_inf_path,
        "InstanceId": device.instance_id,
    }


def driver_from_record(record: Dict[str, str]) -> DriverDevice:
    return DriverDevice(
        friendly_name=record.get("FriendlyName", "") or "",
        instance_id=record.get("InstanceId", "") or "",
        device_class=record.get("Class", "") or "",
        status=_enum_or_default(DeviceStatus, record.get("Status"), DeviceStatus.UNKNOWN),
        present=parse_bool(record.get("Present")),
        driver_version=record.get("DriverVersion", "") or "",
        driver_provider=record.get("DriverProvider", "") or "",
        driver_date=record.get("DriverDate", "") or "",
        driver_inf_path=record.get("DriverInfPath", "") or "",
    )


def service_to_record(service: ServiceRecord) -> Dict[str, str]:
    return {
        "Name": service.name,
        "DisplayName": service.display_name,
        "State": service.state,
        "StartupType": service.startup_type,
        "LogOnAs": service.log_on_as,
        "ExePath": service.exe_path,
        "ExePathRaw": service.exe_path_raw,
        "ServiceControlRisk": service.service_control_risk.value,
        "ServiceControlDetail": service.service_control_detail,
        "ExeWriteRisk": service.exe_write_risk.value,
        "ExeAclSummary": service.exe_acl_summary,
    }


def service_from_record(record: Dict[str, str]) -> ServiceRecord:
    return ServiceRecord(
        name=record.get("Name", "") or "",
        display_name=record.get("DisplayName", "") or "",
        state=record.get("State", "") or "",
        startup_type=record.get("StartupType", "") or "",
        log_on_as=record.get("LogOnAs", "") or "",
        exe_path=record.get("ExePath", "") or "",
        exe_path_raw=record.get("ExePathRaw", "") or "",
        service_control_risk=_enum_or_default(
            ServiceControlRisk, record.get("ServiceControlRisk"), ServiceControlRisk.NOT_QUERIED
        ),
        service_control_detail=record.get("ServiceControlDetail", "") or "",
        exe_write_risk=_enum_or_default(
            ExeWriteRisk, record.get("ExeWriteRisk"), ExeWriteRisk.NOT_QUERIED
        ),
        exe_acl_summary=record.get("ExeAclSummary", "") or "",
    )


def diff_to_record(diff: DiffRecord) -> Dict[str, str]:
    return {
        "ChangeType": diff.change_type.value,
        "Key": diff.key,
        "Field": diff.field,
        "OldValue": diff.old_value,
        "NewValue": diff.new_value,
        "Summary": diff.summary,
    }


# Domain registry: fields, key, compare fields, converters
DOMAINS = {
    "software": {
        "fields": SOFTWARE_FIELDS,
        "key": SOFTWARE_KEY,
        "compare": SOFTWARE_COMPARE_FIELDS,
        "to_record": software_to_record,
        "from_record": software_from_record,
    },
    "drivers": {
        "fields": DRIVER_FIELDS,
        "key": DRIVER_KEY,
        "compare": DRIVER_COMPARE_FIELDS,
        "to_record": driver_to_record,
        "from_record": driver_from_record,
    },
    "services": {
        "fields": SERVICE_FIELDS,
        "key": SERVICE_KEY,
        "compare": SERVICE_COMPARE_FIELDS,
        "to_record": service_to_record,
        "from_record": service_from_record,
    },
}
