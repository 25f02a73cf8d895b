"""
Security Analyzers
==================
Pure functions that turn raw permission data into risk classifications.

Two analyzers:
1. Service control  - SDDL text of a service -> can a non-admin reconfigure it?
2. Executable ACL   - DACL of a file -> can a non-privileged principal replace it?

Both fail closed: anything unreadable, missing or malformed is reported as
"not flagged" with an explanatory summary, never as risky and never as an exception.
The actual descriptor / ACL queries are passed in as callables so the analyzers
stay platform independent.
"""

import os
import re
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from entities import (
    AceRisk, AclEntry, AnalysisResult, ExeWriteRisk, ServiceControlRisk,
)


# =============================================================================
# SERVICE CONTROL (SDDL)
# =============================================================================

# Rights that let the holder repoint or re-permission a service.
# Read/start/stop are granted broadly by default and are not escalation vectors.
SERVICE_RISKY_RIGHTS = {
    "DC": "ChangeConfig",
    "WD": "WriteDAC",
    "WO": "WriteOwner",
}

SERVICE_CHANGE_CONFIG = 0x00000002
WRITE_DAC = 0x00040000
WRITE_OWNER = 0x00080000

_SERVICE_RISKY_BITS = {
    SERVICE_CHANGE_CONFIG: "ChangeConfig",
    WRITE_DAC: "WriteDAC",
    WRITE_OWNER: "WriteOwner",
}

# Well-known non-administrative principals (SDDL alias and SID forms)
NON_ADMIN_PRINCIPALS = {
    "WD": "Everyone",
    "S-1-1-0": "Everyone",
    "AU": "Authenticated Users",
    "S-1-5-11": "Authenticated Users",
    "IU": "Interactive Users",
    "S-1-5-4": "Interactive Users",
    "BU": "Built-in Users",
    "S-1-5-32-545": "Built-in Users",
    "PU": "Power Users",
    "S-1-5-32-547": "Power Users",
    "NO": "Network Configuration Operators",
    "S-1-5-32-556": "Network Configuration Operators",
    "SO": "Server Operators",
    "S-1-5-32-549": "Server Operators",
}

_ALLOW_ACE_TYPES = ("A", "OA")
_SDDL_FIELD_COUNT = 6  # type;flags;rights;object_guid;inherit_guid;sid
_ACE_PATTERN = re.compile(r"\(([^()]*)\)")

SD_UNREADABLE = "Unable to read SD"
SD_RESTRICTED = "Restricted to privileged accounts"


def parse_sddl_aces(sddl: str) -> List[Tuple[str, str, str]]:
    """Parse (ace_type, rights, sid) triples out of SDDL text.

    Entries with fewer than six semicolon-delimited fields are skipped.
    """
    aces = []
    for match in _ACE_PATTERN.finditer(sddl or ""):
        parts = match.group(1).split(";")
        if len(parts) < _SDDL_FIELD_COUNT:
            continue
        ace_type = parts[0].strip().upper()
        rights = parts[2].strip()
        sid = parts[5].strip()
        if not ace_type or not sid:
            continue
        aces.append((ace_type, rights, sid))
    return aces


def service_risky_rights(rights: str) -> List[str]:
    """Return the names of risky service rights present in an SDDL rights field"""
    rights = (rights or "").strip()
    if not rights:
        return []

    if rights.lower().startswith("0x"):
        try:
            mask = int(rights, 16)
        except ValueError:
            return []
        return [name for bit, name in _SERVICE_RISKY_BITS.items() if mask & bit]

    # Rights are a run of two-letter codes; tokenizing avoids matching "DC" across "SDCC"
    codes = [rights[i:i + 2].upper() for i in range(0, len(rights) - 1, 2)]
    found = []
    for code in codes:
        name = SERVICE_RISKY_RIGHTS.get(code)
        if name and name not in found:
            found.append(name)
    return found


def analyze_service_sddl(sddl: Optional[str]) -> AnalysisResult:
    """Classify a service security descriptor"""
    if not sddl or not sddl.strip():
        return AnalysisResult(risky=False, summary=SD_UNREADABLE, queried=False)

    offenders: List[str] = []
    details: List[str] = []
    entries: List[AclEntry] = []

    for ace_type, rights, sid in parse_sddl_aces(sddl):
        allow = ace_type in _ALLOW_ACE_TYPES
        principal = NON_ADMIN_PRINCIPALS.get(sid.upper())
        risky_rights = service_risky_rights(rights) if allow else []
        is_risky = bool(principal and risky_rights)

        if is_risky:
            tag = AceRisk.RISKY
        elif allow and risky_rights:
            tag = AceRisk.PRIVILEGED_WRITE
        else:
            tag = AceRisk.NONE

        entries.append(AclEntry(
            identity=principal or sid,
            rights=rights,
            ace_type="Allow" if allow else ("Deny" if ace_type.startswith("D") else ace_type),
            risk=tag,
        ))

        if is_risky:
            if principal not in offenders:
                offenders.append(principal)
            details.append(f"{principal} [{', '.join(risky_rights)}]")

    if offenders:
        return AnalysisResult(
            risky=True,
            summary="Non-admin control rights: " + "; ".join(details),
            entries=entries,
            principals=offenders,
        )
    return AnalysisResult(risky=False, summary=SD_RESTRICTED, entries=entries)


def analyze_service_control(
    service_name: str,
    query_sd: Callable[[str], Optional[str]],
) -> AnalysisResult:
    """Query a service's descriptor and classify it.

    The query failing in any way degrades to the unreadable result.
    """
    try:
        sddl = query_sd(service_name)
    except Exception:
        sddl = None
    return analyze_service_sddl(sddl)


def service_control_risk(result: AnalysisResult) -> ServiceControlRisk:
    if not result.queried:
        return ServiceControlRisk.NOT_QUERIED
    return ServiceControlRisk.WEAK if result.risky else ServiceControlRisk.OK


# =============================================================================
# EXECUTABLE FILE ACL
# =============================================================================

FILE_READ_DATA = 0x00000001
FILE_WRITE_DATA = 0x00000002
FILE_APPEND_DATA = 0x00000004
FILE_READ_EA = 0x00000008
FILE_WRITE_EA = 0x00000010
FILE_EXECUTE = 0x00000020
FILE_DELETE_CHILD = 0x00000040
FILE_READ_ATTRIBUTES = 0x00000080
FILE_WRITE_ATTRIBUTES = 0x00000100
DELETE = 0x00010000
READ_CONTROL = 0x00020000
SYNCHRONIZE = 0x00100000

GENERIC_ALL = 0x10000000
GENERIC_EXECUTE = 0x20000000
GENERIC_WRITE = 0x40000000
GENERIC_READ = 0x80000000

FILE_ALL_ACCESS = 0x001F01FF
FILE_GENERIC_WRITE = 0x00120116
FILE_GENERIC_READ = 0x00120089
FILE_GENERIC_EXECUTE = 0x001200A0

# Composite rights as shown by Get-Acl / icacls
FULL_CONTROL = 0x001F01FF
MODIFY = 0x001301BF
READ_AND_EXECUTE = 0x001200A9
READ = 0x00120089
WRITE = 0x00000116

# Only content replacement and ACL takeover count. Append and attribute writes
# are routinely inherited by broad groups and cannot replace file content.
FILE_RISKY_RIGHTS = FILE_WRITE_DATA | WRITE_DAC | WRITE_OWNER

PRIVILEGED_IDENTITIES = [
    "administrators",
    "system",
    "trustedinstaller",
    "nt service",
    "creator owner",
]

_COMPOSITE_NAMES = [
    (FULL_CONTROL, "FullControl"),
    (MODIFY, "Modify"),
    (READ_AND_EXECUTE, "ReadAndExecute"),
    (READ, "Read"),
    (WRITE, "Write"),
]

_BIT_NAMES = [
    (FILE_WRITE_DATA, "WriteData"),
    (FILE_APPEND_DATA, "AppendData"),
    (FILE_WRITE_EA, "WriteExtendedAttributes"),
    (FILE_WRITE_ATTRIBUTES, "WriteAttributes"),
    (FILE_DELETE_CHILD, "DeleteSubdirectoriesAndFiles"),
    (DELETE, "Delete"),
    (WRITE_DAC, "ChangePermissions"),
    (WRITE_OWNER, "TakeOwnership"),
    (FILE_READ_DATA, "ReadData"),
    (FILE_EXECUTE, "ExecuteFile"),
]

ACL_NOT_FOUND = "Not found"
ACL_UNREADABLE = "Unable to read ACL"
ACL_NO_PATH = "No executable path"
ACL_RESTRICTED = "Write restricted to privileged accounts"


def map_generic_file_rights(mask: int) -> int:
    """Translate GENERIC_* bits to their file-specific equivalents"""
    mapped = mask & ~(GENERIC_ALL | GENERIC_EXECUTE | GENERIC_WRITE | GENERIC_READ)
    if mask & GENERIC_ALL:
        mapped |= FILE_ALL_ACCESS
    if mask & GENERIC_WRITE:
        mapped |= FILE_GENERIC_WRITE
    if mask & GENERIC_READ:
        mapped |= FILE_GENERIC_READ
    if mask & GENERIC_EXECUTE:
        mapped |= FILE_GENERIC_EXECUTE
    return mapped


def describe_file_rights(mask: int) -> str:
    """Render a file rights mask the way Get-Acl would"""
    mask = map_generic_file_rights(mask)
    for value, name in _COMPOSITE_NAMES:
        if (mask & value) == value and (mask & ~(value | SYNCHRONIZE)) == 0:
            return name
    names = [name for bit, name in _BIT_NAMES if mask & bit]
    if not names:
        return f"0x{mask:08X}"
    return ", ".join(names)


def is_privileged_identity(identity: str) -> bool:
    lowered = (identity or "").lower()
    return any(p in lowered for p in PRIVILEGED_IDENTITIES)


def classify_file_ace(identity: str, mask: int, ace_type: str) -> AceRisk:
    """Tag one file ACE as risky, privileged-write or none"""
    if not mask_has_risky_file_rights(mask):
        return AceRisk.NONE
    if (ace_type or "").lower() != "allow":
        return AceRisk.NONE
    if is_privileged_identity(identity):
        return AceRisk.PRIVILEGED_WRITE
    return AceRisk.RISKY


def mask_has_risky_file_rights(mask: int) -> bool:
    return bool(map_generic_file_rights(mask) & FILE_RISKY_RIGHTS)


def analyze_file_aces(aces: Iterable[Tuple[str, int, str]]) -> AnalysisResult:
    """Classify an already-read DACL of (identity, mask, 'Allow'|'Deny') tuples"""
    entries: List[AclEntry] = []
    offenders: List[str] = []

    for identity, mask, ace_type in aces:
        tag = classify_file_ace(identity, mask, ace_type)
        entries.append(AclEntry(
            identity=identity,
            rights=describe_file_rights(mask),
            ace_type=ace_type,
            risk=tag,
        ))
        if tag == AceRisk.RISKY and identity not in offenders:
            offenders.append(identity)

    if offenders:
        return AnalysisResult(
            risky=True,
            summary="Writable by: " + ", ".join(offenders),
            entries=entries,
            principals=offenders,
        )
    return AnalysisResult(risky=False, summary=ACL_RESTRICTED, entries=entries)


def analyze_executable_acl(
    path: str,
    query_acl: Callable[[str], Optional[Sequence[Tuple[str, int, str]]]],
) -> AnalysisResult:
    """Resolve a path, read its DACL and classify it.

    A missing target is not exploitable through this vector, so it is
    reported as not queried rather than risky.
    """
    resolved = resolve_executable_path(path)
    if not resolved:
        return AnalysisResult(risky=False, summary=ACL_NO_PATH, queried=False)
    if not os.path.exists(resolved):
        return AnalysisResult(risky=False, summary=f"{ACL_NOT_FOUND}: {resolved}", queried=False)

    try:
        aces = query_acl(resolved)
    except Exception:
        aces = None
    if aces is None:
        return AnalysisResult(risky=False, summary=ACL_UNREADABLE, queried=False)
    return analyze_file_aces(aces)


def exe_write_risk(result: AnalysisResult) -> ExeWriteRisk:
    if not result.queried:
        return ExeWriteRisk.NOT_QUERIED
    return ExeWriteRisk.RISKY if result.risky else ExeWriteRisk.OK


# =============================================================================
# PATH RESOLUTION
# =============================================================================

_ENV_TOKEN = re.compile(r"%([^%]+)%")


def extract_executable_path(command: str) -> str:
    """Extract the executable path from a command line"""
    if not command:
        return ""

    command = command.strip()

    # Handle quoted paths
    if command.startswith('"'):
        end_quote = command.find('"', 1)
        if end_quote > 0:
            return command[1:end_quote]
        return command.strip('"')

    # Handle unquoted paths with spaces (look for .exe / .sys)
    exe_match = re.search(r'^([^"]+?\.(?:exe|sys))(?=\s|$)', command, re.IGNORECASE)
    if exe_match:
        return exe_match.group(1)

    # Just take the first token
    parts = command.split()
    if parts:
        return parts[0]

    return command


def expand_env_tokens(path: str) -> str:
    """Expand %VAR% tokens using the process environment (case-insensitive)"""
    env = {k.upper(): v for k, v in os.environ.items()}

    def _sub(match):
        return env.get(match.group(1).upper(), match.group(0))

    return _ENV_TOKEN.sub(_sub, path)


def resolve_executable_path(raw: str) -> str:
    """Turn a service ImagePath/PathName into a plain filesystem path"""
    path = extract_executable_path(raw or "")
    if not path:
        return ""

    if path.startswith("\\??\\"):
        path = path[4:]
    lowered = path.lower()
    if lowered.startswith("\\systemroot\\"):
        path = "%SystemRoot%" + path[len("\\systemroot"):]
    elif lowered.startswith("system32\\"):
        path = "%SystemRoot%\\" + path

    return expand_env_tokens(path)
