"""
Snapshot Diff Engine
====================
Generic structural diff between two point-in-time collections of records.

Records are plain mappings of field name -> value, so the same engine serves
software, drivers and services. Entities are matched by a caller-supplied key
field and compared over a caller-supplied, ordered list of fields.

Output guarantees:
- every key in the union of both collections gets at least one DiffRecord
- Added / Removed / Unchanged keys get exactly one record
- Changed keys get one record per differing field, in compare-field order
"""

import dataclasses
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from entities import (
    DOMAINS, ChangeStatus, ChangeType, DiffRecord, SoftwareItem,
    SOFTWARE_KEY, software_to_record,
)

logger = logging.getLogger("inventory_audit.diff")

Record = Mapping[str, Any]


def as_text(value: Any) -> str:
    """Normalize a field value for comparison: missing/None -> '', trimmed"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "True" if value else "False"
    return str(value).strip()


def index_by_key(records: Iterable[Record], key_field: str) -> Dict[str, Record]:
    """Build key -> record. Duplicate keys collapse to the last record."""
    index: Dict[str, Record] = {}
    for record in records:
        index[as_text(record.get(key_field))] = record
    return index


def _describe(record: Record, compare_fields: Sequence[str]) -> str:
    return "; ".join(f"{f}={as_text(record.get(f))}" for f in compare_fields)


def diff_snapshots(
    baseline: Iterable[Record],
    current: Iterable[Record],
    key_field: str,
    compare_fields: Sequence[str],
) -> List[DiffRecord]:
    """Compare two collections keyed by key_field over compare_fields"""
    baseline_by_key = index_by_key(baseline, key_field)
    current_by_key = index_by_key(current, key_field)
    diffs: List[DiffRecord] = []

    # Added: in current, not in baseline
    for key, record in current_by_key.items():
        if key not in baseline_by_key:
            diffs.append(DiffRecord(
                change_type=ChangeType.ADDED,
                key=key,
                new_value=_describe(record, compare_fields),
                summary=f"{key} added",
            ))

    # Removed: in baseline, not in current
    for key, record in baseline_by_key.items():
        if key not in current_by_key:
            diffs.append(DiffRecord(
                change_type=ChangeType.REMOVED,
                key=key,
                old_value=_describe(record, compare_fields),
                summary=f"{key} removed",
            ))

    # Present in both: one Changed record per differing field, else one Unchanged
    for key, new_record in current_by_key.items():
        old_record = baseline_by_key.get(key)
        if old_record is None:
            continue

        changed = False
        for field_name in compare_fields:
            old = as_text(old_record.get(field_name))
            new = as_text(new_record.get(field_name))
            if old != new:
                changed = True
                diffs.append(DiffRecord(
                    change_type=ChangeType.CHANGED,
                    key=key,
                    field=field_name,
                    old_value=old,
                    new_value=new,
                    summary=f"{key} -> {field_name}: '{old}' -> '{new}'",
                ))

        if not changed:
            diffs.append(DiffRecord(
                change_type=ChangeType.UNCHANGED,
                key=key,
                summary=f"{key} unchanged",
            ))

    logger.debug(
        "Diff on %s: %d baseline, %d current, %d records",
        key_field, len(baseline_by_key), len(current_by_key), len(diffs),
    )
    return diffs


def diff_domain(
    domain: str,
    baseline: Iterable[Record],
    current: Iterable[Record],
    compare_fields: Optional[Sequence[str]] = None,
) -> List[DiffRecord]:
    """Diff using a domain's registered key and default compare fields"""
    if domain not in DOMAINS:
        raise ValueError(f"Unknown domain: {domain}")
    domain_info = DOMAINS[domain]
    return diff_snapshots(baseline, current, domain_info["key"], compare_fields or domain_info["compare"])


def count_by_type(diffs: Iterable[DiffRecord]) -> Dict[ChangeType, int]:
    """Count distinct keys per change type"""
    seen: Dict[ChangeType, set] = {ct: set() for ct in ChangeType}
    for diff in diffs:
        seen[diff.change_type].add(diff.key)
    return {ct: len(keys) for ct, keys in seen.items()}


def changed_only(diffs: Iterable[DiffRecord]) -> List[DiffRecord]:
    return [d for d in diffs if d.change_type != ChangeType.UNCHANGED]


# =============================================================================
# SOFTWARE CHANGE ANNOTATION
# =============================================================================

def annotate_software_changes(
    baseline: Sequence[SoftwareItem],
    current: Sequence[SoftwareItem],
) -> List[SoftwareItem]:
    """Mark current items NEW/UPDATED against a baseline and append REMOVED ones.

    UPDATED items carry the baseline version in previous_version. Items are
    copied; the inputs are left untouched.
    """
    diffs = diff_snapshots(
        [software_to_record(s) for s in baseline],
        [software_to_record(s) for s in current],
        SOFTWARE_KEY,
        ["Version"],
    )

    status_by_key: Dict[str, ChangeStatus] = {}
    previous_by_key: Dict[str, str] = {}
    removed_keys = set()
    for diff in diffs:
        if diff.change_type == ChangeType.ADDED:
            status_by_key[diff.key] = ChangeStatus.NEW
        elif diff.change_type == ChangeType.CHANGED:
            status_by_key[diff.key] = ChangeStatus.UPDATED
            previous_by_key[diff.key] = diff.old_value
        elif diff.change_type == ChangeType.REMOVED:
            removed_keys.add(diff.key)

    annotated = []
    for item in current:
        key = item.identity_key
        annotated.append(dataclasses.replace(
            item,
            change_status=status_by_key.get(key, ChangeStatus.NONE),
            previous_version=previous_by_key.get(key, ""),
        ))

    baseline_by_key = {s.identity_key: s for s in baseline}
    for key in sorted(removed_keys):
        annotated.append(dataclasses.replace(
            baseline_by_key[key],
            change_status=ChangeStatus.REMOVED,
            previous_version=baseline_by_key[key].version,
        ))

    return annotated
