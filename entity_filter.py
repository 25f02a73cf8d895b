"""
Entity Normalizer / Filter
==========================
Applies the same inclusion rules to every adapter's output before it becomes
the canonical collection for a domain:

1. Exclusion patterns  - drop anything whose display name (software: or unique id)
                         matches any configured regex
2. Visibility toggles  - hide system components / runtime frameworks
3. Custom names        - overlay user display names keyed by identity
4. Sort                - by custom name else name, case-insensitive
"""

import dataclasses
import logging
import re
from typing import Dict, Iterable, List, Optional, Pattern

from entities import DriverDevice, ServiceRecord, SoftwareItem

logger = logging.getLogger("inventory_audit.filter")


def compile_patterns(patterns: Iterable[str]) -> List[Pattern]:
    """Compile exclusion patterns, skipping (and logging) invalid ones"""
    compiled = []
    for pattern in patterns or []:
        if not pattern or not str(pattern).strip():
            continue
        try:
            compiled.append(re.compile(str(pattern), re.IGNORECASE))
        except re.error as e:
            logger.warning("Ignoring invalid exclusion pattern %r: %s", pattern, e)
    return compiled


class EntityFilter:
    """Configured filtering rules shared by all three domains"""

    def __init__(
        self,
        exclusions: Optional[Iterable[str]] = None,
        show_system_components: bool = False,
        show_frameworks: bool = False,
        custom_names: Optional[Dict[str, str]] = None,
    ):
        self.patterns = compile_patterns(exclusions or [])
        self.show_system_components = show_system_components
        self.show_frameworks = show_frameworks
        self.custom_names = dict(custom_names or {})

    @classmethod
    def from_config(cls, config) -> "EntityFilter":
        return cls(
            exclusions=config.exclusions,
            show_system_components=config.show_system_components,
            show_frameworks=config.show_frameworks,
            custom_names=config.custom_names,
        )

    def is_excluded(self, *values: str) -> bool:
        """True if any value matches any exclusion pattern"""
        for value in values:
            if not value:
                continue
            for pattern in self.patterns:
                if pattern.search(value):
                    return True
        return False

    # -------------------------------------------------------------------------
    # Software
    # -------------------------------------------------------------------------

    def filter_software(self, items: Iterable[SoftwareItem]) -> List[SoftwareItem]:
        kept: List[SoftwareItem] = []
        seen: Dict[str, int] = {}
        dropped = 0

        for item in items:
            if self.is_excluded(item.name, item.unique_id):
                dropped += 1
                continue
            if item.is_system_component and not self.show_system_components:
                dropped += 1
                continue
            if item.is_framework and not self.show_frameworks:
                dropped += 1
                continue

            key = item.identity_key
            custom = self.custom_names.get(key, "")
            if custom != item.custom_name:
                item = dataclasses.replace(item, custom_name=custom)

            seen[key] = seen.get(key, 0) + 1
            kept.append(item)

        duplicates = [k for k, n in seen.items() if n > 1]
        if duplicates:
            logger.warning(
                "%d identity keys appear more than once; comparisons keep the last: %s",
                len(duplicates), ", ".join(duplicates[:5]),
            )
        if dropped:
            logger.debug("Software filter dropped %d items", dropped)

        return sorted(kept, key=lambda s: (s.display_name.lower(), s.identity_key))

    # -------------------------------------------------------------------------
    # Drivers / services
    # -------------------------------------------------------------------------

    def filter_drivers(self, devices: Iterable[DriverDevice]) -> List[DriverDevice]:
        kept = [d for d in devices if not self.is_excluded(d.friendly_name)]
        return sorted(kept, key=lambda d: (d.friendly_name.lower(), d.instance_id))

    def filter_services(self, services: Iterable[ServiceRecord]) -> List[ServiceRecord]:
        kept = [s for s in services if not self.is_excluded(s.display_name or s.name)]
        return sorted(kept, key=lambda s: ((s.display_name or s.name).lower(), s.name))
