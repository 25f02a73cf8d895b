#!/usr/bin/env python3
"""
Build script for Inventory Audit
Creates a standalone console executable using PyInstaller
"""

import subprocess
import sys
from pathlib import Path

# Configuration
APP_NAME = "InventoryAudit"
VERSION = "1.0.0"
MAIN_SCRIPT = "inventory_cli.py"
ICON_FILE = None  # Set to "icon.ico" if you have one

MODULES = [
    "action_runner",
    "app_config",
    "batch_scheduler",
    "entities",
    "entity_filter",
    "inventory_backend",
    "perf_utils",
    "report_sink",
    "security_analyzers",
    "snapshot_diff",
]


def build():
    print(f"Building {APP_NAME} v{VERSION}...")
    print("=" * 50)

    cmd = [
        sys.executable, "-m", "PyInstaller",
        "--name", APP_NAME,
        "--onefile",
        "--console",
        "--clean",
        "--noconfirm",

        "--hidden-import", "PyQt6.QtCore",
        "--hidden-import", "win32security",
        "--hidden-import", "ntsecuritycon",
        "--hidden-import", "pywintypes",

        # Keep the bundle to QtCore
        "--exclude-module", "PyQt6.QtWidgets",
        "--exclude-module", "PyQt6.QtGui",
        "--exclude-module", "tkinter",
        "--exclude-module", "pytest",

        # UAC admin manifest: SDDL and driver store access need elevation
        "--uac-admin",
    ]
    for module in MODULES:
        cmd.extend(["--hidden-import", module])
    cmd.append(MAIN_SCRIPT)

    if ICON_FILE and Path(ICON_FILE).exists():
        cmd.extend(["--icon", ICON_FILE])

    print("Running PyInstaller...")
    print(f"Command: {' '.join(cmd)}")
    print()

    result = subprocess.run(cmd, cwd=Path(__file__).parent)

    if result.returncode == 0:
        exe_path = Path(__file__).parent / "dist" / f"{APP_NAME}.exe"
        print()
        print("=" * 50)
        print("BUILD SUCCESSFUL!")
        print(f"   Executable: {exe_path}")
        if exe_path.exists():
            print(f"   Size: {exe_path.stat().st_size / 1024 / 1024:.1f} MB")
        print()
        print("Run from an elevated prompt, e.g.:")
        print(f"   {APP_NAME}.exe services --export services.csv")
        print("=" * 50)
    else:
        print()
        print("BUILD FAILED!")
        print("   Check the output above for errors.")
        sys.exit(1)


if __name__ == "__main__":
    build()
