#!/usr/bin/env python3
"""Validate local allotment engine environment readiness."""

from __future__ import annotations

import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from datetime import date
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from backend.repository.data_repository import DataRepository
from backend.services.allotment_service import DEMO_ROOM_TYPE_ID, AllotmentService
from backend.services.settings_service import SettingsService
from backend.utils.config import get_settings

SEPARATOR_LINE = "=" * 44


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="allotment-env-")

    # CHECK 1 — Python version >= 3.10
    if sys.version_info >= (3, 10):
        ok, line = _print_result("Python " + sys.version.split()[0], True)
    else:
        ok, line = _print_result(
            "Python version >= 3.10",
            False,
            f"found {sys.version.split()[0]}",
        )
    results.append(line)
    all_passed = all_passed and ok

    # CHECK 2 — Required packages importable with versions
    package_specs = [
        ("fastapi", "fastapi"),
        ("uvicorn", "uvicorn"),
        ("pydantic", "pydantic"),
        ("numpy", "numpy"),
        ("pandas", "pandas"),
        ("httpx", "httpx"),
        ("pytest", "pytest"),
    ]
    import_errors: list[str] = []
    for module_name, dist_name in package_specs:
        try:
            importlib.import_module(module_name)
            version(dist_name)
        except (ImportError, PackageNotFoundError) as exc:
            import_errors.append(f"{module_name} ({exc})")
    if import_errors:
        ok, line = _print_result(
            "Required packages",
            False,
            "missing/unimportable -> " + "; ".join(import_errors),
        )
    else:
        ok, line = _print_result("Required packages: all importable", True)
    results.append(line)
    all_passed = all_passed and ok

    base_settings = get_settings()

    # CHECK 3 — Timezone database
    try:
        ZoneInfo(base_settings.default_timezone)
        ok, line = _print_result(f"Timezone data: {base_settings.default_timezone}", True)
    except ZoneInfoNotFoundError as exc:
        ok, line = _print_result("Timezone data", False, str(exc))
    results.append(line)
    all_passed = all_passed and ok

    try:
        validation_settings = replace(
            base_settings,
            database_path=Path(temp_dir) / "allotment_validation.db",
        )
        repository = DataRepository(validation_settings)
        settings_service = SettingsService(repository=repository, settings=validation_settings)
        service = AllotmentService(
            repository=repository,
            settings_service=settings_service,
            settings=validation_settings,
        )

        # CHECK 4 — Database initialization
        try:
            repository.initialize_database()
            ok, line = _print_result("Database initialization", True)
        except RuntimeError as exc:
            ok, line = _print_result("Database initialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 5 — Global defaults seeding
        try:
            defaults = settings_service.seed_if_missing()
            ok, line = _print_result(
                "Global defaults seeded",
                True,
                f": inventory={defaults.total_inventory} method={defaults.default_allocation_method.value}",
            )
        except Exception as exc:
            ok, line = _print_result("Global defaults seeding", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 6 — Demo allotment materialization
        try:
            service.seed_demo_allotment_if_empty()
            daily = service.resolver.read(DEMO_ROOM_TYPE_ID, date.today())
            if daily.total_allocated > daily.total_inventory:
                raise RuntimeError(
                    f"materialized {daily.total_allocated} units over {daily.total_inventory} rooms"
                )
            ok, line = _print_result(
                "Demo allotment materialization",
                True,
                f": {daily.allocation_vector()}",
            )
        except Exception as exc:
            ok, line = _print_result("Demo allotment materialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" Allotment Engine Environment Validation")
    print(SEPARATOR_LINE)
    for line in results:
        print(f" {line}")
    print(SEPARATOR_LINE)
    if all_passed:
        print(" All checks passed. Environment is ready.")
        print(SEPARATOR_LINE)
        return 0
    print(" One or more checks failed.")
    print(SEPARATOR_LINE)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
