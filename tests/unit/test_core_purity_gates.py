from __future__ import annotations

import re
from pathlib import Path

CORE_DIR = Path(__file__).resolve().parents[2] / "tp_posting" / "core"
FORBIDDEN_IO = re.compile(r"(open\(|sqlite3|read_sql|to_csv|to_excel)")


def test_core_modules_do_not_import_logging() -> None:
    offenders: list[Path] = []
    for path in CORE_DIR.rglob("*.py"):
        if "logging." in path.read_text(encoding="utf-8"):
            offenders.append(path)
    assert not offenders, f"logging usage found in core modules: {offenders}"


def test_core_has_no_io_patterns() -> None:
    offenders: list[str] = []
    for py_file in CORE_DIR.rglob("*.py"):
        match = FORBIDDEN_IO.search(py_file.read_text(encoding="utf-8"))
        if match:
            offenders.append(f"{py_file.relative_to(CORE_DIR)} -> {match.group(1)}")
    assert not offenders, "Forbidden I/O patterns detected in core: " + ", ".join(offenders)


def test_core_does_not_import_infra() -> None:
    offenders = [
        str(path.relative_to(CORE_DIR))
        for path in CORE_DIR.rglob("*.py")
        if "tp_posting.infra" in path.read_text(encoding="utf-8")
    ]
    assert not offenders, f"core imports infra: {offenders}"
