"""Validate blobstream coverage thresholds from a coverage.py JSON report.

Thresholds are keyed by path prefix: a module path checks one file, a
directory path (ending in ``/``) checks the statement-weighted coverage of
every file below it.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Final

THRESHOLDS: Final[dict[str, float]] = {
    "src/blobstream/streams/": 90.0,
    "src/blobstream/services/_memory.py": 90.0,
    "src/blobstream/services/azure.py": 80.0,
    "src/blobstream/conditions.py": 95.0,
    "src/blobstream/checksum.py": 95.0,
}
DEFAULT_MIN_TOTAL: Final[float] = 85.0


def _load_files(path: Path) -> tuple[dict[str, dict[str, object]], float | None]:
    """Return per-file summaries keyed by normalized path, plus the report total."""
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict) or not isinstance(raw.get("files"), dict):
        msg = "Coverage report must be a JSON object with a 'files' object."
        raise TypeError(msg)

    files: dict[str, dict[str, object]] = {}
    for key, entry in raw["files"].items():
        if isinstance(key, str) and isinstance(entry, dict) and isinstance(entry.get("summary"), dict):
            files[_normalize(key)] = entry["summary"]

    totals = raw.get("totals")
    total = totals.get("percent_covered") if isinstance(totals, dict) else None
    return files, float(total) if isinstance(total, int | float) else None


def _normalize(path: str) -> str:
    """Strip OS separators and any checkout prefix ahead of ``src/``."""
    normalized = path.replace("\\", "/").removeprefix("./")
    index = normalized.rfind("/src/")
    return normalized[index + 1 :] if index >= 0 else normalized


def _weighted_percent(summaries: list[dict[str, object]]) -> float | None:
    statements = sum(int(s.get("num_statements", 0)) for s in summaries)  # type: ignore[call-overload]
    if not summaries or statements == 0:
        return None
    covered = sum(int(s.get("covered_lines", 0)) for s in summaries)  # type: ignore[call-overload]
    return 100.0 * covered / statements


def check(report_path: Path, *, min_total: float) -> list[str]:
    """Return one failure line per threshold that is missing or not met."""
    files, total = _load_files(report_path)
    failures: list[str] = []

    for prefix, required in THRESHOLDS.items():
        if prefix.endswith("/"):
            matched = [summary for key, summary in files.items() if key.startswith(prefix)]
        else:
            matched = [files[prefix]] if prefix in files else []
        percent = _weighted_percent(matched)
        if percent is None:
            failures.append(f"{prefix}: no coverage data")
        elif percent < required:
            failures.append(f"{prefix}: {percent:.2f}% < required {required:.2f}%")

    if total is None:
        failures.append("total: no coverage data")
    elif total < min_total:
        failures.append(f"total: {total:.2f}% < required {min_total:.2f}%")
    return failures


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("report", nargs="?", default="coverage.json", help="coverage.py JSON report path.")
    parser.add_argument(
        "--min-total",
        type=float,
        default=DEFAULT_MIN_TOTAL,
        help=f"Minimum total coverage percentage (default: {DEFAULT_MIN_TOTAL}).",
    )
    args = parser.parse_args()

    failures = check(Path(args.report), min_total=args.min_total)
    for failure in failures:
        sys.stderr.write(f"{failure}\n")
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
