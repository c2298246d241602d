# -*- coding: utf-8 -*-
"""
Program Overview: Similarity Check Report (SCR) Output Validator

System Function:
    Validates SCR output packages as a standalone utility. Optionally executes
    the SCR pipeline and performs deterministic verification of generated
    artefacts.

Architectural Pattern:
    Implements a streaming validation workflow with optional pipeline execution.

    1. Execution: Optionally runs scr_reporter.py and collects new ZIP outputs.
    2. Extraction: Extracts each ZIP into a temporary directory for inspection.
    3. Verification: Checks the merged workbook header order, report numbering,
       and that the statistics CSV agrees with the per-topic category CSV.
"""

from __future__ import annotations

import argparse
import csv
import json
import re
import shutil
import subprocess
import sys
import tempfile
import zipfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import openpyxl

from scr_reporter import TABULAR_SUFFIXES, find_input_file


ConfigDict = Dict[str, Any]

MERGED_WORKBOOK = "File_Gop.xlsx"
STATISTICS_CSV = "SCR_Statistics.csv"
CATEGORIES_CSV = "SCR_Categories.csv"
REQUIRED_FILES: Tuple[str, ...] = (MERGED_WORKBOOK, STATISTICS_CSV, CATEGORIES_CSV)

EXPECTED_BASE_HEADERS: Tuple[str, ...] = ("Tên đề tài", "Người hướng dẫn", "Số học viên", "Họ tên HV", "TV")
CHAPTER_HEADER_PATTERN = re.compile(r"^C(\d+)$")
REPORT_NAME_PATTERN = re.compile(r"^(KQ_.+)_(\d+)\.docx$")

CATEGORY_COLUMNS = {
    "within_limit": "Within_Limit",
    "l1_edit": "L1_Edit",
    "l2_process": "L2_Process",
    "l2_exceeded": "L2_Exceeded",
}
MAX_ERRORS_PER_FILE = 5


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """
    Parses command line arguments.

    Inputs:
        argv: Optional sequence of arguments.
    Outputs:
        Parsed argparse namespace.
    Error conditions:
        argparse raises SystemExit on invalid arguments.
    """
    parser = argparse.ArgumentParser(description="Validate SCR output packages.")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.json. Defaults to SCR/config.json.",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default=None,
        help="Output directory to validate. Defaults to SCR/outputs.",
    )
    parser.add_argument(
        "--run-pipeline",
        action="store_true",
        help="Run the SCR pipeline before validation.",
    )
    return parser.parse_args(argv)


def load_config(path: Path) -> ConfigDict:
    """
    Loads a JSON configuration file.

    Error conditions:
        Raises ValueError for invalid JSON or missing file.
    """
    if not path.exists():
        raise ValueError(f"Config file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in config: {path}") from exc


def resolve_paths(args: argparse.Namespace) -> Tuple[Path, Path, Path]:
    """Resolves repository, SCR, and output directory paths."""
    script_path = Path(__file__).resolve()
    scr_dir = script_path.parent.parent
    repo_root = scr_dir.parent

    if args.run_pipeline and args.output_dir is None:
        output_dir = scr_dir / "outputs" / "_scr_validate"
    elif args.output_dir:
        output_dir = Path(args.output_dir)
        if not output_dir.is_absolute():
            output_dir = repo_root / output_dir
    else:
        output_dir = scr_dir / "outputs"

    return repo_root, scr_dir, output_dir


def preflight_inputs(scr_dir: Path, config: ConfigDict) -> None:
    """
    Ensures either a data file or both roster inputs exist before pipeline execution.
    Files are matched exactly as the processor matches them (accent- and case-insensitive).

    Error conditions:
        Raises ValueError if required inputs are missing.
    """
    inputs_dir = scr_dir / "inputs"
    settings = config.get("settings", {})

    def has_match(key: str) -> bool:
        pattern = settings.get(key)
        return bool(pattern) and find_input_file(inputs_dir, str(pattern), TABULAR_SUFFIXES, required=False) is not None

    if has_match("input_pattern_data"):
        return
    if not (has_match("input_pattern_main") and has_match("input_pattern_supplementary")):
        raise ValueError(f"No data file and no main/supplementary pair found in {inputs_dir}")


def run_pipeline(repo_root: Path, scr_dir: Path, config: ConfigDict, output_dir: Path) -> List[Path]:
    """
    Executes the SCR processor and copies newly generated ZIP outputs.

    Inputs:
        repo_root: Repository root path.
        scr_dir: SCR module path.
        config: Parsed configuration.
        output_dir: Validation output directory for copied ZIPs.
    Outputs:
        List of ZIP paths copied into output_dir.
    Error conditions:
        Raises ValueError on execution failure or missing ZIPs.
    Resource characteristics:
        Runs an external Python process and copies ZIP files.
    """
    preflight_inputs(scr_dir, config)
    processor_path = scr_dir / "src" / "scr_reporter.py"
    outputs_dir = scr_dir / "outputs"
    existing_zips = set(outputs_dir.glob("SCR_Output_Package_*.zip"))

    result = subprocess.run(
        [sys.executable, str(processor_path), "--base-dir", str(scr_dir)],
        cwd=repo_root,
        check=False,
    )
    if result.returncode != 0:
        raise ValueError("scr_reporter.py failed. Check its logs for details.")

    new_zips = sorted(set(outputs_dir.glob("SCR_Output_Package_*.zip")) - existing_zips)
    if not new_zips:
        raise ValueError("No new SCR_Output_Package_*.zip produced by the pipeline.")

    output_dir.mkdir(parents=True, exist_ok=True)
    copied: List[Path] = []
    for zip_path in new_zips:
        dest = output_dir / zip_path.name
        if dest.resolve() == zip_path.resolve():
            copied.append(zip_path)
            continue
        shutil.copy2(zip_path, dest)
        copied.append(dest)

    return copied


def record_error(
    errors: List[str],
    error_counts: Dict[str, int],
    key: str,
    message: str,
    limit: int = MAX_ERRORS_PER_FILE,
) -> None:
    """Records an error message with per key throttling."""
    count = error_counts.get(key, 0)
    if count < limit:
        errors.append(message)
    error_counts[key] = count + 1


def validate_merged_workbook(workbook_path: Path, errors: List[str], error_counts: Dict[str, int]) -> int:
    """
    Checks the merged workbook's header order: base columns, then C1..CN ascending.

    Outputs:
        Number of data rows found (0 when the workbook cannot be read).
    """
    file_key = workbook_path.name
    try:
        wb = openpyxl.load_workbook(workbook_path, data_only=True, read_only=True)
    except Exception as exc:
        record_error(errors, error_counts, file_key, f"{file_key}: failed to open workbook: {exc}")
        return 0

    try:
        ws = wb.worksheets[0]
        rows_iter = ws.iter_rows(values_only=True)
        try:
            headers = [str(h).strip() if h is not None else "" for h in next(rows_iter)]
        except StopIteration:
            record_error(errors, error_counts, file_key, f"{file_key}: empty worksheet")
            return 0

        base = tuple(headers[:len(EXPECTED_BASE_HEADERS)])
        if base != EXPECTED_BASE_HEADERS:
            record_error(errors, error_counts, file_key, f"{file_key}: unexpected base headers {list(base)}")

        chapter_numbers: List[int] = []
        for header in headers[len(EXPECTED_BASE_HEADERS):]:
            match = CHAPTER_HEADER_PATTERN.fullmatch(header)
            if not match:
                record_error(errors, error_counts, file_key, f"{file_key}: unexpected column '{header}'")
                continue
            chapter_numbers.append(int(match.group(1)))
        if chapter_numbers != sorted(chapter_numbers) or len(set(chapter_numbers)) != len(chapter_numbers):
            record_error(errors, error_counts, file_key, f"{file_key}: chapter columns not in ascending order")

        return sum(1 for row in rows_iter if row is not None and any(cell is not None for cell in row))
    finally:
        wb.close()


def validate_report_names(names: Sequence[str], zip_key: str, errors: List[str], error_counts: Dict[str, int]) -> int:
    """Checks that report documents share one base name and are numbered 1..N without gaps."""
    numbers: Dict[str, List[int]] = {}
    for name in names:
        match = REPORT_NAME_PATTERN.fullmatch(name)
        if not match:
            record_error(errors, error_counts, zip_key, f"{zip_key}: unexpected document name '{name}'")
            continue
        numbers.setdefault(match.group(1), []).append(int(match.group(2)))

    if len(numbers) > 1:
        record_error(errors, error_counts, zip_key, f"{zip_key}: mixed report base names {sorted(numbers)}")

    total = 0
    for base, nums in numbers.items():
        if sorted(nums) != list(range(1, len(nums) + 1)):
            record_error(errors, error_counts, zip_key, f"{zip_key}: {base} documents are not numbered 1..{len(nums)}")
        total += len(nums)
    return total


def read_single_row_csv(csv_path: Path, errors: List[str], error_counts: Dict[str, int]) -> Optional[Dict[str, str]]:
    file_key = csv_path.name
    with csv_path.open("r", newline="", encoding="utf-8") as handle:
        rows = list(csv.DictReader(handle))
    if len(rows) != 1:
        record_error(errors, error_counts, file_key, f"{file_key}: expected exactly one row, found {len(rows)}")
        return None
    return rows[0]


def validate_statistics(stats_path: Path, categories_path: Path, errors: List[str], error_counts: Dict[str, int]) -> Optional[int]:
    """
    Cross-checks SCR_Statistics.csv against SCR_Categories.csv.

    Outputs:
        Number of category rows, or None when the files cannot be compared.
    """
    stats = read_single_row_csv(stats_path, errors, error_counts)
    file_key = categories_path.name

    counts = {category: 0 for category in CATEGORY_COLUMNS}
    students = 0
    row_total = 0
    with categories_path.open("r", newline="", encoding="utf-8") as handle:
        reader = csv.DictReader(handle)
        headers = reader.fieldnames or []
        for required in ("So_Hoc_Vien", "Category"):
            if required not in headers:
                record_error(errors, error_counts, file_key, f"{file_key}: missing {required} column")
                return None
        for row_num, row in enumerate(reader, start=2):
            row_total += 1
            category = str(row.get("Category", "")).strip()
            if category not in counts:
                record_error(errors, error_counts, file_key, f"{file_key}: unknown category '{category}' at row {row_num}")
            else:
                counts[category] += 1
            raw = str(row.get("So_Hoc_Vien", "")).strip()
            try:
                students += int(float(raw)) if raw else 0
            except ValueError:
                record_error(errors, error_counts, file_key, f"{file_key}: invalid So_Hoc_Vien at row {row_num}: '{raw}'")

    if stats is None:
        return row_total

    stats_key = stats_path.name
    expected = {"Total_Projects": row_total, "Total_Students": students}
    expected.update({column: counts[category] for category, column in CATEGORY_COLUMNS.items()})
    for column, value in expected.items():
        raw = str(stats.get(column, "")).strip()
        try:
            reported = int(float(raw))
        except ValueError:
            record_error(errors, error_counts, stats_key, f"{stats_key}: invalid {column}: '{raw}'")
            continue
        if reported != value:
            record_error(errors, error_counts, stats_key, f"{stats_key}: {column} is {reported}, categories show {value}")

    return row_total


def validate_zip_package(zip_path: Path, errors: List[str], error_counts: Dict[str, int]) -> None:
    """
    Validates output artefacts within a ZIP package.

    Inputs:
        zip_path: Path to the ZIP file.
        errors: Collected error messages.
        error_counts: Per file error counters.
    Outputs:
        None.
    Error conditions:
        Records missing required files and validation failures.
    Resource characteristics:
        Extracts ZIP to a temporary directory.
    """
    if not zip_path.exists():
        record_error(errors, error_counts, zip_path.name, f"{zip_path.name}: ZIP file not found")
        return

    with tempfile.TemporaryDirectory() as temp_dir:
        temp_path = Path(temp_dir)
        try:
            with zipfile.ZipFile(zip_path, "r") as zipf:
                zipf.extractall(temp_path)
        except zipfile.BadZipFile:
            record_error(errors, error_counts, zip_path.name, f"{zip_path.name}: invalid ZIP file")
            return

        missing = [name for name in REQUIRED_FILES if not (temp_path / name).exists()]
        for name in missing:
            record_error(errors, error_counts, zip_path.name, f"{zip_path.name}: missing {name}")

        merged_rows = None
        if MERGED_WORKBOOK not in missing:
            merged_rows = validate_merged_workbook(temp_path / MERGED_WORKBOOK, errors, error_counts)

        category_rows = None
        if STATISTICS_CSV not in missing and CATEGORIES_CSV not in missing:
            category_rows = validate_statistics(temp_path / STATISTICS_CSV, temp_path / CATEGORIES_CSV, errors, error_counts)

        if merged_rows is not None and category_rows is not None and merged_rows != category_rows:
            record_error(errors, error_counts, zip_path.name,
                         f"{zip_path.name}: merged workbook has {merged_rows} rows, categories have {category_rows}")

        report_names = sorted(p.name for p in temp_path.glob("*.docx"))
        if report_names:
            report_count = validate_report_names(report_names, zip_path.name, errors, error_counts)
            if category_rows is not None and report_count != category_rows:
                record_error(errors, error_counts, zip_path.name,
                             f"{zip_path.name}: {report_count} report(s) for {category_rows} topic(s)")


def validate_zip_paths(zip_paths: List[Path], errors: List[str], error_counts: Dict[str, int]) -> int:
    """Validates a list of ZIP paths and returns how many were processed."""
    if not zip_paths:
        record_error(errors, error_counts, "outputs", "No SCR_Output_Package_*.zip found for validation.")
        return 0

    for zip_path in zip_paths:
        validate_zip_package(zip_path, errors, error_counts)
    return len(zip_paths)


def validate_output_dir(output_dir: Path, errors: List[str], error_counts: Dict[str, int]) -> int:
    zip_paths = sorted(output_dir.glob("SCR_Output_Package_*.zip"))
    return validate_zip_paths(zip_paths, errors, error_counts)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Entry point for validation.

    Outputs:
        Exit code 0 on success, non-zero on failure.
    """
    args = parse_args(argv)
    repo_root, scr_dir, output_dir = resolve_paths(args)

    default_config_path = scr_dir / "config.json"
    config_path = Path(args.config) if args.config else default_config_path
    if not config_path.is_absolute():
        config_path = repo_root / config_path

    if args.run_pipeline and args.config:
        if config_path.resolve() != default_config_path.resolve():
            print("FAIL: --run-pipeline uses SCR/config.json. Custom config paths are not supported.")
            return 1

    errors: List[str] = []
    error_counts: Dict[str, int] = {}
    zip_paths: List[Path] = []

    if args.run_pipeline:
        try:
            config = load_config(config_path)
            zip_paths = run_pipeline(repo_root, scr_dir, config, output_dir)
        except ValueError as exc:
            print(f"FAIL: {exc}")
            return 1
    elif args.config:
        try:
            load_config(config_path)
        except ValueError as exc:
            print(f"FAIL: {exc}")
            return 1

    if zip_paths:
        processed = validate_zip_paths(zip_paths, errors, error_counts)
    else:
        processed = validate_output_dir(output_dir, errors, error_counts)

    if errors:
        print(f"FAIL: {len(errors)} issue(s) found across {processed} package(s).")
        for message in errors:
            print(f"- {message}")
        return 1

    print(f"PASS: {processed} package(s) validated.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
