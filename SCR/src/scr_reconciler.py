#!/usr/bin/env python3
"""scr_reconciler.py

Program Overview: Similarity Check Reconciler (Roster + Ratio Merge)

System Function:
    Reconciles a main roster workbook (students, topics, advisors) with a supplementary
    similarity-ratio workbook into one normalised record set, and rebuilds that record set
    as a flat workbook that can be re-read later without the original inputs.

Architectural Pattern:
    Implements a deterministic batch pipeline over in-memory grids.

    1. Ingestion: Reads the first sheet of an Excel workbook (OpenPyXL, read-only) or a
       delimited text file into a rectangular grid, dropping fully blank rows.
    2. Processing: Locates the header row heuristically, resolves columns by accent- and
       case-insensitive keys, forward-fills topics, aggregates students per topic, then
       aligns topics positionally against the supplementary grid.
    3. Output: Writes the merged records to a single-sheet workbook with a fixed column
       order (title, advisor, count, names, TV, C1..CN).

Positional contract
- The supplementary file is not joined by key. The i-th aggregated topic takes the TV value
  of the i-th supplementary data row and the chapter values of the i-th "Tỉ lệ N" column
  (sorted by N). Reordering either input silently breaks the mapping; this mirrors how the
  source spreadsheets are prepared and is preserved on purpose.

Limitations
- Header names are matched heuristically. A header cell that merely contains a keyword
  (for example "Tên đề tài (bắt buộc)") is accepted, and the first matching cell wins.
"""

from __future__ import annotations

import csv
import datetime
import io
import logging
import math
import re
import unicodedata
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import openpyxl
import pandas as pd
from openpyxl.styles import Alignment, Font
from openpyxl.utils import get_column_letter
from openpyxl.utils.datetime import to_excel
from openpyxl.utils.exceptions import InvalidFileException


# -------------------------
# Types and logging sink
# -------------------------

Cell = Union[str, int, float, None]
Grid = List[List[Cell]]

# Severity between INFO and WARNING for completed steps.
SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LogSink = Callable[[str, int], None]


def default_log_sink(message: str, level: int = logging.INFO) -> None:
    """Forwards a status message to the root logger."""
    logging.log(level, message)


@dataclass(frozen=True)
class LogEntry:
    message: str
    level: int
    timestamp: datetime.datetime

    @property
    def level_name(self) -> str:
        return logging.getLevelName(self.level)


class StatusLog:
    """
    Append-only log sink that keeps the run history and forwards to logging.

    Callers that display progress (a console summary, a UI panel) pass an instance
    wherever a LogSink is accepted and read `entries` afterwards.
    """

    def __init__(self, forward: bool = True) -> None:
        self.entries: List[LogEntry] = []
        self._forward = forward

    def __call__(self, message: str, level: int = logging.INFO) -> None:
        self.entries.append(LogEntry(message, level, datetime.datetime.now()))
        if self._forward:
            logging.log(level, message)

    def messages(self, min_level: int = logging.NOTSET) -> List[str]:
        return [e.message for e in self.entries if e.level >= min_level]


# -------------------------
# Errors
# -------------------------

class ReconciliationError(ValueError):
    """Base class for fatal input problems. Re-supplying corrected input is the only recovery."""


class UnreadableFileError(ReconciliationError):
    def __init__(self, message: str, filename: Optional[str] = None) -> None:
        super().__init__(message)
        self.filename = filename


class MissingRequiredColumnError(ReconciliationError):
    def __init__(self, column: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Required column '{column}' could not be found in the header row.")
        self.column = column


class MissingRatioColumnsError(ReconciliationError):
    pass


# -------------------------
# Constants and schema
# -------------------------

HEADER_SCAN_ROWS = 10
HEADER_MIN_MATCHES = 2

MAIN_HEADER_KEYWORDS = ["Tên đề tài", "Họ tên HV", "Người hướng dẫn"]
TOPIC_KEYWORDS = ["Tên đề tài", "De tai"]
NAME_KEYWORDS = ["Họ tên HV", "Ten hoc vien"]
ADVISOR_KEYWORDS = ["Người hướng dẫn"]

SUPP_HEADER_KEYWORDS = ["TV", "Tỉ lệ"]
TV_KEYWORDS = ["TV"]

# Direct-read path (pre-merged data file)
DATA_TOPIC_KEYWORDS = ["Tên đề tài", "tendetai"]
DATA_NAME_KEYWORDS = ["Họ tên HV", "hotenhv"]
DATA_COUNT_KEYWORDS = ["Số học viên", "sohocvien"]
DATA_ADVISOR_KEYWORDS = ["Người hướng dẫn", "nguoihuongdan"]

# Matched against normalised header keys
RE_RATIO_HEADER = re.compile(r"^(tile)(\d+)$")
RE_CHAPTER_HEADER = re.compile(r"^(c|chuong|tile)(\d+)$")

RE_COMBINING_MARKS = re.compile(r"[\u0300-\u036f]")
RE_NON_ALNUM = re.compile(r"[^a-z0-9]")
RE_LEADING_NUMBER = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")

# Output workbook schema (fixed order, chapters appended ascending)
COL_TOPIC = "Tên đề tài"
COL_ADVISOR = "Người hướng dẫn"
COL_COUNT = "Số học viên"
COL_NAMES = "Họ tên HV"
COL_TV = "TV"
MERGED_BASE_COLUMNS = [COL_TOPIC, COL_ADVISOR, COL_COUNT, COL_NAMES, COL_TV]
MERGED_SHEET_NAME = "Gop"
MERGED_FILENAME = "File_Gop.xlsx"

FORMAT_XLSX = "xlsx"
FORMAT_XLS = "xls"
FORMAT_CSV = "csv"

SUFFIX_FORMATS = {
    ".xlsx": FORMAT_XLSX,
    ".xlsm": FORMAT_XLSX,
    ".xls": FORMAT_XLS,
    ".csv": FORMAT_CSV,
    ".tsv": FORMAT_CSV,
    ".txt": FORMAT_CSV,
}


# -------------------------
# Records
# -------------------------

@dataclass(frozen=True)
class AggregatedTopic:
    topic_title: str
    student_names: str
    student_count: int
    advisor: str = ""


@dataclass
class MergedRecord:
    """
    One project (topic) after reconciliation.

    `chapters` maps a 1-based chapter number to its similarity percentage. It is sparse:
    a project may carry chapters 1 and 3 without 2.
    """

    hotenhv: str
    tendetai: str
    sohocvien: int
    nguoihuongdan: Optional[str] = None
    tv: Optional[float] = None
    chapters: Dict[int, float] = field(default_factory=dict)

    def chapter_items(self) -> List[Tuple[int, float]]:
        return sorted(self.chapters.items())

    def as_dict(self) -> Dict[str, object]:
        """Flat mapping view with dynamic c1..cN keys."""
        out: Dict[str, object] = {
            "hotenhv": self.hotenhv,
            "tendetai": self.tendetai,
            "sohocvien": self.sohocvien,
        }
        if self.nguoihuongdan is not None:
            out["nguoihuongdan"] = self.nguoihuongdan
        if self.tv is not None:
            out["tv"] = self.tv
        for num, value in self.chapter_items():
            out[f"c{num}"] = value
        return out


# -------------------------
# Text normalisation and cell helpers
# -------------------------

def normalize_key(value: object) -> str:
    """
    Canonical comparison key for header and cell text.

    Strips diacritics, folds case, maps đ to d, and drops everything outside [a-z0-9].
    Non-string or empty input yields "".
    """
    if not isinstance(value, str) or not value:
        return ""
    s = unicodedata.normalize("NFD", value)
    s = RE_COMBINING_MARKS.sub("", s)
    s = s.lower().replace("đ", "d")
    return RE_NON_ALNUM.sub("", s)


def _is_blank(value: Cell) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return str(value).strip() == ""


def _cell_text(value: Cell) -> str:
    if _is_blank(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def parse_decimal(value: Cell) -> Optional[float]:
    """
    Parse a ratio cell. Accepts decimal-comma notation ("28,5") and trailing units
    ("28.5 %"). Returns None for blank, non-numeric, or non-finite input.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, np.integer, np.floating)):
        v = float(value)
        return v if math.isfinite(v) else None
    s = str(value).strip().replace(",", ".", 1)
    m = RE_LEADING_NUMBER.match(s)
    if not m:
        return None
    v = float(m.group(0))
    return v if math.isfinite(v) else None


def _clean_cell(value: object) -> Cell:
    if value is None:
        return None
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, bool):
        return str(value).upper()
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, (int, float, str)):
        return value
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
        return value.isoformat()
    return str(value)


def _row_is_blank(row: Sequence[Cell]) -> bool:
    return all(_is_blank(c) for c in row)


# -------------------------
# Input table reading
# -------------------------

def sniff_format(data: bytes, filename: Optional[str] = None) -> str:
    """Resolve the tabular format from the file suffix, then from magic bytes."""
    if filename:
        fmt = SUFFIX_FORMATS.get(Path(filename).suffix.lower())
        if fmt:
            return fmt
    if data[:4] == b"PK\x03\x04":
        return FORMAT_XLSX
    if data[:4] == b"\xd0\xcf\x11\xe0":
        return FORMAT_XLS
    return FORMAT_CSV


def _stored_value(cell, epoch) -> object:
    # Date-formatted cells keep their stored serial number.
    if cell.is_date and isinstance(cell.value, (datetime.date, datetime.time, datetime.timedelta)):
        return to_excel(cell.value, epoch)
    return cell.value


def _read_xlsx_rows(data: bytes) -> List[Tuple[object, ...]]:
    wb = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    try:
        if not wb.worksheets:
            return []
        ws = wb.worksheets[0]
        return [tuple(_stored_value(cell, wb.epoch) for cell in row) for row in ws.iter_rows()]
    finally:
        wb.close()


def _read_xls_rows(data: bytes) -> List[Tuple[object, ...]]:
    df = pd.read_excel(io.BytesIO(data), sheet_name=0, header=None, dtype=object, engine="xlrd")
    df = df.astype(object).where(pd.notna(df), None)
    return [tuple(row) for row in df.itertuples(index=False, name=None)]


def _decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("cp1252")


def _read_delimited_rows(data: bytes) -> List[Tuple[object, ...]]:
    text = _decode_text(data)
    if "\x00" in text:
        raise ValueError("Binary content is not delimited text.")
    sample = text[:8192]
    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=",;\t")
    except csv.Error:
        dialect = csv.excel
    reader = csv.reader(io.StringIO(text, newline=""), dialect)
    return [tuple(c if c != "" else None for c in row) for row in reader]


def read_grid(data: bytes, filename: Optional[str] = None, fmt: Optional[str] = None) -> Grid:
    """
    Read the first sheet of a workbook (or a delimited text file) into a grid.

    Cells keep their raw text or number; dates are not coerced. Rows that are blank in
    every cell are dropped. Raises UnreadableFileError when the bytes are not tabular.
    """
    fmt = fmt or sniff_format(data, filename)
    label = filename or "input"
    try:
        if fmt == FORMAT_XLSX:
            raw_rows = _read_xlsx_rows(data)
        elif fmt == FORMAT_XLS:
            raw_rows = _read_xls_rows(data)
        elif fmt == FORMAT_CSV:
            raw_rows = _read_delimited_rows(data)
        else:
            raise UnreadableFileError(f"Unsupported tabular format '{fmt}' for {label}.", filename)
    except UnreadableFileError:
        raise
    except (zipfile.BadZipFile, InvalidFileException, KeyError, OSError, ValueError, csv.Error) as exc:
        raise UnreadableFileError(f"Could not read {label} as tabular data: {exc}", filename) from exc
    except Exception as exc:
        # Legacy .xls parser errors do not share a common base class.
        raise UnreadableFileError(f"Could not read {label} as tabular data: {exc}", filename) from exc

    grid: Grid = []
    for row in raw_rows:
        cleaned = [_clean_cell(v) for v in row]
        if not _row_is_blank(cleaned):
            grid.append(cleaned)
    return grid


# -------------------------
# Header detection and column mapping
# -------------------------

def locate_header_row(grid: Sequence[Sequence[Cell]], keywords: Iterable[str]) -> int:
    """
    Return the index of the first row (among the first 10) where at least two cells
    contain a keyword. Falls back to 0; never fails.
    """
    norm_keywords = [k for k in (normalize_key(kw) for kw in keywords) if k]
    for idx, row in enumerate(grid[:HEADER_SCAN_ROWS]):
        matches = 0
        for cell in row:
            cell_key = normalize_key(cell)
            if cell_key and any(kw in cell_key for kw in norm_keywords):
                matches += 1
        if matches >= HEADER_MIN_MATCHES:
            return idx
    return 0


def find_column(headers: Sequence[str], keywords: Iterable[str]) -> Optional[str]:
    """
    Map a logical field to the literal header text. Keywords are tried in priority
    order; the first header whose key contains the keyword's key wins.
    """
    normalized = [(h, normalize_key(h)) for h in headers]
    for kw in keywords:
        norm_kw = normalize_key(kw)
        if not norm_kw:
            continue
        for original, norm in normalized:
            if norm_kw in norm:
                return original
    return None


def header_texts(row: Sequence[Cell]) -> List[str]:
    return [_cell_text(h) for h in row]


def _row_as_mapping(headers: Sequence[str], row: Sequence[Cell]) -> Dict[str, Cell]:
    obj: Dict[str, Cell] = {}
    for i, h in enumerate(headers):
        obj[h] = row[i] if i < len(row) else None
    return obj


def _cell_at(row: Sequence[Cell], idx: int) -> Cell:
    return row[idx] if 0 <= idx < len(row) else None


# -------------------------
# Main roster aggregation
# -------------------------

def aggregate_main(grid: Grid, log: LogSink = default_log_sink) -> List[AggregatedTopic]:
    """
    Group roster rows by (forward-filled) topic, in first-appearance order.

    Rows whose topic cell is blank inherit the last non-blank topic above them. Rows
    without a student name are dropped.
    """
    if not grid:
        raise UnreadableFileError("Main file is empty or unreadable.")

    header_idx = locate_header_row(grid, MAIN_HEADER_KEYWORDS)
    headers = header_texts(grid[header_idx])

    topic_col = find_column(headers, TOPIC_KEYWORDS)
    name_col = find_column(headers, NAME_KEYWORDS)
    advisor_col = find_column(headers, ADVISOR_KEYWORDS)

    if not topic_col:
        raise MissingRequiredColumnError("Tên đề tài", "Main file must contain the columns 'Tên đề tài' and 'Họ tên HV'.")
    if not name_col:
        raise MissingRequiredColumnError("Họ tên HV", "Main file must contain the columns 'Tên đề tài' and 'Họ tên HV'.")

    logging.debug("Main header row %d: topic=%r name=%r advisor=%r", header_idx, topic_col, name_col, advisor_col)

    groups: Dict[str, List[Dict[str, Cell]]] = {}
    last_topic: Cell = ""
    dropped_without_name = 0
    orphan_rows = 0

    for row in grid[header_idx + 1:]:
        obj = _row_as_mapping(headers, row)
        if _is_blank(obj[topic_col]):
            obj[topic_col] = last_topic
        else:
            last_topic = obj[topic_col]

        if _is_blank(obj[name_col]):
            dropped_without_name += 1
            continue
        if _is_blank(obj[topic_col]):
            orphan_rows += 1

        groups.setdefault(_cell_text(obj[topic_col]), []).append(obj)

    if dropped_without_name:
        log(f"Skipped {dropped_without_name} main-file row(s) without a student name.", logging.INFO)
    if orphan_rows:
        log(f"{orphan_rows} student row(s) appear before any topic title and were grouped under an empty title.",
            logging.WARNING)

    topics: List[AggregatedTopic] = []
    for title, rows in groups.items():
        first = rows[0]
        names = [_cell_text(r[name_col]) for r in rows]
        topics.append(
            AggregatedTopic(
                topic_title=title,
                student_names=", ".join(n for n in names if n),
                student_count=len(rows),
                advisor=_cell_text(first.get(advisor_col)) if advisor_col else "",
            )
        )
    return topics


# -------------------------
# Ratio merge
# -------------------------

@dataclass(frozen=True)
class RatioLayout:
    header_row: int
    tv_index: int  # -1 when absent
    ratio_columns: List[Tuple[int, int]]  # (ratio number, 0-based column index), sorted


def locate_ratio_layout(supp_grid: Grid) -> RatioLayout:
    header_idx = locate_header_row(supp_grid, SUPP_HEADER_KEYWORDS)
    headers = header_texts(supp_grid[header_idx])

    tv_header = find_column(headers, TV_KEYWORDS)
    tv_index = headers.index(tv_header) if tv_header is not None else -1

    ratio_columns: List[Tuple[int, int]] = []
    for idx, h in enumerate(headers):
        m = RE_RATIO_HEADER.match(normalize_key(h))
        if m:
            ratio_columns.append((int(m.group(2)), idx))
    ratio_columns.sort(key=lambda t: t[0])

    return RatioLayout(header_row=header_idx, tv_index=tv_index, ratio_columns=ratio_columns)


def merge_ratios(topics: Sequence[AggregatedTopic], supp_grid: Grid, log: LogSink = default_log_sink) -> List[MergedRecord]:
    """
    Align aggregated topics against the supplementary grid by position.

    - TV is read row-wise: data row i belongs to topic i.
    - Chapter ratios are read column-wise: the i-th "Tỉ lệ N" column (sorted by N) holds,
      top to bottom, chapters 1..n of topic i.

    Missing or unparseable cells leave the field unset. Topics beyond the available rows
    or columns get no TV or chapters.
    """
    if not supp_grid:
        raise UnreadableFileError("Supplementary file is empty or unreadable.")

    layout = locate_ratio_layout(supp_grid)
    if layout.tv_index == -1 and not layout.ratio_columns:
        raise MissingRatioColumnsError(
            "Supplementary file has neither a 'TV' column nor ratio columns ('Tỉ lệ 1', 'Tỉ lệ 2', ...)."
        )

    data_rows = supp_grid[layout.header_row + 1:]
    logging.debug(
        "Supplementary header row %d: tv_index=%d ratio_columns=%s data_rows=%d",
        layout.header_row, layout.tv_index, layout.ratio_columns, len(data_rows),
    )

    records: List[MergedRecord] = []
    for pos, topic in enumerate(topics):
        record = MergedRecord(
            hotenhv=topic.student_names,
            tendetai=topic.topic_title,
            sohocvien=topic.student_count,
            nguoihuongdan=topic.advisor,
        )

        if layout.tv_index != -1 and pos < len(data_rows):
            raw_tv = _cell_at(data_rows[pos], layout.tv_index)
            tv = parse_decimal(raw_tv)
            if tv is not None:
                record.tv = tv
            elif not _is_blank(raw_tv):
                log(f"Supplementary row {pos + 1}: TV value {raw_tv!r} is not numeric; left unset.", logging.WARNING)

        if pos < len(layout.ratio_columns):
            ratio_num, col_idx = layout.ratio_columns[pos]
            for chapter_pos, row in enumerate(data_rows):
                raw = _cell_at(row, col_idx)
                if _is_blank(raw):
                    continue
                value = parse_decimal(raw)
                if value is None:
                    log(f"Column 'Tỉ lệ {ratio_num}', row {chapter_pos + 1}: {raw!r} is not numeric; skipped.",
                        logging.WARNING)
                    continue
                record.chapters[chapter_pos + 1] = value

        records.append(record)

    if layout.tv_index != -1 and len(topics) > len(data_rows):
        log(f"{len(topics) - len(data_rows)} topic(s) have no matching supplementary row; TV left unset.",
            logging.WARNING)
    if layout.ratio_columns and len(topics) > len(layout.ratio_columns):
        log(f"{len(topics) - len(layout.ratio_columns)} topic(s) have no matching ratio column; chapters left unset.",
            logging.WARNING)
    if len(layout.ratio_columns) > len(topics):
        log(f"{len(layout.ratio_columns) - len(topics)} ratio column(s) have no matching topic and were ignored.",
            logging.WARNING)

    return records


# -------------------------
# Direct-read path
# -------------------------

def read_data_file(grid: Grid, log: LogSink = default_log_sink) -> List[MergedRecord]:
    """
    Read a pre-merged data file (for example a previously exported File_Gop.xlsx).

    Columns are resolved by header name, not position. Chapter columns are any header
    whose key matches c<N>, chuong<N>, or tile<N>.
    """
    if len(grid) < 2:
        raise UnreadableFileError("Data file does not contain a header row and at least one data row.")

    header_idx = locate_header_row(grid, DATA_TOPIC_KEYWORDS + DATA_NAME_KEYWORDS + TV_KEYWORDS)
    headers = [normalize_key(h) for h in header_texts(grid[header_idx])]

    def find_index(keywords: Sequence[str]) -> int:
        for kw in keywords:
            norm_kw = normalize_key(kw)
            for i, h in enumerate(headers):
                if norm_kw and norm_kw in h:
                    return i
        return -1

    topic_idx = find_index(DATA_TOPIC_KEYWORDS)
    name_idx = find_index(DATA_NAME_KEYWORDS)
    count_idx = find_index(DATA_COUNT_KEYWORDS)
    advisor_idx = find_index(DATA_ADVISOR_KEYWORDS)
    tv_idx = find_index(TV_KEYWORDS)

    if topic_idx == -1:
        raise MissingRequiredColumnError("Tên đề tài", "Data file must contain the columns 'Tên đề tài' and 'Họ tên HV'.")
    if name_idx == -1:
        raise MissingRequiredColumnError("Họ tên HV", "Data file must contain the columns 'Tên đề tài' and 'Họ tên HV'.")

    chapter_columns: List[Tuple[int, int]] = []
    for i, h in enumerate(headers):
        m = RE_CHAPTER_HEADER.match(h)
        if m:
            chapter_columns.append((int(m.group(2)), i))

    records: List[MergedRecord] = []
    skipped = 0
    for row in grid[header_idx + 1:]:
        topic = _cell_text(_cell_at(row, topic_idx))
        names = _cell_text(_cell_at(row, name_idx))
        if not topic or not names:
            skipped += 1
            continue

        if count_idx == -1:
            count = 1
        else:
            parsed_count = parse_decimal(_cell_at(row, count_idx))
            count = int(parsed_count) if parsed_count is not None else 0

        record = MergedRecord(
            hotenhv=names,
            tendetai=topic,
            sohocvien=count,
            nguoihuongdan=_cell_text(_cell_at(row, advisor_idx)) if advisor_idx != -1 else "",
        )
        if tv_idx != -1:
            record.tv = parse_decimal(_cell_at(row, tv_idx))

        for num, col in chapter_columns:
            value = parse_decimal(_cell_at(row, col))
            if value is not None:
                record.chapters[num] = value

        records.append(record)

    if skipped:
        log(f"Skipped {skipped} data-file row(s) without a topic title or student names.", logging.INFO)
    return records


# -------------------------
# Merged workbook export
# -------------------------

def records_to_frame(records: Sequence[MergedRecord]) -> pd.DataFrame:
    chapter_nums = sorted({num for r in records for num in r.chapters})
    columns = MERGED_BASE_COLUMNS + [f"C{n}" for n in chapter_nums]
    rows: List[Dict[str, object]] = []
    for r in records:
        row: Dict[str, object] = {
            COL_TOPIC: r.tendetai,
            COL_ADVISOR: r.nguoihuongdan,
            COL_COUNT: r.sohocvien,
            COL_NAMES: r.hotenhv,
            COL_TV: r.tv,
        }
        for num, value in r.chapters.items():
            row[f"C{num}"] = value
        rows.append(row)
    return pd.DataFrame.from_records(rows, columns=columns)


def _set_workbook_properties(wb: openpyxl.Workbook) -> None:
    props = wb.properties
    props.creator = "SCRReconciler"
    props.lastModifiedBy = "SCRReconciler"
    fixed_dt = datetime.datetime(2000, 1, 1, 0, 0, 0)
    props.created = fixed_dt
    props.modified = fixed_dt
    props.title = "Merged similarity check data"


def _write_dataframe(ws, df: pd.DataFrame, start_row: int = 1, start_col: int = 1) -> None:
    header_font = Font(bold=True)
    for j, col in enumerate(df.columns, start=start_col):
        cell = ws.cell(row=start_row, column=j, value=str(col))
        cell.font = header_font
        cell.alignment = Alignment(wrap_text=True, vertical="top")

    for i in range(df.shape[0]):
        for j, col in enumerate(df.columns, start=start_col):
            val = df.iloc[i, j - start_col]
            if isinstance(val, np.generic):
                val = val.item()
            if isinstance(val, float) and (math.isnan(val) or not math.isfinite(val)):
                val = None
            ws.cell(row=start_row + 1 + i, column=j, value=val)


def _autosize_columns(ws, max_width: int = 60) -> None:
    widths: Dict[int, int] = {}
    for row in ws.iter_rows(min_row=1, max_row=min(ws.max_row, 200), values_only=True):
        for idx, v in enumerate(row, start=1):
            if v is None:
                continue
            widths[idx] = max(widths.get(idx, 0), len(str(v)))
    for idx, w in widths.items():
        ws.column_dimensions[get_column_letter(idx)].width = min(max(10, w + 2), max_width)


def _apply_number_formats(ws) -> None:
    headers = [ws.cell(1, c).value for c in range(1, ws.max_column + 1)]
    for c, h in enumerate(headers, start=1):
        if h is None:
            continue
        if h == COL_TV or re.fullmatch(r"C\d+", str(h)):
            fmt = "0.00"
        elif h == COL_COUNT:
            fmt = "0"
        else:
            continue
        for r in range(2, ws.max_row + 1):
            ws.cell(r, c).number_format = fmt


def build_merged_workbook(records: Sequence[MergedRecord]) -> bytes:
    """Serialise merged records to a single-sheet workbook and return its bytes."""
    df = records_to_frame(records)

    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = MERGED_SHEET_NAME
    _set_workbook_properties(wb)

    _write_dataframe(ws, df)
    _apply_number_formats(ws)
    _autosize_columns(ws)
    ws.freeze_panes = "A2"

    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


# -------------------------
# Orchestration
# -------------------------

def generate_merged_workbook(
    main_bytes: bytes,
    main_name: Optional[str],
    supp_bytes: bytes,
    supp_name: Optional[str],
    log: LogSink = default_log_sink,
) -> Tuple[List[MergedRecord], bytes]:
    """Read both inputs, aggregate, merge, and export. Returns (records, workbook bytes)."""
    log("Reading main file...", logging.INFO)
    main_grid = read_grid(main_bytes, main_name)
    if not main_grid:
        raise UnreadableFileError("Main file is empty or unreadable.", main_name)

    log("Processing main file...", logging.INFO)
    topics = aggregate_main(main_grid, log)
    log(f"Main file: {len(topics)} topic(s), {sum(t.student_count for t in topics)} student(s).", logging.INFO)

    log("Reading supplementary file...", logging.INFO)
    supp_grid = read_grid(supp_bytes, supp_name)
    if not supp_grid:
        raise UnreadableFileError("Supplementary file is empty or unreadable.", supp_name)

    log("Merging data...", logging.INFO)
    records = merge_ratios(topics, supp_grid, log)
    workbook = build_merged_workbook(records)
    log(f"Merged {len(records)} topic(s).", SUCCESS)
    return records, workbook
