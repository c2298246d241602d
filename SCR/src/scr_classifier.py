# -*- coding: utf-8 -*-
"""
Program Overview: Similarity Check Classifier

System Function:
    Maps a project's overall similarity ratio (TV) to one of four conclusion categories
    under the regulatory thresholds for graduation theses (ĐATN/KLTN) and coursework
    reports (BCCĐ), and summarises a record set into dashboard statistics.

Architectural Pattern:
    Pure functions over explicit inputs. One threshold table drives both the category
    and the checkbox presentation, so the two can never disagree.

    | type | tv < low    | low <= tv <= high       | tv > high                |
    |------|-------------|-------------------------|--------------------------|
    | ĐATN | within (25) | L1 edit / L2 process    | L1 edit / L2 exceeded    |
    | BCCĐ | within (30) | (first / second check)  | (first / second check)   |

Project type precedence:
    The template file name wins over the configured project type. A name containing
    "datn" or "kltn" (after normalisation) means ĐATN; otherwise "bccd" means BCCĐ;
    only then is the configured value used.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from scr_reconciler import MergedRecord, normalize_key


# --- TYPES & CONSTANTS ---

PROJECT_DATN = "ĐATN"
PROJECT_BCCD = "BCCĐ"
PROJECT_TYPES: Tuple[str, ...] = (PROJECT_DATN, PROJECT_BCCD)

PROJECT_TYPE_LABELS = {
    PROJECT_DATN: "ĐATN/KLTN",
    PROJECT_BCCD: "BCCĐ",
}

# (lower bound of the middle band, upper bound of the middle band), both inclusive
THRESHOLDS: Dict[str, Tuple[float, float]] = {
    PROJECT_DATN: (25.0, 35.0),
    PROJECT_BCCD: (30.0, 40.0),
}

WITHIN_LIMIT = "within_limit"
L1_EDIT = "l1_edit"
L2_PROCESS = "l2_process"
L2_EXCEEDED = "l2_exceeded"
CATEGORIES: Tuple[str, ...] = (WITHIN_LIMIT, L1_EDIT, L2_PROCESS, L2_EXCEEDED)

CATEGORY_TITLES = {
    WITHIN_LIMIT: "Đề tài Đảm bảo Tỉ lệ",
    L1_EDIT: "Đề tài Cần Chỉnh sửa (L1)",
    L2_PROCESS: "Đề tài Cần Xử lý (L2)",
    L2_EXCEEDED: "Đề tài Vượt Tỉ lệ Tối đa (L2)",
}

CONCLUSION_TEXTS = {
    "ketluan1": "Đảm bảo tỉ lệ cho phép, đề nghị Hội đồng đánh giá ĐATN / Cán bộ chấm thi BCCĐ "
                "đánh giá và kết luận.",
    "ketluan2": "Tỉ lệ trùng lặp trong khoảng cần xử lý (ĐATN: 25%-35%; BCCĐ: 30%-40%), đề nghị "
                "Hội đồng đánh giá ĐATN / Cán bộ chấm thi BCCĐ trừ điểm theo Quy định.",
    "ketluan3": "Vượt tỉ lệ, đề nghị học viên chỉnh sửa trong thời gian 03 ngày (ĐATN) / 02 ngày "
                "(BCCĐ) và nộp lại để kiểm tra lần tiếp theo.",
    "ketluan4": "Vượt tỉ lệ tối đa (ĐATN > 35%; BCCĐ > 40%): không được bảo vệ/không được chấm, điểm 0.",
}

CHECKED_BOX = "☑"
UNCHECKED_BOX = "☐"

# kl2 is the second-check middle band, kl3 the first-check edit request.
CATEGORY_BOX_FIELDS = {
    WITHIN_LIMIT: "kl1_box",
    L2_PROCESS: "kl2_box",
    L1_EDIT: "kl3_box",
    L2_EXCEEDED: "kl4_box",
}


def normalize_project_type(value: object) -> str:
    """Accepts accented or plain spellings ("DATN", "kltn", "bccđ") and returns the canonical type."""
    key = normalize_key(value)
    if key in ("datn", "kltn", "datnkltn"):
        return PROJECT_DATN
    if key == "bccd":
        return PROJECT_BCCD
    raise ValueError(f"Unknown project type {value!r}. Expected one of: {', '.join(PROJECT_TYPES)}.")


@dataclass(frozen=True)
class ReportOptions:
    is_first_check: bool = True
    project_type: str = PROJECT_DATN

    def __post_init__(self) -> None:
        object.__setattr__(self, "project_type", normalize_project_type(self.project_type))
        object.__setattr__(self, "is_first_check", bool(self.is_first_check))


# --- PROJECT TYPE RESOLUTION ---

def resolve_project_type(template_name: Optional[str], configured: str) -> str:
    """
    Effective project type for a batch. The template's file name takes priority over the
    configured value.
    """
    name_key = normalize_key(template_name or "")
    if "datn" in name_key or "kltn" in name_key:
        return PROJECT_DATN
    if "bccd" in name_key:
        return PROJECT_BCCD
    return normalize_project_type(configured)


def output_base_name(template_name: Optional[str], configured: str) -> str:
    """Base name for rendered documents: kltn > đatn > bccđ > KQ_<effective type>."""
    name_key = normalize_key(template_name or "")
    if "kltn" in name_key:
        return "KQ_KLTN"
    if "datn" in name_key:
        return "KQ_ĐATN"
    if "bccd" in name_key:
        return "KQ_BCCĐ"
    return f"KQ_{resolve_project_type(template_name, configured)}"


# --- CLASSIFICATION ---

def classify(tv: Optional[float], project_type: str, is_first_check: bool) -> str:
    """Total over all inputs. Absent or non-finite TV counts as 0."""
    value = 0.0 if tv is None else float(tv)
    if not math.isfinite(value):
        value = 0.0
    lower, upper = THRESHOLDS[normalize_project_type(project_type)]
    if value < lower:
        return WITHIN_LIMIT
    if is_first_check:
        return L1_EDIT
    return L2_PROCESS if value <= upper else L2_EXCEEDED


def conclusion_fields(category: str) -> Dict[str, str]:
    """Four checkbox slots (exactly one checked) plus the fixed conclusion sentences."""
    if category not in CATEGORY_BOX_FIELDS:
        raise ValueError(f"Unknown category {category!r}.")
    fields = {box: UNCHECKED_BOX for box in sorted(CATEGORY_BOX_FIELDS.values())}
    fields[CATEGORY_BOX_FIELDS[category]] = CHECKED_BOX
    fields.update(CONCLUSION_TEXTS)
    return fields


# --- STATISTICS ---

@dataclass
class AggregateStats:
    total_projects: int = 0
    total_students: int = 0
    within_limit: int = 0
    l1_edit: int = 0
    l2_process: int = 0
    l2_exceeded: int = 0

    def as_rows(self) -> List[Tuple[str, int]]:
        return [
            ("Tổng số đề tài", self.total_projects),
            ("Tổng số học viên", self.total_students),
            ("Đảm bảo tỉ lệ", self.within_limit),
            ("Cần chỉnh sửa (L1)", self.l1_edit),
            ("Cần xử lý (L2)", self.l2_process),
            ("Vượt tối đa (L2)", self.l2_exceeded),
        ]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([{
            "Total_Projects": self.total_projects,
            "Total_Students": self.total_students,
            "Within_Limit": self.within_limit,
            "L1_Edit": self.l1_edit,
            "L2_Process": self.l2_process,
            "L2_Exceeded": self.l2_exceeded,
        }])


def categorize(
    records: Iterable[MergedRecord],
    options: ReportOptions,
    template_name: Optional[str] = None,
) -> Dict[str, List[MergedRecord]]:
    effective = resolve_project_type(template_name, options.project_type)
    buckets: Dict[str, List[MergedRecord]] = {c: [] for c in CATEGORIES}
    for record in records:
        buckets[classify(record.tv, effective, options.is_first_check)].append(record)
    return buckets


def compute_stats(
    records: Sequence[MergedRecord],
    options: ReportOptions,
    template_name: Optional[str] = None,
) -> AggregateStats:
    """Recomputed from scratch over the whole record set."""
    buckets = categorize(records, options, template_name)
    stats = AggregateStats(
        total_projects=len(records),
        total_students=sum(int(r.sohocvien or 0) for r in records),
        **{category: len(items) for category, items in buckets.items()},
    )
    logging.debug("Statistics: %s", stats)
    return stats


def categories_frame(
    records: Sequence[MergedRecord],
    options: ReportOptions,
    template_name: Optional[str] = None,
) -> pd.DataFrame:
    """One row per record with its category, in input order."""
    effective = resolve_project_type(template_name, options.project_type)
    rows = [
        {
            "STT": idx,
            "Ten_De_Tai": r.tendetai,
            "So_Hoc_Vien": r.sohocvien,
            "TV": r.tv,
            "Category": category,
            "Category_Title": CATEGORY_TITLES[category],
        }
        for idx, r in enumerate(records, start=1)
        for category in [classify(r.tv, effective, options.is_first_check)]
    ]
    return pd.DataFrame.from_records(
        rows, columns=["STT", "Ten_De_Tai", "So_Hoc_Vien", "TV", "Category", "Category_Title"]
    )
