# -*- coding: utf-8 -*-
"""
Program Overview: Similarity Check Report Generator

System Function:
    Binds each reconciled project record into a Word template and produces one result
    document per project, together with the merged workbook, classification statistics,
    and the execution log, packaged as a single ZIP deliverable.

Architectural Pattern:
    Implements a sequential per-record rendering model over an in-memory template.

    1. Ingestion: Either reads a pre-merged data file, or reconciles the main roster with
       the supplementary ratio file (see scr_reconciler).
    2. Processing: Classifies each record (see scr_classifier) and binds a flat field set
       into a fresh copy of the template for every record, in record order.
    3. Output: Encapsulates the merged workbook, all rendered documents, CSV statistics,
       and the execution log within a single compressed ZIP archive.

Template syntax (jinja2 through docxtpl):
    {{ name }}                                  value tag
    {%tr for c in chuong_data %} ... {%tr endfor %}
                                                one table row per chapter; the tags sit in
                                                their own rows above and below the repeated row
    {%p if nguoi_huongdan %} ... {%p endif %}   paragraph-level blocks
    Formatting, tabs and run boundaries around a tag are kept as authored.
"""

import argparse
import io
import json
import logging
import sys
import tempfile
import zipfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set

from docx.opc.exceptions import PackageNotFoundError
from docxtpl import DocxTemplate, Listing
from jinja2 import Environment, TemplateError, TemplateSyntaxError

from scr_classifier import (
    PROJECT_TYPE_LABELS,
    ReportOptions,
    categories_frame,
    classify,
    compute_stats,
    conclusion_fields,
    output_base_name,
    resolve_project_type,
)
from scr_reconciler import (
    MERGED_FILENAME,
    SUCCESS,
    LogSink,
    MergedRecord,
    ReconciliationError,
    build_merged_workbook,
    default_log_sink,
    generate_merged_workbook,
    normalize_key,
    read_data_file,
    read_grid,
)


# --- TYPES & CONSTANTS ---

ConfigDict = Any  # Type alias for parsed JSON configuration
Context = Dict[str, Any]

STATISTICS_FILENAME = "SCR_Statistics.csv"
CATEGORIES_FILENAME = "SCR_Categories.csv"
PACKAGE_PREFIX = "SCR_Output_Package_"

TEMPLATE_HINT = (
    "NOTE: placeholders use double braces {{ placeholder }} and contain no spaces "
    "(for example {{ hoten_hv }}, not {{ Họ tên HV }}). To let a table grow one row per chapter, "
    "put {%tr for c in chuong_data %} and {%tr endfor %} in the rows around the chapter row "
    "and use {{ c.chuong }}, {{ c.tyle }} inside it."
)


class TemplateRenderError(ValueError):
    """
    Template binding failed. `explanations` lists the problems reported by the template
    engine; `topic` names the record being rendered when the failure happened.
    """

    def __init__(self, explanations: Sequence[str], topic: Optional[str] = None, message: Optional[str] = None) -> None:
        self.explanations = list(explanations)
        self.topic = topic
        if message is None:
            if self.explanations:
                where = f' (topic "{topic}")' if topic else ""
                message = (
                    f"Word template error{where}. Please check the placeholders:\n- "
                    + "\n- ".join(self.explanations)
                    + "\n\n" + TEMPLATE_HINT
                )
            else:
                message = f'Failed to fill data for topic "{topic}". Please check the Word template.'
        super().__init__(message)


def explain_template_error(exc: TemplateError) -> str:
    """One readable line per jinja2 error, with the document text around it when docxtpl provides it."""
    message = getattr(exc, "message", None) or str(exc)
    near = [line.strip() for line in (getattr(exc, "docx_context", None) or []) if line.strip()]
    if near:
        return f'{message} (near "{" ".join(near)[:80]}")'
    return message


# --- REPORT TEMPLATE ---

class ReportTemplate:
    """
    A .docx template rendered with docxtpl.

    Every render starts from a fresh copy of the template bytes. Placeholders that the
    template declares but the context does not provide render empty and are collected
    in `missing_tags`.
    """

    def __init__(self, template_bytes: bytes) -> None:
        self.template_bytes = template_bytes
        self.missing_tags: Set[str] = set()
        self.env = Environment(autoescape=True)
        self._declared: Optional[Set[str]] = None

    def _load(self) -> DocxTemplate:
        doc = DocxTemplate(io.BytesIO(self.template_bytes))
        try:
            doc.init_docx()
        except (PackageNotFoundError, KeyError, ValueError, zipfile.BadZipFile) as exc:
            raise TemplateRenderError([], message=f"The Word template could not be opened: {exc}") from exc
        return doc

    def declared_tags(self) -> Set[str]:
        """Top-level names the template reads (body, headers and footers)."""
        if self._declared is None:
            try:
                self._declared = set(self._load().get_undeclared_template_variables(self.env))
            except TemplateSyntaxError as exc:
                raise TemplateRenderError([explain_template_error(exc)]) from exc
        return self._declared

    def validate(self) -> List[str]:
        """Return the template's syntax problems (empty when the template parses)."""
        try:
            self.declared_tags()
        except TemplateRenderError as exc:
            if not exc.explanations:
                raise
            return exc.explanations
        return []

    def render(self, context: Context) -> bytes:
        self.missing_tags.update(self.declared_tags() - set(context))
        doc = self._load()
        try:
            doc.render({key: _format_value(value) for key, value in context.items()}, self.env, autoescape=True)
        except TemplateError as exc:
            raise TemplateRenderError([explain_template_error(exc)]) from exc
        buffer = io.BytesIO()
        doc.save(buffer)
        return buffer.getvalue()


def _format_value(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, str) and "\n" in value:
        return Listing(value)
    if isinstance(value, list):
        return [
            {k: _format_value(v) for k, v in item.items()} if isinstance(item, dict) else _format_value(item)
            for item in value
        ]
    return value


# --- REPORT GENERATOR ---

@dataclass(frozen=True)
class RenderedReport:
    filename: str
    content: bytes


def build_chapter_rows(record: MergedRecord) -> List[Dict[str, Any]]:
    return [
        {"stt": num, "chuong": f"Chương {num}", "tyle": f"{value:.2f}", "ghi chu": ""}
        for num, value in record.chapter_items()
    ]


def build_template_context(record: MergedRecord, effective_type: str, is_first_check: bool) -> Context:
    category = classify(record.tv, effective_type, is_first_check)
    context: Context = {
        "hoten_hv": record.hotenhv,
        "ten_detai": record.tendetai,
        "nguoi_huongdan": record.nguoihuongdan or "",
        "loai_tai_lieu": PROJECT_TYPE_LABELS[effective_type],
        "TV": f"{record.tv:.2f}" if record.tv is not None else "0.00",
        "chuong_data": build_chapter_rows(record),
    }
    context.update(conclusion_fields(category))
    return context


def render_reports(
    records: Sequence[MergedRecord],
    template_bytes: bytes,
    template_name: Optional[str],
    options: ReportOptions,
    log: LogSink = default_log_sink,
) -> List[RenderedReport]:
    """
    Render one document per record, named <base>_<n>.docx in record order.

    The effective project type and the base name are resolved once per batch from the
    template's file name, falling back to the configured project type.
    """
    effective_type = resolve_project_type(template_name, options.project_type)
    base_name = output_base_name(template_name, options.project_type)
    log(f"Project type: {PROJECT_TYPE_LABELS[effective_type]} (output name {base_name}).", logging.INFO)

    template = ReportTemplate(template_bytes)
    reports: List[RenderedReport] = []
    for index, record in enumerate(records, start=1):
        context = build_template_context(record, effective_type, options.is_first_check)
        try:
            content = template.render(context)
        except TemplateRenderError as exc:
            if exc.explanations:
                raise TemplateRenderError(exc.explanations, topic=record.tendetai) from exc
            raise
        except Exception as exc:
            logging.exception("Template rendering failed on record %d", index)
            raise TemplateRenderError([], topic=record.tendetai) from exc
        reports.append(RenderedReport(f"{base_name}_{index}.docx", content))

    if template.missing_tags:
        log("Template placeholders with no data (left blank): " + ", ".join(sorted(template.missing_tags)),
            logging.WARNING)
    log(f"Rendered {len(reports)} report(s).", SUCCESS)
    return reports


class Archiver:
    """Compresses the workspace into a single ZIP deliverable."""

    @staticmethod
    def create_zip(source_dir: Path, output_path: Path) -> None:
        logging.info(f"Archiving workspace to {output_path.name}...")
        with zipfile.ZipFile(output_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
            for file in sorted(source_dir.glob('*')):
                if file.is_file():
                    zipf.write(file, arcname=file.name)


# --- CONFIGURATION & LOGGING ---

def load_config(config_path: Path) -> ConfigDict:
    """Loads and returns the JSON configuration."""
    with open(config_path, 'r', encoding='utf-8') as f:
        return json.load(f)


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False) -> None:
    """
    Configures logging. If log_file is provided, it enables file output.

    Args:
        log_file: Optional path to the execution log.
        verbose: Enables DEBUG output.
    """
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w', encoding='utf-8'))

    # Reset existing handlers if any and close them (important on Windows)
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)
        handler.flush()
        handler.close()

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def release_file_handlers() -> None:
    for handler in logging.root.handlers[:]:
        if isinstance(handler, logging.FileHandler):
            logging.root.removeHandler(handler)
            handler.close()


def find_input_file(inputs_dir: Path, pattern: str, suffixes: Sequence[str], required: bool = True) -> Optional[Path]:
    """
    Picks the input whose normalised name contains the normalised pattern.

    Excel is preferred over CSV when both exist; ties are broken by file name.
    """
    candidates: List[Path] = []
    pattern_key = normalize_key(pattern)
    if inputs_dir.exists():
        for p in inputs_dir.iterdir():
            if not p.is_file() or p.name.startswith('~$'):
                continue
            if p.suffix.lower() not in suffixes:
                continue
            if pattern_key and pattern_key in normalize_key(p.stem):
                candidates.append(p)

    if not candidates:
        if not required:
            return None
        visible_files = []
        if inputs_dir.exists():
            visible_files = [p.name for p in inputs_dir.iterdir() if p.is_file() and not p.name.startswith('~$')]
        raise FileNotFoundError(
            f"No supported input file found for pattern '{pattern}' in '{inputs_dir}'. "
            f"Supported types: {', '.join(suffixes)}. "
            f"Visible files: {visible_files}"
        )

    ext_priority = {suffix: rank for rank, suffix in enumerate(suffixes)}
    candidates.sort(key=lambda p: (ext_priority.get(p.suffix.lower(), 99), p.name.lower()))
    return candidates[0]


TABULAR_SUFFIXES = ('.xlsx', '.xlsm', '.xls', '.csv')
TEMPLATE_SUFFIXES = ('.docx',)


def resolve_options(config: ConfigDict, args: argparse.Namespace) -> ReportOptions:
    report_settings = config.get('report_settings', {}) if isinstance(config, dict) else {}
    is_first_check = report_settings.get('is_first_check', True)
    if not isinstance(is_first_check, bool):
        raise ValueError(f"report_settings.is_first_check must be true or false, got {is_first_check!r}")
    if args.second_check:
        is_first_check = False
    project_type = args.project_type or report_settings.get('project_type', 'ĐATN')
    return ReportOptions(is_first_check=is_first_check, project_type=project_type)


def _resolve_input(explicit: Optional[str], inputs_dir: Path, pattern: Optional[str], suffixes: Sequence[str], required: bool) -> Optional[Path]:
    if explicit:
        path = Path(explicit)
        if not path.is_absolute():
            path = inputs_dir / path
        if not path.exists():
            raise FileNotFoundError(f"Input file not found: {path}")
        return path
    if not pattern:
        if required:
            raise FileNotFoundError("No input pattern configured.")
        return None
    return find_input_file(inputs_dir, pattern, suffixes, required=required)


# --- MAIN ORCHESTRATOR ---

def run(
    workspace: Path,
    options: ReportOptions,
    data_file: Optional[Path],
    main_file: Optional[Path],
    supp_file: Optional[Path],
    template_file: Optional[Path],
    log: LogSink = default_log_sink,
) -> None:
    """Produces every artefact of one run inside `workspace`."""
    if data_file is not None:
        log(f"Reading data file {data_file.name}...", logging.INFO)
        records = read_data_file(read_grid(data_file.read_bytes(), data_file.name), log)
        log(f"Read {len(records)} topic(s) from the data file.", SUCCESS)
        workbook = build_merged_workbook(records)
    elif main_file is not None and supp_file is not None:
        records, workbook = generate_merged_workbook(
            main_file.read_bytes(), main_file.name, supp_file.read_bytes(), supp_file.name, log
        )
    else:
        raise FileNotFoundError("Provide either a data file or both the main and supplementary files.")

    (workspace / MERGED_FILENAME).write_bytes(workbook)

    template_name = template_file.name if template_file is not None else None
    if template_file is not None:
        if not records:
            log("No valid records to render.", logging.WARNING)
        else:
            log(f"Rendering {len(records)} Word report(s) from {template_file.name}...", logging.INFO)
            reports = render_reports(records, template_file.read_bytes(), template_name, options, log)
            for report in reports:
                (workspace / report.filename).write_bytes(report.content)

    stats = compute_stats(records, options, template_name)
    stats.to_frame().to_csv(workspace / STATISTICS_FILENAME, index=False)
    categories_frame(records, options, template_name).to_csv(workspace / CATEGORIES_FILENAME, index=False)
    for label, value in stats.as_rows():
        logging.info(f"{label}: {value}")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Merge similarity-check inputs and generate per-topic Word reports.")
    p.add_argument("--base-dir", type=str, default=None, help="Project root containing inputs/, outputs/, config.json.")
    p.add_argument("--main", type=str, default=None, help="Main roster file (overrides the configured pattern).")
    p.add_argument("--supplementary", type=str, default=None, help="Supplementary ratio file.")
    p.add_argument("--data", type=str, default=None, help="Pre-merged data file; takes priority over main/supplementary.")
    p.add_argument("--template", type=str, default=None, help="Word template (.docx).")
    p.add_argument("--second-check", action="store_true", help="Classify as a second (not first) check.")
    p.add_argument("--project-type", type=str, default=None, help="Fallback project type: ĐATN or BCCĐ.")
    p.add_argument("--merge-only", action="store_true", help="Only build the merged workbook and statistics.")
    p.add_argument("--verbose", action="store_true", help="Verbose logging.")
    return p.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    base_dir = Path(args.base_dir).resolve() if args.base_dir else Path(__file__).resolve().parent.parent
    inputs_dir = base_dir / "inputs"
    outputs_dir = base_dir / "outputs"
    outputs_dir.mkdir(parents=True, exist_ok=True)
    config_path = base_dir / "config.json"
    config = load_config(config_path) if config_path.exists() else {}
    settings = config.get('settings', {})

    # Initial logging to stdout
    setup_logging(verbose=args.verbose)
    logging.info("--- SCR Report Generator Started ---")

    try:
        options = resolve_options(config, args)
        data_file = _resolve_input(args.data, inputs_dir, settings.get('input_pattern_data'), TABULAR_SUFFIXES, required=False)
        main_file = supp_file = None
        if data_file is None:
            main_file = _resolve_input(args.main, inputs_dir, settings.get('input_pattern_main'), TABULAR_SUFFIXES, required=True)
            supp_file = _resolve_input(args.supplementary, inputs_dir, settings.get('input_pattern_supplementary'), TABULAR_SUFFIXES, required=True)
        template_file = None
        if not args.merge_only:
            template_file = _resolve_input(args.template, inputs_dir, settings.get('input_pattern_template'), TEMPLATE_SUFFIXES, required=True)
        for label, path in (("Data", data_file), ("Main", main_file), ("Supplementary", supp_file), ("Template", template_file)):
            if path is not None:
                logging.info(f"{label} input selected: {path.name}")
    except (FileNotFoundError, ValueError) as e:
        logging.critical(str(e))
        return 1

    exit_code = 0

    with tempfile.TemporaryDirectory() as temp_dir_name:
        temp_dir = Path(temp_dir_name)

        # Relocate execution log to temp workspace for inclusion in ZIP
        setup_logging(temp_dir / "scr_execution.log", verbose=args.verbose)

        try:
            run(temp_dir, options, data_file, main_file, supp_file, template_file)

            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            zip_name = f"{PACKAGE_PREFIX}{timestamp}.zip"
            Archiver.create_zip(temp_dir, outputs_dir / zip_name)
            logging.info(f"Deliverable created: {zip_name}")

        except (ReconciliationError, TemplateRenderError, FileNotFoundError) as e:
            logging.critical(f"Processing Failed: {e}")
            exit_code = 1

        except Exception as e:
            logging.exception(f"Processing Failed: {e}")
            exit_code = 1

        finally:
            # Release temp_dir log file handle before TemporaryDirectory cleanup (Windows)
            release_file_handlers()

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
