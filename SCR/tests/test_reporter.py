import argparse
import io
import json
import logging
import zipfile

import pytest
from docx import Document

import scr_reporter
from conftest import MAIN_ROWS, SUPP_ROWS, docx_bytes, xlsx_bytes
from scr_classifier import CHECKED_BOX, UNCHECKED_BOX, ReportOptions
from scr_reconciler import MergedRecord, StatusLog
from scr_reporter import (
    ReportTemplate,
    TemplateRenderError,
    build_template_context,
    render_reports,
    resolve_options,
    run,
)


def _open(content: bytes):
    return Document(io.BytesIO(content))


def _body_texts(doc):
    return [p.text for p in doc.paragraphs]


def _record(**overrides):
    values = dict(hotenhv="Nguyễn Văn A, Lê Thị B", tendetai="Hệ thống quản lý", sohocvien=2,
                  nguoihuongdan="TS. Trần B", tv=27.456, chapters={2: 3.5, 1: 12.0})
    values.update(overrides)
    return MergedRecord(**values)


def test_build_template_context_fields():
    context = build_template_context(_record(), "ĐATN", True)
    assert context["TV"] == "27.46"
    assert context["loai_tai_lieu"] == "ĐATN/KLTN"
    assert context["chuong_data"] == [
        {"stt": 1, "chuong": "Chương 1", "tyle": "12.00", "ghi chu": ""},
        {"stt": 2, "chuong": "Chương 2", "tyle": "3.50", "ghi chu": ""},
    ]
    assert context["kl3_box"] == CHECKED_BOX
    assert context["kl1_box"] == UNCHECKED_BOX


def test_build_template_context_without_tv_or_advisor():
    context = build_template_context(_record(tv=None, nguoihuongdan=None, chapters={}), "BCCĐ", False)
    assert context["TV"] == "0.00"
    assert context["nguoi_huongdan"] == ""
    assert context["chuong_data"] == []
    assert context["kl1_box"] == CHECKED_BOX


def test_template_fills_values_and_repeats_table_row():
    template = docx_bytes(
        paragraphs=["Học viên: {{ hoten_hv }}", "Đề tài: {{ ten_detai }} ({{ loai_tai_lieu }})", "TV = {{ TV }}%"],
        table_rows=[
            ["Chương", "Tỉ lệ", "Ghi chú"],
            ["{%tr for c in chuong_data %}", "", ""],
            ["{{ c.chuong }}", "{{ c.tyle }}", "{{ c['ghi chu'] }}"],
            ["{%tr endfor %}", "", ""],
            ["Tổng", "{{ TV }}", ""],
        ],
    )
    doc = _open(ReportTemplate(template).render(build_template_context(_record(), "ĐATN", True)))

    assert _body_texts(doc)[:3] == [
        "Học viên: Nguyễn Văn A, Lê Thị B",
        "Đề tài: Hệ thống quản lý (ĐATN/KLTN)",
        "TV = 27.46%",
    ]
    rows = [[cell.text for cell in row.cells] for row in doc.tables[0].rows]
    assert rows == [
        ["Chương", "Tỉ lệ", "Ghi chú"],
        ["Chương 1", "12.00", ""],
        ["Chương 2", "3.50", ""],
        ["Tổng", "27.46", ""],
    ]


def test_template_drops_loop_rows_when_list_is_empty():
    template = docx_bytes(table_rows=[["H"], ["{%tr for c in chuong_data %}"], ["{{ c.chuong }}"], ["{%tr endfor %}"]])
    doc = _open(ReportTemplate(template).render({"chuong_data": []}))
    assert [row.cells[0].text for row in doc.tables[0].rows] == ["H"]


def test_template_repeats_paragraphs():
    template = docx_bytes(paragraphs=["Trước", "{%p for c in chuong_data %}", "{{ c.chuong }}: {{ c.tyle }}%",
                                      "{%p endfor %}", "Sau"])
    doc = _open(ReportTemplate(template).render(build_template_context(_record(), "ĐATN", True)))
    assert _body_texts(doc) == ["Trước", "Chương 1: 12.00%", "Chương 2: 3.50%", "Sau"]


def test_template_inline_condition():
    template = ReportTemplate(docx_bytes(
        paragraphs=["HD: {% if nguoi_huongdan %}{{ nguoi_huongdan }}{% else %}không có{% endif %}"]
    ))
    assert _body_texts(_open(template.render({"nguoi_huongdan": "TS. X"}))) == ["HD: TS. X"]
    assert _body_texts(_open(template.render({"nguoi_huongdan": ""}))) == ["HD: không có"]


def test_template_keeps_tab_and_run_formatting_around_tags():
    source = Document()
    paragraph = source.add_paragraph()
    paragraph.add_run("Tên đề tài:").bold = True
    paragraph.add_run().add_tab()
    paragraph.add_run("{{ ten_detai }}")
    buffer = io.BytesIO()
    source.save(buffer)

    rendered = _open(ReportTemplate(buffer.getvalue()).render({"ten_detai": "X"})).paragraphs[0]
    assert rendered.text == "Tên đề tài:\tX"
    assert rendered.runs[0].text == "Tên đề tài:"
    assert rendered.runs[0].bold is True
    assert rendered.runs[-1].text == "X"
    assert rendered.runs[-1].bold is None


def test_template_unknown_tag_renders_empty_and_is_recorded():
    template = ReportTemplate(docx_bytes(paragraphs=["[{{ khong_ton_tai }}]"]))
    assert _body_texts(_open(template.render({}))) == ["[]"]
    assert template.missing_tags == {"khong_ton_tai"}


def test_template_renders_unlinked_header():
    template = docx_bytes(paragraphs=["x"], header_text="Đề tài: {{ ten_detai }}")
    doc = _open(ReportTemplate(template).render({"ten_detai": "T1"}))
    assert doc.sections[0].header.paragraphs[0].text == "Đề tài: T1"


def test_template_turns_newlines_into_line_breaks():
    doc = _open(ReportTemplate(docx_bytes(paragraphs=["HV: {{ hoten_hv }}"])).render({"hoten_hv": "A\nB"}))
    assert _body_texts(doc) == ["HV: A\nB"]


def test_template_syntax_error_is_explained():
    template = ReportTemplate(docx_bytes(paragraphs=["{% for c in chuong_data %}", "{{ c.chuong }}"]))
    assert len(template.validate()) == 1
    with pytest.raises(TemplateRenderError) as excinfo:
        template.render({})
    assert len(excinfo.value.explanations) == 1
    assert "endfor" in str(excinfo.value)


def test_template_undefined_attribute_is_explained():
    template = ReportTemplate(docx_bytes(paragraphs=["{{ thieu.ten }}"]))
    assert template.validate() == []
    with pytest.raises(TemplateRenderError) as excinfo:
        template.render({})
    assert "thieu" in excinfo.value.explanations[0]


def test_template_rejects_non_docx_bytes():
    with pytest.raises(TemplateRenderError):
        ReportTemplate(b"not a document").render({})


def test_render_reports_names_by_template_and_index():
    template = docx_bytes(paragraphs=["{{ ten_detai }}: {{ kl1_box }} {{ kl3_box }}"])
    records = [_record(tendetai="A", tv=10), _record(tendetai="B", tv=30)]
    log = StatusLog(forward=False)
    reports = render_reports(records, template, "Mau_DATN_v2.docx", ReportOptions(project_type="BCCĐ"), log)

    assert [r.filename for r in reports] == ["KQ_ĐATN_1.docx", "KQ_ĐATN_2.docx"]
    assert _body_texts(_open(reports[0].content)) == [f"A: {CHECKED_BOX} {UNCHECKED_BOX}"]
    assert _body_texts(_open(reports[1].content)) == [f"B: {UNCHECKED_BOX} {CHECKED_BOX}"]
    assert log.entries[-1].level_name == "SUCCESS"


def test_render_reports_falls_back_to_configured_type():
    reports = render_reports([_record()], docx_bytes(paragraphs=["{{ loai_tai_lieu }}"]), "template.docx",
                             ReportOptions(project_type="BCCĐ"), StatusLog(forward=False))
    assert reports[0].filename == "KQ_BCCĐ_1.docx"
    assert _body_texts(_open(reports[0].content)) == ["BCCĐ"]


def test_render_reports_error_names_topic():
    template = docx_bytes(paragraphs=["{% for c in chuong_data %}"])
    with pytest.raises(TemplateRenderError) as excinfo:
        render_reports([_record(tendetai="Đề tài lỗi")], template, "t.docx", ReportOptions(), StatusLog(forward=False))
    assert excinfo.value.topic == "Đề tài lỗi"
    assert "Đề tài lỗi" in str(excinfo.value)


def test_render_reports_warns_once_about_missing_tags():
    log = StatusLog(forward=False)
    render_reports([_record(), _record()], docx_bytes(paragraphs=["{{ ho_ten }}"]), "t.docx", ReportOptions(), log)
    warnings = log.messages(logging.WARNING)
    assert len(warnings) == 1
    assert "ho_ten" in warnings[0]


def _args(**overrides):
    values = dict(second_check=False, project_type=None)
    values.update(overrides)
    return argparse.Namespace(**values)


def test_resolve_options_reads_report_settings():
    config = {"report_settings": {"is_first_check": False, "project_type": "BCCĐ"}}
    assert resolve_options(config, _args()) == ReportOptions(is_first_check=False, project_type="BCCĐ")
    assert resolve_options({}, _args(second_check=True, project_type="datn")).is_first_check is False


def test_resolve_options_rejects_non_boolean_first_check():
    with pytest.raises(ValueError):
        resolve_options({"report_settings": {"is_first_check": "false"}}, _args())


def test_run_writes_every_artefact(tmp_path):
    inputs = tmp_path / "inputs"
    inputs.mkdir()
    main_file = inputs / "File_Chinh.xlsx"
    supp_file = inputs / "File_Phu.xlsx"
    template_file = inputs / "Mau_DATN.docx"
    main_file.write_bytes(xlsx_bytes(MAIN_ROWS))
    supp_file.write_bytes(xlsx_bytes(SUPP_ROWS))
    template_file.write_bytes(docx_bytes(paragraphs=["{{ ten_detai }} {{ TV }}"]))
    workspace = tmp_path / "ws"
    workspace.mkdir()

    run(workspace, ReportOptions(), None, main_file, supp_file, template_file, StatusLog(forward=False))

    names = sorted(p.name for p in workspace.iterdir())
    assert names == ["File_Gop.xlsx", "KQ_ĐATN_1.docx", "KQ_ĐATN_2.docx", "KQ_ĐATN_3.docx",
                     "SCR_Categories.csv", "SCR_Statistics.csv"]
    assert _body_texts(_open((workspace / "KQ_ĐATN_2.docx").read_bytes())) == ["Đề tài 2 28.50"]
    stats = (workspace / "SCR_Statistics.csv").read_text(encoding="utf-8").splitlines()
    assert stats[1] == "3,4,2,1,0,0"


def test_run_prefers_data_file(tmp_path):
    data_file = tmp_path / "Du_Lieu.xlsx"
    data_file.write_bytes(xlsx_bytes([["Tên đề tài", "Họ tên HV", "TV"], ["T1", "A", 40]]))
    workspace = tmp_path / "ws"
    workspace.mkdir()

    run(workspace, ReportOptions(is_first_check=False), data_file, None, None, None, StatusLog(forward=False))

    assert sorted(p.name for p in workspace.iterdir()) == ["File_Gop.xlsx", "SCR_Categories.csv", "SCR_Statistics.csv"]
    categories = (workspace / "SCR_Categories.csv").read_text(encoding="utf-8")
    assert "l2_exceeded" in categories


def _project(tmp_path, with_template=True):
    inputs = tmp_path / "inputs"
    inputs.mkdir()
    (inputs / "File_Chinh.xlsx").write_bytes(xlsx_bytes(MAIN_ROWS))
    (inputs / "File_Phu.xlsx").write_bytes(xlsx_bytes(SUPP_ROWS))
    if with_template:
        (inputs / "Mau_DATN.docx").write_bytes(docx_bytes(paragraphs=["{{ ten_detai }}"]))
    config = {
        "settings": {
            "input_pattern_main": "File_Chinh",
            "input_pattern_supplementary": "File_Phu",
            "input_pattern_data": "Du_Lieu",
            "input_pattern_template": "Mau",
        },
        "report_settings": {"is_first_check": True, "project_type": "ĐATN"},
    }
    (tmp_path / "config.json").write_text(json.dumps(config, ensure_ascii=False), encoding="utf-8")
    return tmp_path


def test_main_creates_output_package(tmp_path, monkeypatch):
    monkeypatch.setattr(scr_reporter, "setup_logging", lambda *args, **kwargs: None)
    base = _project(tmp_path)

    assert scr_reporter.main(["--base-dir", str(base)]) == 0

    packages = list((base / "outputs").glob("SCR_Output_Package_*.zip"))
    assert len(packages) == 1
    with zipfile.ZipFile(packages[0]) as zipf:
        assert "File_Gop.xlsx" in zipf.namelist()
        assert "KQ_ĐATN_3.docx" in zipf.namelist()


def test_main_merge_only_skips_template(tmp_path, monkeypatch):
    monkeypatch.setattr(scr_reporter, "setup_logging", lambda *args, **kwargs: None)
    base = _project(tmp_path, with_template=False)

    assert scr_reporter.main(["--base-dir", str(base), "--merge-only", "--second-check"]) == 0
    packages = list((base / "outputs").glob("SCR_Output_Package_*.zip"))
    with zipfile.ZipFile(packages[0]) as zipf:
        assert not [n for n in zipf.namelist() if n.endswith(".docx")]


def test_main_fails_without_inputs(tmp_path, monkeypatch):
    monkeypatch.setattr(scr_reporter, "setup_logging", lambda *args, **kwargs: None)
    (tmp_path / "inputs").mkdir()
    assert scr_reporter.main(["--base-dir", str(tmp_path)]) == 1


def test_main_rejects_unknown_project_type(tmp_path, monkeypatch):
    monkeypatch.setattr(scr_reporter, "setup_logging", lambda *args, **kwargs: None)
    base = _project(tmp_path)
    assert scr_reporter.main(["--base-dir", str(base), "--project-type", "thesis"]) == 1


def test_main_rejects_string_first_check_setting(tmp_path, monkeypatch):
    monkeypatch.setattr(scr_reporter, "setup_logging", lambda *args, **kwargs: None)
    base = _project(tmp_path)
    config = json.loads((base / "config.json").read_text(encoding="utf-8"))
    config["report_settings"]["is_first_check"] = "false"
    (base / "config.json").write_text(json.dumps(config, ensure_ascii=False), encoding="utf-8")

    assert scr_reporter.main(["--base-dir", str(base)]) == 1
    assert not list((base / "outputs").glob("SCR_Output_Package_*.zip"))
