import io
from typing import List, Optional, Sequence

import openpyxl
import pytest
from docx import Document


def xlsx_bytes(rows: Sequence[Sequence[object]]) -> bytes:
    wb = openpyxl.Workbook()
    ws = wb.active
    for row in rows:
        ws.append(list(row))
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def docx_bytes(paragraphs: Sequence[str] = (), table_rows: Optional[List[List[str]]] = None,
               header_text: Optional[str] = None) -> bytes:
    doc = Document()
    for text in paragraphs:
        doc.add_paragraph(text)
    if table_rows:
        table = doc.add_table(rows=len(table_rows), cols=len(table_rows[0]))
        for r, values in enumerate(table_rows):
            for c, value in enumerate(values):
                table.cell(r, c).text = value
    if header_text is not None:
        header = doc.sections[0].header
        header.is_linked_to_previous = False
        header.paragraphs[0].text = header_text
    buffer = io.BytesIO()
    doc.save(buffer)
    return buffer.getvalue()


MAIN_ROWS = [
    ["DANH SÁCH HỌC VIÊN", None, None, None],
    ["STT", "Họ tên HV", "Tên đề tài", "Người hướng dẫn"],
    [1, "Nguyễn Văn A", "Đề tài 1", "TS. Trần B"],
    [2, "Lê Thị B", None, None],
    [3, "Phạm C", "Đề tài 2", "PGS. Hoàng D"],
    [4, None, "Đề tài 3", "TS. E"],
    [5, "Võ F", "Đề tài 3", "TS. E"],
]

SUPP_ROWS = [
    ["STT", "TV", "Tỉ lệ 1", "Tỉ lệ 2"],
    [1, 10, 5, 20],
    [2, "28,5", 6, 21],
    [3, "", 7, 22],
]


@pytest.fixture
def main_xlsx() -> bytes:
    return xlsx_bytes(MAIN_ROWS)


@pytest.fixture
def supp_xlsx() -> bytes:
    return xlsx_bytes(SUPP_ROWS)
