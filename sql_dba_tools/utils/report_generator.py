from __future__ import annotations

import csv
import json
import html
from pathlib import Path
from typing import Any, Callable, Dict, List, Sequence

from openpyxl import Workbook
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer


def _columns(rows: Sequence[Dict[str, Any]]) -> List[str]:
    columns: List[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    return columns


def _cell(value: Any) -> str:
    return "" if value is None else str(value)


def export_csv(rows: Sequence[Dict[str, Any]], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    columns = _columns(rows)
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(columns)
        for row in rows:
            writer.writerow([_cell(row.get(col)) for col in columns])


def export_html(rows: Sequence[Dict[str, Any]], path: Path, title: str = "SQL DBA Tools Report") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    columns = _columns(rows)

    lines = [
        "<!DOCTYPE html>",
        f"<html><head><meta charset='utf-8'><title>{html.escape(title)}</title>",
        "<style>table{border-collapse:collapse;width:100%;}th,td{border:1px solid #ccc;padding:6px;vertical-align:top;}"
        " th{background:#f2f2f2;} pre{margin:0;white-space:pre-wrap;}</style>",
        "</head><body>",
        f"<h2>{html.escape(title)}</h2>",
        "<table><tr>" + "".join(f"<th>{html.escape(col)}</th>" for col in columns) + "</tr>",
    ]
    for row in rows:
        cells = []
        for col in columns:
            text = html.escape(_cell(row.get(col)))
            # Multi-line values are scripts
            cells.append(f"<td><pre>{text}</pre></td>" if "\n" in text else f"<td>{text}</td>")
        lines.append("<tr>" + "".join(cells) + "</tr>")
    lines.append("</table></body></html>")

    path.write_text("\n".join(lines), encoding="utf-8")


def export_json(rows: Sequence[Dict[str, Any]], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(list(rows), indent=2, default=str), encoding="utf-8")


def export_excel(rows: Sequence[Dict[str, Any]], path: Path, sheet_title: str = "Results") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    columns = _columns(rows)
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_title
    ws.append(columns)
    for row in rows:
        values = []
        for col in columns:
            value = row.get(col)
            values.append(value if isinstance(value, (int, float, bool)) or value is None else str(value))
        ws.append(values)
    wb.save(path)


def export_pdf(rows: Sequence[Dict[str, Any]], path: Path, title: str = "SQL DBA Tools Report") -> None:
    """Export result rows to a PDF report.

    The PDF contains a title and one table with a column per row key.
    Script text is left out since it does not fit a table cell.
    """

    path.parent.mkdir(parents=True, exist_ok=True)

    doc = SimpleDocTemplate(str(path), pagesize=landscape(A4))
    styles = getSampleStyleSheet()

    elements: list[Any] = []
    elements.append(Paragraph(html.escape(title), styles["Heading1"]))
    elements.append(Spacer(1, 12))

    columns = [col for col in _columns(rows) if col != "Script"]
    data: list[list[str]] = [columns]
    for row in rows:
        data.append([_cell(row.get(col)) for col in columns])

    table = Table(data, repeatRows=1)
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.lightgrey),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.black),
                ("ALIGN", (0, 0), (-1, -1), "LEFT"),
                ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, 0), 10),
                ("FONTSIZE", (0, 1), (-1, -1), 8),
            ]
        )
    )

    elements.append(table)
    doc.build(elements)


EXPORTERS: Dict[str, Callable[[Sequence[Dict[str, Any]], Path], None]] = {
    ".csv": export_csv,
    ".html": export_html,
    ".htm": export_html,
    ".json": export_json,
    ".xlsx": export_excel,
    ".pdf": export_pdf,
}


def export_results(rows: Sequence[Dict[str, Any]], path: Path) -> None:
    """Write rows with the exporter matching the file suffix."""
    path = Path(path)
    exporter = EXPORTERS.get(path.suffix.lower())
    if exporter is None:
        raise ValueError(f"Unsupported export format '{path.suffix}', expected one of {sorted(EXPORTERS)}")
    exporter(rows, path)
