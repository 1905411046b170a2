from __future__ import annotations

import html
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sql_dba_tools.utils.logger import get_logger

logger = get_logger(__name__)

# Record shapes: (label key, start key, end key, category key, category name)
JOB_HISTORY = ("job", "start_date", "end_date", "status", "Agent job")
BACKUP_HISTORY = ("database", "start", "end", "type", "Backup")


@dataclass(frozen=True)
class TimelineEntry:
    server: str
    label: str
    category: str
    start: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


def _to_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).strip())


def _shape_of(record: Mapping[str, Any]):
    if "job" in record:
        return JOB_HISTORY
    if "database" in record:
        return BACKUP_HISTORY
    raise ValueError(f"Unrecognised timeline record, expected job or backup history: {sorted(record)}")


def build_timeline(records: Iterable[Mapping[str, Any]], server: str = "") -> List[TimelineEntry]:
    """Normalise job or backup history rows into timeline entries ordered by start time.

    Keys are matched case-insensitively. A row without both a start and an
    end is left out and logged.
    """
    entries: List[TimelineEntry] = []
    for raw in records:
        record = {str(k).lower(): v for k, v in raw.items()}
        label_key, start_key, end_key, category_key, fallback = _shape_of(record)
        start = _to_datetime(record.get(start_key))
        end = _to_datetime(record.get(end_key))
        label = str(record.get(label_key))
        if start is None or end is None:
            logger.warning(f"Skipping {fallback.lower()} record for {label}: missing start or end time")
            continue
        if end < start:
            logger.warning(f"Skipping {fallback.lower()} record for {label}: ends before it starts")
            continue
        entries.append(TimelineEntry(
            server=str(record.get("server") or server),
            label=label,
            category=str(record.get(category_key) or fallback),
            start=start,
            end=end,
        ))
    entries.sort(key=lambda entry: entry.start)
    return entries


def format_duration(duration: timedelta) -> str:
    total = int(duration.total_seconds())
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def render_timeline_html(entries: Sequence[TimelineEntry], title: str = "Timeline") -> str:
    esc_title = html.escape(title)
    lines = [
        "<!DOCTYPE html>",
        f"<html><head><meta charset='utf-8'><title>{esc_title}</title>",
        "<style>table{border-collapse:collapse;width:100%;}th,td{border:1px solid #ccc;padding:6px;}"
        " th{background:#f2f2f2;text-align:left;}</style>",
        "</head><body>",
        f"<h2>{esc_title}</h2>",
    ]
    if entries:
        first = min(entry.start for entry in entries)
        last = max(entry.end for entry in entries)
        lines.append(f"<p>{len(entries)} entries from {first:%Y-%m-%d %H:%M:%S} to {last:%Y-%m-%d %H:%M:%S}</p>")
    else:
        lines.append("<p>No entries</p>")

    lines.append("<table><tr><th>Server</th><th>Name</th><th>Category</th>"
                 "<th>Start</th><th>End</th><th>Duration</th></tr>")
    for entry in entries:
        cells = [
            entry.server,
            entry.label,
            entry.category,
            f"{entry.start:%Y-%m-%d %H:%M:%S}",
            f"{entry.end:%Y-%m-%d %H:%M:%S}",
            format_duration(entry.duration),
        ]
        lines.append("<tr>" + "".join(f"<td>{html.escape(cell)}</td>" for cell in cells) + "</tr>")
    lines.append("</table></body></html>")
    return "\n".join(lines)


def timeline_rows(entries: Sequence[TimelineEntry]) -> List[Dict[str, Any]]:
    return [
        {
            "Server": entry.server,
            "Name": entry.label,
            "Category": entry.category,
            "Start": entry.start.isoformat(sep=" "),
            "End": entry.end.isoformat(sep=" "),
            "Duration": format_duration(entry.duration),
        }
        for entry in entries
    ]
