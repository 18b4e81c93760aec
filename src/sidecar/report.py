"""
Job summary report.

Builds the HTML fragment the runner shows on the job page: a Signal ->
Artifact table and, when summary queries ran, one results table per query.
"""
import html
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List

from sidecar.ci_host import ActionsHost
from sidecar.models import ReportRow

logger = logging.getLogger(__name__)


@dataclass
class TableCell:
    data: str
    header: bool = False


def escape(value: Any) -> str:
    """Render a value as HTML-safe text."""
    if value is None:
        return ''
    if isinstance(value, (dict, list)):
        value = json.dumps(value, default=str)
    return html.escape(str(value))


def link(url: str, text: str) -> str:
    return f'<a href="{html.escape(url, quote=True)}">{html.escape(text)}</a>'


class SummaryReport:
    """Accumulates summary content and writes it once."""

    def __init__(self):
        self._buffer: List[str] = []

    def add_raw(self, text: str) -> 'SummaryReport':
        self._buffer.append(text)
        return self

    def add_eol(self) -> 'SummaryReport':
        return self.add_raw(os.linesep)

    def add_heading(self, text: str, level: int = 1) -> 'SummaryReport':
        level = min(max(level, 1), 6)
        return self.add_raw(f"<h{level}>{html.escape(text)}</h{level}>").add_eol()

    def add_break(self) -> 'SummaryReport':
        return self.add_raw("<br>").add_eol()

    def add_separator(self) -> 'SummaryReport':
        return self.add_raw("<hr>").add_eol()

    def add_paragraph(self, inner_html: str) -> 'SummaryReport':
        return self.add_raw(f"<p>{inner_html}</p>").add_eol()

    def add_table(self, rows: List[List[TableCell]]) -> 'SummaryReport':
        """Add a table; cell data is inserted as-is (callers escape)."""
        body = []
        for row in rows:
            cells = []
            for cell in row:
                tag = 'th' if cell.header else 'td'
                cells.append(f"<{tag}>{cell.data}</{tag}>")
            body.append(f"<tr>{''.join(cells)}</tr>")
        return self.add_raw(f"<table>{''.join(body)}</table>").add_eol()

    def stringify(self) -> str:
        return ''.join(self._buffer)

    def write(self, host: ActionsHost) -> None:
        """Append to the job summary file, or log when there is none."""
        content = self.stringify()
        path = host.summary_path
        if path:
            with open(path, 'a', encoding='utf-8') as f:
                f.write(content)
            logger.debug(f"Wrote job summary ({len(content)} chars)")
        else:
            logger.info(f"Job summary:\n{content}")
        self._buffer = []


def artifact_table(rows: List[ReportRow]) -> List[List[TableCell]]:
    """Signal -> Artifact table, one row per signal kind."""
    table = [[TableCell('Signal', header=True), TableCell('Artifact', header=True)]]
    for row in rows:
        if row.artifact:
            target = link(row.artifact.url, row.artifact.name)
        else:
            target = 'None'
        table.append([TableCell(row.signal.title), TableCell(target)])
    return table


def results_table(rows: List[Dict[str, Any]]) -> List[List[TableCell]]:
    """Query results table; columns follow the first row's key order."""
    if not rows:
        return []

    columns = list(rows[0].keys())
    table = [[TableCell(escape(c), header=True) for c in columns]]
    for row in rows:
        table.append([TableCell(escape(row.get(c))) for c in columns])
    return table


def query_source(query_file: str, host: ActionsHost) -> str:
    """Link to the query in the repository when it lives in the workspace."""
    workspace = host.env('GITHUB_WORKSPACE')
    if workspace and query_file.startswith(workspace.rstrip('/') + '/'):
        relative = query_file[len(workspace.rstrip('/')) + 1:]
        ref = host.env('GITHUB_HEAD_REF') or host.env('GITHUB_SHA')
        url = (
            f"{host.env('GITHUB_SERVER_URL')}/{host.env('GITHUB_REPOSITORY')}"
            f"/blob/{ref}/{relative}"
        )
        return link(url, relative)
    return html.escape(query_file)


def add_collected_telemetry(report: SummaryReport, rows: List[ReportRow], host: ActionsHost) -> None:
    action = host.env('GITHUB_ACTION_REPOSITORY')
    action_ref = host.env('GITHUB_ACTION_REF')
    server = host.env('GITHUB_SERVER_URL') or 'https://github.com'

    report.add_heading('Collected telemetry', 1)
    if action:
        source = link(f"{server}/{action}", f"{action} {action_ref}".strip())
    else:
        source = 'the telemetry sidecar'
    report.add_paragraph(
        f"The following files contain telemetry signals saved by {source} "
        f"during this run of <code>{html.escape(host.env('GITHUB_WORKFLOW'))}</code>"
    )
    report.add_break()
    report.add_table(artifact_table(rows))


def add_query_results(
    report: SummaryReport,
    query_file: str,
    rows: List[Dict[str, Any]],
    host: ActionsHost
) -> None:
    report.add_separator()
    report.add_paragraph(query_source(query_file, host))
    report.add_table(results_table(rows))


def add_summaries_heading(report: SummaryReport) -> None:
    report.add_heading('Telemetry summaries', 2)
    report.add_paragraph(
        'Below is the output of all queries configured to run on the collected telemetry.'
    )
