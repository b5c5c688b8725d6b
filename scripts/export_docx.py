"""Convert an Analysis JSON document into a DOCX report."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from docx import Document as DocumentFactory
from docx.document import Document
from docx.enum.style import WD_STYLE_TYPE
from docx.shared import Pt

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT / "src") not in sys.path:
    sys.path.insert(0, str(REPO_ROOT / "src"))

from transcript_analysis.common.timecodes import format_marker
from transcript_analysis.models.types import Analysis, AnalysisResults, OutputFormat


def load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def ensure_custom_styles(document: Document) -> None:
    styles = document.styles

    if "Heading 2" in styles:
        styles["Heading 2"].font.size = Pt(16)  # type: ignore[attr-defined]

    if "Heading 3" in styles:
        styles["Heading 3"].font.size = Pt(13)  # type: ignore[attr-defined]

    if "Body Text" not in styles:
        body_style = styles.add_style("Body Text", WD_STYLE_TYPE.PARAGRAPH)
        body_style.font.size = Pt(11)  # type: ignore[attr-defined]
        body_style.font.name = "Calibri"  # type: ignore[attr-defined]


def resolve_style(document: Document, name: str, fallback: str = "Normal") -> Any:
    styles = document.styles
    try:
        return styles[name]
    except KeyError:
        return styles[fallback]


def add_heading(document: Document, text: str, level: int = 2) -> None:
    document.add_heading(text, level=level)


def add_paragraph(document: Document, text: str) -> None:
    paragraph = document.add_paragraph(text)
    paragraph.style = resolve_style(document, "Body Text")


def add_bullet_list(document: Document, items: Iterable[str], style: str = "List Bullet") -> None:
    for item in items:
        if item:
            document.add_paragraph(str(item), style=style)


def stamp(timestamp: Optional[float], verified: Optional[bool] = None) -> str:
    if timestamp is None:
        return ""
    marker = format_marker(timestamp)
    return f"{marker} (unverified) " if verified is False else f"{marker} "


def render_section_content(document: Document, content: str, output_format: Optional[OutputFormat]) -> None:
    lines = [line.strip() for line in content.splitlines() if line.strip()]
    if output_format == OutputFormat.PARAGRAPH or not any(line.startswith(("- ", "* ")) for line in lines):
        for line in lines:
            add_paragraph(document, line)
        return
    add_bullet_list(document, (line.lstrip("-* ").strip() for line in lines))


def render_results(document: Document, results: AnalysisResults) -> None:
    if results.summary:
        add_heading(document, "Summary", level=2)
        add_paragraph(document, results.summary)

    for section in results.sections:
        add_heading(document, section.name or section.section_id, level=2)
        render_section_content(document, section.content, section.output_format)
        if section.evidence:
            add_bullet_list(
                document,
                (f"{stamp(ev.start, ev.verified)}“{ev.text}”" for ev in section.evidence),
            )

    if results.agenda_items:
        add_heading(document, "Agenda", level=2)
        add_bullet_list(
            document,
            (f"{stamp(item.timestamp, item.timestamp_verified)}{item.topic}" for item in results.agenda_items),
            style="List Number",
        )

    if results.decisions:
        topics = {item.id: item.topic for item in results.agenda_items}
        add_heading(document, "Decisions", level=2)
        for decision in results.decisions:
            text = f"{stamp(decision.timestamp, decision.timestamp_verified)}{decision.decision}"
            if decision.agenda_item_id in topics:
                text += f" (agenda: {topics[decision.agenda_item_id]})"
            add_bullet_list(document, [text])

    if results.action_items:
        add_heading(document, "Action Items", level=2)
        table = document.add_table(rows=1, cols=4)
        table.style = "Light List Accent 1"
        for cell, label in zip(table.rows[0].cells, ("Task", "Owner", "Deadline", "Decision")):
            cell.text = label
        for action in results.action_items:
            row_cells = table.add_row().cells
            row_cells[0].text = f"{stamp(action.timestamp, action.timestamp_verified)}{action.task}"
            row_cells[1].text = action.owner or ""
            row_cells[2].text = action.deadline or ""
            row_cells[3].text = action.decision_id or ""
        document.add_paragraph("")

    if results.quotes:
        add_heading(document, "Notable Quotes", level=2)
        for quote in results.quotes:
            speaker = f" ({quote.speaker})" if quote.speaker else ""
            add_paragraph(document, f"{stamp(quote.timestamp, quote.timestamp_verified)}“{quote.text}”{speaker}")

    if results.relationship_warnings:
        add_heading(document, "Review Notes", level=2)
        add_bullet_list(document, results.relationship_warnings)


def render_metadata(document: Document, analysis: Analysis) -> None:
    meta = analysis.metadata
    add_heading(document, "Analysis Details", level=2)
    table = document.add_table(rows=0, cols=2)
    table.style = "Light List Accent 1"
    rows = [
        ("Status", meta.status),
        ("Strategy", f"{analysis.analysis_strategy.value} ({'auto' if meta.was_auto_selected else 'requested'})"),
        ("Deployment", f"{meta.deployment.deployment_id} ({meta.deployment.utilization_percentage:.1f}% utilized)"),
        ("Phases", f"{meta.completed_phases}/{meta.total_phases}"),
        ("Model calls", str(meta.model_calls)),
        ("Evaluation", meta.evaluation_status),
        ("Duration", f"{meta.duration_seconds:.1f}s"),
    ]
    if analysis.evaluation is not None:
        rows.append(("Quality score", f"{analysis.evaluation.quality_score:.2f}"))
    for label, value in rows:
        row_cells = table.add_row().cells
        row_cells[0].text = label
        row_cells[1].text = value
    document.add_paragraph("")

    notes = list(meta.warnings) + [f"{phase.name}: {phase.error}" for phase in meta.failed_phases]
    if meta.strategy_warning:
        notes.insert(0, meta.strategy_warning)
    if notes:
        add_bullet_list(document, notes)


def build_document(analysis_path: Path, output_path: Path) -> None:
    analysis = Analysis.model_validate(load_json(analysis_path))

    document = DocumentFactory()
    ensure_custom_styles(document)

    add_heading(document, f"Meeting Analysis – {analysis.transcript_id}", level=1)
    render_results(document, analysis.results)

    document.add_page_break()
    render_metadata(document, analysis)

    document.save(str(output_path))


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("analysis_json", type=Path, help="Path to an analysis JSON document")
    parser.add_argument("output_docx", type=Path, help="Output DOCX filename (e.g., meeting_report.docx)")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    build_document(args.analysis_json, args.output_docx)


if __name__ == "__main__":
    main()
