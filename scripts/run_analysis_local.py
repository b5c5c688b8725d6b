"""Local runner for transcript analysis.

Usage:
    python scripts/run_analysis_local.py path/to/transcript.(txt|json) [--template template.json] [--mock-llm]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import re
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

# Ensure the src tree is importable when executed directly from a checkout.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT / "src") not in sys.path:
    sys.path.insert(0, str(REPO_ROOT / "src"))

from transcript_analysis.analysis.orchestrator import AnalysisOrchestrator, parse_analysis_request
from transcript_analysis.analysis.strategy import describe_strategy
from transcript_analysis.common.config import AnalysisSettings
from transcript_analysis.common.errors import AnalysisError
from transcript_analysis.common.timecodes import parse_timecode
from transcript_analysis.handlers.analyze_transcript import build_model_client

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE: Dict[str, Any] = {
    "id": "meeting-minutes",
    "name": "Meeting Minutes",
    "sections": [
        {"id": "overview", "name": "Overview", "prompt": "Summarize the purpose and main themes of the meeting.", "outputFormat": "paragraph"},
        {"id": "discussion", "name": "Key Discussion Points", "prompt": "List the material discussion points in order.", "extractEvidence": True},
        {"id": "risks", "name": "Risks and Open Questions", "prompt": "List unresolved questions, risks and concerns raised."},
    ],
    "outputs": ["summary", "decisions", "action_items", "quotes"],
}

# "[00:01:05] Alice: text" or "00:01:05 Alice: text"
_LINE_RE = re.compile(r"^\[?(\d{1,2}(?::\d{2}){1,2})\]?\s+(?:([^:]{1,40}):\s+)?(.+)$")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("input_path", type=Path, help="Transcript .txt or .json (segments list or full request)")
    parser.add_argument("--template", type=Path, default=None, help="Template JSON (defaults to meeting minutes)")
    parser.add_argument(
        "--strategy",
        choices=["auto", "basic", "hybrid", "advanced"],
        default="auto",
        help="Analysis strategy (default: auto)",
    )
    parser.add_argument("--supplemental", type=Path, default=None, help="Optional supplemental material text file")
    parser.add_argument("--no-evaluation", action="store_true", help="Skip the self-evaluation pass")
    parser.add_argument("--output", type=Path, default=None, help="Output JSON path (defaults to <input>.analysis.json)")
    parser.add_argument(
        "--mock-llm",
        action="store_true",
        help="Use heuristic offline model instead of calling Bedrock",
    )
    return parser.parse_args()


def segments_from_text(text: str, default_gap: float = 10.0) -> List[Dict[str, Any]]:
    """Build segments from timestamped lines; untimed lines are spaced ``default_gap`` seconds apart."""

    segments: List[Dict[str, Any]] = []
    for line in (raw.strip() for raw in text.splitlines()):
        if not line:
            continue
        match = _LINE_RE.match(line)
        if match:
            start = parse_timecode(match.group(1)) or 0.0
            speaker, body = match.group(2), match.group(3)
        else:
            start = segments[-1]["end"] if segments else 0.0
            speaker, body = None, line
        if segments and segments[-1]["end"] < start:
            segments[-1]["end"] = start
        segments.append({"index": len(segments), "start": start, "end": start + default_gap, "speaker": speaker, "text": body})
    return segments


def build_request(args: argparse.Namespace) -> Dict[str, Any]:
    raw = args.input_path.read_text(encoding="utf-8")
    if args.input_path.suffix.lower() == ".json":
        data = json.loads(raw)
        if isinstance(data, dict) and "transcript" in data:
            request = data
        else:
            segments = data.get("segments", []) if isinstance(data, dict) else data
            request = {"transcript": {"segments": segments}}
    else:
        request = {"transcript": {"text": raw, "segments": segments_from_text(raw)}}

    if args.template is not None:
        request["template"] = json.loads(args.template.read_text(encoding="utf-8"))
    request.setdefault("template", DEFAULT_TEMPLATE)
    request.setdefault("transcriptId", args.input_path.stem)
    request.setdefault("templateId", request["template"].get("id", "template"))
    request["strategy"] = args.strategy if args.strategy != "auto" else request.get("strategy", "auto")
    if args.no_evaluation:
        request["runEvaluation"] = False
    if args.supplemental is not None:
        request["supplementalMaterial"] = args.supplemental.read_text(encoding="utf-8")
    return request


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = parse_args()
    if args.mock_llm:
        os.environ["MOCK_BEDROCK"] = "1"

    settings = AnalysisSettings.from_env()
    output_path: Optional[Path] = args.output or args.input_path.with_suffix(".analysis.json")

    try:
        request = parse_analysis_request(build_request(args))
    except AnalysisError as e:
        logger.error("Invalid request: %s", e)
        sys.exit(2)

    label = describe_strategy(request.strategy, settings)
    logger.info("Requested strategy: %s (%s)", label["name"], label["api_calls"])

    def show_progress(completed: int, total: int, message: str) -> None:
        print(f"  [{completed}/{total}] {message}")

    orchestrator = AnalysisOrchestrator(build_model_client(settings), settings=settings)
    try:
        analysis = asyncio.run(orchestrator.analyze(request, progress_callback=show_progress))
    except AnalysisError as e:
        logger.error("Analysis failed: %s", e)
        sys.exit(1)

    output_path.write_text(json.dumps(analysis.to_payload(), indent=2, ensure_ascii=False), encoding="utf-8")
    meta = analysis.metadata
    print("=" * 70)
    print(f"Analysis {analysis.id} ({meta.status})")
    print(f"  Strategy:    {analysis.analysis_strategy.value} (auto: {meta.was_auto_selected})")
    print(f"  Deployment:  {meta.deployment.deployment_id} ({meta.deployment.utilization_percentage:.1f}% utilized)")
    print(f"  Phases:      {meta.completed_phases}/{meta.total_phases}, {meta.model_calls} model calls")
    if analysis.evaluation is not None:
        print(f"  Quality:     {analysis.evaluation.quality_score:.2f} (revised: {analysis.evaluation.revised})")
    print(f"  Warnings:    {len(analysis.results.relationship_warnings) + len(meta.warnings)}")
    print(f"  Output:      {output_path}")
    print("=" * 70)


if __name__ == "__main__":
    main()
