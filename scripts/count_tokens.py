"""
Count tokens in a transcript file using tiktoken and show how it would be routed.
Claude uses a similar tokenization method, so this gives a good estimate.
"""

import os
import sys
from pathlib import Path

import tiktoken

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT / "src") not in sys.path:
    sys.path.insert(0, str(REPO_ROOT / "src"))

from transcript_analysis.analysis.strategy import describe_strategy, recommend_strategy
from transcript_analysis.common.config import AnalysisSettings
from transcript_analysis.common.errors import ContextTooLargeError
from transcript_analysis.common.token_utils import estimate_tokens, select_deployment


def count_tokens(text: str, model: str = "cl100k_base") -> int:
    """
    Count tokens in text using tiktoken.

    Args:
        text: Text to count tokens for
        model: Encoding to use (cl100k_base is close to Claude's tokenizer)

    Returns:
        Number of tokens
    """
    encoding = tiktoken.get_encoding(model)
    return len(encoding.encode(text))


def analyze_transcript(file_path: str) -> None:
    """Print token statistics and the deployment/strategy the analyzer would pick."""

    with open(file_path, 'r', encoding='utf-8') as f:
        content = f.read()

    settings = AnalysisSettings.from_env()
    token_count = count_tokens(content)
    estimated = estimate_tokens(content)

    print("=" * 70)
    print(f"TRANSCRIPT TOKENS: {os.path.basename(file_path)}")
    print("=" * 70)
    print(f"  Characters:      {len(content):,}")
    print(f"  Words:           {len(content.split()):,}")
    print(f"  tiktoken count:  {token_count:,}")
    print(f"  Router estimate: {estimated:,} (chars / 4)")

    print("\nRouting:")
    try:
        choice = select_deployment(estimated, settings.deployments, settings.safety_margin)
        print(f"  Deployment:      {choice.deployment_id} ({choice.token_limit:,} tokens)")
        print(f"  Utilization:     {choice.utilization_percentage:.1f}%")
        print(f"  Extended:        {choice.is_extended_context}")
    except ContextTooLargeError as e:
        print(f"  ⚠️  {e}")

    recommendation = recommend_strategy(estimated, settings)
    label = describe_strategy(recommendation.strategy, settings)
    print(f"  Strategy:        {label['name']} ({label['api_calls']})")
    print(f"  Reasoning:       {recommendation.reasoning}")
    print("=" * 70)


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python scripts/count_tokens.py transcript_file.txt")
        sys.exit(1)

    file_path = sys.argv[1]
    if not os.path.exists(file_path):
        print(f"Error: File not found: {file_path}")
        sys.exit(1)

    analyze_transcript(file_path)
