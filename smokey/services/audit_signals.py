"""
Audit signal extraction.

Tool outputs are free-form JSON.  Checkpoint rules and the plan
suggestion heuristic only need a flat metric dict, which this module
pulls from the usual places:

    {"status": "completed", "scores": {"seo_score": 81}, "metrics": {...}}
    {"seo_score": 81, "title_score": 77}
"""

from __future__ import annotations

METRIC_KEYS = frozenset({
    "seo_score",
    "title_score",
    "technical_score",
    "ai_score",
    "content_semantics",
    "alt_text_coverage",
    "status_code",
    "baseline_seo_score",
})

_FAILED_STATUSES = {"failed", "error", "errored", "timeout"}


def extract_metrics(output) -> dict:
    """Flatten ``scores`` / ``metrics`` blocks and known top-level keys."""
    if not isinstance(output, dict):
        return {}
    merged: dict = {}
    for block_key in ("scores", "metrics"):
        block = output.get(block_key)
        if isinstance(block, dict):
            merged.update(block)
    for key in METRIC_KEYS:
        if key in output and key not in merged:
            merged[key] = output[key]
    return {k: v for k, v in merged.items() if v is not None}


def reported_failure(output) -> str | None:
    """Failure description when the tool itself reported an unsuccessful run."""
    if not isinstance(output, dict):
        return None
    status = str(output.get("status") or "").lower()
    if status in _FAILED_STATUSES or output.get("success") is False:
        return str(output.get("error") or f"tool reported status '{status or 'unsuccessful'}'")
    return None


def number(metrics: dict, key: str) -> float | None:
    """``metrics[key]`` as float, or None when missing / not numeric."""
    value = metrics.get(key)
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def latest_signals(outputs: list[dict]) -> dict:
    """Merge metric dicts from newest to oldest; the newest value per key wins."""
    merged: dict = {}
    for output in outputs:
        for key, value in extract_metrics(output).items():
            merged.setdefault(key, value)
    return merged
