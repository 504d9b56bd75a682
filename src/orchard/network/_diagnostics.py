"""Failure diagnostics: error excerpts and the aggregated run report."""

from __future__ import annotations

from collections.abc import Mapping

from orchard.command import CommandResult
from orchard.config import get_settings
from orchard.errors import BuildFailedError, OrchestratorError

_ELISION = "\n...\n"


def render_error_excerpt(
    text: str,
    *,
    limit: int | None = None,
    marker: str | None = None,
    fallback_marker: str | None = None,
) -> str:
    """Cut the interesting part out of a failed container's output.

    The excerpt starts at the first ``marker`` ("Error:"), falling back to a
    Python traceback header, and is at most ``limit`` characters. When it has
    to be shortened, the rest of the marker line is kept, then an elision,
    then the trailing window. Without any marker the trailing window
    is used.
    """
    cfg = get_settings().network
    limit = cfg.error_excerpt_chars if limit is None else limit
    marker = cfg.error_marker if marker is None else marker
    fallback_marker = cfg.traceback_marker if fallback_marker is None else fallback_marker

    idx = text.find(marker) if marker else -1
    if idx < 0 and fallback_marker:
        idx = text.find(fallback_marker)
    if idx < 0:
        if len(text) <= limit:
            return text
        return text[-limit:]

    excerpt = text[idx:]
    if len(excerpt) <= limit:
        return excerpt
    head = excerpt.split("\n", 1)[0][: limit // 2]
    tail_budget = limit - len(head) - len(_ELISION)
    if tail_budget <= 0:
        return excerpt[:limit]
    return head + _ELISION + excerpt[-tail_budget:]


def _failure_text(error: OrchestratorError) -> str:
    if isinstance(error, BuildFailedError):
        return error.log
    result: CommandResult | None = getattr(error, "result", None)
    if result is None or not result.renders_streams:
        return ""
    return result.stderr_text() or result.stdout_text()


def _indent(text: str, prefix: str = "    ") -> str:
    return "\n".join(prefix + line for line in text.splitlines())


def render_report(
    network_name: str,
    entries: Mapping[str, CommandResult | OrchestratorError],
    teardown_errors: list[Exception] | None = None,
) -> str:
    """Human-readable summary of every failed container in a run.

    Root causes are listed before containers that were only stopped or skipped,
    and excerpts carrying the not-root-cause marker are labelled as such.
    """
    cfg = get_settings().network
    failures = [(n, e) for n, e in entries.items() if isinstance(e, OrchestratorError)]
    consequential = ("stopped", "skipped", "cancelled")
    failures.sort(key=lambda item: item[1].kind in consequential)

    lines = [f"ContainerNetwork {network_name} failed:"]
    for name, error in failures:
        summary = str(error).split("\n", 1)[0]
        lines.append(f"  {name}: [{error.kind}] {summary}")
        text = _failure_text(error)
        if not text:
            continue
        excerpt = render_error_excerpt(text)
        if cfg.not_root_cause_marker and cfg.not_root_cause_marker in excerpt:
            lines.append("    (probably not the root cause)")
        lines.append(_indent(excerpt.rstrip("\n")))
    if teardown_errors:
        lines.append("  teardown errors:")
        lines.extend(f"    {err}" for err in teardown_errors)
    return "\n".join(lines)
