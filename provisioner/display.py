"""
ANSI terminal display formatter for the provisioner.

All public ``format_*`` functions return strings; the caller is responsible
for printing them to stderr.
"""

from __future__ import annotations

import textwrap
from typing import Any, Iterable

from provisioner.models import (
    OUTCOME_CONNECTED,
    OUTCOME_DESTROYED,
    OUTCOME_FAILED,
    OUTCOME_UNCHANGED,
)


# ---------------------------------------------------------------------------
# ANSI colour constants
# ---------------------------------------------------------------------------

RED = "\033[31m"
BOLD_RED = "\033[1;31m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
CYAN = "\033[36m"
RESET = "\033[0m"
BOLD = "\033[1m"

# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

_SEPARATOR_WIDTH = 56
_INDENT = "  "


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Retrieve *key* from a dict **or** an attribute on a dataclass / object."""
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _header(title: str) -> str:
    bar = "━" * max(_SEPARATOR_WIDTH - len(title) - 5, 3)
    return f"{BOLD}━━━ {title} {bar}{RESET}"


def _footer() -> str:
    return f"{BOLD}{'━' * _SEPARATOR_WIDTH}{RESET}"


def _wrap_text(text: str, width: int = _SEPARATOR_WIDTH, indent: str = "      ") -> str:
    if not text:
        return ""
    content_width = max(width - len(indent), 20)
    return textwrap.fill(
        text,
        width=content_width,
        initial_indent=indent,
        subsequent_indent=indent,
    )


def _outcome_badge(outcome: str) -> str:
    if outcome == OUTCOME_CONNECTED:
        return f"{GREEN}{outcome}{RESET}"
    if outcome == OUTCOME_FAILED:
        return f"{BOLD_RED}{outcome}{RESET}"
    if outcome == OUTCOME_DESTROYED:
        return f"{YELLOW}{outcome}{RESET}"
    if outcome == OUTCOME_UNCHANGED:
        return outcome
    return f"{CYAN}{outcome}{RESET}"


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------

def format_plan(plan: Any) -> str:
    lines = [_header("PLAN")]
    for key, unit in sorted(_get(plan, "to_create", {}).items()):
        lines.append(f"{GREEN}  + {key}{RESET}  {unit.display_name}")
    for key, unit in sorted(_get(plan, "to_replace", {}).items()):
        lines.append(f"{YELLOW}  ~ {key}{RESET}  {unit.display_name} (destroy, then create)")
    for key in sorted(_get(plan, "to_destroy", [])):
        lines.append(f"{RED}  - {key}{RESET}")
    for key in sorted(_get(plan, "failed", [])):
        lines.append(f"{BOLD_RED}  ! {key}{RESET}  not connected; run `replace {key}` to retry")

    unchanged = _get(plan, "unchanged", [])
    if _get(plan, "is_empty", False) and not _get(plan, "failed", []):
        lines.append("  No changes. Publishers match the desired state.")
    elif unchanged:
        lines.append(f"  {len(unchanged)} unchanged")
    lines.append(_footer())
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Reconcile report
# ---------------------------------------------------------------------------

def format_report(results: dict) -> str:
    """Render per-key outcomes; failures include step, reason and diagnostic."""
    lines = [_header("RESULT")]
    for key in sorted(results):
        result = results[key]
        outcome = _get(result, "outcome", "?")
        line = f"  {key}: {_outcome_badge(outcome)}"
        step = _get(result, "step")
        if outcome == OUTCOME_FAILED and step:
            line += f" at {step}"
        lines.append(line)

        if outcome == OUTCOME_FAILED:
            reason = _get(result, "reason")
            if reason:
                lines.append(f"{RED}{_wrap_text(reason)}{RESET}")
            diagnostic = (_get(result, "diagnostic") or "").strip()
            if diagnostic:
                lines.append(f"{RED}      --- remote output ---{RESET}")
                for diag_line in diagnostic.splitlines()[-20:]:
                    lines.append(f"      {diag_line}")
    lines.append(_footer())
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Status / drift
# ---------------------------------------------------------------------------

def format_status(statuses: Iterable[Any], warnings: Iterable[Any]) -> str:
    statuses = list(statuses)
    warnings = list(warnings)
    lines = [_header("PUBLISHER STATUS")]
    if not statuses:
        lines.append("  No publishers recorded.")
    for st in statuses:
        lines.append(f"  {_get(st, 'key')}  ({_get(st, 'display_name')})  {_outcome_badge(_get(st, 'outcome'))}")
        lines.append(
            f"      tenant: {_get(st, 'publisher_status')}  "
            f"instance: {_get(st, 'instance_state')}  "
            f"ssm: {_get(st, 'ping_status')}"
        )
    if warnings:
        lines.append("")
        lines.append(f"{YELLOW}  Drift detected (manual reconciliation required):{RESET}")
        for w in warnings:
            lines.append(f"{YELLOW}    {_get(w, 'key')}: {_get(w, 'message')}{RESET}")
    lines.append(_footer())
    return "\n".join(lines)


def format_error(message: str) -> str:
    return f"{BOLD_RED}Error:{RESET} {message}"
