"""Fallback summary for turns where tools ran but the model wrote nothing after them."""

from __future__ import annotations

from typing import Any, Iterable

from job_assistant.models import ToolError, ToolOutcome

_MAX_HIGHLIGHTS = 3
_MAX_ERRORS = 2


def build_job_summary(outcomes: Iterable[ToolOutcome]) -> str | None:
    """Summarize job results found by tools, or return None if there is nothing to say."""

    highlights: list[str] = []
    seen: set[str] = set()
    sources: list[str] = []
    errors: list[str] = []

    for outcome in outcomes:
        if isinstance(outcome, ToolError):
            errors.append(outcome.message)
            continue
        for job in _extract_jobs(outcome.content):
            title = job.get("title")
            company = job.get("company")
            if not isinstance(title, str) or not isinstance(company, str) or not title or not company:
                continue
            location = job.get("location") if isinstance(job.get("location"), str) else ""
            job_id = job.get("id")
            key = job_id.strip() if isinstance(job_id, str) and job_id.strip() else f"{title}|{company}|{location}"
            if key not in seen:
                seen.add(key)
                line = f"• {title} at {company}"
                if location:
                    line += f" ({location})"
                highlights.append(line)
            source = job.get("source")
            if isinstance(source, str) and source.strip() and source.strip() not in sources:
                sources.append(source.strip())

    if not seen and not errors:
        return None

    parts: list[str] = []
    if seen:
        total = len(seen)
        suffix = f" across {', '.join(s.capitalize() for s in sources)}" if sources else ""
        parts.append(f"I found {total} role{'' if total == 1 else 's'}{suffix}.")
        parts.append("Highlights:\n" + "\n".join(highlights[:_MAX_HIGHLIGHTS]))
    if errors:
        parts.append(f"A few searches failed: {'; '.join(errors[:_MAX_ERRORS])}.")
    parts.append("Let me know if you want to refine the search or apply to any of these.")
    return "\n\n".join(parts)


def _extract_jobs(content: Any) -> list[dict[str, Any]]:
    if isinstance(content, list):
        candidates = content
    elif isinstance(content, dict) and isinstance(content.get("jobs"), list):
        candidates = content["jobs"]
    else:
        return []
    return [job for job in candidates if isinstance(job, dict)]
