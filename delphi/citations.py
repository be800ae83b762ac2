"""Normalize externally-sourced citation data before it enters the data model."""

from typing import Any

from delphi.models import Citation


def _sanitize_one(raw: Any, index: int) -> dict[str, Any]:
    if isinstance(raw, str):
        return {"title": f"Source {index + 1}", "url": raw, "date": None, "relevance": "High"}
    if not isinstance(raw, dict):
        raw = {}
    title = raw.get("title")
    url = raw.get("url")
    date = raw.get("date")
    relevance = raw.get("relevance")
    return {
        "title": title if isinstance(title, str) else f"Source {index + 1}",
        "url": url if isinstance(url, str) else "",
        "date": date if isinstance(date, str) else None,
        "relevance": relevance if isinstance(relevance, str) else None,
    }


def sanitize_citations(raw_citations: Any) -> list[Citation]:
    """Turn bare URL strings or partial objects into well-formed citations.

    A bare string is taken as the URL (relevance ``High``). Missing titles
    become ``Source N`` (1-based position), a missing or
    non-string URL becomes ``""``, and ``date``/``relevance`` survive only
    when they are strings.
    """
    if not isinstance(raw_citations, list):
        return []
    return [Citation(**_sanitize_one(raw, i)) for i, raw in enumerate(raw_citations)]


def sanitize_counter_evidence(raw_evidence: list[Any]) -> list[dict[str, Any]]:
    """Sanitize counter-evidence entries, keeping their string ``summary``.

    Returns plain dicts so the result can go straight into schema validation.
    """
    cleaned = []
    for i, raw in enumerate(raw_evidence):
        entry = _sanitize_one(raw, i)
        summary = raw.get("summary") if isinstance(raw, dict) else None
        cleaned.append({
            "title": entry["title"],
            "url": entry["url"],
            "summary": summary if isinstance(summary, str) else "",
        })
    return cleaned
