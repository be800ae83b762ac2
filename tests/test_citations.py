"""Tests for delphi/citations.py."""

from delphi.citations import sanitize_citations, sanitize_counter_evidence
from delphi.models import Citation


def test_bare_strings_become_citations():
    assert sanitize_citations(["https://a.example", "https://b.example"]) == [
        Citation(title="Source 1", url="https://a.example", relevance="High"),
        Citation(title="Source 2", url="https://b.example", relevance="High"),
    ]


def test_partial_objects_get_defaults():
    result = sanitize_citations([{"url": "https://a.example", "date": 2024, "relevance": "Medium"}, {"title": "T"}])
    assert result[0] == Citation(title="Source 1", url="https://a.example", date=None, relevance="Medium")
    assert result[1] == Citation(title="T", url="")


def test_non_list_input_yields_empty_list():
    assert sanitize_citations(None) == []
    assert sanitize_citations({"url": "https://a.example"}) == []


def test_garbage_entries_are_normalized():
    assert sanitize_citations([42]) == [Citation(title="Source 1", url="")]


def test_counter_evidence_keeps_summary():
    cleaned = sanitize_counter_evidence([
        {"title": "RTO study", "url": "https://a.example", "summary": "Mixed"},
        {"url": "https://b.example", "summary": 3},
    ])
    assert cleaned == [
        {"title": "RTO study", "url": "https://a.example", "summary": "Mixed"},
        {"title": "Source 2", "url": "https://b.example", "summary": ""},
    ]
