"""Read a Delphi question from a Markdown file with optional YAML front matter."""

from dataclasses import dataclass
from pathlib import Path

import frontmatter

from delphi.models import DelphiPrompt


class QuestionFileError(ValueError):
    """Raised when a question file has no body or malformed front matter."""


@dataclass
class QuestionFile:
    prompt: DelphiPrompt
    experts: int | None = None
    rounds: int | None = None


def _optional_int(metadata: dict, key: str, path: Path) -> int | None:
    if key not in metadata or metadata[key] is None:
        return None
    try:
        return int(metadata[key])
    except (TypeError, ValueError) as exc:
        raise QuestionFileError(f"{path}: front matter '{key}' must be an integer") from exc


def parse_question_file(path: Path) -> QuestionFile:
    """Parse ``path``: the body is the question, front matter may set
    ``context``, ``constraints`` (list or single string), ``experts`` and ``rounds``.
    """
    post = frontmatter.load(str(path))
    question = post.content.strip()
    if not question:
        raise QuestionFileError(f"{path}: question body is empty")

    metadata = dict(post.metadata)
    constraints = metadata.get("constraints") or []
    if isinstance(constraints, str):
        constraints = [constraints]
    if not isinstance(constraints, list):
        raise QuestionFileError(f"{path}: front matter 'constraints' must be a list")

    context = metadata.get("context")
    return QuestionFile(
        prompt=DelphiPrompt(
            question=question,
            context=str(context) if context else None,
            constraints=[str(c) for c in constraints],
        ),
        experts=_optional_int(metadata, "experts", path),
        rounds=_optional_int(metadata, "rounds", path),
    )
