"""Strict validation schemas for structured agent output.

Generated JSON is validated here before it becomes a model dataclass. The
``validate_*`` helpers never raise: they return a ``ValidationResult`` that
carries either the typed value or a list of readable error strings.
"""

from dataclasses import dataclass, field
from typing import Annotated, Any, Generic, TypeVar

from pydantic import AfterValidator, AnyUrl, BaseModel, Field, TypeAdapter, ValidationError

from delphi.models import (
    Citation,
    ConsensusSummary,
    ContrarianResponse,
    CounterEvidence,
    ExpertResponse,
    PersonaSpec,
)

T = TypeVar("T")

_URL_ADAPTER = TypeAdapter(AnyUrl)


def _check_url(value: str) -> str:
    try:
        _URL_ADAPTER.validate_python(value)
    except ValidationError as exc:
        raise ValueError(f"invalid URL: {value!r}") from exc
    return value


UrlString = Annotated[str, AfterValidator(_check_url)]


class CitationSchema(BaseModel):
    title: str
    url: UrlString
    date: str | None = None
    relevance: str | None = None


class ExpertResponseSchema(BaseModel):
    position: str = Field(min_length=10)
    reasoning: str = Field(min_length=50)
    confidence: float = Field(ge=1, le=10, strict=True)
    sources: list[CitationSchema] = Field(min_length=1)
    expertise_area: str
    agent_id: str


class CounterEvidenceSchema(BaseModel):
    title: str
    url: UrlString
    summary: str


class ContrarianResponseSchema(BaseModel):
    critique: str = Field(min_length=50)
    alternative_framework: str = Field(min_length=30)
    blind_spots: list[str] = Field(min_length=1)
    counter_evidence: list[CounterEvidenceSchema] | None = None
    agent_id: str


class PersonaSchema(BaseModel):
    name: str = ""
    role: str = Field(min_length=1)
    domain_expertise: str = ""
    perspective: str = ""
    work_background: str = ""
    education_history: str = ""
    justification: str = ""
    description: str = ""


@dataclass
class ValidationResult(Generic[T]):
    value: T | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.value is not None and not self.errors


def _format_errors(exc: ValidationError) -> list[str]:
    messages = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err["loc"]) or "<root>"
        messages.append(f"{location}: {err['msg']}")
    return messages


def validate_expert_response(data: Any) -> ValidationResult[ExpertResponse]:
    try:
        parsed = ExpertResponseSchema.model_validate(data)
    except ValidationError as exc:
        return ValidationResult(errors=_format_errors(exc))
    return ValidationResult(
        value=ExpertResponse(
            position=parsed.position,
            reasoning=parsed.reasoning,
            confidence=parsed.confidence,
            sources=[
                Citation(title=s.title, url=s.url, date=s.date, relevance=s.relevance)
                for s in parsed.sources
            ],
            expertise_area=parsed.expertise_area,
            agent_id=parsed.agent_id,
        )
    )


def validate_contrarian_response(data: Any) -> ValidationResult[ContrarianResponse]:
    try:
        parsed = ContrarianResponseSchema.model_validate(data)
    except ValidationError as exc:
        return ValidationResult(errors=_format_errors(exc))
    evidence = None
    if parsed.counter_evidence is not None:
        evidence = [
            CounterEvidence(title=e.title, url=e.url, summary=e.summary)
            for e in parsed.counter_evidence
        ]
    return ValidationResult(
        value=ContrarianResponse(
            critique=parsed.critique,
            alternative_framework=parsed.alternative_framework,
            blind_spots=list(parsed.blind_spots),
            agent_id=parsed.agent_id,
            counter_evidence=evidence,
        )
    )


def validate_persona(data: Any) -> ValidationResult[PersonaSpec]:
    try:
        parsed = PersonaSchema.model_validate(data)
    except ValidationError as exc:
        return ValidationResult(errors=_format_errors(exc))
    return ValidationResult(value=PersonaSpec(**parsed.model_dump()))


class ConsensusSummarySchema(BaseModel):
    final_position: str = Field(min_length=1)
    support_level: str
    confidence_level: float


def validate_consensus_summary(data: Any) -> ValidationResult[ConsensusSummary]:
    """Validate a generated consensus summary.

    ``key_evidence`` is not checked here; callers sanitize it separately.
    """
    try:
        parsed = ConsensusSummarySchema.model_validate(data)
    except ValidationError as exc:
        return ValidationResult(errors=_format_errors(exc))
    return ValidationResult(
        value=ConsensusSummary(
            final_position=parsed.final_position,
            support_level=parsed.support_level,
            confidence_level=parsed.confidence_level,
        )
    )
