"""Generate the expert panel's personas with a single generation call."""

import logging

from config.config_loader import PromptsConfig, SamplingConfig
from delphi.models import PersonaSpec
from delphi.parsing import JSONExtractionError, extract_json_array
from delphi.prompts import render_persona_prompt
from delphi.providers.base import GenerationError
from delphi.providers.generation import StructuredGenerationClient
from delphi.request_log import RequestTag
from delphi.schemas import validate_persona

logger = logging.getLogger(__name__)


class PersonaGenerationError(Exception):
    """Raised when personas cannot be generated. Fatal to the run."""


class PersonaGenerator:
    def __init__(
        self,
        client: StructuredGenerationClient,
        prompts: PromptsConfig,
        sampling: SamplingConfig,
    ) -> None:
        self._client = client
        self._prompts = prompts
        self._sampling = sampling

    async def generate(self, question: str, count: int) -> list[PersonaSpec]:
        """Return up to ``count`` personas for ``question``.

        Raises:
            PersonaGenerationError: If the response is empty, unparsable, not an
                array, an empty array, or holds a malformed persona record.
        """
        request = self._client.build_request(
            [
                {"role": "system", "content": self._prompts.persona_system},
                {"role": "user", "content": render_persona_prompt(self._prompts, question, count)},
            ],
            self._sampling,
        )
        try:
            result = await self._client.complete(request, tag=RequestTag(agent_type="persona"))
        except GenerationError as exc:
            raise PersonaGenerationError(f"No persona generation response: {exc}") from exc

        try:
            raw_personas = extract_json_array(result.content)
        except JSONExtractionError as exc:
            raise PersonaGenerationError(f"Failed to parse persona JSON: {exc}") from exc

        if not raw_personas:
            raise PersonaGenerationError("No personas generated")

        personas: list[PersonaSpec] = []
        for index, raw in enumerate(raw_personas[:count], start=1):
            validation = validate_persona(raw)
            if not validation.ok:
                raise PersonaGenerationError(
                    f"Persona {index} is malformed: {'; '.join(validation.errors)}"
                )
            personas.append(validation.value)

        if len(personas) < count:
            logger.warning("Requested %d personas, generator returned %d", count, len(personas))
        logger.info("Generated %d personas: %s", len(personas), ", ".join(p.role for p in personas))
        return personas
