"""OpenAI chat-completions client that repairs incompatible requests and retries.

A request that the target model rejects is transformed and reissued inside a
bounded loop, so several incompatibilities in one request (for example an
unsupported ``temperature`` and the wrong max-tokens parameter name) are fixed
one after another. A response without usable content is retried once against
the fallback model. Callers get a non-empty result or a ``GenerationError``.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from openai import AsyncOpenAI

from config.config_loader import GenerationConfig, SamplingConfig, resolve_api_key
from delphi.providers.base import GenerationError, ServiceClient
from delphi.request_log import AgentRequestLog, RequestTag, current_request_log

logger = logging.getLogger(__name__)

_PING_PROMPT = "Reply with the word OK only."

_MODEL_ERROR_HINTS = ("not found", "does not exist", "unknown", "unsupported")
_RESPONSES_API_HINTS = ("responses api", "use the responses", "responses endpoint")


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str     # raw JSON argument string

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode the argument string. Raises ValueError on malformed JSON."""
        value = json.loads(self.arguments or "{}")
        if not isinstance(value, dict):
            raise ValueError(f"Tool arguments for {self.name} are not a JSON object")
        return value


@dataclass
class GenerationResult:
    content: str
    model: str
    tool_calls: list[ToolCall] = field(default_factory=list)

    def assistant_message(self) -> dict[str, Any]:
        """Render this result as an assistant message for a follow-up request."""
        message: dict[str, Any] = {"role": "assistant", "content": self.content or None}
        if self.tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in self.tool_calls
            ]
        return message


def _error_details(exc: BaseException) -> tuple[Any, Any, str]:
    code = getattr(exc, "code", None)
    param = getattr(exc, "param", None)
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        nested = body.get("error") if isinstance(body.get("error"), dict) else body
        code = code or nested.get("code")
        param = param or nested.get("param")
    return code, param, str(exc).lower()


def adjust_request(request: dict[str, Any], exc: BaseException, fallback_model: str) -> dict[str, Any] | None:
    """Return a repaired copy of ``request`` for a rejection, or None if the error is fatal."""
    code, param, msg = _error_details(exc)

    if (
        (code == "unsupported_value" or "unsupported" in msg or "does not support" in msg)
        and (param == "temperature" or "temperature" in msg)
        and "temperature" in request
    ):
        logger.warning("Temperature not supported for model %s; removing it and retrying", request.get("model"))
        return {k: v for k, v in request.items() if k != "temperature"}

    if (
        (code == "unsupported_parameter" or "unsupported parameter" in msg)
        and (param == "max_tokens" or "max_tokens" in msg)
        and "max_tokens" in request
    ):
        logger.warning("Model %s wants 'max_completion_tokens'; switching and retrying", request.get("model"))
        repaired = {k: v for k, v in request.items() if k != "max_tokens"}
        repaired["max_completion_tokens"] = request["max_tokens"]
        return repaired

    if (
        (code == "unsupported_parameter" or "unsupported parameter" in msg)
        and (param == "max_completion_tokens" or "max_completion_tokens" in msg)
        and "max_completion_tokens" in request
    ):
        logger.warning("Model %s wants 'max_tokens'; switching and retrying", request.get("model"))
        repaired = {k: v for k, v in request.items() if k != "max_completion_tokens"}
        repaired["max_tokens"] = request["max_completion_tokens"]
        return repaired

    model_rejected = (
        param == "model"
        or code == "model_not_found"
        or ("model" in msg and any(hint in msg for hint in _MODEL_ERROR_HINTS))
        or any(hint in msg for hint in _RESPONSES_API_HINTS)
    )
    if model_rejected and request.get("model") != fallback_model:
        logger.warning(
            "Model %s not available for chat completions; falling back to %s",
            request.get("model"), fallback_model,
        )
        return {**request, "model": fallback_model}

    return None


def _to_result(response: Any, model: str) -> GenerationResult | None:
    """Extract text and tool calls, or None when the response carries nothing usable."""
    choices = getattr(response, "choices", None) or []
    if not choices:
        return None
    message = getattr(choices[0], "message", None)
    if message is None:
        return None
    content = getattr(message, "content", None) or ""
    tool_calls = []
    for call in getattr(message, "tool_calls", None) or []:
        function = getattr(call, "function", None)
        if function is None:
            continue
        tool_calls.append(ToolCall(id=call.id, name=function.name, arguments=function.arguments or "{}"))
    if not content.strip() and not tool_calls:
        return None
    return GenerationResult(content=content, model=model, tool_calls=tool_calls)


class StructuredGenerationClient(ServiceClient):
    """Robust wrapper around ``chat.completions.create``."""

    def __init__(
        self,
        config: GenerationConfig,
        client: AsyncOpenAI | None = None,
        request_log: AgentRequestLog | None = None,
    ) -> None:
        self._config = config
        if client is None:
            api_key = resolve_api_key(config.api_key_env)
            # complete() is the only retry layer.
            client = AsyncOpenAI(api_key=api_key, base_url=config.base_url, max_retries=0)
        self._client = client
        self._request_log = request_log

    def name(self) -> str:
        return "openai"

    def model_string(self) -> str:
        return self._config.model

    def build_request(
        self,
        messages: list[dict[str, Any]],
        sampling: SamplingConfig,
        tools: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": self._config.model,
            "messages": messages,
            "temperature": sampling.temperature,
            "max_tokens": sampling.max_tokens,
        }
        if tools:
            request["tools"] = tools
            request["tool_choice"] = "auto"
        return request

    def _record(self, tag: RequestTag | None, request: dict[str, Any], **kwargs: Any) -> None:
        log = current_request_log()
        if log is None:
            log = self._request_log
        if log is not None:
            log.record(tag, request, **kwargs)

    async def complete(self, request: dict[str, Any], tag: RequestTag | None = None) -> GenerationResult:
        """Issue ``request``, repairing it as needed.

        Args:
            request: Keyword arguments for ``chat.completions.create``. Not mutated.
            tag: Optional agent tag recorded in the request log.

        Returns:
            GenerationResult with non-empty text and/or tool calls.

        Raises:
            GenerationError: On a fatal error, an empty response from the
                fallback model, or after exhausting the transformation attempts.
        """
        fallback = self._config.fallback_model
        req = dict(request)

        for attempt in range(1, self._config.max_attempts + 1):
            try:
                response = await self._client.chat.completions.create(**req)
                result = _to_result(response, req["model"])
                if result is None and req.get("model") != fallback:
                    logger.warning(
                        "Chat completion returned no usable text for model %s; retrying with %s",
                        req.get("model"), fallback,
                    )
                    self._record(tag, req, response=response)
                    req = {**req, "model": fallback}
                    response = await self._client.chat.completions.create(**req)
                    result = _to_result(response, req["model"])
            except Exception as exc:
                self._record(tag, req, error=exc)
                repaired = adjust_request(req, exc, fallback)
                if repaired is None:
                    raise GenerationError(self.name(), f"Chat completion failed: {exc}") from exc
                logger.debug("Attempt %d/%d repaired after: %s", attempt, self._config.max_attempts, exc)
                req = repaired
                continue

            self._record(tag, req, response=response)
            if result is None:
                raise GenerationError(self.name(), f"Model {req.get('model')} returned no usable content")
            return result

        raise GenerationError(
            self.name(),
            f"Chat completion failed after {self._config.max_attempts} transformation attempts",
        )

    async def ping(self) -> None:
        request = self.build_request(
            [{"role": "user", "content": _PING_PROMPT}],
            self._config.sampling_for("healthcheck"),
        )
        await self.complete(request, tag=RequestTag(agent_type="healthcheck"))
