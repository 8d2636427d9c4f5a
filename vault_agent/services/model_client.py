"""Chat-completions transport for the vault agent.

Talks to any OpenAI-compatible ``/chat/completions`` endpoint over
``httpx.AsyncClient`` and returns one assistant message per call. Models that
print XML-style tool invocations instead of using function calling are handled
by ``parse_xml_tool_calls``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple
import uuid

import httpx

from ..models.agent import ToolCall, TranscriptMessage
from .config import AppConfig

logger = logging.getLogger(__name__)

_FUNCTION_CALLS_PATTERN = re.compile(
    r"<(?:antml:)?function_calls>\s*(.*?)\s*</(?:antml:)?function_calls>",
    re.DOTALL | re.IGNORECASE,
)
_INVOKE_PATTERN = re.compile(
    r"<(?:antml:)?invoke\s+name=[\"']([^\"']+)[\"']\s*>\s*(.*?)\s*</(?:antml:)?invoke>",
    re.DOTALL | re.IGNORECASE,
)
_PARAM_PATTERN = re.compile(
    r"<(?:antml:)?parameter\s+name=[\"']([^\"']+)[\"'](?:\s+[^>]*)?>([^<]*)</(?:antml:)?parameter>",
    re.DOTALL | re.IGNORECASE,
)


class ModelTransportError(Exception):
    """Raised when the model endpoint cannot be reached or answers garbage."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


@dataclass
class ModelUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class ModelResponse:
    """One assistant message plus the token usage reported for the request."""

    message: TranscriptMessage
    usage: ModelUsage = field(default_factory=ModelUsage)

    @property
    def text(self) -> str:
        return self.message.content or ""

    @property
    def tool_calls(self) -> List[ToolCall]:
        return self.message.tool_calls


def _coerce_param(value: str) -> Any:
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    if value.isdigit():
        return int(value)
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def _invoke_to_call(name: str, params_content: str) -> ToolCall:
    arguments = {
        match.group(1): _coerce_param(match.group(2).strip())
        for match in _PARAM_PATTERN.finditer(params_content)
    }
    return ToolCall(
        id=f"xml_call_{uuid.uuid4().hex[:8]}",
        name=name,
        arguments=json.dumps(arguments),
    )


def parse_xml_tool_calls(content: str) -> Tuple[List[ToolCall], str]:
    """Extract XML-style tool invocations from assistant text.

    Returns the parsed calls and the text with the XML blocks removed.
    Standalone ``<invoke>`` elements are accepted when no wrapping
    ``<function_calls>`` block is present.
    """
    calls: List[ToolCall] = []
    cleaned = content

    for block in _FUNCTION_CALLS_PATTERN.finditer(content):
        cleaned = cleaned.replace(block.group(0), "")
        for invoke in _INVOKE_PATTERN.finditer(block.group(1)):
            calls.append(_invoke_to_call(invoke.group(1), invoke.group(2)))

    if not calls:
        for invoke in _INVOKE_PATTERN.finditer(content):
            cleaned = cleaned.replace(invoke.group(0), "")
            calls.append(_invoke_to_call(invoke.group(1), invoke.group(2)))

    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned.strip())
    if calls:
        logger.info(
            f"Parsed {len(calls)} XML-style tool call(s) from content",
            extra={"tool_names": [call.name for call in calls]},
        )
    return calls, cleaned


def _parse_tool_calls(raw_calls: Any) -> List[ToolCall]:
    if raw_calls is None:
        return []
    if not isinstance(raw_calls, list):
        raise ModelTransportError("Malformed tool_calls in model response")
    calls: List[ToolCall] = []
    for raw in raw_calls:
        try:
            function = raw["function"]
            arguments = function.get("arguments")
            if arguments is None:
                arguments = "{}"
            elif not isinstance(arguments, str):
                arguments = json.dumps(arguments)
            calls.append(
                ToolCall(
                    id=raw.get("id") or f"call_{uuid.uuid4().hex[:8]}",
                    name=function["name"],
                    arguments=arguments,
                )
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise ModelTransportError(
                "Malformed tool call in model response", {"tool_call": raw}
            ) from e
    return calls


def parse_completion(data: Any) -> ModelResponse:
    """Convert a chat-completions JSON body into a ``ModelResponse``."""
    try:
        message = data["choices"][0]["message"]
    except (KeyError, IndexError, TypeError) as e:
        raise ModelTransportError("Model response has no choices", {"body": data}) from e
    if not isinstance(message, dict):
        raise ModelTransportError("Model response message is not an object")

    content = message.get("content")
    if content is not None and not isinstance(content, str):
        content = str(content)
    tool_calls = _parse_tool_calls(message.get("tool_calls"))

    if not tool_calls and content:
        xml_calls, cleaned = parse_xml_tool_calls(content)
        if xml_calls:
            logger.warning(
                f"Model output {len(xml_calls)} XML-style tool call(s) instead of "
                "using function calling. Parsing and executing."
            )
            tool_calls = xml_calls
            content = cleaned or None

    raw_usage = data.get("usage") or {}
    try:
        prompt = int(raw_usage.get("prompt_tokens") or 0)
        completion = int(raw_usage.get("completion_tokens") or 0)
        total = int(raw_usage.get("total_tokens") or prompt + completion)
    except (AttributeError, TypeError, ValueError) as e:
        raise ModelTransportError(
            "Model response usage is malformed", {"usage": raw_usage}
        ) from e
    usage = ModelUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)
    return ModelResponse(
        message=TranscriptMessage(role="assistant", content=content, tool_calls=tool_calls),
        usage=usage,
    )


class ModelClient:
    """Async client for an OpenAI-compatible chat-completions endpoint."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not api_key:
            raise ModelTransportError("API key is required for the model client")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(
        cls, config: AppConfig, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "ModelClient":
        return cls(
            config.api_key or "",
            base_url=config.api_base_url,
            model=config.model,
            timeout=config.request_timeout,
            transport=transport,
        )

    async def complete(
        self,
        messages: Sequence[TranscriptMessage],
        tools: Sequence[Dict[str, Any]],
        *,
        tool_choice: str = "auto",
    ) -> ModelResponse:
        """Send the transcript and tool schemas; return the assistant message.

        Raises:
            ModelTransportError: on network errors, non-2xx status or a malformed body.
        """
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [message.to_api() for message in messages],
        }
        if tools:
            payload["tools"] = list(tools)
            payload["tool_choice"] = tool_choice
            payload["parallel_tool_calls"] = True

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            body = e.response.text[:500]
            logger.error(f"Model API error: {e.response.status_code} - {body}")
            raise ModelTransportError(
                f"API error: {e.response.status_code}",
                {"status_code": e.response.status_code, "body": body},
            ) from e
        except httpx.TimeoutException as e:
            logger.error("Model API timeout")
            raise ModelTransportError("Request timeout - please try again") from e
        except httpx.HTTPError as e:
            logger.error(f"Model API request failed: {e}")
            raise ModelTransportError(f"Request failed: {e}") from e
        except ValueError as e:
            raise ModelTransportError("Model response is not valid JSON") from e

        return parse_completion(data)


__all__ = [
    "ModelClient",
    "ModelResponse",
    "ModelTransportError",
    "ModelUsage",
    "parse_completion",
    "parse_xml_tool_calls",
]
