#!/usr/bin/env python3
"""
model_gateway.py

Text-generation backend access for the extractor.

    parameters ──► ModelGateway.invoke ──► LLMClient.create ──► raw reply
                        │   ▲
                        │   └── BackendError naming an unsupported parameter:
                        │       drop exactly that parameter, try again (max 3)
                        ▼
                 response_text(raw) ──► plain text ("" if nothing usable)

The gateway holds no state between calls beyond its ModelConfig and client.
"""

import os
import re
import math
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from dotenv import load_dotenv

logger = logging.getLogger("ModelGateway")

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_BASE_URL = "https://api.openai.com/v1"
MAX_ATTEMPTS = 3

# Parameters the backend may reject per model. Checked in this order.
# NOTE: the message regexes also fire on unrelated errors whose free text
# happens to mention the parameter name; the param is only dropped if present.
DROPPABLE_PARAMS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    ("temperature", re.compile(r"temperature", re.IGNORECASE)),
    ("max_output_tokens", re.compile(r"max[_ ]?output[_ ]?tokens", re.IGNORECASE)),
    ("response_format", re.compile(r"response[_ ]?format|text\.format", re.IGNORECASE)),
)

_PARAM_ALIASES = {"text.format": "response_format", "text": "response_format"}


# =============================================================================
# ERRORS
# =============================================================================

class BackendError(Exception):
    """The backend rejected a request."""

    def __init__(
            self,
            message: str,
            status_code: Optional[int] = None,
            param: Optional[str] = None,
            code: Optional[str] = None
    ):
        self.message = message
        self.status_code = status_code
        self.param = param
        self.code = code
        super().__init__(message)


class GatewayError(Exception):
    """Backend call failed and no recoverable parameter was left to drop."""

    def __init__(self, message: str, status_code: Optional[int] = None, attempts: int = 0):
        self.message = message
        self.status_code = status_code
        self.attempts = attempts
        super().__init__(message)


# =============================================================================
# CONFIGURATION
# =============================================================================

def env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}")
        return default
    if not math.isfinite(value):
        logger.warning(f"Ignoring non-finite {name}={raw!r}")
        return default
    return value


def env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = env_float(name, None)
    return int(value) if value is not None else default


@dataclass
class ModelConfig:
    """Credential, endpoint and default sampling parameters for the backend."""

    api_key: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_MODEL
    temperature: Optional[float] = 0.2
    max_output_tokens: Optional[int] = 4000
    timeout: float = 180.0

    @classmethod
    def from_env(cls) -> "ModelConfig":
        load_dotenv()
        return cls(
            api_key=os.environ.get("OPENAI_API_KEY"),
            base_url=(os.environ.get("OPENAI_BASE_URL") or DEFAULT_BASE_URL).rstrip("/"),
            model=(os.environ.get("MODEL") or DEFAULT_MODEL).strip(),
            temperature=env_float("TEMPERATURE", 0.2),
            max_output_tokens=env_int("MAX_OUTPUT_TOKENS", 4000),
            timeout=env_float("MODEL_TIMEOUT", 180.0),
        )


# =============================================================================
# LLM CLIENT INTERFACE
# =============================================================================

class LLMClient(ABC):
    """Abstract backend: one request in, one raw reply out, no retries."""

    @abstractmethod
    async def create(self, params: Dict[str, Any]) -> Any:
        pass


class OpenAIResponsesClient(LLMClient):
    """OpenAI Responses API over httpx."""

    def __init__(self, config: ModelConfig):
        if not config.api_key:
            raise ValueError("OPENAI_API_KEY is not set")
        self.config = config

    def build_body(self, params: Dict[str, Any]) -> Dict[str, Any]:
        body = {k: v for k, v in params.items() if k != "response_format"}
        if "response_format" in params:
            body["text"] = {"format": params["response_format"]}
        return body

    async def create(self, params: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.config.timeout) as client:
            response = await client.post(
                f"{self.config.base_url}/responses",
                headers={
                    "Authorization": f"Bearer {self.config.api_key}",
                    "Content-Type": "application/json"
                },
                json=self.build_body(params)
            )
        if response.status_code >= 400:
            raise parse_error_response(response)
        try:
            return response.json()
        except ValueError as e:
            # Body text stays out of the message so it cannot name a droppable parameter
            logger.error(f"Non-JSON reply from {self.config.base_url}: {response.text[:200]!r}")
            raise BackendError(
                f"Backend returned a non-JSON body (HTTP {response.status_code})",
                status_code=response.status_code
            ) from e


def parse_error_response(response: httpx.Response) -> BackendError:
    """Turn an API error body into a BackendError."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    err = body.get("error") if isinstance(body, dict) else None
    if not isinstance(err, dict):
        err = {}
    param = err.get("param")
    return BackendError(
        message=str(err.get("message") or response.text or f"HTTP {response.status_code}"),
        status_code=response.status_code,
        param=_PARAM_ALIASES.get(param, param),
        code=err.get("code"),
    )


class MockLLMClient(LLMClient):
    """Offline backend for tests.

    Records calls in `call_log` and replays `replies` in order. A reply that
    is an exception instance is raised instead of returned. With nothing
    queued it answers with an empty JSON object.
    """

    def __init__(self, replies: Optional[List[Any]] = None):
        self.replies: List[Any] = list(replies or [])
        self.call_log: List[Dict[str, Any]] = []

    async def create(self, params: Dict[str, Any]) -> Any:
        self.call_log.append(dict(params))
        if not self.replies:
            return {"output_text": "{}"}
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply


# =============================================================================
# REPLY SHAPES
# =============================================================================

def _get(obj: Any, key: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def _text_from_output_text(resp: Any) -> Optional[str]:
    value = _get(resp, "output_text")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _text_from_output_segments(resp: Any) -> Optional[str]:
    items = _get(resp, "output")
    if not isinstance(items, list):
        items = _get(resp, "outputs")
    if not isinstance(items, list):
        return None
    parts = []
    for item in items:
        content = _get(item, "content")
        if not isinstance(content, list):
            continue
        for seg in content:
            text = _get(seg, "text")
            if not (isinstance(text, str) and text.strip()):
                text = _get(seg, "content")
            if isinstance(text, str) and text.strip():
                parts.append(text.strip())
    return "\n".join(parts).strip() or None


def _text_from_chat_choices(resp: Any) -> Optional[str]:
    choices = _get(resp, "choices")
    if not isinstance(choices, list) or not choices:
        return None
    content = _get(_get(choices[0], "message"), "content")
    if content is None:
        return None
    return str(content).strip() or None


def _text_from_plain_string(resp: Any) -> Optional[str]:
    if isinstance(resp, str) and resp.strip():
        return resp.strip()
    return None


RESPONSE_TEXT_ADAPTERS: List[Callable[[Any], Optional[str]]] = [
    _text_from_plain_string,
    _text_from_output_text,
    _text_from_output_segments,
    _text_from_chat_choices,
]


def response_text(resp: Any) -> str:
    """Normalize any known reply shape to text; "" when nothing matches."""
    if resp is None:
        return ""
    for adapter in RESPONSE_TEXT_ADAPTERS:
        try:
            text = adapter(resp)
        except (TypeError, AttributeError, IndexError):
            text = None
        if text:
            return text
    return ""


# =============================================================================
# GATEWAY
# =============================================================================

def detect_unsupported_param(error: BackendError, params: Dict[str, Any]) -> Optional[str]:
    """Name of the parameter the backend rejected, if it is droppable and present."""
    message = error.message or ""
    for name, pattern in DROPPABLE_PARAMS:
        if name not in params:
            continue
        if error.param == name or pattern.search(message):
            return name
    return None


@dataclass
class ModelGateway:
    """Invoke the backend, shedding unsupported parameters between attempts."""

    client: LLMClient
    config: ModelConfig = field(default_factory=ModelConfig)
    max_attempts: int = MAX_ATTEMPTS

    @classmethod
    def from_config(cls, config: ModelConfig) -> "ModelGateway":
        return cls(client=OpenAIResponsesClient(config), config=config)

    def build_params(
            self,
            prompt: str,
            model: Optional[str] = None,
            temperature: Optional[float] = None,
            max_output_tokens: Optional[int] = None,
            json_mode: bool = True
    ) -> Dict[str, Any]:
        """Request parameters; unset sampling values fall back to the ModelConfig."""
        if temperature is None:
            temperature = self.config.temperature
        if max_output_tokens is None:
            max_output_tokens = self.config.max_output_tokens
        params: Dict[str, Any] = {"model": model or self.config.model, "input": prompt}
        if json_mode:
            params["response_format"] = {"type": "json_object"}
        if temperature is not None:
            params["temperature"] = temperature
        if max_output_tokens is not None:
            params["max_output_tokens"] = max_output_tokens
        return params

    async def invoke(self, parameters: Dict[str, Any]) -> Any:
        params = dict(parameters)
        for attempt in range(self.max_attempts):
            try:
                return await self.client.create(params)
            except BackendError as e:
                bad = detect_unsupported_param(e, params)
                if bad is None:
                    raise GatewayError(e.message, status_code=e.status_code, attempts=attempt + 1) from e
                logger.warning(f"Model {params.get('model')} rejected '{bad}', retrying without it")
                del params[bad]
            except httpx.HTTPError as e:
                raise GatewayError(f"{type(e).__name__}: {e}", attempts=attempt + 1) from e
        raise GatewayError(
            f"Failed to call model after removing unsupported parameters "
            f"({self.max_attempts} attempts)",
            attempts=self.max_attempts
        )

    async def complete(self, parameters: Dict[str, Any]) -> str:
        return response_text(await self.invoke(parameters))
