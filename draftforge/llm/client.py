import json
import logging
import os
import time
from typing import Any, TypeVar

import httpx
import json_repair
from dotenv import load_dotenv
from openai import (
    APIConnectionError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)
from pydantic import BaseModel, ValidationError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from draftforge.config.loader import load_model_config
from draftforge.constants import LLM_DEFAULT_MAX_TOKENS, MODEL_CONFIG_PATH
from draftforge.errors import ContentQualityError
from draftforge.evaluation.usage_tracker import record_llm_usage
from draftforge.llm.router import select_model
from draftforge.llm.task_types import TaskType
from draftforge.schemas import ModelConfig, ModelProvider

load_dotenv()

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o"

# Long section drafts dominate latency; reads get the largest budget.
LLM_TIMEOUT = httpx.Timeout(connect=30.0, read=180.0, write=30.0, pool=30.0)

_PROVIDER_TRANSIENT_ERRORS = (
    httpx.TimeoutException,
    httpx.ConnectError,
    RateLimitError,
    APIConnectionError,
    APITimeoutError,
    InternalServerError,
)

# Keys that only appear when the model echoes the JSON schema back.
_SCHEMA_ECHO_KEYS = frozenset({"properties", "type", "required", "$schema", "$defs"})

_clients: dict[tuple[str, str], AsyncOpenAI] = {}
_model_registry: dict[str, ModelConfig] | None = None


class LLMOutputError(ContentQualityError):
    """The model answered, but the answer is unusable; retried as a quality failure."""


def _env_endpoint() -> tuple[str, str]:
    return (
        os.environ.get("LLM_API_KEY", ""),
        os.environ.get("LLM_BASE_URL", DEFAULT_BASE_URL),
    )


def _client_for(api_key: str, base_url: str) -> AsyncOpenAI:
    client = _clients.get((base_url, api_key))
    if client is None:
        client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=LLM_TIMEOUT)
        _clients[(base_url, api_key)] = client
    return client


def get_client() -> AsyncOpenAI:
    api_key, base_url = _env_endpoint()
    if not api_key:
        raise RuntimeError("LLM_API_KEY is not set (authentication)")
    return _client_for(api_key, base_url)


def get_model() -> str:
    return os.environ.get("LLM_MODEL", DEFAULT_MODEL)


def _build_default_registry() -> dict[str, ModelConfig]:
    """Single-entry registry describing the LLM_* environment endpoint."""
    api_key, base_url = _env_endpoint()
    if not api_key:
        return {}
    name = get_model()
    provider = ModelProvider.OPENAI if "openai.com" in base_url.lower() else ModelProvider.CUSTOM
    entry = ModelConfig(
        id=f"{provider.value}:{name}",
        provider=provider,
        model_name=name,
        display_name=name,
        api_base=base_url,
        max_output_tokens=LLM_DEFAULT_MAX_TOKENS,
    )
    return {entry.id: entry}


def get_model_registry() -> dict[str, ModelConfig]:
    global _model_registry
    if _model_registry is None:
        path = os.environ.get("MODEL_CONFIG_PATH", MODEL_CONFIG_PATH)
        _model_registry = load_model_config(path) or _build_default_registry()
        logger.info("Model registry ready with %d model(s)", len(_model_registry))
    return _model_registry


def resolve_model(model_id: str | None = None) -> tuple[AsyncOpenAI, str, bool]:
    """Return (client, model name, json mode supported) for a registry id.

    Unknown ids, and registry entries whose key variable is unset, resolve to
    the LLM_* environment endpoint. Local Ollama entries need no key.
    """
    cfg = get_model_registry().get(model_id) if model_id else None
    if cfg is not None:
        is_local = cfg.provider == ModelProvider.OLLAMA
        api_key = os.environ.get(cfg.api_key_env, "") if cfg.api_key_env else ""
        if api_key or is_local:
            client = _client_for(api_key or "ollama", cfg.api_base)
            return client, cfg.model_name, cfg.supports_json_mode
        logger.warning("%s: %s is unset, using the default endpoint", model_id, cfg.api_key_env)
    return get_client(), get_model(), True


def _route(task_type: str | None) -> str | None:
    if not task_type:
        return None
    try:
        task = TaskType(task_type)
    except ValueError:
        logger.warning("No routing for task_type=%s, using default model", task_type)
        return None
    return select_model(task, get_model_registry())


def _describe_field(schema: dict[str, Any], defs: dict[str, Any]) -> str:
    if "$ref" in schema:
        target = defs.get(schema["$ref"].rsplit("/", 1)[-1], {})
        fields = ", ".join(target.get("properties", {}))
        return f"object {{{fields}}}" if fields else "object"
    if "anyOf" in schema:
        options = [_describe_field(s, defs) for s in schema["anyOf"] if s.get("type") != "null"]
        return " or ".join(options) or "null"
    if schema.get("type") == "array":
        return f"list of {_describe_field(schema.get('items', {}), defs)}"
    if "enum" in schema:
        return "one of " + "|".join(str(v) for v in schema["enum"])
    return schema.get("type", "any")


def _build_schema_prompt(response_model: type[BaseModel]) -> str:
    schema = response_model.model_json_schema()
    defs = schema.get("$defs", {})
    required = set(schema.get("required", []))

    lines = []
    for name, prop in schema.get("properties", {}).items():
        marker = "required" if name in required else "optional"
        line = f"- {name} ({_describe_field(prop, defs)}, {marker})"
        if prop.get("description"):
            line += f": {prop['description']}"
        lines.append(line)

    return (
        "Answer with a single JSON object and nothing else.\n"
        f"Fields of {response_model.__name__}:\n" + "\n".join(lines) + "\n"
        "Put real content in every field; do not repeat this description."
    )


@retry(
    wait=wait_random_exponential(min=1, max=30),
    stop=stop_after_attempt(4),
    retry=retry_if_exception_type(_PROVIDER_TRANSIENT_ERRORS),
    before_sleep=before_sleep_log(logger, logging.WARNING),
)
async def _call_llm(
    client: AsyncOpenAI,
    messages: list[dict[str, Any]],
    temperature: float,
    max_tokens: int | None,
    model_name: str | None = None,
    use_json_mode: bool = True,
    task_type: str = "",
) -> str:
    model = model_name or get_model()
    request: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens or LLM_DEFAULT_MAX_TOKENS,
    }
    if use_json_mode:
        request["response_format"] = {"type": "json_object"}

    started = time.perf_counter()
    try:
        completion = await client.chat.completions.create(**request)  # type: ignore[call-overload]
    except Exception as e:
        logger.error(
            "llm[%s/%s]: failed after %.2fs: %s: %s",
            model,
            task_type or "-",
            time.perf_counter() - started,
            type(e).__name__,
            e,
        )
        raise
    logger.info(
        "llm[%s/%s]: completed in %.2fs", model, task_type or "-", time.perf_counter() - started
    )

    usage = completion.usage
    if usage:
        record_llm_usage(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            model=model,
            task_type=task_type,
        )

    content = completion.choices[0].message.content if completion.choices else None
    if not content:
        raise LLMOutputError(f"{model} returned an empty completion")
    return content


def parse_structured_output(raw_content: str, response_model: type[T]) -> T:
    try:
        data = json.loads(raw_content)
    except json.JSONDecodeError as e:
        data = json_repair.loads(raw_content)
        if not isinstance(data, dict):
            logger.error("Unrecoverable model output: %s", raw_content[:300])
            raise LLMOutputError(f"Model returned invalid JSON: {e}") from e
        logger.info("Repaired malformed JSON from model (%s)", e)

    if not isinstance(data, dict):
        raise LLMOutputError(f"Model returned {type(data).__name__}, expected object")

    if "properties" in data:
        content_keys = set(data) - _SCHEMA_ECHO_KEYS
        if not content_keys:
            raise LLMOutputError("Model echoed the JSON schema instead of content")
        logger.warning("Dropping echoed schema keys, keeping %s", sorted(content_keys))
        data = {k: data[k] for k in content_keys}

    try:
        return response_model.model_validate(data)
    except ValidationError as e:
        logger.error("%s validation failed: %s", response_model.__name__, e)
        raise LLMOutputError(f"Output does not match {response_model.__name__}: {e}") from e


def _with_schema_instruction(
    messages: list[dict[str, Any]], instruction: str
) -> list[dict[str, Any]]:
    out = [dict(m) for m in messages]
    system = next((m for m in out if m.get("role") == "system"), None)
    if system is None:
        out.insert(0, {"role": "system", "content": instruction})
    else:
        system["content"] = f"{system['content']}\n\n{instruction}"
    return out


async def structured_completion(
    messages: list[dict[str, Any]],
    response_model: type[T],
    temperature: float = 0.3,
    max_tokens: int | None = None,
    model_id: str | None = None,
    task_type: str | None = None,
) -> T:
    client, model_name, json_mode = resolve_model(model_id or _route(task_type))
    raw = await _call_llm(
        client,
        _with_schema_instruction(messages, _build_schema_prompt(response_model)),
        temperature,
        max_tokens,
        model_name=model_name,
        use_json_mode=json_mode,
        task_type=task_type or "",
    )
    return parse_structured_output(raw, response_model)


async def text_completion(
    messages: list[dict[str, Any]],
    temperature: float = 0.5,
    max_tokens: int | None = None,
    model_id: str | None = None,
    task_type: str | None = None,
) -> str:
    client, model_name, _ = resolve_model(model_id or _route(task_type))
    raw = await _call_llm(
        client,
        list(messages),
        temperature,
        max_tokens,
        model_name=model_name,
        use_json_mode=False,
        task_type=task_type or "",
    )
    return raw.strip()


class OpenAILanguageModel:
    """LanguageModel backed by an OpenAI-compatible chat completions API."""

    def __init__(self, model_id: str | None = None, temperature: float = 0.4) -> None:
        self.model_id = model_id
        self.temperature = temperature

    async def generate_text(
        self,
        messages: list[dict[str, Any]],
        task_type: str | None = None,
        max_tokens: int | None = None,
    ) -> str:
        return await text_completion(
            messages,
            temperature=self.temperature,
            max_tokens=max_tokens,
            model_id=self.model_id,
            task_type=task_type,
        )

    async def generate_structured(
        self,
        messages: list[dict[str, Any]],
        response_model: type[T],
        task_type: str | None = None,
    ) -> T:
        return await structured_completion(
            messages,
            response_model,
            temperature=0.3,
            model_id=self.model_id,
            task_type=task_type,
        )
