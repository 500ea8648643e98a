"""
Vision backends that turn image bytes into GeneratedMetadata.

Backends satisfy a small capability protocol (`name`, `available()`, `analyze()`); there is no
class hierarchy. OpenAI-compatible servers (OpenAI, Ollama, LM Studio) go through a pydantic-ai
Agent with structured output. Gemini and Cloudflare Workers AI are called over httpx and their free
text answer is parsed leniently.
"""
# ruff: noqa: PLR0913

import base64
import json
import re
import time
import urllib.parse
from http import HTTPStatus
from typing import Any, Protocol

import httpx
from loguru import logger
from pydantic import ValidationError
from pydantic_ai import Agent, AgentRunResult, BinaryContent, ModelSettings
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.ollama import OllamaProvider
from pydantic_ai.providers.openai import OpenAIProvider

from exif_ai.config import Config, resolve_backend
from exif_ai.errors import ConfigError
from exif_ai.models import GeneratedMetadata


DEFAULT_SYSTEM_PROMPT = (
    "**Persona**: You are a specialist AI photo archivist. "
    "Your expertise is in analyzing visual information and creating rich, structured metadata.\n"
    "\n"
    "**Mission**: Analyze the provided image and generate a complete metadata object that "
    "strictly conforms to the requested schema.\n"
    "\n"
    "**Rules**:\n"
    "1.  **title**: A short, catchy, SEO-friendly headline. Max 60 characters.\n"
    "2.  **description**: One or two sentences about the content, scene, mood, colors and "
    "context, like a magazine caption. Max 254 characters.\n"
    "3.  **tags**: 5-10 relevant keywords.\n"
    "4.  **gps**: Only if you can identify a specific, well-known location, give its latitude "
    "and longitude. Otherwise null.\n"
    "5.  **subject**: Identified people, species, landmarks or other notable subjects. "
    "Otherwise null.\n"
)

DEFAULT_USER_PROMPT = "Analyze this image and generate the structured metadata."

JSON_PROMPT = (
    DEFAULT_SYSTEM_PROMPT
    + "\nReturn ONLY a JSON object with the keys title, description, tags, gps "
    '({"latitude": ..., "longitude": ...} or null) and subject (list or null). '
    "No markdown, no code blocks, no extra text."
)

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
CLOUDFLARE_URL = "https://api.cloudflare.com/client/v4/accounts/{account_id}/ai/run/{model}"
MODEL_LISTING_TIMEOUT = 5.0


class Backend(Protocol):
    name: str

    def available(self) -> bool: ...

    def analyze(self, image_bytes: bytes, mime_type: str) -> GeneratedMetadata: ...


# --------------------------------------------------------------------------------------------------
# lenient JSON parsing
# --------------------------------------------------------------------------------------------------

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)```", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def _json_candidates(text: str) -> list[str]:
    candidates: list[str] = []
    fenced = _FENCE_RE.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])
    candidates.append(text.strip())
    return candidates


def parse_response(text: str) -> GeneratedMetadata:
    """
    Parse a model's free-text answer into GeneratedMetadata.

    Handles markdown code fences, prose around the JSON object and trailing commas. A `gps`
    value of the wrong shape is dropped rather than failing the whole answer.

    Examples:
        >>> parse_response('```json\\n{"title": "Dune", "tags": ["sand",],}\\n```').tags
        ['sand']

    Raises:
        ValueError: No candidate could be parsed as a metadata object

    """
    logger.debug("raw_backend_response", text=text[:2000])
    for candidate in _json_candidates(text):
        for attempt in (candidate, _TRAILING_COMMA_RE.sub(r"\1", candidate)):
            try:
                payload = json.loads(attempt)
            except json.JSONDecodeError:
                continue
            if not isinstance(payload, dict):
                continue
            try:
                return GeneratedMetadata.model_validate(payload)
            except ValidationError as exc:
                logger.warning("backend_response_schema_mismatch", error=str(exc))
                payload.pop("gps", None)
                try:
                    return GeneratedMetadata.model_validate(payload)
                except ValidationError:
                    continue
    msg = "could not parse backend response as a JSON metadata object"
    raise ValueError(msg)


# --------------------------------------------------------------------------------------------------
# model listing (local servers)
# --------------------------------------------------------------------------------------------------


def model_listed(api_base_url: str, model_name: str, api_key: str | None) -> bool:
    """Check that an OpenAI-compatible server lists `model_name` under /models."""
    url = urllib.parse.urljoin(api_base_url.rstrip("/") + "/", "models")
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in {"http", "https"}:
        logger.error("model_listing_invalid_scheme", url=url, scheme=parsed.scheme)
        return False
    if not parsed.netloc:
        logger.error("model_listing_missing_host", url=url)
        return False
    headers = {"Accept": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    try:
        response = httpx.get(url, headers=headers, timeout=MODEL_LISTING_TIMEOUT)
    except httpx.HTTPError as exc:
        logger.warning("model_listing_error", error=str(exc), url=url)
        return False

    if response.status_code != HTTPStatus.OK:
        logger.warning(
            "model_listing_failed",
            status=response.status_code,
            url=url,
            body=response.text,
        )
        return False

    try:
        listing = response.json()
    except ValueError as exc:
        logger.warning("model_listing_invalid_json", error=str(exc), url=url)
        return False

    models = [
        str(entry["id"])
        for entry in listing.get("data", [])
        if isinstance(entry, dict) and "id" in entry
    ]
    if model_name not in models:
        logger.warning("model_not_available", requested=model_name, available=models)
        return False

    logger.debug("model_validated", model=model_name)
    return True


# --------------------------------------------------------------------------------------------------
# backends
# --------------------------------------------------------------------------------------------------


class AgentBackend:
    """OpenAI-compatible chat model driven through a pydantic-ai Agent with structured output."""

    def __init__(
        self,
        name: str,
        agent: Agent,
        *,
        temperature: float = 0.2,
        max_tokens: int = 1000,
        timeout: float | None = None,
        listing: tuple[str, str, str | None] | None = None,
    ) -> None:
        self.name = name
        self._agent = agent
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = timeout
        # (base_url, model, api_key) checked against the server's model list
        self._listing = listing
        self._available: bool | None = None

    def available(self) -> bool:
        if self._available is None:
            self._available = self._listing is None or model_listed(*self._listing)
        return self._available

    def analyze(self, image_bytes: bytes, mime_type: str) -> GeneratedMetadata:
        settings = ModelSettings(temperature=self._temperature, max_tokens=self._max_tokens)
        if self._timeout is not None:
            settings["timeout"] = self._timeout
        t0 = time.perf_counter()
        result: AgentRunResult[GeneratedMetadata] = self._agent.run_sync(
            [
                DEFAULT_USER_PROMPT,
                BinaryContent(data=image_bytes, media_type=mime_type),
            ],
            model_settings=settings,
            output_type=GeneratedMetadata,
        )
        logger.info(
            "ai_inference_completed",
            backend=self.name,
            seconds=round(time.perf_counter() - t0, 3),
        )
        return result.output


class HttpBackend:
    """Shared request/response handling for the plain-HTTP backends."""

    name = "http"

    def __init__(self, *, model: str, timeout: float | None = None) -> None:
        self.model = model
        self._timeout = timeout

    def available(self) -> bool:
        return True

    def _post(
        self, url: str, body: dict[str, Any], **kwargs: Any  # noqa: ANN401
    ) -> dict[str, Any]:
        t0 = time.perf_counter()
        response = httpx.post(url, json=body, timeout=self._timeout, **kwargs)
        if response.status_code != HTTPStatus.OK:
            msg = f"{self.name} API error ({response.status_code}): {response.text[:500]}"
            raise RuntimeError(msg)
        logger.info(
            "ai_inference_completed",
            backend=self.name,
            seconds=round(time.perf_counter() - t0, 3),
        )
        return response.json()


class GeminiBackend(HttpBackend):
    name = "gemini"

    def __init__(self, api_key: str, *, model: str, timeout: float | None = None) -> None:
        super().__init__(model=model, timeout=timeout)
        self._api_key = api_key

    def analyze(self, image_bytes: bytes, mime_type: str) -> GeneratedMetadata:
        body = {
            "contents": [
                {
                    "parts": [
                        {"text": JSON_PROMPT},
                        {
                            "inline_data": {
                                "mime_type": mime_type,
                                "data": base64.b64encode(image_bytes).decode("ascii"),
                            },
                        },
                    ],
                },
            ],
            "generationConfig": {"maxOutputTokens": 1000},
        }
        payload = self._post(
            GEMINI_URL.format(model=self.model), body, params={"key": self._api_key}
        )
        try:
            text = payload["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            msg = "no content in Gemini response"
            raise RuntimeError(msg) from exc
        return parse_response(text)


class CloudflareBackend(HttpBackend):
    name = "cloudflare"

    def __init__(
        self, account_id: str, api_token: str, *, model: str, timeout: float | None = None
    ) -> None:
        super().__init__(model=model, timeout=timeout)
        self._account_id = account_id
        self._api_token = api_token

    def analyze(self, image_bytes: bytes, mime_type: str) -> GeneratedMetadata:  # noqa: ARG002
        body = {
            "messages": [{"role": "user", "content": JSON_PROMPT}],
            "image": base64.b64encode(image_bytes).decode("ascii"),
        }
        payload = self._post(
            CLOUDFLARE_URL.format(account_id=self._account_id, model=self.model),
            body,
            headers={"Authorization": f"Bearer {self._api_token}"},
        )
        text = (payload.get("result") or {}).get("response")
        if not isinstance(text, str):
            msg = "no content in Cloudflare response"
            raise RuntimeError(msg)
        return parse_response(text)


# --------------------------------------------------------------------------------------------------
# construction
# --------------------------------------------------------------------------------------------------


def _create_agent(
    provider_name: str,
    model_name: str,
    *,
    api_base_url: str | None,
    api_key: str | None,
) -> Agent:
    logger.debug("setting_up_llm_agent", provider=provider_name, url=api_base_url, model=model_name)
    if provider_name == "ollama":
        provider = OllamaProvider(base_url=api_base_url, api_key=api_key)
    elif provider_name == "openai":
        provider = OpenAIProvider(api_key=api_key)
    else:
        provider = OpenAIProvider(base_url=api_base_url, api_key=api_key)
    chat_model = OpenAIChatModel(model_name=model_name, provider=provider)
    return Agent(
        chat_model,
        output_type=GeneratedMetadata,
        retries=1,
        system_prompt=DEFAULT_SYSTEM_PROMPT,
    )


def build_backends(config: Config) -> list[Backend]:
    """
    Build the failover chain from the configuration, in order.

    Backends whose credentials are missing are left out with a warning.

    Raises:
        ConfigError: No backend could be built

    """
    backends: list[Backend] = []
    for name in config.enabled_backends():
        settings = resolve_backend(name, config.settings(name))
        common: dict[str, Any] = {"timeout": config.timeout}
        if name == "openai":
            if not settings.api_key:
                logger.warning("backend_missing_credentials", backend=name)
                continue
            agent = _create_agent(name, settings.model, api_base_url=None, api_key=settings.api_key)
            backends.append(
                AgentBackend(
                    name,
                    agent,
                    temperature=config.temperature,
                    max_tokens=config.max_tokens,
                    **common,
                ),
            )
        elif name in ("ollama", "lmstudio"):
            agent = _create_agent(
                name, settings.model, api_base_url=settings.base_url, api_key=settings.api_key
            )
            backends.append(
                AgentBackend(
                    name,
                    agent,
                    temperature=config.temperature,
                    max_tokens=config.max_tokens,
                    listing=(settings.base_url or "", settings.model, settings.api_key),
                    **common,
                ),
            )
        elif name == "gemini":
            if not settings.api_key:
                logger.warning("backend_missing_credentials", backend=name)
                continue
            backends.append(GeminiBackend(settings.api_key, model=settings.model, **common))
        elif name == "cloudflare":
            if not (settings.api_key and settings.account_id):
                logger.warning("backend_missing_credentials", backend=name)
                continue
            backends.append(
                CloudflareBackend(
                    settings.account_id, settings.api_key, model=settings.model, **common
                ),
            )
        else:
            logger.warning("unknown_backend_skipped", backend=name)

    if not backends:
        msg = "no usable AI backend configured (enable one and provide its credentials)"
        raise ConfigError(msg)
    logger.info("backend_chain_built", backends=[b.name for b in backends])
    return backends
