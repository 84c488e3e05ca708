"""
Gemini Gateway - single choke point for every call to the Gemini REST API.

Owns the process-wide concurrency gate, the embedding retry policy and
tolerant parsing of provider responses. Public methods never raise for
operational failures (auth, transport, malformed data): they log the
cause and return None / an empty vector.

Error classes that trigger a retry (embedding path only):
- 429 Too Many Requests, or 400 mentioning quota: rate limit
- 5xx: provider-side failure
- httpx transport errors (connect, read timeout, reset)

Never retried:
- Invalid / expired API key (latched until reconfigure())
- Other 4xx request errors
- 200 responses with an unexpected shape
"""

import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from . import config
from .concurrency_gate import ConcurrencyGate, get_gate
from .models.conversation import ConversationTurn, FunctionCall

logger = logging.getLogger(__name__)

EMBED_MAX_ATTEMPTS = 3
EMBED_BACKOFF_BASE_SECONDS = 0.5  # 0.5s before attempt 2, 1.0s before attempt 3

TEXT_TEMPERATURE = 0.7
TOOLS_TEMPERATURE = 0.3

CREDENTIAL_ERROR_PATTERNS = [
    "api key expired",
    "api_key_invalid",
    "api key not valid",
    "invalid api key",
]

RATE_LIMIT_PATTERN = re.compile(
    r"quota|\brate[ _-]?limit|\brate\b|resource_exhausted|too many requests"
)


class GeminiGatewayError(Exception):
    """Base class for provider failures handled inside the gateway."""
    pass


class TransientProviderError(GeminiGatewayError):
    """Network failure, rate limit or 5xx. Safe to retry on idempotent calls."""
    pass


class InvalidCredentialError(GeminiGatewayError):
    """The API key was rejected. Fatal until the configuration changes."""
    pass


class ProviderRequestError(GeminiGatewayError):
    """Non-retryable 4xx response."""
    pass


class MalformedResponseError(GeminiGatewayError):
    """HTTP 200 with a body that does not have the expected shape."""
    pass


def classify_provider_error(status_code: int, body: str) -> GeminiGatewayError:
    """Map a non-success response to the error taxonomy.

    Some provider errors say "API key expired" when the real cause is a
    quota; when key wording appears together with a rate/quota signal the
    error is treated as a rate limit, never as a fatal credential error.
    """
    text = (body or "").lower()
    mentions_key = any(p in text for p in CREDENTIAL_ERROR_PATTERNS)
    mentions_rate = bool(RATE_LIMIT_PATTERN.search(text))

    if status_code == 429:
        return TransientProviderError(f"rate limited ({status_code}): {body[:200]}")
    if mentions_key and not mentions_rate:
        return InvalidCredentialError(f"API key rejected ({status_code}): {body[:200]}")
    if status_code == 401:
        return InvalidCredentialError(f"unauthorized ({status_code}): {body[:200]}")
    if mentions_key or (status_code == 400 and "quota" in text):
        return TransientProviderError(f"possible rate limit ({status_code}): {body[:200]}")
    if status_code >= 500:
        return TransientProviderError(f"provider error ({status_code}): {body[:200]}")
    return ProviderRequestError(f"request rejected ({status_code}): {body[:200]}")


def _mask_key(api_key: Optional[str]) -> str:
    if not api_key:
        return "NULL"
    return f"...{api_key[-4:]}" if len(api_key) > 8 else "***"


def _as_dict(value: Any) -> Optional[Dict[str, Any]]:
    return value if isinstance(value, dict) else None


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _iter_parts(raw: Any) -> Iterable[Dict[str, Any]]:
    """Yield every part dict of every candidate, skipping anything malformed."""
    root = _as_dict(raw)
    if root is None:
        return
    for candidate in _as_list(root.get("candidates")):
        candidate = _as_dict(candidate)
        if candidate is None:
            continue
        content = _as_dict(candidate.get("content"))
        if content is None:
            continue
        for part in _as_list(content.get("parts")):
            part = _as_dict(part)
            if part is not None:
                yield part


class GeminiGateway:
    """Async client for generateContent / embedContent / file upload.

    Args:
        api_key: Gemini API key. Defaults to config.GEMINI_API_KEY.
        gate: Concurrency gate shared across the process. Defaults to get_gate().
        http_client: Optional pre-built httpx.AsyncClient (tests inject a MockTransport).
        timeout: Default deadline in seconds for a single gateway call.
        embedding_dimensions: Expected embedding size; latched from the first
            successful call when None.
        sleep: Coroutine used for embedding backoff (injectable for tests).
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        embedding_model: Optional[str] = None,
        base_url: Optional[str] = None,
        upload_base_url: Optional[str] = None,
        gate: Optional[ConcurrencyGate] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        embedding_dimensions: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api_key = api_key if api_key is not None else config.GEMINI_API_KEY
        self.model = model or config.GEMINI_MODEL
        self.embedding_model = embedding_model or config.GEMINI_EMBEDDING_MODEL
        self.base_url = (base_url or config.GEMINI_BASE_URL).rstrip("/")
        self.upload_base_url = (upload_base_url or config.GEMINI_UPLOAD_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else config.GEMINI_TIMEOUT_SECONDS
        self.embedding_dimensions = (
            embedding_dimensions if embedding_dimensions is not None else config.GEMINI_EMBEDDING_DIMENSIONS
        )
        self._gate = gate or get_gate()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=self.timeout)
        self._sleep = sleep
        self.credential_invalid = False

    # ------------------------------------------------------------------
    # Lifecycle / configuration
    # ------------------------------------------------------------------

    def reconfigure(self, api_key: Optional[str] = None, model: Optional[str] = None) -> None:
        """Apply new credentials; clears a latched invalid-credential state."""
        if api_key is not None:
            self.api_key = api_key
            self.credential_invalid = False
            logger.info(f"[GEMINI] API key reconfigured (key={_mask_key(api_key)})")
        if model:
            self.model = model

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _ready(self, operation: str) -> bool:
        if not self.api_key or not self.api_key.strip():
            logger.warning(f"[GEMINI] GEMINI_API_KEY is not configured, skipping {operation}")
            return False
        if self.credential_invalid:
            logger.error(
                f"[GEMINI] Skipping {operation}: API key {_mask_key(self.api_key)} was rejected. "
                f"Update GEMINI_API_KEY and reconfigure the gateway."
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        """POST through the gate. The slot is held only for the request itself."""
        headers = dict(kwargs.pop("headers", None) or {})
        headers["x-goog-api-key"] = self.api_key
        async with self._gate:
            try:
                response = await self._client.post(url, headers=headers, **kwargs)
            except httpx.TransportError as e:
                raise TransientProviderError(f"{type(e).__name__}: {e}") from e
            except httpx.DecodingError as e:
                raise MalformedResponseError(f"undecodable response body: {e}") from e
            except httpx.HTTPError as e:
                raise ProviderRequestError(f"{type(e).__name__}: {e}") from e

        if response.status_code >= 400:
            raise classify_provider_error(response.status_code, response.text)
        return response

    async def _post_json(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._post(url, json=body)
        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"response is not JSON: {response.text[:200]}") from e
        if not isinstance(data, dict):
            raise MalformedResponseError("response root is not an object")
        return data

    async def _guarded(self, operation: str, coro: Awaitable[Any], timeout: Optional[float]) -> Any:
        """Run a gateway coroutine under a deadline and fail closed.

        Returns None on any operational failure. Cancellation propagates.
        """
        deadline = self.timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(coro, timeout=deadline)
        except asyncio.TimeoutError:
            logger.error(f"[GEMINI] {operation} timed out after {deadline}s")
        except InvalidCredentialError as e:
            self.credential_invalid = True
            logger.error(
                f"[GEMINI] {operation}: API key {_mask_key(self.api_key)} is expired or invalid: {e}. "
                f"Please update GEMINI_API_KEY."
            )
        except TransientProviderError as e:
            logger.warning(f"[GEMINI] {operation} failed (rate limit / transient): {e}")
        except MalformedResponseError as e:
            logger.warning(f"[GEMINI] {operation} returned an unexpected shape: {e}")
        except GeminiGatewayError as e:
            logger.warning(f"[GEMINI] {operation} failed: {e}")
        return None

    # ------------------------------------------------------------------
    # Request bodies
    # ------------------------------------------------------------------

    @staticmethod
    def build_generate_body(
        system_prompt: str,
        turns: Iterable[ConversationTurn],
        temperature: float,
        tool_spec: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        body = {
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "contents": [turn.to_wire() for turn in turns],
            "generationConfig": {"temperature": temperature},
        }
        if tool_spec:
            body["tools"] = [tool_spec]
        return body

    def _generate_url(self) -> str:
        return f"{self.base_url}/v1beta/models/{self.model}:generateContent"

    # ------------------------------------------------------------------
    # Completions (never retried)
    # ------------------------------------------------------------------

    async def complete_text(
        self, system_prompt: str, user_payload: str, timeout: Optional[float] = None
    ) -> Optional[str]:
        """Single-turn text completion. Returns None on any failure."""
        if not self._ready("complete_text"):
            return None
        body = self.build_generate_body(system_prompt, (ConversationTurn.user(user_payload),), TEXT_TEMPERATURE)
        raw = await self._guarded("complete_text", self._post_json(self._generate_url(), body), timeout)
        if raw is None:
            return None
        text = self.extract_first_answer_text(raw)
        if text is None:
            logger.warning("[GEMINI] complete_text: response has no answer text")
        return text

    async def complete_with_tools(
        self,
        system_prompt: str,
        user_payload: str,
        tool_spec: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Optional[Dict[str, Any]]:
        """Completion advertising callable functions. Returns the raw response dict."""
        if not self._ready("complete_with_tools"):
            return None
        body = self.build_generate_body(
            system_prompt, (ConversationTurn.user(user_payload),), TOOLS_TEMPERATURE, tool_spec=tool_spec
        )
        return await self._guarded("complete_with_tools", self._post_json(self._generate_url(), body), timeout)

    async def continue_with_function_result(
        self,
        system_prompt: str,
        original_user_query: str,
        function_name: str,
        original_args: Dict[str, Any],
        function_result: Any,
        timeout: Optional[float] = None,
    ) -> Optional[str]:
        """Replay user turn, the model's function call and the function result; ask for the final answer.

        The function-call turn carries `original_args` exactly as the model
        supplied them, never an empty object.
        """
        if not self._ready("continue_with_function_result"):
            return None
        if not isinstance(function_result, str):
            function_result = json.dumps(function_result, ensure_ascii=False, default=str)
        turns = (
            ConversationTurn.user(original_user_query),
            ConversationTurn.function_call(function_name, original_args),
            ConversationTurn.function_response(function_name, function_result),
        )
        body = self.build_generate_body(system_prompt, turns, TOOLS_TEMPERATURE)
        raw = await self._guarded(
            "continue_with_function_result", self._post_json(self._generate_url(), body), timeout
        )
        if raw is None:
            return None
        text = self.extract_first_answer_text(raw)
        if text is None:
            logger.warning(f"[GEMINI] Follow-up for {function_name} produced no answer text")
        return text

    # ------------------------------------------------------------------
    # Embeddings (retried)
    # ------------------------------------------------------------------

    async def embed(self, text: str, timeout: Optional[float] = None) -> List[float]:
        """Embed text. Returns [] for blank input or when no embedding is available."""
        if not text or not text.strip():
            return []
        if not self._ready("embed"):
            return []
        vector = await self._guarded("embed", self._embed_with_retry(text), timeout)
        return vector or []

    async def _embed_with_retry(self, text: str) -> List[float]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(EMBED_MAX_ATTEMPTS),
            wait=wait_exponential(multiplier=EMBED_BACKOFF_BASE_SECONDS),
            retry=retry_if_exception_type(TransientProviderError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        f"[GEMINI] Retrying embedding, attempt "
                        f"{attempt.retry_state.attempt_number}/{EMBED_MAX_ATTEMPTS}"
                    )
                return await self._embed_once(text)
        return []

    async def _embed_once(self, text: str) -> List[float]:
        url = f"{self.base_url}/v1beta/models/{self.embedding_model}:embedContent"
        body = {"content": {"parts": [{"text": text}]}}
        data = await self._post_json(url, body)

        vector = self.parse_embedding(data)
        if not vector:
            raise MalformedResponseError("embedding.values missing or empty")
        if self.embedding_dimensions is None:
            self.embedding_dimensions = len(vector)
            logger.info(f"[GEMINI] Embedding dimensionality latched at {len(vector)}")
        elif len(vector) != self.embedding_dimensions:
            raise MalformedResponseError(
                f"embedding has {len(vector)} dimensions, expected {self.embedding_dimensions}"
            )
        return vector

    @staticmethod
    def parse_embedding(data: Any) -> List[float]:
        root = _as_dict(data)
        embedding = _as_dict(root.get("embedding")) if root else None
        if embedding is None:
            return []
        values = embedding.get("values")
        if not isinstance(values, list):
            return []
        return [float(v) for v in values if isinstance(v, (int, float)) and not isinstance(v, bool)]

    # ------------------------------------------------------------------
    # Response extraction
    # ------------------------------------------------------------------

    @staticmethod
    def extract_first_answer_text(raw: Any) -> Optional[str]:
        """First non-blank text part across candidates, or None."""
        for part in _iter_parts(raw):
            text = part.get("text")
            if isinstance(text, str) and text.strip():
                return text
        return None

    @staticmethod
    def extract_function_call(raw: Any) -> Optional[FunctionCall]:
        """First functionCall part across candidates, or None.

        Argument values are kept as decoded from JSON so that the replayed
        call is identical to what the model sent.
        """
        try:
            for part in _iter_parts(raw):
                call = _as_dict(part.get("functionCall"))
                if call is None:
                    continue
                name = call.get("name")
                if not isinstance(name, str) or not name.strip():
                    logger.warning("[GEMINI] functionCall part without a name, ignoring")
                    continue
                args = _as_dict(call.get("args")) or {}
                return FunctionCall(name=name, args=dict(args))
        except Exception:
            logger.exception("[GEMINI] Error parsing function call from Gemini response")
        return None

    # ------------------------------------------------------------------
    # Upload boundary (file-grounded search stores)
    # ------------------------------------------------------------------

    @staticmethod
    def _raw_upload_headers(data: bytes, mime_type: str) -> Dict[str, str]:
        return {
            "X-Goog-Upload-Protocol": "raw",
            "X-Goog-Upload-Header-Content-Length": str(len(data)),
            "X-Goog-Upload-Header-Content-Type": mime_type,
            "Content-Type": mime_type,
        }

    @staticmethod
    def _file_name_from(data: Dict[str, Any]) -> Optional[str]:
        file_info = _as_dict(data.get("file"))
        name = file_info.get("name") if file_info else data.get("name")
        return name if isinstance(name, str) and name else None

    async def upload_file(self, data: bytes, mime_type: str, timeout: Optional[float] = None) -> Optional[str]:
        """Raw byte upload. Returns the provider resource name (files/...) or None."""
        if not self._ready("upload_file"):
            return None
        url = f"{self.upload_base_url}/upload/v1beta/files"

        async def _upload() -> Optional[str]:
            response = await self._post(url, content=data, headers=self._raw_upload_headers(data, mime_type))
            try:
                return self._file_name_from(response.json())
            except (ValueError, AttributeError) as e:
                raise MalformedResponseError(f"upload response is not JSON: {e}") from e

        name = await self._guarded("upload_file", _upload(), timeout)
        if name:
            logger.info(f"[GEMINI] Uploaded {len(data)} bytes ({mime_type}) as {name}")
        return name

    async def create_file_search_store(self, display_name: str, timeout: Optional[float] = None) -> Optional[str]:
        if not self._ready("create_file_search_store"):
            return None
        url = f"{self.base_url}/v1beta/fileSearchStores"
        data = await self._guarded(
            "create_file_search_store", self._post_json(url, {"displayName": display_name}), timeout
        )
        if not data:
            return None
        name = data.get("name")
        return name if isinstance(name, str) and name else None

    async def upload_file_to_store(
        self, data: bytes, store_name: str, mime_type: str, timeout: Optional[float] = None
    ) -> Optional[str]:
        if not self._ready("upload_file_to_store"):
            return None
        url = f"{self.upload_base_url}/upload/v1beta/{store_name}:upload"

        async def _upload() -> Optional[str]:
            response = await self._post(url, content=data, headers=self._raw_upload_headers(data, mime_type))
            try:
                return self._file_name_from(response.json())
            except (ValueError, AttributeError) as e:
                raise MalformedResponseError(f"upload response is not JSON: {e}") from e

        return await self._guarded("upload_file_to_store", _upload(), timeout)
