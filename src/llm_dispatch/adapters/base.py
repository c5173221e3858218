"""Base adapter: configuration, transport and the uniform call contract.

An adapter translates the uniform dispatch calls into one vendor's HTTP API.
Subclasses declare their capability set and default endpoint as class
attributes and implement the request/response translation.

Credentials are never stored on the adapter. It keeps only the opaque
credential reference; an httpx.Auth flow exchanges it for the secret through
the SecretResolver on each request.
"""

import base64
import json
import logging
from contextlib import aclosing
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    FrozenSet,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Union,
)

import httpx

from ..errors import (
    ProviderConnectionError,
    ProviderResponseError,
    UnsupportedFeatureError,
)
from ..repositories import SecretResolver
from ..types import CompletionResponse, EmbeddingResponse, VisionResponse

logger = logging.getLogger(__name__)

Messages = List[Dict[str, Any]]

# Keys configure() maps onto adapter attributes; anything else lands in options
CONFIG_KEYS = (
    "identifier",
    "name",
    "api_key_ref",
    "base_url",
    "default_model",
    "timeout",
    "max_retries",
    "organization_id",
)

DEFAULT_TIMEOUT = 30
DEFAULT_MAX_RETRIES = 3


ClientFactory = Callable[..., httpx.AsyncClient]


def default_client_factory(
    base_url: str,
    timeout: float,
    max_retries: int,
    auth: Optional[httpx.Auth] = None,
    headers: Optional[Dict[str, str]] = None,
) -> httpx.AsyncClient:
    """Build the transport for an adapter.

    Timeouts and connection retries are handled by httpx; no retry loop
    exists above it.
    """
    return httpx.AsyncClient(
        base_url=base_url,
        timeout=timeout,
        auth=auth,
        headers=headers,
        transport=httpx.AsyncHTTPTransport(retries=max_retries),
    )


class SecretAuth(httpx.Auth):
    """Resolve a credential reference per request and apply it."""

    def __init__(
        self,
        resolver: Optional[SecretResolver],
        reference: str,
        apply: Callable[[httpx.Request, str], None],
    ):
        self._resolver = resolver
        self._reference = reference
        self._apply = apply

    def auth_flow(self, request: httpx.Request):
        if self._resolver is not None and self._reference:
            secret = self._resolver.retrieve(self._reference)
            if secret:
                self._apply(request, secret)
        yield request


class BaseAdapter:
    """Uniform adapter contract consumed by the dispatcher.

    Class attributes:
        adapter_type: Adapter tag this class implements
        name: Human-readable vendor name
        capabilities: Features the adapter supports (see ModelCapability)
        default_base_url: API base URL when none is configured
        default_model_id: Chat model when none is configured or requested
        default_embedding_model: Embedding model when none is requested
        requires_api_key: Whether is_available() needs a resolvable secret
    """

    adapter_type = "base"
    name = "Base"
    capabilities: FrozenSet[str] = frozenset({"chat", "completion"})
    default_base_url = ""
    default_model_id = ""
    default_embedding_model = ""
    requires_api_key = True

    def __init__(
        self,
        secrets: Optional[SecretResolver] = None,
        client_factory: Optional[ClientFactory] = None,
        config: Optional[Mapping[str, Any]] = None,
    ):
        self._secrets = secrets
        self._client_factory = client_factory or default_client_factory
        self._client: Optional[httpx.AsyncClient] = None
        self._stale_clients: List[httpx.AsyncClient] = []
        self._in_flight = 0
        self.configured_keys: Set[str] = set()

        self.identifier = self.adapter_type
        self.display_name = self.name
        self.api_key_ref = ""
        self.base_url = self.default_base_url
        self.default_model = self.default_model_id
        self.timeout = DEFAULT_TIMEOUT
        self.max_retries = DEFAULT_MAX_RETRIES
        self.organization_id = ""
        self.options: Dict[str, Any] = {}
        if config:
            self.configure(config)

    # =========================================================================
    # Configuration
    # =========================================================================

    def configure(self, config: Mapping[str, Any]) -> None:
        """Apply configuration values.

        Known keys update the matching attribute; an empty ``base_url`` or
        ``default_model`` keeps the class default. Other keys are merged into
        ``options``. The HTTP client is rebuilt on next use.
        """
        for key, value in config.items():
            if key == "name":
                self.display_name = value or self.name
            elif key == "base_url":
                self.base_url = value or self.default_base_url
            elif key == "default_model":
                self.default_model = value or self.default_model_id
            elif key in ("timeout", "max_retries"):
                setattr(self, key, int(value))
            elif key in CONFIG_KEYS:
                setattr(self, key, value or "")
            elif key == "options" and isinstance(value, Mapping):
                self.options.update(value)
            else:
                self.options[key] = value
        self.configured_keys.update(config)
        self._reset_client()

    def configuration(self) -> Dict[str, Any]:
        """Current configuration, without secrets."""
        return {
            "identifier": self.identifier,
            "name": self.display_name,
            "api_key_ref": self.api_key_ref,
            "base_url": self.base_url,
            "default_model": self.default_model,
            "timeout": self.timeout,
            "max_retries": self.max_retries,
            "organization_id": self.organization_id,
            "options": dict(self.options),
        }

    def _reset_client(self) -> None:
        if self._client is not None:
            self._stale_clients.append(self._client)
            self._client = None

    async def _close_stale_clients(self) -> None:
        """Close clients replaced by reconfiguration once no request uses them."""
        if self._in_flight or not self._stale_clients:
            return
        clients, self._stale_clients = self._stale_clients, []
        for client in clients:
            await client.aclose()

    # =========================================================================
    # Capabilities
    # =========================================================================

    def is_available(self) -> bool:
        """True when the adapter can authenticate (or needs no credential)."""
        if not self.requires_api_key:
            return True
        if not self.api_key_ref or self._secrets is None:
            return False
        return bool(self._secrets.retrieve(self.api_key_ref))

    def supports_feature(self, feature: Union[str, Any]) -> bool:
        value = getattr(feature, "value", feature)
        return value in self.capabilities

    def available_models(self) -> Dict[str, str]:
        """Known model ids mapped to display names."""
        return {self.default_model: self.default_model} if self.default_model else {}

    # =========================================================================
    # Transport
    # =========================================================================

    def _apply_credentials(self, request: httpx.Request, secret: str) -> None:
        request.headers["Authorization"] = f"Bearer {secret}"

    def _default_headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = self._client_factory(
                base_url=self.base_url,
                timeout=float(self.timeout),
                max_retries=self.max_retries,
                auth=SecretAuth(self._secrets, self.api_key_ref, self._apply_credentials),
                headers=self._default_headers(),
            )
        return self._client

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        detail = response.text[:200]
        if response.status_code >= 500:
            raise ProviderConnectionError(
                f"{self.display_name} server error {response.status_code}: {detail}"
            )
        if response.status_code in (401, 403):
            message = f"Authentication failed for {self.display_name}: {response.status_code}"
        elif response.status_code == 429:
            message = f"Rate limited by {self.display_name}"
        else:
            message = f"Bad request for {self.display_name} ({response.status_code}): {detail}"
        raise ProviderResponseError(message, status_code=response.status_code)

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        await self._close_stale_clients()
        self._in_flight += 1
        try:
            response = await self.client.request(method, path, json=payload, params=params)
        except httpx.TransportError as e:
            raise ProviderConnectionError(
                f"Could not reach {self.display_name}: {e}"
            ) from e
        finally:
            self._in_flight -= 1
        self._raise_for_status(response)
        return response.json()

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", path, payload)

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self._request("GET", path, params=params)

    async def _stream_lines(
        self, path: str, payload: Dict[str, Any], params: Optional[Dict[str, Any]] = None
    ) -> AsyncIterator[str]:
        """Yield response lines as they arrive.

        The connection is released when the stream ends or the consumer
        stops iterating.
        """
        await self._close_stale_clients()
        self._in_flight += 1
        try:
            async with self.client.stream("POST", path, json=payload, params=params) as response:
                if response.status_code >= 400:
                    await response.aread()
                    self._raise_for_status(response)
                async for line in response.aiter_lines():
                    yield line
        except httpx.TransportError as e:
            raise ProviderConnectionError(
                f"Stream from {self.display_name} interrupted: {e}"
            ) from e
        finally:
            self._in_flight -= 1

    async def _stream_sse(
        self, path: str, payload: Dict[str, Any], params: Optional[Dict[str, Any]] = None
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield decoded ``data:`` events from a server-sent event stream."""
        async with aclosing(self._stream_lines(path, payload, params)) as lines:
            async for line in lines:
                line = line.strip()
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == "[DONE]":
                    return
                try:
                    yield json.loads(data)
                except json.JSONDecodeError:
                    logger.debug(f"Skipping malformed stream event from {self.identifier}")

    async def aclose(self) -> None:
        """Close the HTTP client(s) held by this adapter."""
        clients = self._stale_clients + ([self._client] if self._client is not None else [])
        self._stale_clients = []
        self._client = None
        for client in clients:
            await client.aclose()

    # =========================================================================
    # Helpers for subclasses
    # =========================================================================

    def _model(self, options: Mapping[str, Any]) -> str:
        return options.get("model") or self.default_model

    @staticmethod
    def _prepare_messages(messages: Sequence[Mapping[str, Any]], options: Mapping[str, Any]) -> Messages:
        """Copy messages, prepending ``system_prompt`` if no system message exists."""
        prepared = [dict(m) for m in messages]
        system_prompt = options.get("system_prompt")
        if system_prompt and not any(m.get("role") == "system" for m in prepared):
            prepared.insert(0, {"role": "system", "content": system_prompt})
        return prepared

    def _unsupported(self, feature: str) -> UnsupportedFeatureError:
        return UnsupportedFeatureError(
            f'Provider "{self.identifier}" does not support {feature}'
        )

    # =========================================================================
    # Uniform call contract
    # =========================================================================

    async def chat_completion(
        self, messages: Sequence[Mapping[str, Any]], options: Optional[Mapping[str, Any]] = None
    ) -> CompletionResponse:
        raise self._unsupported("chat")

    async def complete(
        self, prompt: str, options: Optional[Mapping[str, Any]] = None
    ) -> CompletionResponse:
        return await self.chat_completion([{"role": "user", "content": prompt}], options)

    async def embeddings(
        self, input: Union[str, Sequence[str]], options: Optional[Mapping[str, Any]] = None
    ) -> EmbeddingResponse:
        raise self._unsupported("embeddings")

    async def analyze_image(
        self, content: Sequence[Mapping[str, Any]], options: Optional[Mapping[str, Any]] = None
    ) -> VisionResponse:
        raise self._unsupported("vision")

    def stream_chat_completion(
        self, messages: Sequence[Mapping[str, Any]], options: Optional[Mapping[str, Any]] = None
    ) -> AsyncIterator[str]:
        raise self._unsupported("streaming")

    async def chat_completion_with_tools(
        self,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]],
        options: Optional[Mapping[str, Any]] = None,
    ) -> CompletionResponse:
        raise self._unsupported("tool calling")

    async def test_connection(self) -> Dict[str, Any]:
        """Check the API with a real round-trip.

        Returns:
            Dict with ``success``, ``message`` and ``models``
        """
        models = await self.fetch_models()
        return {
            "success": True,
            "message": f"Connection successful. Found {len(models)} models.",
            "models": models,
        }

    async def fetch_models(self) -> List[str]:
        """Model ids reported by the API (static list by default)."""
        return list(self.available_models())

    def __repr__(self) -> str:
        return f"{type(self).__name__}(identifier={self.identifier!r}, base_url={self.base_url!r})"


def image_part(data: bytes, media_type: str = "image/png") -> Dict[str, Any]:
    """Build an ``image_url`` content part carrying inline image bytes."""
    encoded = base64.b64encode(data).decode("ascii")
    return {"type": "image_url", "image_url": {"url": f"data:{media_type};base64,{encoded}"}}
