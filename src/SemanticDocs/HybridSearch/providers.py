"""HTTP providers for Voyage AI embeddings and reranking.

Both providers own an ``httpx.Client`` unless one is injected (tests pass a
client built on ``httpx.MockTransport``). HTTP failures are mapped onto the
pipeline's error taxonomy:

- 429, 5xx, timeouts and transport errors -> :class:`TransientProviderError`
  (with ``retry_after`` parsed from the ``Retry-After`` header when present);
- any other 4xx and malformed payloads -> :class:`PermanentInputError`.

Retrying is not done here; callers wrap requests in a ``RetryExecutor``.
"""

from __future__ import annotations

import email.utils
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx

from .errors import PermanentInputError, TransientProviderError
from .interfaces import InputType

__all__ = (
    "DEFAULT_BASE_URL",
    "VoyageEmbeddingProvider",
    "VoyageRerankProvider",
    "parse_retry_after",
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.voyageai.com/v1"


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Convert a Retry-After header value (seconds or HTTP date) into a delay in seconds."""
    if not value:
        return None
    try:
        delay = float(int(value))
    except ValueError:
        try:
            dt = email.utils.parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        delay = (dt - datetime.now(timezone.utc)).total_seconds()
    return max(0.0, delay)


class _VoyageClient:
    """Shared request plumbing for the Voyage endpoints."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 60.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not api_key:
            raise ValueError("api_key must be provided")
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout, connect=10.0))
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    @property
    def model(self) -> str:
        return self._model

    def _post(self, path: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        url = f"{self._base_url}/{path.lstrip('/')}"
        try:
            response = self._client.post(url, json=dict(payload), headers=self._headers)
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"{path} request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(f"{path} connection error: {exc}") from exc

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientProviderError(
                f"{path} returned HTTP {status}",
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                status_code=status,
            )
        if status >= 400:
            detail = response.text[:200]
            raise PermanentInputError(f"{path} returned HTTP {status}: {detail}", status_code=status)
        try:
            body = response.json()
        except ValueError as exc:
            raise PermanentInputError(f"{path} returned a non-JSON body") from exc
        if not isinstance(body, dict) or not isinstance(body.get("data"), list):
            raise PermanentInputError(f"{path} response is missing a 'data' list")
        logger.debug(
            "provider-request",
            extra={"event": {"endpoint": path, "status": status, "usage": body.get("usage")}},
        )
        return body

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class VoyageEmbeddingProvider(_VoyageClient):
    """Embedding provider backed by ``POST /embeddings``.

    Examples:
        >>> provider = VoyageEmbeddingProvider(api_key="key", dimensions=1024)  # doctest: +SKIP
        >>> provider.embed(["hello"], input_type="query")  # doctest: +SKIP
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "voyage-3.5",
        dimensions: int = 1024,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 60.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        super().__init__(api_key=api_key, model=model, base_url=base_url, timeout=timeout, client=client)
        if dimensions <= 0:
            raise ValueError("dimensions must be positive")
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def embed(self, texts: Sequence[str], *, input_type: InputType = "document") -> List[Sequence[float]]:
        if not texts:
            return []
        body = self._post(
            "embeddings",
            {
                "input": list(texts),
                "model": self._model,
                "input_type": input_type,
                "output_dimension": self._dimensions,
            },
        )
        try:
            entries = sorted(body["data"], key=lambda item: int(item["index"]))
            vectors = [[float(value) for value in item["embedding"]] for item in entries]
        except (KeyError, TypeError, ValueError) as exc:
            raise PermanentInputError(f"malformed embeddings payload: {exc}") from exc
        if len(vectors) != len(texts):
            raise PermanentInputError(
                f"embeddings returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        return vectors


class VoyageRerankProvider(_VoyageClient):
    """Rerank provider backed by ``POST /rerank``."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "rerank-2.5",
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        super().__init__(api_key=api_key, model=model, base_url=base_url, timeout=timeout, client=client)

    def rerank(
        self, query: str, documents: Sequence[str], *, top_k: Optional[int] = None
    ) -> List[Tuple[int, float]]:
        if not documents:
            return []
        payload: Dict[str, Any] = {"query": query, "documents": list(documents), "model": self._model}
        if top_k is not None:
            payload["top_k"] = top_k
        body = self._post("rerank", payload)
        try:
            pairs = [(int(item["index"]), float(item["relevance_score"])) for item in body["data"]]
        except (KeyError, TypeError, ValueError) as exc:
            raise PermanentInputError(f"malformed rerank payload: {exc}") from exc
        pairs.sort(key=lambda pair: (-pair[1], pair[0]))
        return pairs
