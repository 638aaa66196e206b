"""Configuration surface area for SemanticDocs hybrid search.

The dataclasses defined here describe every tunable of the indexing and query
pipelines:

- ``ChunkingConfig`` bounds chunk size and the token overlap carried between
  consecutive chunks.
- ``EmbeddingConfig`` selects the embedding model and dimensionality and sets
  the batching, pacing, retry, and parallelism budgets of the embedding
  batcher.
- ``RetrievalConfig`` controls over-fetching and per-branch timeouts of the
  dual retriever.
- ``FusionConfig`` holds the RRF smoothing constant, channel weights, MMR
  trade-off, and result shaping limits. ``k0=60`` and ``mmr_lambda=0.7`` are
  tunable defaults, nothing more.
- ``RerankConfig`` toggles the optional cross-encoder stage.
- ``HybridSearchConfig`` groups the sections into a single snapshot.

``HybridSearchConfigManager`` is a thread-safe facade for loading configuration
files. It supports JSON *and* YAML and caches the current config while allowing
atomic reloads.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from threading import RLock
from typing import Any

import yaml

# --- Globals ---

__all__ = (
    "ChunkingConfig",
    "EmbeddingConfig",
    "FusionConfig",
    "HybridSearchConfig",
    "HybridSearchConfigManager",
    "RerankConfig",
    "RetrievalConfig",
)


def _require_positive(owner: str, name: str, value: float) -> None:
    if value <= 0:
        raise ValueError(f"{owner}.{name} must be positive, received {value!r}")


# --- Public Classes ---


@dataclass(frozen=True)
class ChunkingConfig:
    """Configuration for document chunking.

    Key fields:
    - ``max_tokens``: Upper bound on tokens per chunk, overlap included (400 default).
    - ``overlap``: Trailing tokens of the previous chunk repeated at the start
      of the next one (50 default). Must be smaller than ``max_tokens``.

    Examples:
        >>> config = ChunkingConfig(max_tokens=256, overlap=32)
    """

    max_tokens: int = 400
    overlap: int = 50

    def __post_init__(self) -> None:
        _require_positive("ChunkingConfig", "max_tokens", self.max_tokens)
        if self.overlap < 0:
            raise ValueError("ChunkingConfig.overlap must be non-negative")
        if self.overlap >= self.max_tokens:
            raise ValueError("ChunkingConfig.overlap must be smaller than max_tokens")


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for the embedding batcher and query embedding.

    Key fields:
    - ``model`` / ``dimensions``: Provider model and expected vector length.
    - ``max_batch_size`` / ``max_batch_tokens``: A batch is flushed when
      either budget would be exceeded.
    - ``min_request_interval_ms``: Process-wide minimum spacing between
      provider requests (0 disables pacing).
    - ``max_attempts`` / ``backoff_base`` / ``backoff_max``: Retry ceiling and
      exponential backoff bounds for transient failures.
    - ``parallelism``: Batches allowed in flight at once.
    - ``timeout_seconds``: Per-request timeout handed to HTTP providers.
    """

    model: str = "voyage-3.5"
    dimensions: int = 1024
    max_batch_size: int = 32
    max_batch_tokens: int = 8000
    min_request_interval_ms: int = 100
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    parallelism: int = 2
    timeout_seconds: float = 60.0

    def __post_init__(self) -> None:
        for name in ("dimensions", "max_batch_size", "max_batch_tokens", "max_attempts", "parallelism"):
            _require_positive("EmbeddingConfig", name, getattr(self, name))
        _require_positive("EmbeddingConfig", "timeout_seconds", self.timeout_seconds)
        if self.min_request_interval_ms < 0:
            raise ValueError("EmbeddingConfig.min_request_interval_ms must be non-negative")
        if self.backoff_base < 0 or self.backoff_max < 0:
            raise ValueError("EmbeddingConfig backoff bounds must be non-negative")


@dataclass(frozen=True)
class RetrievalConfig:
    """Configuration for the dual retriever.

    Key fields:
    - ``overfetch_factor``: Each branch requests ``ceil(limit * factor)`` hits.
    - ``candidate_cap``: Absolute cap on hits requested per branch.
    - ``vector_timeout`` / ``keyword_timeout``: Per-branch join timeouts in seconds.
    - ``executor_max_workers``: Optional override for the retriever thread pool size.
    """

    overfetch_factor: float = 3.0
    candidate_cap: int = 300
    vector_timeout: float = 10.0
    keyword_timeout: float = 10.0
    executor_max_workers: int | None = None

    def __post_init__(self) -> None:
        if self.overfetch_factor < 1.0:
            raise ValueError("RetrievalConfig.overfetch_factor must be >= 1.0")
        _require_positive("RetrievalConfig", "candidate_cap", self.candidate_cap)
        _require_positive("RetrievalConfig", "vector_timeout", self.vector_timeout)
        _require_positive("RetrievalConfig", "keyword_timeout", self.keyword_timeout)
        max_workers = self.executor_max_workers
        if max_workers is None:
            return
        if not isinstance(max_workers, int):
            raise TypeError(
                "RetrievalConfig.executor_max_workers must be an int, "
                f"received {type(max_workers).__name__}"
            )
        if max_workers <= 0:
            raise ValueError("RetrievalConfig.executor_max_workers must be positive")


@dataclass(frozen=True)
class FusionConfig:
    """Configuration for rank fusion, diversification, and result shaping.

    Key fields:
    - ``k0``: RRF smoothing constant (60.0 default).
    - ``channel_weights``: Per-branch multipliers on RRF contributions.
    - ``enable_mmr`` / ``mmr_lambda`` / ``mmr_fetch_k``: MMR controls; only the
      top ``mmr_fetch_k`` fused candidates are diversified.
    - ``max_chunks_per_doc``: Maximum results returned per document (0 disables).
    - ``dedupe_overlap``: Drop results whose own text (overlap excluded)
      duplicates an earlier result.
    - ``query_synonyms``: Optional synonym table appended to keyword queries.

    Examples:
        >>> config = FusionConfig(k0=50.0, mmr_lambda=0.5)
    """

    k0: float = 60.0
    channel_weights: Mapping[str, float] = field(
        default_factory=lambda: {"vector": 1.0, "keyword": 1.0}
    )
    enable_mmr: bool = True
    mmr_lambda: float = 0.7
    mmr_fetch_k: int = 50
    max_chunks_per_doc: int = 3
    dedupe_overlap: bool = True
    query_synonyms: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _require_positive("FusionConfig", "k0", self.k0)
        if not 0.0 <= self.mmr_lambda <= 1.0:
            raise ValueError("FusionConfig.mmr_lambda must be within [0, 1]")
        _require_positive("FusionConfig", "mmr_fetch_k", self.mmr_fetch_k)
        if self.max_chunks_per_doc < 0:
            raise ValueError("FusionConfig.max_chunks_per_doc must be non-negative")
        for channel, weight in self.channel_weights.items():
            if weight < 0:
                raise ValueError(f"FusionConfig.channel_weights[{channel!r}] must be non-negative")


@dataclass(frozen=True)
class RerankConfig:
    """Configuration for the optional cross-encoder reranking stage.

    Key fields:
    - ``enabled``: Rerank when a rerank provider is wired in.
    - ``model``: Provider model name.
    - ``top_k``: Number of diversified candidates submitted for reranking.
    - ``timeout``: Seconds to wait before falling back to the prior ordering.
    - ``max_workers``: Concurrent rerank calls across queries.
    """

    enabled: bool = True
    model: str = "rerank-2.5"
    top_k: int = 20
    timeout: float = 10.0
    max_workers: int = 4

    def __post_init__(self) -> None:
        _require_positive("RerankConfig", "top_k", self.top_k)
        _require_positive("RerankConfig", "timeout", self.timeout)
        _require_positive("RerankConfig", "max_workers", self.max_workers)


@dataclass(frozen=True)
class HybridSearchConfig:
    """Complete configuration for indexing and hybrid search.

    Components:
    - ``chunking``: Document chunking configuration.
    - ``embedding``: Embedding model, batching, pacing and retry configuration.
    - ``retrieval``: Dual retrieval budgets and timeouts.
    - ``fusion``: Fusion, diversification, and shaping configuration.
    - ``rerank``: Optional reranking configuration.

    Examples:
        >>> config = HybridSearchConfig(
        ...     chunking=ChunkingConfig(max_tokens=256),
        ...     fusion=FusionConfig(enable_mmr=False),
        ... )
    """

    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)
    rerank: RerankConfig = field(default_factory=RerankConfig)

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> HybridSearchConfig:
        """Construct a config object from a dictionary payload.

        Args:
            payload: Nested mapping with optional ``chunking``, ``embedding``,
                ``retrieval``, ``fusion`` and ``rerank`` sections.

        Returns:
            Fully populated `HybridSearchConfig` instance.

        Raises:
            ValueError: If the payload or a section is not a mapping, or a
                section names unknown fields.
        """
        if not isinstance(payload, Mapping):
            raise ValueError(
                "HybridSearchConfig.from_dict expected a mapping payload, "
                f"received {type(payload).__name__}"
            )

        def coerce_section(name: str) -> dict[str, Any]:
            section = payload.get(name)
            if section is None:
                return {}
            if not isinstance(section, Mapping):
                raise ValueError(
                    f"HybridSearchConfig.{name} must be a mapping or null, "
                    f"received {type(section).__name__}"
                )
            return dict(section)

        def build(name: str, factory: type) -> Any:
            try:
                return factory(**coerce_section(name))
            except TypeError as exc:
                raise ValueError(f"Invalid HybridSearchConfig.{name} section: {exc}") from exc

        fusion_payload = coerce_section("fusion")
        synonyms = fusion_payload.get("query_synonyms")
        if isinstance(synonyms, Mapping):
            fusion_payload["query_synonyms"] = {
                str(term): tuple(str(value) for value in values) for term, values in synonyms.items()
            }
        try:
            fusion = FusionConfig(**fusion_payload)
        except TypeError as exc:
            raise ValueError(f"Invalid HybridSearchConfig.fusion section: {exc}") from exc

        return HybridSearchConfig(
            chunking=build("chunking", ChunkingConfig),
            embedding=build("embedding", EmbeddingConfig),
            retrieval=build("retrieval", RetrievalConfig),
            fusion=fusion,
            rerank=build("rerank", RerankConfig),
        )


class HybridSearchConfigManager:
    """File-backed configuration manager with reload support.

    Internals:
    - ``_path``: Path to the JSON/YAML configuration file.
    - ``_lock``: Threading lock guarding concurrent reloads.
    - ``_config``: Cached :class:`HybridSearchConfig` instance.

    Examples:
        >>> manager = HybridSearchConfigManager(Path("config.yaml"))  # doctest: +SKIP
        >>> isinstance(manager.get(), HybridSearchConfig)  # doctest: +SKIP
        True
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = RLock()
        self._config = self._load()

    def get(self) -> HybridSearchConfig:
        """Return the currently cached hybrid search configuration."""
        with self._lock:
            return self._config

    def reload(self) -> HybridSearchConfig:
        """Reload configuration from disk, replacing the cached instance.

        Raises:
            FileNotFoundError: If the configuration path is missing.
            ValueError: If the config file is invalid JSON or YAML.
        """
        with self._lock:
            self._config = self._load()
            return self._config

    def _load(self) -> HybridSearchConfig:
        if not self._path.exists():
            raise FileNotFoundError(f"Configuration file {self._path} not found")
        raw = self._path.read_text(encoding="utf-8")
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            payload = self._load_yaml(raw)
        return HybridSearchConfig.from_dict(payload)

    def _load_yaml(self, raw: str) -> dict[str, Any]:
        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise ValueError(f"Failed to parse YAML configuration at {self._path}: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError("YAML configuration must define a mapping")
        return data
