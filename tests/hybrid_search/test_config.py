"""Configuration dataclasses and the JSON/YAML config manager."""

from __future__ import annotations

import json
import textwrap

import pytest

from SemanticDocs.HybridSearch.config import (
    ChunkingConfig,
    EmbeddingConfig,
    FusionConfig,
    HybridSearchConfig,
    HybridSearchConfigManager,
    RerankConfig,
    RetrievalConfig,
)


def test_defaults() -> None:
    config = HybridSearchConfig()

    assert (config.chunking.max_tokens, config.chunking.overlap) == (400, 50)
    assert config.fusion.k0 == 60.0
    assert config.fusion.mmr_lambda == 0.7
    assert config.retrieval.overfetch_factor == 3.0
    assert config.rerank.enabled


def test_manager_loads_yaml(tmp_path) -> None:
    """YAML configs populate every section, synonyms included."""

    config_path = tmp_path / "semanticdocs.yaml"
    config_path.write_text(
        textwrap.dedent(
            """
            chunking:
              max_tokens: 256
              overlap: 32
            embedding:
              model: voyage-3-lite
              dimensions: 512
              min_request_interval_ms: 250
            retrieval:
              overfetch_factor: 2.0
              keyword_timeout: 3.5
            fusion:
              k0: 40
              channel_weights:
                vector: 1.5
                keyword: 1.0
              query_synonyms:
                db: [database]
            rerank:
              enabled: false
            """
        ).strip()
    )

    config = HybridSearchConfigManager(config_path).get()

    assert config.chunking == ChunkingConfig(max_tokens=256, overlap=32)
    assert config.embedding.dimensions == 512
    assert config.embedding.min_request_interval_ms == 250
    assert config.retrieval.keyword_timeout == 3.5
    assert config.fusion.k0 == 40
    assert config.fusion.channel_weights["vector"] == 1.5
    assert config.fusion.query_synonyms == {"db": ("database",)}
    assert config.rerank.enabled is False


def test_manager_loads_json_and_reloads(tmp_path) -> None:
    config_path = tmp_path / "semanticdocs.json"
    config_path.write_text(json.dumps({"fusion": {"max_chunks_per_doc": 2}}))
    manager = HybridSearchConfigManager(config_path)
    assert manager.get().fusion.max_chunks_per_doc == 2

    config_path.write_text(json.dumps({"fusion": {"max_chunks_per_doc": 5}}))

    assert manager.reload().fusion.max_chunks_per_doc == 5
    assert manager.get().fusion.max_chunks_per_doc == 5


def test_empty_yaml_yields_defaults(tmp_path) -> None:
    config_path = tmp_path / "empty.yaml"
    config_path.write_text("")

    assert HybridSearchConfigManager(config_path).get() == HybridSearchConfig()


@pytest.mark.parametrize(
    "content",
    [
        "- just\n- a list\n",
        "chunking: [1, 2]\n",
        "chunking:\n  max_chunk: 10\n",
        "fusion:\n  mmr_lambda: 2.0\n",
        "key: [unclosed\n",
    ],
)
def test_manager_rejects_invalid_files(tmp_path, content: str) -> None:
    config_path = tmp_path / "bad.yaml"
    config_path.write_text(content)

    with pytest.raises(ValueError):
        HybridSearchConfigManager(config_path)


def test_manager_requires_existing_file(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        HybridSearchConfigManager(tmp_path / "missing.yaml")


def test_from_dict_rejects_non_mapping() -> None:
    with pytest.raises(ValueError, match="mapping payload"):
        HybridSearchConfig.from_dict([])  # type: ignore[arg-type]


@pytest.mark.parametrize(
    "factory",
    [
        lambda: ChunkingConfig(max_tokens=0),
        lambda: EmbeddingConfig(max_batch_size=0),
        lambda: EmbeddingConfig(min_request_interval_ms=-1),
        lambda: RetrievalConfig(overfetch_factor=0.5),
        lambda: RetrievalConfig(executor_max_workers=0),
        lambda: FusionConfig(k0=0),
        lambda: FusionConfig(channel_weights={"vector": -1.0}),
        lambda: FusionConfig(max_chunks_per_doc=-1),
        lambda: RerankConfig(max_workers=0),
    ],
)
def test_section_validation(factory) -> None:
    with pytest.raises(ValueError):
        factory()


def test_executor_max_workers_requires_int() -> None:
    with pytest.raises(TypeError):
        RetrievalConfig(executor_max_workers=3.5)  # type: ignore[arg-type]
