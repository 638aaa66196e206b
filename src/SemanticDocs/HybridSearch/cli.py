"""Command-line interface for SemanticDocs hybrid search.

Provides three commands:
  - index: chunk, embed, and store markdown/text documents
  - search: run a hybrid query against the stored corpus
  - status: summarise the stored corpus and the search wiring

The store is a JSON snapshot of :class:`InMemorySearchStore`. ``--offline``
swaps the hosted providers for the deterministic hash embedding provider so
the full pipeline runs without credentials or network access.
"""

from __future__ import annotations

import json
import logging
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, List, Optional, Tuple

import typer

from .chunking import Chunker
from .config import HybridSearchConfig, HybridSearchConfigManager
from .devtools import HashEmbeddingProvider, InMemorySearchStore
from .embedding import EmbeddingBatcher
from .errors import ConfigurationError, RetrievalError
from .interfaces import EmbeddingProvider, RerankProvider
from .logging_utils import setup_logging
from .observability import Observability
from .pipeline import IndexingPipeline
from .service import HybridSearchService
from .settings import ProviderSettings, build_embedding_provider, build_rerank_provider
from .types import SearchRequest, SourceDocument

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="semanticdocs",
    help="Index documentation and run hybrid (vector + keyword) search.",
    no_args_is_help=True,
    add_completion=False,
)

DEFAULT_STORE = Path(".semanticdocs/store.json")
DOCUMENT_SUFFIXES = (".md", ".markdown", ".txt")


@dataclass
class _CliState:
    config: HybridSearchConfig
    offline: bool


StoreOption = Annotated[
    Path, typer.Option("--store", help="Path to the JSON store snapshot", dir_okay=False)
]


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Configuration file (JSON or YAML)", exists=True, dir_okay=False),
    ] = None,
    log_level: Annotated[str, typer.Option("--log-level", help="Logging level")] = "INFO",
    offline: Annotated[
        bool, typer.Option("--offline", help="Use deterministic local embeddings and no reranker")
    ] = False,
) -> None:
    """Configure logging and load the hybrid search configuration."""

    setup_logging(level=log_level)
    try:
        config = HybridSearchConfigManager(config_path).get() if config_path else HybridSearchConfig()
    except (ValueError, FileNotFoundError) as exc:
        typer.echo(f"✗ Invalid configuration: {exc}", err=True)
        raise typer.Exit(2)
    ctx.obj = _CliState(config=config, offline=offline)


def _providers(
    state: _CliState, stack: ExitStack
) -> Tuple[EmbeddingProvider, Optional[RerankProvider]]:
    config = state.config
    if state.offline:
        return HashEmbeddingProvider(dimensions=config.embedding.dimensions), None
    settings = ProviderSettings()
    embedder = stack.enter_context(build_embedding_provider(config.embedding, settings))
    reranker = None
    if config.rerank.enabled:
        reranker = stack.enter_context(build_rerank_provider(config.rerank, settings))
    return embedder, reranker


def collect_documents(
    paths: List[Path], *, product: str, version: Optional[str]
) -> List[SourceDocument]:
    """Read markdown/text files from ``paths`` (files or directories, recursively)."""

    documents: List[SourceDocument] = []
    for root in paths:
        if root.is_dir():
            files = sorted(p for p in root.rglob("*") if p.is_file() and p.suffix.lower() in DOCUMENT_SUFFIXES)
            pairs = [(p, p.relative_to(root).as_posix()) for p in files]
        else:
            pairs = [(root, root.name)]
        for path, doc_id in pairs:
            stat = path.stat()
            documents.append(
                SourceDocument(
                    doc_id=doc_id,
                    path=str(path),
                    text=path.read_text(encoding="utf-8"),
                    product=product,
                    version=version,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                )
            )
    return documents


@app.command()
def index(
    ctx: typer.Context,
    paths: Annotated[List[Path], typer.Argument(help="Files or directories to index", exists=True)],
    product: Annotated[str, typer.Option("--product", help="Product tag stored with every chunk")],
    version: Annotated[Optional[str], typer.Option("--version", help="Product version")] = None,
    mode: Annotated[str, typer.Option("--mode", help="incremental or full")] = "incremental",
    prune: Annotated[
        bool, typer.Option("--prune/--no-prune", help="Delete stored documents missing from PATHS")
    ] = False,
    store_path: StoreOption = DEFAULT_STORE,
) -> None:
    """Chunk, embed, and store documents; prints the index summary as JSON."""

    state: _CliState = ctx.obj
    if mode not in ("incremental", "full"):
        typer.echo(f"✗ Unknown mode {mode!r}; expected incremental or full", err=True)
        raise typer.Exit(2)
    try:
        documents = collect_documents(paths, product=product, version=version)
        with ExitStack() as stack:
            embedder, _ = _providers(state, stack)
            store = InMemorySearchStore.load(store_path)
            observability = Observability()
            batcher = EmbeddingBatcher(embedder, state.config.embedding, observability=observability)
            stack.callback(batcher.close)
            pipeline = IndexingPipeline(
                store,
                batcher,
                chunker=Chunker.from_config(state.config.chunking),
                observability=observability,
            )
            summary = pipeline.index_documents(documents, mode=mode, prune_missing=prune)  # type: ignore[arg-type]
            store.save(store_path)
    except ConfigurationError as exc:
        typer.echo(f"✗ Configuration error: {exc}", err=True)
        raise typer.Exit(2)
    except ValueError as exc:
        typer.echo(f"✗ Error: {exc}", err=True)
        raise typer.Exit(1)
    typer.echo(json.dumps(summary.to_dict(), indent=2))
    if not summary.succeeded:
        raise typer.Exit(1)


@app.command()
def search(
    ctx: typer.Context,
    query: Annotated[str, typer.Argument(help="Query text")],
    limit: Annotated[int, typer.Option("--limit", "-n", min=1, help="Number of results")] = 10,
    product: Annotated[Optional[str], typer.Option("--product", help="Filter by product")] = None,
    version: Annotated[Optional[str], typer.Option("--version", help="Filter by version")] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Emit the full response as JSON")] = False,
    store_path: StoreOption = DEFAULT_STORE,
) -> None:
    """Run a hybrid query and print the ranked results."""

    state: _CliState = ctx.obj
    try:
        request = SearchRequest(query=query, limit=limit, product=product, version=version)
        with ExitStack() as stack:
            embedder, reranker = _providers(state, stack)
            store = InMemorySearchStore.load(store_path)
            service = HybridSearchService(store, embedder, state.config, rerank_provider=reranker)
            stack.callback(service.close)
            response = service.search(request)
    except ConfigurationError as exc:
        typer.echo(f"✗ Configuration error: {exc}", err=True)
        raise typer.Exit(2)
    except RetrievalError as exc:
        typer.echo(f"✗ Retrieval failed: {exc}", err=True)
        raise typer.Exit(1)
    except ValueError as exc:
        typer.echo(f"✗ Error: {exc}", err=True)
        raise typer.Exit(1)

    if as_json:
        payload = {
            "results": [result.to_dict() for result in response.results],
            "degraded": response.degraded,
            "degradations": [
                {"branch": item.branch, "reason": item.reason} for item in response.degradations
            ],
            "reranked": response.reranked,
            "rerank_fallback_reason": response.rerank_fallback_reason,
            "timings_ms": {key: round(value, 3) for key, value in response.timings_ms.items()},
        }
        typer.echo(json.dumps(payload, indent=2))
        return
    if response.degraded:
        branches = ", ".join(item.branch for item in response.degradations)
        typer.echo(f"! degraded: {branches} branch unavailable", err=True)
    if not response.results:
        typer.echo("No results")
        return
    for position, result in enumerate(response.results, start=1):
        title = result.metadata.title or result.doc_id
        section = f" › {result.section_title}" if result.section_title else ""
        typer.echo(f"{position:>2}. [{result.score:.4f}] {title}{section}  ({result.chunk_id})")
        snippet = " ".join(result.text.split())[:160]
        typer.echo(f"    {snippet}")


@app.command()
def status(
    ctx: typer.Context,
    store_path: StoreOption = DEFAULT_STORE,
) -> None:
    """Print store statistics and the search wiring as JSON."""

    state: _CliState = ctx.obj
    try:
        with ExitStack() as stack:
            embedder, reranker = _providers(state, stack)
            store = InMemorySearchStore.load(store_path)
            service = HybridSearchService(store, embedder, state.config, rerank_provider=reranker)
            stack.callback(service.close)
            payload = service.status()
    except ConfigurationError as exc:
        typer.echo(f"✗ Configuration error: {exc}", err=True)
        raise typer.Exit(2)
    except ValueError as exc:
        typer.echo(f"✗ Error: {exc}", err=True)
        raise typer.Exit(1)
    payload["store"] = str(store_path)
    typer.echo(json.dumps(payload, indent=2))


if __name__ == "__main__":  # pragma: no cover
    app()
