"""CLI for evaluating hybrid retrieval accuracy."""

from __future__ import annotations

import argparse
import asyncio
import json
import statistics
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Sequence
from uuid import uuid4

import chromadb

from ragcontext.config import Settings, get_settings
from ragcontext.embeddings import ContentEmbedder, EmbeddingCache, EmbeddingOrchestrator
from ragcontext.models import ContentItem, RetrievalQuery, UserContext
from ragcontext.retrieval import ChromaContentIndex, HybridRetrievalEngine, RetrievalConfig


@dataclass(frozen=True)
class QueryFixture:
    question: str
    relevant_item_ids: Sequence[str]
    user_id: str = "evaluator"
    preferences: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EvaluationResult:
    total_queries: int
    hits: int
    recall_at_k: float
    mean_reciprocal_rank: float
    average_latency_ms: float
    details: List[dict]

    def to_dict(self) -> dict:
        return {
            "total_queries": self.total_queries,
            "hits": self.hits,
            "recall_at_k": self.recall_at_k,
            "mean_reciprocal_rank": self.mean_reciprocal_rank,
            "average_latency_ms": self.average_latency_ms,
            "details": self.details,
        }


def load_dataset(path: Path) -> tuple[list[ContentItem], list[QueryFixture]]:
    data = json.loads(path.read_text(encoding="utf-8"))
    items = [
        ContentItem.from_raw(
            id=entry["id"],
            content_type=entry.get("content_type", "domain_record"),
            text=entry["text"],
            metadata=entry.get("metadata"),
        )
        for entry in data["items"]
    ]
    queries = [
        QueryFixture(
            question=entry["question"],
            relevant_item_ids=entry.get("relevant_item_ids", []),
            user_id=entry.get("user_id", "evaluator"),
            preferences=entry.get("preferences", {}),
        )
        for entry in data["queries"]
    ]
    return items, queries


async def _evaluate(
    items: Sequence[ContentItem],
    queries: Sequence[QueryFixture],
    *,
    top_k: int,
    threshold: float,
    settings: Settings,
) -> tuple[int, list[float], list[float], list[dict]]:
    # hash fallback only, so results do not depend on provider credentials
    orchestrator = EmbeddingOrchestrator(
        [],
        EmbeddingCache(settings.embedding_cache_size),
        fallback_dimensions=settings.fallback_dimensions,
    )
    index = ChromaContentIndex(f"evaluation_{uuid4().hex[:8]}", client=chromadb.EphemeralClient())
    report = await ContentEmbedder(orchestrator).refresh(items, {}, index)
    if report.failed:
        raise RuntimeError(f"Failed to index evaluation items: {sorted(report.failed)}")

    engine = HybridRetrievalEngine(index, orchestrator, RetrievalConfig.from_settings(settings))
    hits = 0
    reciprocal_ranks: list[float] = []
    latencies: list[float] = []
    details: list[dict] = []
    for query in queries:
        start = time.perf_counter()
        result = await engine.retrieve(
            RetrievalQuery(
                user_id=query.user_id,
                query_text=query.question,
                max_results=top_k,
                similarity_threshold=threshold,
                include_history=False,
                include_knowledge=True,
            ),
            user_context=UserContext(user_id=query.user_id, preferences=query.preferences),
        )
        latency_ms = (time.perf_counter() - start) * 1000
        latencies.append(latency_ms)
        retrieved_ids = [entry.item.id for entry in result.items()][:top_k]
        relevant = set(query.relevant_item_ids)
        rank = next((position for position, item_id in enumerate(retrieved_ids, start=1) if item_id in relevant), None)
        if rank is not None:
            hits += 1
            reciprocal_ranks.append(1 / rank)
        else:
            reciprocal_ranks.append(0.0)
        details.append(
            {
                "question": query.question,
                "retrieved": retrieved_ids,
                "relevant": list(query.relevant_item_ids),
                "latency_ms": latency_ms,
            },
        )
    return hits, reciprocal_ranks, latencies, details


def run_evaluation(
    dataset_path: Path,
    *,
    top_k: int = 3,
    threshold: float = 0.0,
    settings: Settings | None = None,
    json_out: Path | None = None,
    markdown_out: Path | None = None,
) -> EvaluationResult:
    settings = settings or get_settings()
    items, queries = load_dataset(dataset_path)
    hits, reciprocal_ranks, latencies, details = asyncio.run(
        _evaluate(items, queries, top_k=top_k, threshold=threshold, settings=settings)
    )

    total = len(queries)
    result = EvaluationResult(
        total_queries=total,
        hits=hits,
        recall_at_k=hits / total if total else 0.0,
        mean_reciprocal_rank=statistics.fmean(reciprocal_ranks) if reciprocal_ranks else 0.0,
        average_latency_ms=statistics.fmean(latencies) if latencies else 0.0,
        details=details,
    )
    if json_out:
        json_out.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
    if markdown_out:
        markdown_out.write_text(_format_markdown(result), encoding="utf-8")
    return result


def _format_markdown(result: EvaluationResult) -> str:
    lines = [
        "# Retrieval Evaluation Report",
        "",
        f"- Total queries: {result.total_queries}",
        f"- Hits: {result.hits}",
        f"- Recall@k: {result.recall_at_k:.2f}",
        f"- MRR: {result.mean_reciprocal_rank:.2f}",
        f"- Avg latency (ms): {result.average_latency_ms:.2f}",
        "",
        "| Question | Retrieved | Relevant |",
        "| --- | --- | --- |",
    ]
    for item in result.details:
        retrieved = ", ".join(item["retrieved"]) if item["retrieved"] else "-"
        relevant = ", ".join(item["relevant"]) if item["relevant"] else "-"
        lines.append(f"| {item['question']} | {retrieved} | {relevant} |")
    return "\n".join(lines)


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Evaluate hybrid retrieval accuracy.")
    parser.add_argument(
        "--dataset",
        type=Path,
        default=Path("evaluations/fixtures/sample.json"),
        help="Path to evaluation dataset JSON file.",
    )
    parser.add_argument("--top-k", type=int, default=3, help="Number of ranked items to evaluate")
    parser.add_argument("--threshold", type=float, default=0.0, help="Similarity threshold passed to retrieval")
    parser.add_argument("--json-out", type=Path, default=None, help="Optional path to write JSON report")
    parser.add_argument("--markdown-out", type=Path, default=None, help="Optional path to write Markdown report")
    parser.add_argument("--min-recall", type=float, default=None, help="Override recall threshold")
    parser.add_argument("--min-mrr", type=float, default=None, help="Override MRR threshold")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    settings = get_settings()
    min_recall = args.min_recall if args.min_recall is not None else settings.evaluation_min_recall
    min_mrr = args.min_mrr if args.min_mrr is not None else settings.evaluation_min_mrr

    result = run_evaluation(
        args.dataset,
        top_k=args.top_k,
        threshold=args.threshold,
        settings=settings,
        json_out=args.json_out,
        markdown_out=args.markdown_out,
    )
    print(json.dumps(result.to_dict(), indent=2))

    if result.recall_at_k < min_recall or result.mean_reciprocal_rank < min_mrr:
        print(
            f"Evaluation failed thresholds (recall {result.recall_at_k:.2f} vs {min_recall}, "
            f"MRR {result.mean_reciprocal_rank:.2f} vs {min_mrr})",
            file=sys.stderr,
        )
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
