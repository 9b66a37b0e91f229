"""Multi-phase test case generation for one document.

Phases run strictly in order::

    Extraction ─► Validation ─► Generation ─► Done / Failed

- **Extraction** chunks the normalized text and embeds the chunks with
  bounded concurrency.  The embedded chunks reach the vector store only
  once the whole phase has succeeded.
- **Validation** retrieves the chunks closest to a fixed business-rules
  query and keeps the model's candidate rules that cite one of them.
- **Generation** fills the per-category quota, three attempts per category.
- **Done** persists every accepted test case; a short batch raises
  :class:`QuotaShortfallError` after the subset has been stored.

Cancellation is observed only at phase boundaries.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from case_rag.config import AppConfig
from case_rag.db.repository import Repository
from case_rag.exceptions import (
    JobCancelledError,
    PermanentServiceError,
    QuotaShortfallError,
    TransientServiceError,
)
from case_rag.generation.assembler import TestCaseAssembler
from case_rag.generation.quota import category_quotas
from case_rag.generation.rules import BusinessRule, RuleExtractor
from case_rag.generation.schema import ParseError, parse_model_output
from case_rag.indexing.chunker import chunk_text, normalize_text
from case_rag.indexing.embedder import EmbeddingAdapter
from case_rag.indexing.store import VectorStore
from case_rag.llm.backend import LLMBackend
from case_rag.llm.prompt_templates import (
    CATEGORY_GUIDANCE,
    TEST_CASE_GENERATION,
    format_rules,
    format_titles,
)
from case_rag.models import CATEGORY_ORDER, Category, Chunk, Document, Source, TestCase
from case_rag.retrieval.retriever import RetrievedChunk, Retriever, format_context
from case_rag.retry import RetryPolicy

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, Optional[int]], Awaitable[None]]

# Progress bands (start, end) per phase.
EXTRACTION_BAND = (0, 40)
VALIDATION_BAND = (40, 50)
GENERATION_BAND = (50, 95)


def _band(band: tuple[int, int], done: int, total: int) -> int:
    lo, hi = band
    if total <= 0:
        return hi
    return lo + (hi - lo) * min(done, total) // total


class _Progress:
    """Forwards only increasing values to the callback."""

    def __init__(self, callback: ProgressCallback | None) -> None:
        self._callback = callback
        self._last = -1
        self._lock = asyncio.Lock()

    async def report(self, value: int, total_items: int | None = None) -> None:
        if self._callback is None:
            return
        async with self._lock:
            if value <= self._last and total_items is None:
                return
            value = max(value, self._last)
            self._last = value
            await self._callback(value, total_items)


# ── Results ──────────────────────────────────────────────────────


@dataclass
class ExtractionResult:
    chunks: list[Chunk]
    total_chunks: int
    skipped: list[int] = field(default_factory=list)  # ordinals of chunks that failed permanently
    reused: bool = False


@dataclass
class GenerationResult:
    """Outcome of a full pipeline run."""

    document_id: str
    quotas: dict[Category, int]
    test_cases: list[TestCase] = field(default_factory=list)
    rules: list[BusinessRule] = field(default_factory=list)
    chunks_embedded: int = 0
    chunks_skipped: int = 0
    attempts: dict[Category, int] = field(default_factory=dict)
    elapsed: float = 0.0

    @property
    def required(self) -> int:
        return sum(self.quotas.values())

    @property
    def produced(self) -> int:
        return len(self.test_cases)

    def counts(self) -> dict[str, int]:
        result = {cat.value: 0 for cat in CATEGORY_ORDER}
        for tc in self.test_cases:
            result[tc.category.value] += 1
        return result

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "produced": self.produced,
            "required": self.required,
            "counts": self.counts(),
            "quotas": {cat.value: n for cat, n in self.quotas.items()},
            "attempts": {cat.value: n for cat, n in self.attempts.items()},
            "rules": len(self.rules),
            "chunks_embedded": self.chunks_embedded,
            "chunks_skipped": self.chunks_skipped,
            "elapsed": round(self.elapsed, 2),
        }


# ── Orchestrator ─────────────────────────────────────────────────


class GenerationOrchestrator:
    """Runs the generation phases for documents.

    Holds no per-run state.  Extraction is serialized per document, so
    concurrent jobs on one document embed it once and the later ones
    reuse the stored chunks.
    """

    def __init__(
        self,
        config: AppConfig,
        embedder: EmbeddingAdapter,
        store: VectorStore,
        llm: LLMBackend,
        repository: Repository,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.config = config
        self._embedder = embedder
        self._store = store
        self._retriever = Retriever(store)
        self._llm = llm
        self._repository = repository
        self._retry = retry_policy or RetryPolicy.from_config(config.retry)
        # document_id -> [lock, holders]
        self._extract_locks: dict[str, list[Any]] = {}

    # ── Entry points ──────────────────────────────────────────

    async def run(
        self,
        document: Document,
        on_progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> GenerationResult:
        """Run all phases for *document*.

        Raises:
            JobCancelledError: cancellation seen at a phase boundary.
            TransientServiceError / PermanentServiceError: Extraction failed.
            QuotaShortfallError: fewer test cases than required; the
                accepted ones have already been persisted.
        """
        started = time.monotonic()
        progress = _Progress(on_progress)
        result = GenerationResult(
            document_id=document.document_id,
            quotas=category_quotas(self.config.generation.total_test_cases),
        )

        _check_cancelled(cancel_event)
        extraction = await self._extract(document, progress, cancel_event)
        result.chunks_embedded = len(extraction.chunks)
        result.chunks_skipped = len(extraction.skipped)

        _check_cancelled(cancel_event)
        rules, rules_context = await self._validate(document.document_id, progress)
        result.rules = rules

        _check_cancelled(cancel_event)
        await self._generate(document.document_id, result, rules_context, progress)

        _check_cancelled(cancel_event)
        await self._repository.replace_generated_test_cases(document.document_id, result.test_cases)
        result.elapsed = time.monotonic() - started
        logger.info(
            "Document %s: %d/%d test cases in %.1fs %s",
            document.document_id, result.produced, result.required, result.elapsed, result.counts(),
        )
        if result.produced < result.required:
            shortfall = QuotaShortfallError(result.produced, result.required)
            shortfall.details["result"] = result.to_dict()
            raise shortfall
        return result

    async def extract(
        self,
        document: Document,
        on_progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ExtractionResult:
        """Run the Extraction phase alone (embedding jobs)."""
        _check_cancelled(cancel_event)
        return await self._extract(document, _Progress(on_progress), cancel_event)

    # ── Phase 1: Extraction ───────────────────────────────────

    @contextlib.asynccontextmanager
    async def _document_lock(self, document_id: str) -> AsyncIterator[None]:
        entry = self._extract_locks.setdefault(document_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if not entry[1]:
                self._extract_locks.pop(document_id, None)

    async def _extract(
        self,
        document: Document,
        progress: _Progress,
        cancel_event: asyncio.Event | None,
    ) -> ExtractionResult:
        async with self._document_lock(document.document_id):
            return await self._extract_locked(document, progress, cancel_event)

    async def _extract_locked(
        self,
        document: Document,
        progress: _Progress,
        cancel_event: asyncio.Event | None,
    ) -> ExtractionResult:
        doc_id = document.document_id
        existing = await self._store.count(doc_id)
        if existing:
            # Chunks are immutable once embedded; reuse them on regeneration.
            chunks = await self._store.chunks_for(doc_id)
            logger.info("Document %s already has %d embedded chunks; reusing.", doc_id, existing)
            await progress.report(EXTRACTION_BAND[1], len(chunks))
            return ExtractionResult(chunks=chunks, total_chunks=len(chunks), reused=True)

        cfg = self.config
        chunks = chunk_text(
            normalize_text(document.text),
            cfg.chunking.chunk_size,
            cfg.chunking.overlap,
            document_id=doc_id,
        )
        if not chunks:
            raise PermanentServiceError(
                f"Document {doc_id} has no text to embed", details={"document_id": doc_id},
            )
        await progress.report(EXTRACTION_BAND[0], len(chunks))

        batch_size = max(1, cfg.embedding.batch_size)
        batches = [chunks[i:i + batch_size] for i in range(0, len(chunks), batch_size)]
        semaphore = asyncio.Semaphore(cfg.embedding.max_concurrency)
        embedded: dict[int, Chunk] = {}
        skipped: list[int] = []
        done = 0

        async def embed_batch(batch: list[Chunk]) -> None:
            nonlocal done
            async with semaphore:
                outcome = await self._embedder.embed_batch_isolated([c.text for c in batch])
            for i, chunk in enumerate(batch):
                vector = outcome.vectors[i]
                if vector is None:
                    logger.warning(
                        "Skipping chunk %s: %s", chunk.chunk_id, outcome.errors[i],
                    )
                    skipped.append(chunk.ordinal)
                else:
                    embedded[chunk.ordinal] = chunk.with_embedding(vector)
            done += len(batch)
            await progress.report(_band(EXTRACTION_BAND, done, len(chunks)))

        tasks = [asyncio.create_task(embed_batch(b)) for b in batches]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        if not embedded:
            raise PermanentServiceError(
                f"No chunk of document {doc_id} could be embedded",
                details={"document_id": doc_id, "chunks": len(chunks)},
            )

        # In-flight results are dropped if cancellation arrived meanwhile.
        _check_cancelled(cancel_event)
        ordered = [embedded[o] for o in sorted(embedded)]
        await self._store.add(ordered)
        logger.info(
            "Embedded %d/%d chunks of document %s (%d skipped).",
            len(ordered), len(chunks), doc_id, len(skipped),
        )
        await progress.report(EXTRACTION_BAND[1])
        return ExtractionResult(chunks=ordered, total_chunks=len(chunks), skipped=sorted(skipped))

    # ── Phase 2: Validation ───────────────────────────────────

    async def _retrieve(self, query: str, document_id: str) -> list[RetrievedChunk]:
        vector = await self._embedder.embed(query)
        return await self._retriever.retrieve(vector, self.config.retrieval.top_k, scope=document_id)

    async def _validate(
        self, document_id: str, progress: _Progress,
    ) -> tuple[list[BusinessRule], list[RetrievedChunk]]:
        try:
            context = await self._retrieve(self.config.retrieval.rules_query, document_id)
        except (TransientServiceError, PermanentServiceError) as exc:
            logger.warning("Rules query could not be embedded (%s); continuing without rules.", exc)
            await progress.report(VALIDATION_BAND[1])
            return [], []

        extractor = RuleExtractor(
            self._llm, self._retry, max_attempts=self.config.generation.max_attempts,
        )
        extraction = await extractor.extract(context)
        await progress.report(VALIDATION_BAND[1])
        return extraction.rules, context

    # ── Phase 3: Generation ───────────────────────────────────

    async def _category_context(
        self, category: Category, document_id: str, fallback: list[RetrievedChunk],
    ) -> list[RetrievedChunk]:
        query = f"{category.value.replace('_', ' ')} test scenarios: {CATEGORY_GUIDANCE[category.value]}"
        try:
            context = await self._retrieve(query, document_id)
        except (TransientServiceError, PermanentServiceError) as exc:
            logger.warning("Context query for %s failed (%s); using rules context.", category.value, exc)
            return fallback
        return context or fallback

    async def _generate(
        self,
        document_id: str,
        result: GenerationResult,
        rules_context: list[RetrievedChunk],
        progress: _Progress,
    ) -> None:
        gen = self.config.generation
        # Generated cases of earlier runs are replaced; manual ones stay and must not be repeated.
        existing = [
            tc for tc in await self._repository.list_test_cases(document_id)
            if tc.source is not Source.generated
        ]
        assembler = TestCaseAssembler(document_id, existing_titles=[tc.title for tc in existing])
        rule_text = format_rules([r.text for r in result.rules])

        for category in CATEGORY_ORDER:
            quota = result.quotas[category]
            accepted: list[TestCase] = []
            attempts = 0
            context = await self._category_context(category, document_id, rules_context)
            rendered = format_context(context)

            while len(accepted) < quota and attempts < gen.max_attempts:
                attempts += 1
                remaining = quota - len(accepted)
                prompt = TEST_CASE_GENERATION.format(
                    count=remaining,
                    category=category.value,
                    guidance=CATEGORY_GUIDANCE[category.value],
                    rules=rule_text,
                    existing_titles=format_titles(
                        [tc.title for tc in existing] + [tc.title for tc in result.test_cases + accepted]
                    ),
                )
                try:
                    text = await self._retry.call(self._llm.generate, prompt, rendered)
                except (TransientServiceError, PermanentServiceError) as exc:
                    logger.warning("%s attempt %d failed: %s", category.value, attempts, exc)
                    continue

                parsed = parse_model_output(text)
                if isinstance(parsed, ParseError):
                    logger.warning("%s attempt %d unparseable: %s", category.value, attempts, parsed.reason)
                    continue

                batch = assembler.assemble(parsed.items, category, context, limit=remaining)
                accepted.extend(batch.accepted)
                logger.info(
                    "%s attempt %d: %d accepted, %d rejected (%d/%d).",
                    category.value, attempts, len(batch.accepted), len(batch.rejected),
                    len(accepted), quota,
                )
                await progress.report(_band(
                    GENERATION_BAND, len(result.test_cases) + len(accepted), result.required,
                ))

            if len(accepted) < quota:
                logger.warning(
                    "Category %s short by %d after %d attempts.",
                    category.value, quota - len(accepted), attempts,
                )
            result.attempts[category] = attempts
            result.test_cases.extend(accepted)

        await progress.report(GENERATION_BAND[1])


def _check_cancelled(cancel_event: asyncio.Event | None) -> None:
    """Raise JobCancelledError if cancel was requested."""
    if cancel_event is not None and cancel_event.is_set():
        raise JobCancelledError()
