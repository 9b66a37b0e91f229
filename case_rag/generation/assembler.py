"""Turn validated model candidates into TestCase records."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from case_rag.generation.quota import CATEGORY_DEFAULTS
from case_rag.generation.schema import CandidateTestCase, validate_item
from case_rag.models import Category, Source, TestCase
from case_rag.retrieval.retriever import RetrievedChunk

logger = logging.getLogger(__name__)


def normalize_title(title: str) -> str:
    """Case-insensitive, whitespace-collapsed title key."""
    return " ".join(title.split()).casefold()


@dataclass
class Rejection:
    index: int
    reason: str
    title: str | None = None


@dataclass
class AssemblyResult:
    accepted: list[TestCase] = field(default_factory=list)
    rejected: list[Rejection] = field(default_factory=list)
    surplus: int = 0  # valid items beyond the requested limit


class TestCaseAssembler:
    """Validates candidates for one document and keeps its title registry.

    A title accepted once (in any category) is never accepted again for the
    same document, which also rules out duplicate (title, category) pairs.
    """

    __test__ = False

    def __init__(self, document_id: str, existing_titles: Iterable[str] = ()) -> None:
        self.document_id = document_id
        self._seen: set[str] = {normalize_title(t) for t in existing_titles}

    @property
    def titles(self) -> int:
        return len(self._seen)

    def is_duplicate(self, title: str) -> bool:
        return normalize_title(title) in self._seen

    def assemble(
        self,
        items: Sequence[dict[str, Any]],
        category: Category,
        context: Sequence[RetrievedChunk],
        limit: int | None = None,
    ) -> AssemblyResult:
        """Validate *items* requested for *category*.

        Args:
            items: Raw objects from :func:`parse_model_output`.
            category: The category the generation call asked for.  Items
                without a category inherit it; items naming another
                category are rejected.
            context: Chunks that were in the prompt.  Their ids become
                ``context_used`` and their mean similarity the default
                confidence.
            limit: Stop accepting after this many items.
        """
        result = AssemblyResult()
        context_ids = [rc.chunk_id for rc in context]
        default_confidence = (
            sum(rc.similarity for rc in context) / len(context) if context else None
        )
        defaults = CATEGORY_DEFAULTS[category]

        for index, item in enumerate(items):
            candidate = validate_item(CandidateTestCase, item)
            if isinstance(candidate, str):
                result.rejected.append(Rejection(index, candidate, _raw_title(item)))
                continue

            if candidate.category is not None and candidate.category is not category:
                result.rejected.append(Rejection(
                    index,
                    f"category {candidate.category.value!r} does not match requested {category.value!r}",
                    candidate.title,
                ))
                continue

            key = normalize_title(candidate.title)
            if key in self._seen:
                result.rejected.append(Rejection(index, "duplicate title", candidate.title))
                continue

            if limit is not None and len(result.accepted) >= limit:
                result.surplus += 1
                continue

            confidence = candidate.confidence if candidate.confidence is not None else default_confidence
            result.accepted.append(TestCase(
                document_id=self.document_id,
                title=candidate.title,
                description=candidate.description,
                category=category,
                priority=candidate.priority or defaults.priority,
                severity=candidate.severity or defaults.severity,
                persona=candidate.persona or defaults.persona,
                steps=list(candidate.steps),
                expected_result=candidate.expected_result,
                tags=list(candidate.tags),
                source=Source.generated,
                confidence_score=confidence,
                context_used=list(context_ids),
            ))
            self._seen.add(key)

        for rej in result.rejected:
            logger.debug("Rejected %s candidate #%d (%s): %s", category.value, rej.index, rej.title, rej.reason)
        return result


def _raw_title(item: dict[str, Any]) -> str | None:
    title = item.get("title")
    return title if isinstance(title, str) else None
