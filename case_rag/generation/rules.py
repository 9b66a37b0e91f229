"""Validation phase: extract business rules grounded in retrieved chunks."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from case_rag.exceptions import PermanentServiceError, TransientServiceError
from case_rag.generation.schema import CandidateRule, ParseError, parse_model_output, validate_item
from case_rag.llm.backend import LLMBackend
from case_rag.llm.prompt_templates import RULE_EXTRACTION
from case_rag.retrieval.retriever import RetrievedChunk, format_context
from case_rag.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class BusinessRule:
    text: str
    source_chunks: list[str]


@dataclass
class RuleExtraction:
    rules: list[BusinessRule] = field(default_factory=list)
    attempts: int = 0
    unsupported: int = 0  # candidates citing no retrieved chunk
    errors: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.attempts > len(self.errors)


def filter_supported(
    candidates: Sequence[CandidateRule],
    retrieved_ids: set[str],
) -> tuple[list[BusinessRule], int]:
    """Keep rules citing at least one retrieved chunk.

    Citations of chunks that were not retrieved are removed from the kept
    rules.  Returns the rules and the number of dropped candidates.
    """
    kept: list[BusinessRule] = []
    seen: set[str] = set()
    dropped = 0
    for cand in candidates:
        support = [cid for cid in cand.source_chunks if cid in retrieved_ids]
        if not support:
            dropped += 1
            continue
        key = " ".join(cand.rule.split()).casefold()
        if key in seen:
            continue
        seen.add(key)
        kept.append(BusinessRule(text=cand.rule, source_chunks=support))
    return kept, dropped


class RuleExtractor:
    """Asks the model for candidate rules and applies the grounding filter."""

    def __init__(
        self,
        llm: LLMBackend,
        retry_policy: RetryPolicy,
        max_attempts: int = 3,
        max_rules: int = 20,
    ) -> None:
        self._llm = llm
        self._retry = retry_policy
        self._max_attempts = max_attempts
        self._max_rules = max_rules

    async def extract(self, context: Sequence[RetrievedChunk]) -> RuleExtraction:
        """Run up to ``max_attempts`` extraction calls.

        Unparseable replies and service errors each cost one attempt.  When
        every attempt fails the result simply has no rules.
        """
        result = RuleExtraction()
        if not context:
            logger.info("No context retrieved; skipping rule extraction.")
            return result

        retrieved_ids = {rc.chunk_id for rc in context}
        prompt = RULE_EXTRACTION.format(max_rules=self._max_rules)
        rendered = format_context(list(context))

        while result.attempts < self._max_attempts:
            result.attempts += 1
            try:
                text = await self._retry.call(self._llm.generate, prompt, rendered)
            except (TransientServiceError, PermanentServiceError) as exc:
                logger.warning("Rule extraction attempt %d failed: %s", result.attempts, exc)
                result.errors.append(str(exc))
                continue

            parsed = parse_model_output(text)
            if isinstance(parsed, ParseError):
                logger.warning("Rule extraction attempt %d unparseable: %s", result.attempts, parsed.reason)
                result.errors.append(parsed.reason)
                continue

            candidates = []
            for item in parsed.items:
                rule = validate_item(CandidateRule, item)
                if isinstance(rule, CandidateRule):
                    candidates.append(rule)
            result.rules, result.unsupported = filter_supported(candidates, retrieved_ids)
            logger.info(
                "Extracted %d grounded rules (%d unsupported dropped).",
                len(result.rules), result.unsupported,
            )
            return result

        logger.warning("Rule extraction failed after %d attempts; continuing without rules.", result.attempts)
        return result
