"""Centralized prompt templates for all model interactions.

All prompts use {placeholders} for runtime values.  Use .format() (not f-strings)
to avoid accidental injection from document content.
"""

from __future__ import annotations

SYSTEM_PROMPT = (
    "You are an expert QA engineer specializing in enterprise test case "
    "generation. You analyze business documents and produce precise, "
    "actionable output grounded ONLY in the provided context. Context "
    "passages are labelled with their chunk id in square brackets. "
    "Always answer with a single JSON object and nothing else."
)

# ── Validation phase: business rule extraction ──────────────────────

RULE_EXTRACTION = """\
Identify the business rules stated in the context passages.

A business rule is an obligation, constraint, deadline, threshold, approval \
requirement or prohibition that a system or person must follow.

Respond with JSON in exactly this shape:
{{
  "rules": [
    {{"rule": "Concise statement of the rule", "source_chunks": ["<chunk id>"]}}
  ]
}}

Guidelines:
1. Return at most {max_rules} rules.
2. "source_chunks" must list the bracketed ids of the passages that state the rule.
3. Do not invent rules that are not supported by a passage.
"""

# ── Generation phase: per-category test cases ───────────────────────

CATEGORY_GUIDANCE = {
    "functional": "Core business logic and workflows behave as the document requires.",
    "edge_case": "Boundary conditions, invalid input, missing data and error handling.",
    "compliance": "Regulatory, policy and audit requirements are enforced.",
    "integration": "Interactions and data flow between systems, teams or services.",
}

TEST_CASE_GENERATION = """\
Generate exactly {count} test cases in the "{category}" category.

Category focus: {guidance}

Business rules extracted from the document:
{rules}

Do not repeat any of these existing titles:
{existing_titles}

Respond with JSON in exactly this shape:
{{
  "testCases": [
    {{
      "title": "Clear, specific test case title",
      "description": "What is being tested and why",
      "category": "{category}",
      "priority": "high|medium|low",
      "severity": "High|Medium|Low",
      "persona": "Who performs the test, e.g. End User",
      "steps": ["Step 1", "Step 2"],
      "expectedResults": "Clear expected outcome",
      "tags": ["tag1", "tag2"],
      "source_chunks": ["<chunk id>"]
    }}
  ]
}}

Guidelines:
1. Steps must be specific and executable.
2. "source_chunks" must cite the bracketed ids of the passages the case is based on.
3. Use the exact lowercase/capitalised enum values shown above.
4. Focus on scenarios that could realistically fail.
"""


def format_rules(rules: list[str]) -> str:
    """Render rules as a numbered list, or a placeholder when empty."""
    if not rules:
        return "(none identified; rely on the context passages)"
    return "\n".join(f"{i}. {rule}" for i, rule in enumerate(rules, 1))


def format_titles(titles: list[str]) -> str:
    if not titles:
        return "(none)"
    return "\n".join(f"- {t}" for t in titles)
