"""LLM-backed classifier, risk scorer and gap analyst.

Each analyst makes one model call per invocation. Output that cannot be parsed
as JSON raises a retryable error, since another sample from the model usually
parses; individual entries that do not match the expected shape are dropped
with a warning.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import pydantic

from ndaflow.core.exceptions import RetryableStageError
from ndaflow.pipeline.state import DEFAULT_PERSPECTIVE
from ndaflow.pipeline.usage import TokenUsage
from ndaflow.prompts.system_prompts import (
    CLASSIFIER_SYSTEM_PROMPT,
    CRITICAL_CATEGORIES,
    CUAD_CATEGORIES,
    GAP_ANALYST_SYSTEM_PROMPT,
    IMPORTANT_CATEGORIES,
    PERSPECTIVE_GUIDANCE,
    RISK_SCORER_SYSTEM_PROMPT,
)
from ndaflow.providers.base import (
    CategoryScore,
    ChunkClassificationResult,
    ChunkInput,
    ClauseInput,
    GapFinding,
    RiskAssessment,
)
from ndaflow.providers.openrouter import OpenRouterClient
from ndaflow.utils.json_parser import extract_list, parse_json_safely
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

UNCATEGORIZED = "Uncategorized"
# Primary classifications below this confidence are treated as Uncategorized
MIN_PRIMARY_CONFIDENCE = 0.3
RISK_LEVELS = ("standard", "cautious", "aggressive", "unknown")


async def _generate_json(client: OpenRouterClient, system: str, prompt: str, what: str) -> Tuple[Any, TokenUsage]:
    text, usage = await client.generate_content(prompt, system_instruction=system)
    payload = parse_json_safely(text)
    if payload is None:
        raise RetryableStageError(f"{what} response was not valid JSON")
    return payload, usage


def _normalize_category(category: Optional[str]) -> str:
    if not category:
        return UNCATEGORIZED
    for known in CUAD_CATEGORIES:
        if known.lower() == category.strip().lower():
            return known
    return UNCATEGORIZED


class LLMClauseClassifier:
    def __init__(self, client: OpenRouterClient):
        self.client = client

    @staticmethod
    def build_prompt(chunks: Sequence[ChunkInput]) -> str:
        parts = []
        for chunk in chunks:
            header = [f"### Chunk {chunk.chunk_index}"]
            if chunk.section_path:
                header.append(f"[Section: {' > '.join(chunk.section_path)}]")
            parts.append("\n".join(header + [chunk.content]))
        return "\n\n".join(parts) + "\n\nClassify every chunk above. Return JSON only."

    async def classify(
        self, chunks: Sequence[ChunkInput]
    ) -> Tuple[List[ChunkClassificationResult], TokenUsage]:
        if not chunks:
            return [], TokenUsage()

        payload, usage = await _generate_json(
            self.client, CLASSIFIER_SYSTEM_PROMPT, self.build_prompt(chunks), "Classifier"
        )

        results = []
        for item in extract_list(payload, "classifications"):
            if not isinstance(item, dict):
                continue
            try:
                result = ChunkClassificationResult(
                    chunk_index=item.get("chunk_index", item.get("chunkIndex")),
                    primary=CategoryScore.model_validate(item.get("primary") or {}),
                    secondary=[CategoryScore.model_validate(s) for s in item.get("secondary") or []],
                )
            except pydantic.ValidationError as e:
                LOGGER.warning(f"Dropping malformed classification: {e.error_count()} errors", extra={"item": str(item)[:200]})
                continue

            primary = result.primary
            if primary.confidence < MIN_PRIMARY_CONFIDENCE:
                primary = CategoryScore(category=UNCATEGORIZED, confidence=primary.confidence, rationale=primary.rationale)
            else:
                primary = primary.model_copy(update={"category": _normalize_category(primary.category)})
            secondary = [
                score.model_copy(update={"category": _normalize_category(score.category)})
                for score in result.secondary[:2]
            ]
            results.append(
                result.model_copy(
                    update={
                        "primary": primary,
                        "secondary": [s for s in secondary if s.category != UNCATEGORIZED],
                    }
                )
            )
        return results, usage


class LLMRiskScorer:
    def __init__(self, client: OpenRouterClient):
        self.client = client

    @staticmethod
    def build_prompt(clauses: Sequence[ClauseInput], perspective: str = DEFAULT_PERSPECTIVE) -> str:
        parts = [
            f"### Clause {clause.chunk_id}\nCategory: {clause.category}\n\n{clause.clause_text}"
            for clause in clauses
        ]
        return (
            "\n\n".join(parts)
            + f"\n\n{PERSPECTIVE_GUIDANCE[perspective]}"
            + "\nAssess the risk of every clause above. Return JSON only."
        )

    async def score(
        self, clauses: Sequence[ClauseInput], perspective: str = DEFAULT_PERSPECTIVE
    ) -> Tuple[List[RiskAssessment], TokenUsage]:
        if not clauses:
            return [], TokenUsage()

        payload, usage = await _generate_json(
            self.client, RISK_SCORER_SYSTEM_PROMPT, self.build_prompt(clauses, perspective), "Risk scorer"
        )

        by_chunk = {clause.chunk_id: clause for clause in clauses}
        assessments = []
        for item in extract_list(payload, "assessments"):
            if not isinstance(item, dict):
                continue
            clause = by_chunk.get(str(item.get("chunk_id", "")))
            if clause is None:
                LOGGER.warning(f"Risk scorer returned unknown chunk_id {item.get('chunk_id')}")
                continue
            level = item.get("risk_level", item.get("riskLevel", "unknown"))
            try:
                assessments.append(
                    RiskAssessment(
                        chunk_id=clause.chunk_id,
                        category=clause.category,
                        risk_level=level if level in RISK_LEVELS else "unknown",
                        explanation=item.get("explanation") or "",
                        citations=[str(c) for c in item.get("citations") or []],
                        negotiation_suggestion=item.get("negotiation_suggestion"),
                    )
                )
            except pydantic.ValidationError as e:
                LOGGER.warning(f"Dropping malformed risk assessment: {e.error_count()} errors")
        return assessments, usage


class LLMGapAnalyst:
    """Gap analysis combining a category checklist with a model review.

    Missing critical and important categories are found without the model;
    the model adds weak clauses and missing standard NDA protections.
    """

    def __init__(self, client: OpenRouterClient):
        self.client = client

    @staticmethod
    def checklist_gaps(present_categories: Sequence[str]) -> List[GapFinding]:
        present = set(present_categories)
        gaps = []
        for importance, categories in (("critical", CRITICAL_CATEGORIES), ("important", IMPORTANT_CATEGORIES)):
            for category in categories:
                if category not in present:
                    gaps.append(
                        GapFinding(
                            category=category,
                            status="missing",
                            importance=importance,
                            explanation=f"No {category} clause was found in the document.",
                        )
                    )
        return gaps

    @staticmethod
    def build_prompt(present_categories: Sequence[str], clauses: Sequence[ClauseInput]) -> str:
        present = ", ".join(present_categories) or "none"
        clause_block = "\n\n".join(
            f"[{clause.category}] {clause.clause_text[:600]}" for clause in clauses
        )
        return (
            f"## Categories present\n{present}\n\n"
            f"## Clauses\n{clause_block or 'No clauses found.'}\n\n"
            "Identify weak or missing protections. Return JSON only."
        )

    async def analyze(
        self, present_categories: Sequence[str], clauses: Sequence[ClauseInput]
    ) -> Tuple[List[GapFinding], TokenUsage]:
        findings: Dict[str, GapFinding] = {gap.category: gap for gap in self.checklist_gaps(present_categories)}

        payload, usage = await _generate_json(
            self.client, GAP_ANALYST_SYSTEM_PROMPT, self.build_prompt(present_categories, clauses), "Gap analyst"
        )
        for item in extract_list(payload, "gaps"):
            if not isinstance(item, dict):
                continue
            try:
                finding = GapFinding.model_validate(item)
            except pydantic.ValidationError as e:
                LOGGER.warning(f"Dropping malformed gap finding: {e.error_count()} errors")
                continue
            existing = findings.get(finding.category)
            if existing is None:
                findings[finding.category] = finding
            elif not existing.suggested_language and finding.suggested_language:
                findings[finding.category] = existing.model_copy(
                    update={"suggested_language": finding.suggested_language}
                )
        return list(findings.values()), usage
