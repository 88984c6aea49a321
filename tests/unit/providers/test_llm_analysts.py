"""Unit tests for the LLM-backed classifier, risk scorer and gap analyst."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from ndaflow.core.exceptions import RetryableStageError
from ndaflow.pipeline.usage import TokenUsage
from ndaflow.providers.base import ChunkInput, ClauseInput
from ndaflow.providers.llm_analysts import LLMClauseClassifier, LLMGapAnalyst, LLMRiskScorer


def mock_client(payload) -> MagicMock:
    client = MagicMock()
    text = payload if isinstance(payload, str) else json.dumps(payload)
    client.generate_content = AsyncMock(return_value=(text, TokenUsage(input_tokens=500, output_tokens=60)))
    return client


@pytest.fixture
def chunks():
    return [
        ChunkInput(chunk_id="c0", chunk_index=0, content="Delaware law governs.", section_path=["9. Governing Law"]),
        ChunkInput(chunk_id="c1", chunk_index=1, content="Signature block."),
    ]


@pytest.fixture
def clauses():
    return [
        ClauseInput(chunk_id="a", chunk_index=0, category="Non-Compete", clause_text="No competition.", confidence=0.9),
        ClauseInput(chunk_id="b", chunk_index=1, category="Governing Law", clause_text="Delaware.", confidence=0.8),
    ]


class TestLLMClauseClassifier:
    """Test suite for LLMClauseClassifier."""

    @pytest.mark.asyncio
    async def test_normalizes_categories_and_drops_malformed_entries(self, chunks):
        client = mock_client({
            "classifications": [
                {
                    "chunk_index": 0,
                    "primary": {"category": "governing law", "confidence": 0.9},
                    "secondary": [
                        {"category": "Parties", "confidence": 0.5},
                        {"category": "Made Up", "confidence": 0.5},
                        {"category": "Effective Date", "confidence": 0.5},
                    ],
                },
                {"chunk_index": 1, "primary": {"category": "Parties", "confidence": 0.2}},
                "not an object",
                {"chunk_index": 2, "primary": {"category": "Parties", "confidence": 3}},
            ]
        })

        results, usage = await LLMClauseClassifier(client).classify(chunks)

        assert [r.chunk_index for r in results] == [0, 1]
        assert results[0].primary.category == "Governing Law"
        assert [s.category for s in results[0].secondary] == ["Parties"]
        assert results[1].primary.category == "Uncategorized"
        assert usage.input_tokens == 500

    @pytest.mark.asyncio
    async def test_prompt_includes_section_path(self, chunks):
        client = mock_client({"classifications": []})

        await LLMClauseClassifier(client).classify(chunks)

        prompt = client.generate_content.call_args.args[0]
        assert "### Chunk 0" in prompt
        assert "[Section: 9. Governing Law]" in prompt

    @pytest.mark.asyncio
    async def test_unparseable_output_is_retryable(self, chunks):
        client = mock_client("I cannot help with that.")

        with pytest.raises(RetryableStageError):
            await LLMClauseClassifier(client).classify(chunks)

    @pytest.mark.asyncio
    async def test_no_chunks_makes_no_call(self):
        client = mock_client({})

        results, usage = await LLMClauseClassifier(client).classify([])

        assert results == []
        assert usage == TokenUsage()
        client.generate_content.assert_not_called()


class TestLLMRiskScorer:
    """Test suite for LLMRiskScorer."""

    @pytest.mark.asyncio
    async def test_keeps_known_clauses_and_coerces_levels(self, clauses):
        client = mock_client({
            "assessments": [
                {"chunk_id": "a", "risk_level": "aggressive", "explanation": "Worldwide scope", "citations": ["s1"]},
                {"chunk_id": "b", "risk_level": "extreme"},
                {"chunk_id": "zzz", "risk_level": "standard"},
            ]
        })

        assessments, _ = await LLMRiskScorer(client).score(clauses)

        assert [(a.chunk_id, a.category, a.risk_level) for a in assessments] == [
            ("a", "Non-Compete", "aggressive"),
            ("b", "Governing Law", "unknown"),
        ]
        assert assessments[0].citations == ["s1"]

    @pytest.mark.asyncio
    async def test_accepts_a_bare_list(self, clauses):
        client = mock_client("```json\n[{\"chunk_id\": \"a\", \"risk_level\": \"cautious\"}]\n```")

        assessments, _ = await LLMRiskScorer(client).score(clauses)

        assert [a.risk_level for a in assessments] == ["cautious"]

    def test_prompt_states_the_perspective(self, clauses):
        prompt = LLMRiskScorer.build_prompt(clauses, "disclosing")

        assert "perspective of the disclosing party" in prompt
        assert prompt.endswith("Return JSON only.")

    def test_prompt_defaults_to_balanced(self, clauses):
        assert "neutrally" in LLMRiskScorer.build_prompt(clauses)


class TestLLMGapAnalyst:
    """Test suite for LLMGapAnalyst."""

    def test_checklist_reports_missing_critical_and_important(self):
        gaps = LLMGapAnalyst.checklist_gaps(["Parties", "Governing Law", "Non-Compete"])

        critical = [g.category for g in gaps if g.importance == "critical"]
        assert critical == ["Effective Date"]
        assert "Non-Compete" not in [g.category for g in gaps]
        assert all(g.status == "missing" for g in gaps)

    @pytest.mark.asyncio
    async def test_merges_model_findings_into_checklist(self, clauses):
        client = mock_client({
            "gaps": [
                {
                    "category": "Effective Date",
                    "status": "missing",
                    "importance": "critical",
                    "suggested_language": "This Agreement is effective as of the date last signed below.",
                },
                {"category": "Return Of Materials", "status": "missing", "importance": "optional"},
                {"category": "Remedies", "status": "bogus", "importance": "critical"},
            ]
        })

        findings, usage = await LLMGapAnalyst(client).analyze(
            ["Parties", "Governing Law", "Non-Compete"], clauses
        )

        by_category = {f.category: f for f in findings}
        assert by_category["Effective Date"].suggested_language.startswith("This Agreement is effective")
        assert by_category["Effective Date"].explanation == "No Effective Date clause was found in the document."
        assert by_category["Return Of Materials"].importance == "optional"
        assert "Remedies" not in by_category
        assert len(findings) == 7
        assert usage.output_tokens == 60
