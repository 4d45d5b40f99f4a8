"""Tests for the keyword-based fallback decider."""

from llmkeypool.domain.components.rule_based import FALLBACK_NOTE, RuleBasedDecider
from llmkeypool.domain.models.work_item import TaskParams, TaskType, WorkItem


class TestRuleBasedDecider:
    """Tests for RuleBasedDecider."""

    def setup_method(self) -> None:
        self.decider = RuleBasedDecider()
        self.rag_paper = WorkItem(
            id="p1",
            payload={
                "title": "Evaluating Retrieval-Augmented Generation",
                "abstract": "A benchmark for RAG pipelines.",
                "keywords": ["LLM", "evaluation"],
            },
        )
        self.survey = WorkItem(
            id="p2",
            payload={"title": "A Survey of Retrieval-Augmented Generation", "abstract": "We review the field."},
        )
        self.unrelated = WorkItem(id="p3", payload={"title": "Protein folding", "abstract": "Biology."})

    def test_inclusion_keyword_match_is_case_insensitive(self) -> None:
        params = TaskParams(inclusion_keywords=["retrieval-augmented"])

        result = self.decider.decide(self.rag_paper, params)

        assert result.included is True
        assert result.llm_derived is False
        assert "retrieval-augmented" in result.reasoning
        assert FALLBACK_NOTE in result.reasoning

    def test_exclusion_keyword_wins(self) -> None:
        params = TaskParams(inclusion_keywords=["retrieval"], exclusion_keywords=["survey"])

        result = self.decider.decide(self.survey, params)

        assert result.included is False
        assert "survey" in result.reasoning

    def test_no_inclusion_match(self) -> None:
        params = TaskParams(inclusion_keywords=["retrieval"])

        result = self.decider.decide(self.unrelated, params)

        assert result.included is False
        assert "No inclusion keywords matched" in result.reasoning

    def test_keywords_field_is_searched(self) -> None:
        params = TaskParams(inclusion_keywords=["evaluation"], exclusion_keywords=[])

        assert self.decider.decide(self.rag_paper, params).included is True

    def test_no_keywords_includes_everything(self) -> None:
        results = self.decider.decide_batch([self.rag_paper, self.unrelated], TaskParams())

        assert [r.included for r in results] == [True, True]
        assert all(not r.llm_derived for r in results)

    def test_blank_keywords_are_ignored(self) -> None:
        params = TaskParams(inclusion_keywords=["  ", ""], exclusion_keywords=[" biology "])

        assert params.inclusion_keywords == []
        assert self.decider.decide(self.unrelated, params).included is False

    def test_category_task_is_left_unresolved(self) -> None:
        params = TaskParams(task_type=TaskType.CategoryIdentification)

        result = self.decider.decide(self.rag_paper, params)

        assert result.included is False
        assert result.category is None
        assert result.llm_derived is False
