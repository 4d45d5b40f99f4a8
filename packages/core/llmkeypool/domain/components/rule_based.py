"""Keyword-based decisions used when no credential can serve a batch."""

from collections.abc import Sequence

from llmkeypool.domain.models.work_item import BatchResult, TaskParams, TaskType, WorkItem

FALLBACK_NOTE = "Decided by keyword rules because no API credential was available."


class RuleBasedDecider:
    """Decides inclusion by case-insensitive keyword matching.

    An item is included iff (there are no inclusion keywords or at least one
    matches) and no exclusion keyword matches. Results are tagged
    ``llm_derived=False``.
    """

    def decide(self, item: WorkItem, params: TaskParams) -> BatchResult:
        if params.task_type == TaskType.CategoryIdentification:
            return BatchResult(
                item_id=item.id,
                included=False,
                reasoning=f"Category not identified. {FALLBACK_NOTE}",
                llm_derived=False,
            )

        text = item.searchable_text().lower()
        matched_inclusion = [k for k in params.inclusion_keywords if k.lower() in text]
        matched_exclusion = [k for k in params.exclusion_keywords if k.lower() in text]

        meets_inclusion = not params.inclusion_keywords or bool(matched_inclusion)
        included = meets_inclusion and not matched_exclusion

        if matched_exclusion:
            reason = f"Matched exclusion keywords: {', '.join(matched_exclusion)}."
        elif not meets_inclusion:
            reason = "No inclusion keywords matched."
        elif matched_inclusion:
            reason = f"Matched inclusion keywords: {', '.join(matched_inclusion)}."
        else:
            reason = "No keyword criteria configured."

        return BatchResult(
            item_id=item.id,
            included=included,
            reasoning=f"{reason} {FALLBACK_NOTE}",
            llm_derived=False,
        )

    def decide_batch(self, items: Sequence[WorkItem], params: TaskParams) -> list[BatchResult]:
        return [self.decide(item, params) for item in items]
