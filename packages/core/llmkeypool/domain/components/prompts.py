"""Prompt building and response parsing for batched literature-review tasks.

One prompt carries a whole batch. Each paper is listed with its id and the
model is asked to answer with a JSON array keyed by that id, so results can
be re-associated regardless of the order the model answers in.
"""

import json
import re
from collections.abc import Sequence
from typing import Any

from llmkeypool.domain.models.work_item import BatchResult, TaskParams, TaskType, WorkItem

MISSING_FROM_RESPONSE = "No result returned for this item"

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_CONFIDENCE_TEXT = re.compile(r"confidence[\"']?\s*[:=]\s*([0-9]*\.?[0-9]+)\s*(%)?", re.IGNORECASE)
_PERCENT = re.compile(r"([0-9]*\.?[0-9]+)\s*%")

# "does not meet the exclusion criteria" argues for inclusion, not against it.
_UNMET_EXCLUSION = re.compile(r"(?:does not|doesn't|not) meets? (?:the |any )?exclusion criteri(?:a|on)")
_EXCLUSION_MET_PHRASES = ("meets the exclusion", "meets an exclusion", "meets exclusion")
_NEGATIVE_PHRASES = (
    "does not meet",
    "doesn't meet",
    "not meet",
    "should be excluded",
    "exclude",
    "not relevant",
    "irrelevant",
)
_POSITIVE_PHRASES = (
    "meets the inclusion",
    "meets the criteria",
    "should be included",
    "include",
    "relevant",
)


def _describe_item(item: WorkItem) -> str:
    payload = item.payload
    lines = [
        f"ID: {item.id}",
        f"Title: {item.title or 'Untitled'}",
        f"Authors: {', '.join(item.authors) or 'Unknown'}",
    ]
    if payload.get("year"):
        lines.append(f"Year: {payload['year']}")
    if payload.get("venue"):
        lines.append(f"Venue: {payload['venue']}")
    lines.append(f"Abstract: {item.abstract or 'No abstract available'}")
    return "\n".join(lines)


def _describe_batch(items: Sequence[WorkItem]) -> str:
    return "\n\n".join(f"--- Paper {i} ---\n{_describe_item(item)}" for i, item in enumerate(items, 1))


def build_filtering_prompt(items: Sequence[WorkItem], params: TaskParams) -> str:
    """Prompt deciding inclusion/exclusion for every paper of a batch."""
    sections = ["You are a research assistant helping with a systematic literature review."]
    if params.inclusion_prompt:
        sections.append(f"**Inclusion Criteria:**\n{params.inclusion_prompt.strip()}")
    if params.exclusion_prompt:
        sections.append(f"**Exclusion Criteria:**\n{params.exclusion_prompt.strip()}")
    sections.append(f"**Papers to Review:**\n{_describe_batch(items)}")
    sections.append(
        "**Task:**\n"
        "For EACH paper decide whether it meets the inclusion criteria and whether it "
        "meets the exclusion criteria. You MUST give a short reasoning for every paper."
    )
    sections.append(
        "**Response Format:**\n"
        "Respond with a JSON array only, one object per paper:\n"
        "[\n"
        "  {\n"
        '    "id": "<paper ID>",\n'
        '    "meets_inclusion": true or false,\n'
        '    "meets_exclusion": true or false,\n'
        '    "reasoning": "2-3 sentences explaining the decision",\n'
        '    "confidence": 0.0 to 1.0\n'
        "  }\n"
        "]"
    )
    return "\n\n".join(sections)


def build_category_prompt(items: Sequence[WorkItem]) -> str:
    """Prompt assigning a primary research category to every paper of a batch."""
    return (
        "Analyze the following research papers and identify the primary category or "
        "research area of each.\n\n"
        f"**Papers:**\n{_describe_batch(items)}\n\n"
        "**Task:**\nIdentify the primary research category of each paper. "
        "Be specific but concise.\n\n"
        "**Response Format:**\nRespond with a JSON array only, one object per paper:\n"
        '[{"id": "<paper ID>", "category": "The primary category name", '
        '"confidence": 0.0 to 1.0}]'
    )


def build_regeneration_prompt(items: Sequence[WorkItem], draft: str, params: TaskParams) -> str:
    """Prompt folding a batch of papers into the running literature-review draft."""
    topic = params.topic or "the research topic"
    criteria = params.inclusion_prompt.strip() if params.inclusion_prompt else "Not specified"
    current = draft.strip() or "(empty: start a new draft)"
    return (
        "You are an academic writer creating a systematic literature review.\n\n"
        f"**Topic:** {topic}\n\n"
        f"**Inclusion Criteria:**\n{criteria}\n\n"
        f"**Current Draft:**\n{current}\n\n"
        f"**New Papers to Integrate:**\n{_describe_batch(items)}\n\n"
        "**Task:**\nRevise the current draft so that it synthesizes the new papers "
        "together with the existing content. Keep the structure (introduction, "
        "synthesis of findings, trends over time, research gaps, conclusion) and cite "
        "papers as (Author et al., Year).\n\n"
        "Return only the full revised draft."
    )


def build_prompt(
    items: Sequence[WorkItem],
    params: TaskParams,
    draft: str = "",
) -> str:
    """Build the prompt for a batch according to ``params.task_type``."""
    if params.task_type == TaskType.CategoryIdentification:
        return build_category_prompt(items)
    if params.task_type == TaskType.DocumentRegeneration:
        return build_regeneration_prompt(items, draft, params)
    return build_filtering_prompt(items, params)


def extract_json(text: str) -> Any:
    """Extract the first JSON value embedded in model output.

    Tries the whole text, then fenced code blocks, then the outermost
    array, then the outermost object.

    Returns:
        The decoded value, or None if nothing parses.
    """
    candidates = [text.strip()]
    candidates.extend(m.group(1).strip() for m in _FENCED_JSON.finditer(text))
    for pattern in (_JSON_ARRAY, _JSON_OBJECT):
        match = pattern.search(text)
        if match:
            candidates.append(match.group(0))

    for candidate in candidates:
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    return None


def parse_confidence(value: Any) -> float | None:
    """Normalize a confidence value to [0, 1].

    Accepts fractions, percentages (``85`` or ``"85%"``) and numeric strings.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        match = _PERCENT.search(value)
        if match:
            number = float(match.group(1)) / 100.0
        else:
            try:
                number = float(value.strip())
            except ValueError:
                return None
    elif isinstance(value, (int, float)):
        number = float(value)
    else:
        return None

    if number > 1.0:
        number = number / 100.0
    return max(0.0, min(1.0, number))


def confidence_from_text(text: str) -> float | None:
    """Find ``confidence: x`` or a bare percentage in free text."""
    match = _CONFIDENCE_TEXT.search(text)
    if match:
        value = match.group(1) + ("%" if match.group(2) else "")
        return parse_confidence(value)
    match = _PERCENT.search(text)
    if match:
        return parse_confidence(match.group(0))
    return None


def decide_from_text(text: str) -> bool | None:
    """Heuristic include/exclude decision for non-JSON answers."""
    lowered = text.lower()
    remaining = _UNMET_EXCLUSION.sub(" ", lowered)
    if any(p in remaining for p in _EXCLUSION_MET_PHRASES):
        return False
    if any(p in remaining for p in _NEGATIVE_PHRASES):
        return False
    if any(p in lowered for p in _POSITIVE_PHRASES):
        return True
    return None


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "include", "included"):
            return True
        if lowered in ("false", "no", "exclude", "excluded"):
            return False
    return None


def _decision(entry: dict[str, Any], params: TaskParams) -> bool | None:
    if "included" in entry:
        return _as_bool(entry["included"])
    if "decision" in entry:
        decision = str(entry["decision"]).strip().lower()
        if decision in ("include", "included"):
            return True
        if decision in ("exclude", "excluded"):
            return False
        return None
    if "meets_inclusion" in entry or "meets_exclusion" in entry:
        meets_inclusion = _as_bool(entry.get("meets_inclusion"))
        meets_exclusion = _as_bool(entry.get("meets_exclusion"))
        if meets_inclusion is None:
            meets_inclusion = True if not params.inclusion_prompt else None
        if meets_exclusion is None:
            meets_exclusion = False if not params.exclusion_prompt else None
        if meets_inclusion is None or meets_exclusion is None:
            return None
        return meets_inclusion and not meets_exclusion
    if "meets_criteria" in entry:
        meets = _as_bool(entry["meets_criteria"])
        if meets is None:
            return None
        # A lone exclusion prompt asks whether the paper meets the exclusion criteria.
        if params.exclusion_prompt and not params.inclusion_prompt:
            return not meets
        return meets
    return None


def _entries(parsed: Any) -> list[dict[str, Any]]:
    if isinstance(parsed, dict):
        for key in ("results", "papers", "items"):
            if isinstance(parsed.get(key), list):
                parsed = parsed[key]
                break
        else:
            return [parsed]
    if isinstance(parsed, list):
        return [entry for entry in parsed if isinstance(entry, dict)]
    return []


def _result_for_entry(
    item: WorkItem,
    entry: dict[str, Any],
    params: TaskParams,
    model: str | None,
) -> BatchResult:
    reasoning = str(entry.get("reasoning") or entry.get("reason") or "").strip()
    confidence = parse_confidence(entry.get("confidence"))

    if params.task_type == TaskType.CategoryIdentification:
        category = entry.get("category")
        if not category:
            return BatchResult(item_id=item.id, error="Response did not include a category", model=model)
        return BatchResult(
            item_id=item.id,
            included=True,
            category=str(category).strip(),
            reasoning=reasoning,
            confidence=confidence,
            model=model,
        )

    included = _decision(entry, params)
    if included is None:
        included = decide_from_text(reasoning)
    if included is None:
        return BatchResult(
            item_id=item.id,
            reasoning=reasoning,
            error="Response did not include a decision",
            model=model,
        )
    return BatchResult(
        item_id=item.id,
        included=included,
        reasoning=reasoning or "No reasoning provided",
        confidence=confidence,
        model=model,
    )


def parse_batch_response(
    text: str,
    items: Sequence[WorkItem],
    params: TaskParams,
    model: str | None = None,
) -> list[BatchResult]:
    """Turn model output into one BatchResult per item, matched by id.

    Items the response does not mention get an ``error`` result. A single
    object answering a single-item batch is accepted without an id. When
    the answer is not JSON at all, a one-item batch falls back to text
    heuristics.
    """
    entries = _entries(extract_json(text))
    by_id: dict[str, dict[str, Any]] = {}
    for entry in entries:
        entry_id = entry.get("id", entry.get("item_id"))
        if entry_id is not None:
            by_id.setdefault(str(entry_id).strip(), entry)

    if len(items) == 1 and not by_id and len(entries) == 1:
        by_id[items[0].id] = entries[0]

    results = []
    for item in items:
        entry = by_id.get(item.id)
        if entry is not None:
            results.append(_result_for_entry(item, entry, params, model))
            continue

        if len(items) == 1 and not entries and params.task_type == TaskType.SemanticFiltering:
            included = decide_from_text(text)
            if included is not None:
                results.append(
                    BatchResult(
                        item_id=item.id,
                        included=included,
                        reasoning=text.strip()[:500],
                        confidence=confidence_from_text(text),
                        model=model,
                    )
                )
                continue

        results.append(BatchResult(item_id=item.id, error=MISSING_FROM_RESPONSE, model=model))
    return results


def parse_regeneration_response(text: str) -> str:
    """Strip a surrounding code fence from a regenerated draft."""
    stripped = text.strip()
    match = re.fullmatch(r"```[a-zA-Z]*\s*([\s\S]*?)```", stripped)
    if match:
        return match.group(1).strip()
    return stripped
