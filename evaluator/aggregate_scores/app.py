"""
Aggregate Scores Lambda - Step Functions workflow step
Combines per-criterion scores into category totals, a percentage and a criteria rating
"""
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from models import CategoryScore, CriteriaRating, CriterionResult, ScoreTotals, file_stem
from rubric import RubricDefinition, load_rubric
from utils import helper
from utils.error_handler import lambda_error_handler, InputValidator, AggregationInvariantError
from utils.storage import ArtifactStore, StorageLayout
from constants import *


@dataclass(frozen=True)
class RatingThresholds:
    """Percentage bands: >= meets_criteria, >= improvement_needed, else Not at Criteria"""
    meets_criteria: float = MEETS_CRITERIA_THRESHOLD
    improvement_needed: float = IMPROVEMENT_NEEDED_THRESHOLD

    def __post_init__(self):
        if not 0 <= self.improvement_needed <= self.meets_criteria <= 100:
            raise ValueError(
                f"Invalid thresholds: need 0 <= improvement_needed ({self.improvement_needed}) "
                f"<= meets_criteria ({self.meets_criteria}) <= 100"
            )


def rate_percentage(percentage: float, thresholds: Optional[RatingThresholds] = None) -> CriteriaRating:
    thresholds = thresholds or RatingThresholds()
    if percentage >= thresholds.meets_criteria:
        return CriteriaRating.MEETS_CRITERIA
    if percentage >= thresholds.improvement_needed:
        return CriteriaRating.IMPROVEMENT_NEEDED
    return CriteriaRating.NOT_AT_CRITERIA


def _check_inputs(results: List[CriterionResult], rubric: RubricDefinition, multiplier: int):
    if isinstance(multiplier, bool) or not isinstance(multiplier, int) or multiplier <= 0:
        raise AggregationInvariantError(f"Score multiplier must be a positive integer, got {multiplier!r}")

    weights = rubric.criterion_weights()
    counts = Counter(r.criterion_name for r in results)
    duplicates = sorted(name for name, n in counts.items() if n > 1)
    unknown = sorted(set(counts) - set(weights))
    missing = [name for name in weights if name not in counts]
    out_of_range = [
        r.criterion_name for r in results
        if r.criterion_name in weights and not 0 <= r.raw_score <= weights[r.criterion_name]
    ]

    if duplicates or unknown or missing or out_of_range:
        raise AggregationInvariantError(
            "Criterion results do not match the rubric",
            details={
                "duplicates": duplicates,
                "unknown": unknown,
                "missing": missing,
                "out_of_range": out_of_range,
            }
        )


def aggregate(criterion_results: Iterable[CriterionResult], rubric: RubricDefinition,
              multiplier: int = SCORE_MULTIPLIER,
              thresholds: Optional[RatingThresholds] = None) -> ScoreTotals:
    """
    Deterministic scoring arithmetic.

    Per category: multipliedScore = sum(rawScore) * multiplier and
    maxPoints = sum(weight) * multiplier. percentageScore = totalScore * 100 / maxTotal.
    Output follows rubric order regardless of input order.
    """
    results = list(criterion_results)
    _check_inputs(results, rubric, multiplier)
    by_name = {r.criterion_name: r for r in results}

    categories = []
    for category_name, criteria in rubric.categories.items():
        raw = sum(by_name[name].raw_score for name in criteria)
        categories.append(CategoryScore(
            category_name=category_name,
            raw_score=raw,
            multiplied_score=raw * multiplier,
            max_points=sum(criteria.values()) * multiplier,
            criteria={name: by_name[name] for name in criteria},
        ))

    total_raw = sum(c.raw_score for c in categories)
    total_score = sum(c.multiplied_score for c in categories)
    max_total = sum(c.max_points for c in categories)
    percentage = total_score * 100 / max_total

    if not 0 <= percentage <= 100:
        raise AggregationInvariantError(f"Percentage {percentage} outside [0, 100]",
                                        details={"totalScore": total_score, "maxTotal": max_total})

    return ScoreTotals(
        categories=categories,
        total_raw_score=total_raw,
        total_score=total_score,
        max_total=max_total,
        percentage_score=percentage,
        criteria_rating=rate_percentage(percentage, thresholds),
    )


def results_from_scoring_output(document: Dict[str, Any]) -> List[CriterionResult]:
    """Inverse of the stored per-criterion scoring document"""
    if not isinstance(document, dict):
        raise AggregationInvariantError("Scoring output must be a JSON object")
    results = []
    for name, item in document.items():
        item = item or {}
        try:
            results.append(CriterionResult(
                criterion_name=name,
                raw_score=item.get("score"),
                label=item.get("label") or "",
                observation=item.get("observation") or "",
                evidence=item.get("evidence") or "",
            ))
        except PydanticValidationError as e:
            raise AggregationInvariantError(f"Invalid score for '{name}'", details={"error": str(e)[:500]})
    return results


@lambda_error_handler()
def lambda_handler(event, context):
    """
    Aggregate the validated scoring output.

    Input:
        - bucket: str
        - resultKey: str (results/llmOutput/analysis_{stem}.json)
        - fileName: str

    Output:
        - everything in the input, plus
        - aggregatedKey: str (results/aggregated_{stem}.json)
        - percentageScore: float
        - criteria: str
    """
    InputValidator.validate_required_fields(event, ["bucket", "resultKey", "fileName"], "aggregation input")
    result_key = InputValidator.validate_s3_key(event["resultKey"], "resultKey")

    store = ArtifactStore(event["bucket"])
    totals = aggregate(results_from_scoring_output(store.get_json(result_key)), load_rubric())

    aggregated_key = StorageLayout().aggregated_key(file_stem(event["fileName"]))
    store.put_json(aggregated_key, totals.model_dump(by_alias=True, mode="json"))

    helper.log_json("INFO", "SCORES_AGGREGATED",
                    jobName=event.get("jobName"),
                    totalScore=totals.total_score,
                    maxTotal=totals.max_total,
                    percentageScore=round(totals.percentage_score, 1),
                    criteria=totals.criteria_rating.value)

    return {
        **event,
        "aggregatedKey": aggregated_key,
        "percentageScore": round(totals.percentage_score, 1),
        "criteria": totals.criteria_rating.value,
    }
