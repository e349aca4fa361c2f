"""
Score Transcript Lambda - Step Functions workflow step
Scores the formatted transcript against the rubric using Bedrock tool use
"""
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from models import CriterionResult, Transcript, file_stem
from prompts import (
    SCORING_SYSTEM_MESSAGE, SCORING_PROMPT_TEMPLATE, CORRECTION_PROMPT_TEMPLATE,
    CRITERION_GUIDE, SCORING_PROMPT_VERSION,
)
from rubric import RubricDefinition, load_rubric
from utils import helper
from utils.error_handler import (
    lambda_error_handler, InputValidator, ExternalServiceError, ScoringValidationError,
    handle_bedrock_error,
)
from utils.storage import ArtifactStore, StorageLayout
from constants import *

TOOL_NAME = "submit_rubric_scores"
MAX_SCORING_ATTEMPTS = 2  # first call + one corrective call


def build_scoring_tool(rubric: RubricDefinition) -> Dict[str, Any]:
    """Forced tool whose schema enumerates the rubric's criteria and score ranges"""
    weights = rubric.criterion_weights()
    ranges = "; ".join(f"{name}: 0-{weight}" for name, weight in weights.items())
    return {
        "toolSpec": {
            "name": TOOL_NAME,
            "description": "Submit one rubric score for every criterion of the counseling call evaluation.",
            "inputSchema": {
                "json": {
                    "type": "object",
                    "properties": {
                        "results": {
                            "type": "array",
                            "minItems": len(weights),
                            "maxItems": len(weights),
                            "description": f"Exactly one entry per criterion. Allowed score ranges - {ranges}",
                            "items": {
                                "type": "object",
                                "properties": {
                                    "criterion": {"type": "string", "enum": list(weights)},
                                    "score": {
                                        "type": "integer",
                                        "minimum": 0,
                                        "maximum": max(weights.values()),
                                        "description": "Whole number within the criterion's range",
                                    },
                                    "label": {"type": "string", "enum": ["Yes", "Somewhat", "No"]},
                                    "observation": {"type": "string"},
                                    "evidence": {"type": "string"},
                                },
                                "required": ["criterion", "score", "label", "observation", "evidence"],
                            },
                        }
                    },
                    "required": ["results"],
                }
            },
        }
    }


def validate_scoring_output(payload: Any, rubric: RubricDefinition) -> Tuple[List[CriterionResult], List[str]]:
    """
    Check a tool payload against the rubric.

    Returns (results in rubric order, violations). Results are only complete
    when violations is empty.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("results"), list):
        return [], [f"Response did not contain a 'results' list from the {TOOL_NAME} tool"]

    weights = rubric.criterion_weights()
    violations = []
    by_name: Dict[str, CriterionResult] = {}

    for index, item in enumerate(payload["results"]):
        if not isinstance(item, dict):
            violations.append(f"Result {index} is not an object")
            continue

        name = item.get("criterion")
        if not isinstance(name, str) or name not in weights:
            violations.append(f"Unknown criterion {name!r}")
            continue
        if name in by_name:
            violations.append(f"Duplicate result for '{name}'")
            continue

        score = item.get("score")
        if isinstance(score, bool) or not isinstance(score, int):
            violations.append(f"Score for '{name}' must be an integer, got {score!r}")
            continue
        if not 0 <= score <= weights[name]:
            violations.append(f"Score for '{name}' must be between 0 and {weights[name]}, got {score}")
            continue

        by_name[name] = CriterionResult(
            criterion_name=name,
            raw_score=score,
            label=str(item.get("label") or ""),
            observation=str(item.get("observation") or ""),
            evidence=str(item.get("evidence") or ""),
        )

    for name in weights:
        if name not in by_name and not any(f"'{name}'" in v for v in violations):
            violations.append(f"Missing result for '{name}'")

    return [by_name[name] for name in weights if name in by_name], violations


def scoring_output_document(results: List[CriterionResult]) -> Dict[str, Any]:
    """Per-criterion mapping stored as results/llmOutput/analysis_{stem}.json"""
    return {
        r.criterion_name: {
            "score": r.raw_score,
            "label": r.label,
            "observation": r.observation,
            "evidence": r.evidence,
        }
        for r in results
    }


class RubricScorer:
    """Invokes the scoring model and validates its structured output"""

    def __init__(self, rubric: Optional[RubricDefinition] = None, invoke_model: Optional[Callable] = None,
                 model_id: str = MODEL_ID, temperature: float = SCORING_TEMPERATURE,
                 max_tokens: int = SCORING_MAX_TOKENS):
        self.rubric = rubric or load_rubric()
        self.invoke_model = invoke_model or helper.bedrock_converse
        self.model_id = model_id
        self.temperature = temperature
        self.max_tokens = max_tokens

    def build_prompt(self, transcript: Transcript, rubric: RubricDefinition) -> str:
        guide = "\n".join(
            f"- {name}: {CRITERION_GUIDE[name]}"
            for name in rubric.criterion_names() if name in CRITERION_GUIDE
        )
        return SCORING_PROMPT_TEMPLATE.format(
            rubric_json=json.dumps(rubric.categories, indent=2),
            criterion_guide=guide or "- (none)",
            summary=transcript.summary or "(no summary available)",
            transcript=transcript.render(),
        )

    def score(self, transcript: Transcript, rubric: Optional[RubricDefinition] = None,
              job_name: str = "") -> List[CriterionResult]:
        """
        Score every rubric criterion.

        A response that breaks the schema gets exactly one corrective call
        listing the violations. Raises ScoringValidationError if that also
        fails, ExternalServiceError if the model cannot be reached.
        """
        rubric = rubric or self.rubric
        prompt = self.build_prompt(transcript, rubric)
        violations: List[str] = []

        for attempt in range(1, MAX_SCORING_ATTEMPTS + 1):
            text = prompt
            if violations:
                text = prompt + "\n\n" + CORRECTION_PROMPT_TEMPLATE.format(
                    violations="\n".join(f"- {v}" for v in violations)
                )

            payload = self._invoke(text, rubric, job_name, attempt)
            results, violations = validate_scoring_output(payload, rubric)

            if not violations:
                helper.log_json("INFO", "SCORING_OK", jobName=job_name, attempt=attempt,
                                criteria=len(results), promptVersion=SCORING_PROMPT_VERSION)
                return results

            helper.log_json("WARNING", "SCORING_VALIDATION_FAILED", jobName=job_name,
                            attempt=attempt, violations=violations[:20])

        raise ScoringValidationError(
            f"Scoring output failed validation after {MAX_SCORING_ATTEMPTS} attempts",
            violations=violations,
            attempts=MAX_SCORING_ATTEMPTS,
        )

    def _invoke(self, text: str, rubric: RubricDefinition, job_name: str, attempt: int) -> Any:
        messages = [{"role": "user", "content": [{"text": text}]}]
        try:
            resp, latency_ms = self.invoke_model(
                model_id=self.model_id,
                messages=messages,
                system=SCORING_SYSTEM_MESSAGE,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                tools=[build_scoring_tool(rubric)],
                tool_choice={"tool": {"name": TOOL_NAME}},
            )
        except ClientError as e:
            handle_bedrock_error(e, self.model_id)
        except BotoCoreError as e:
            raise ExternalServiceError(f"Bedrock call failed: {e}", service="bedrock",
                                       details={"model": self.model_id})

        helper.log_json("INFO", "SCORING_MODEL_RESPONSE", jobName=job_name, attempt=attempt,
                        latency_ms=latency_ms, stopReason=resp.get("stopReason"))
        helper.log_token_usage(resp, self.model_id, jobName=job_name, attempt=attempt)

        payload = helper.extract_tool_input(resp, TOOL_NAME)
        if isinstance(payload, dict):
            payload = helper.parse_stringified_fields(payload, ["results"], job_name, context=f"attempt_{attempt}")
        return payload


_scorer = None


def _get_scorer() -> RubricScorer:
    global _scorer
    if _scorer is None:
        _scorer = RubricScorer()
    return _scorer


@lambda_error_handler()
def lambda_handler(event, context):
    """
    Score the formatted transcript.

    Input:
        - bucket: str
        - formattedKey: str
        - fileName: str
        - jobName: str (optional, logging)

    Output:
        - everything in the input, plus
        - resultKey: str (results/llmOutput/analysis_{stem}.json)
    """
    InputValidator.validate_required_fields(event, ["bucket", "formattedKey", "fileName"], "scoring input")
    formatted_key = InputValidator.validate_s3_key(event["formattedKey"], "formattedKey")
    job_name = event.get("jobName", "")

    store = ArtifactStore(event["bucket"])
    transcript = Transcript.model_validate(store.get_json(formatted_key))

    results = _get_scorer().score(transcript, job_name=job_name)

    result_key = StorageLayout().scoring_output_key(file_stem(event["fileName"]))
    store.put_json(result_key, scoring_output_document(results))

    return {**event, "resultKey": result_key}
