"""
Manage Counselor Lambda - API Gateway handler
Reads a counselor's profile with its evaluation history, and updates the
profile's name, programs and active flag
"""
import json
import re

from link_counselor.repository import DynamoDBCounselorRepository
from utils import helper
from utils.error_handler import lambda_error_handler, InputValidator, ValidationError

COUNSELOR_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')

_repository = None


def _get_repository():
    global _repository
    if _repository is None:
        _repository = DynamoDBCounselorRepository()
    return _repository


def _resp(code, body):
    return {
        "statusCode": code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(body, default=str),
    }


def validate_counselor_id(value) -> str:
    counselor_id = InputValidator.validate_string_field(value, "counselorId", min_length=2, max_length=50)
    if not COUNSELOR_ID_PATTERN.match(counselor_id):
        raise ValidationError("counselorId may only contain letters, numbers, underscores and hyphens",
                              field="counselorId", details={"provided_value": counselor_id})
    return counselor_id


def _programs(body: dict, field: str) -> list:
    value = body.get(field) or []
    if not isinstance(value, list):
        raise ValidationError(f"{field} must be a list of program names", field=field)
    return [InputValidator.validate_string_field(p, field, max_length=50) for p in value]


def _active_flag(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise ValidationError("isActive must be a boolean", field="isActive")


def parse_update(body) -> dict:
    """Validated keyword arguments for DynamoDBCounselorRepository.update_profile"""
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")

    changes = {
        "add_programs": _programs(body, "addPrograms"),
        "remove_programs": _programs(body, "removePrograms"),
    }
    if body.get("counselorName") is not None:
        changes["name"] = InputValidator.validate_string_field(
            body["counselorName"], "counselorName", min_length=2, max_length=100
        )
    if body.get("isActive") is not None:
        changes["is_active"] = _active_flag(body["isActive"])
    return changes


@lambda_error_handler()
def lambda_handler(event, context):
    """
    GET /counselors/{counselorId}
        -> profile, evaluations (newest first), evaluationCount, lastEvaluationDate
    PUT /counselors/{counselorId}
        body: counselorName?, addPrograms?, removePrograms?, isActive?
        -> updated profile

    404 when the profile does not exist; 400 on invalid input.
    """
    method = (event.get("httpMethod") or "").upper()
    counselor_id = validate_counselor_id((event.get("pathParameters") or {}).get("counselorId"))

    if method == "GET":
        record = _get_repository().get_counselor_record(counselor_id)
        if record is None:
            return _resp(404, {"error": f"Counselor {counselor_id} not found"})
        return _resp(200, record.model_dump(by_alias=True))

    if method == "PUT":
        try:
            body = json.loads(event.get("body") or "{}")
        except json.JSONDecodeError:
            raise ValidationError("Request body is not valid JSON")

        profile = _get_repository().update_profile(counselor_id, helper.utc_now_iso(), **parse_update(body))
        if profile is None:
            return _resp(404, {"error": f"Counselor {counselor_id} not found"})
        return _resp(200, profile.model_dump(by_alias=True))

    return _resp(405, {"error": "Method not allowed"})
