"""
DynamoDB persistence for evaluations and counselor profiles.

Evaluations:        pk CounselorId, sk EvaluationId; GSI EvaluationDateIndex (CounselorId, EvaluationDate)
Counselor profiles: pk CounselorId; GSI ProgramTypeIndex (ProgramType, CounselorName)

The evaluation item and the profile's history append are written in a single
TransactWriteItems call, so a history entry never exists without its
evaluation and vice versa.
"""
from typing import Callable, Dict, List, Optional, Sequence

from boto3.dynamodb.conditions import Key
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from constants import EVALUATIONS_TABLE, COUNSELOR_PROFILES_TABLE
from models import CounselorIdentity, CounselorProfile, CounselorRecord, Evaluation
from utils import helper
from utils.aws_clients import AWSClients
from utils.error_handler import BusinessLogicError, PersistenceError, ValidationError
from utils.retry_handler import DynamoDBRetryWrapper, RetryConfig, RetryHandler, dynamodb_retry_config

EVALUATION_DATE_INDEX = "EvaluationDateIndex"
PROGRAM_TYPE_INDEX = "ProgramTypeIndex"

# Conflicting concurrent transactions surface as TransactionCanceledException
transaction_retry_config = RetryConfig(
    max_attempts=dynamodb_retry_config.max_attempts,
    base_delay=dynamodb_retry_config.base_delay,
    max_delay=dynamodb_retry_config.max_delay,
    strategy=dynamodb_retry_config.strategy,
    retryable_errors=dynamodb_retry_config.retryable_errors + ["TransactionCanceledException"],
)

_serializer = TypeSerializer()


def _serialize(item: Dict) -> Dict:
    return {k: _serializer.serialize(v) for k, v in helper.to_ddb_numbers(item).items()}


def evaluation_item(evaluation: Evaluation) -> Dict:
    return {
        "CounselorId": evaluation.counselor_id,
        "EvaluationId": evaluation.evaluation_id,
        "CounselorName": evaluation.counselor_name,
        "AudioFileName": evaluation.source_file_name,
        "EvaluationDate": evaluation.evaluation_date,
        "CategoryScores": {
            c.category_name: c.model_dump(by_alias=True, mode="json") for c in evaluation.categories
        },
        "TotalScore": evaluation.total_score,
        "MaxScore": evaluation.max_total,
        "PercentageScore": evaluation.percentage_score,
        "DisplayPercentage": evaluation.display_percentage,
        "Criteria": evaluation.criteria_rating.value,
        "S3ResultPath": evaluation.result_key,
    }


def profile_from_item(item: Dict) -> CounselorProfile:
    item = helper.from_ddb_numbers(item)
    programs = item.get("Programs") or ([item["ProgramType"]] if item.get("ProgramType") else [])
    return CounselorProfile(
        counselor_id=item["CounselorId"],
        name=item.get("CounselorName", ""),
        programs=list(programs),
        evaluation_history=list(item.get("EvaluationHistory") or []),
        is_active=bool(item.get("IsActive", True)),
        created_at=item.get("CreatedDate", ""),
        updated_at=item.get("LastUpdated", ""),
    )


def _is_duplicate_evaluation(error: ClientError) -> bool:
    """The evaluation Put (first transact item) failed its attribute_not_exists condition"""
    if error.response.get("Error", {}).get("Code") != "TransactionCanceledException":
        return False
    reasons = error.response.get("CancellationReasons") or []
    return bool(reasons) and reasons[0].get("Code") == "ConditionalCheckFailed"


class DynamoDBCounselorRepository:
    def __init__(self, evaluations_table: str = EVALUATIONS_TABLE,
                 profiles_table: str = COUNSELOR_PROFILES_TABLE,
                 client=None, resource=None, sleep: Optional[Callable[[float], None]] = None):
        self.evaluations_table = evaluations_table
        self.profiles_table = profiles_table
        self.client = client or AWSClients.dynamodb()
        resource = resource or AWSClients.dynamodb_resource()
        self.evaluations = DynamoDBRetryWrapper(evaluations_table, resource, sleep=sleep)
        self.profiles = DynamoDBRetryWrapper(profiles_table, resource, sleep=sleep)
        self.retry_handler = RetryHandler(transaction_retry_config, sleep=sleep)

    def build_transaction(self, identity: CounselorIdentity, evaluation: Evaluation,
                          program: str, timestamp: str) -> List[Dict]:
        return [
            {
                "Put": {
                    "TableName": self.evaluations_table,
                    "Item": _serialize(evaluation_item(evaluation)),
                    "ConditionExpression": "attribute_not_exists(EvaluationId)",
                }
            },
            {
                "Update": {
                    "TableName": self.profiles_table,
                    "Key": _serialize({"CounselorId": identity.counselor_id}),
                    "UpdateExpression": (
                        "SET CounselorName = if_not_exists(CounselorName, :name), "
                        "ProgramType = if_not_exists(ProgramType, :program), "
                        "Programs = if_not_exists(Programs, :programs), "
                        "IsActive = if_not_exists(IsActive, :active), "
                        "CreatedDate = if_not_exists(CreatedDate, :now), "
                        "EvaluationHistory = list_append(if_not_exists(EvaluationHistory, :empty), :evalIds), "
                        "LastUpdated = :now, UpdatedBy = :updatedBy"
                    ),
                    "ExpressionAttributeValues": _serialize({
                        ":name": identity.name,
                        ":program": program,
                        ":programs": [program],
                        ":active": True,
                        ":now": timestamp,
                        ":empty": [],
                        ":evalIds": [evaluation.evaluation_id],
                        ":updatedBy": "system",
                    }),
                }
            },
        ]

    def _write(self, items: List[Dict]) -> bool:
        try:
            self.client.transact_write_items(TransactItems=items)
            return True
        except ClientError as e:
            if _is_duplicate_evaluation(e):
                return False
            raise

    def append_evaluation(self, identity: CounselorIdentity, evaluation: Evaluation,
                          program: str, timestamp: str) -> CounselorProfile:
        """Persist the evaluation and append it to the profile, creating the profile on first sight"""
        items = self.build_transaction(identity, evaluation, program, timestamp)
        try:
            written = self.retry_handler.retry_call(self._write, items)
        except ClientError as e:
            raise PersistenceError(
                f"Failed to link evaluation {evaluation.evaluation_id} to {identity.counselor_id}: {e}",
                details={
                    "counselorId": identity.counselor_id,
                    "evaluationId": evaluation.evaluation_id,
                    "error_code": e.response.get("Error", {}).get("Code", ""),
                }
            )

        if not written:
            helper.log_json("WARNING", "EVALUATION_ALREADY_LINKED",
                            counselorId=identity.counselor_id, evaluationId=evaluation.evaluation_id)

        profile = self.get_profile(identity.counselor_id)
        if profile is None:
            raise PersistenceError(f"Profile {identity.counselor_id} missing after linking",
                                   details={"counselorId": identity.counselor_id})
        return profile

    def get_profile(self, counselor_id: str) -> Optional[CounselorProfile]:
        item = self.profiles.get_item(Key={"CounselorId": counselor_id}, ConsistentRead=True).get("Item")
        return profile_from_item(item) if item else None

    def update_profile(self, counselor_id: str, timestamp: str, name: Optional[str] = None,
                       add_programs: Sequence[str] = (), remove_programs: Sequence[str] = (),
                       is_active: Optional[bool] = None, updated_by: str = "api",
                       max_attempts: int = 3) -> Optional[CounselorProfile]:
        """
        Rename, change programs or (de)activate an existing profile.

        Returns None when the profile does not exist. The write is conditioned
        on the LastUpdated value that was read, so a concurrent evaluation link
        is never lost; on conflict the profile is re-read and the change reapplied.
        ProgramType tracks the first remaining program.
        """
        if name is None and not add_programs and not remove_programs and is_active is None:
            raise ValidationError("No profile fields to update", field="counselorId")

        for attempt in range(1, max_attempts + 1):
            current = self.get_profile(counselor_id)
            if current is None:
                return None

            programs = [p for p in current.programs if p not in remove_programs]
            programs.extend(p for p in dict.fromkeys(add_programs) if p not in programs)
            if not programs:
                raise BusinessLogicError(f"Profile {counselor_id} must keep at least one program",
                                         details={"counselorId": counselor_id})

            assignments = [
                "Programs = :programs",
                "ProgramType = :programType",
                "LastUpdated = :now",
                "UpdatedBy = :updatedBy",
            ]
            values = {
                ":programs": programs,
                ":programType": programs[0],
                ":now": timestamp,
                ":updatedBy": updated_by,
                ":seen": current.updated_at,
            }
            if name is not None:
                assignments.append("CounselorName = :name")
                values[":name"] = name
            if is_active is not None:
                assignments.append("IsActive = :active")
                values[":active"] = is_active

            try:
                response = self.profiles.update_item(
                    Key={"CounselorId": counselor_id},
                    UpdateExpression="SET " + ", ".join(assignments),
                    ConditionExpression="attribute_exists(CounselorId) AND LastUpdated = :seen",
                    ExpressionAttributeValues=values,
                    ReturnValues="ALL_NEW",
                )
            except ClientError as e:
                code = e.response.get("Error", {}).get("Code", "")
                if code != "ConditionalCheckFailedException":
                    raise PersistenceError(f"Failed to update profile {counselor_id}: {e}",
                                           details={"counselorId": counselor_id, "error_code": code})
                helper.log_json("WARNING", "PROFILE_UPDATE_CONFLICT", counselorId=counselor_id, attempt=attempt)
                continue

            helper.log_json("INFO", "PROFILE_UPDATED", counselorId=counselor_id,
                            programs=programs, isActive=is_active, renamed=name is not None)
            return profile_from_item(response["Attributes"])

        raise PersistenceError(f"Profile {counselor_id} kept changing during update",
                               details={"counselorId": counselor_id, "attempts": max_attempts})

    def get_counselor_record(self, counselor_id: str) -> Optional[CounselorRecord]:
        """Profile plus its evaluations, newest first; None when the profile does not exist"""
        profile = self.get_profile(counselor_id)
        if profile is None:
            return None
        evaluations = self.list_evaluations(counselor_id, newest_first=True)
        return CounselorRecord(
            profile=profile,
            evaluations=evaluations,
            evaluation_count=len(evaluations),
            last_evaluation_date=evaluations[0].get("EvaluationDate") if evaluations else None,
        )

    def list_evaluations(self, counselor_id: str, since: Optional[str] = None,
                         until: Optional[str] = None, newest_first: bool = True) -> List[Dict]:
        """Evaluations for one counselor by date, via EvaluationDateIndex"""
        condition = Key("CounselorId").eq(counselor_id)
        if since and until:
            condition = condition & Key("EvaluationDate").between(since, until)
        elif since:
            condition = condition & Key("EvaluationDate").gte(since)
        elif until:
            condition = condition & Key("EvaluationDate").lte(until)

        return self._query_all(self.evaluations, IndexName=EVALUATION_DATE_INDEX,
                               KeyConditionExpression=condition, ScanIndexForward=not newest_first)

    def list_counselors_by_program(self, program: str) -> List[CounselorProfile]:
        """Counselor profiles in one program ordered by name, via ProgramTypeIndex"""
        items = self._query_all(self.profiles, IndexName=PROGRAM_TYPE_INDEX,
                                KeyConditionExpression=Key("ProgramType").eq(program))
        return [profile_from_item(item) for item in items]

    def _query_all(self, table: DynamoDBRetryWrapper, **kwargs) -> List[Dict]:
        items = []
        while True:
            response = table.query(**kwargs)
            items.extend(helper.from_ddb_numbers(response.get("Items", [])))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key
