"""
Link Counselor Lambda - Step Functions workflow step
Resolves the counselor from the recording's file name and appends the evaluation to their history
"""
import re
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Optional

from link_counselor.repository import DynamoDBCounselorRepository
from models import CounselorIdentity, CounselorProfile, Evaluation, ScoreTotals, file_stem
from utils import helper
from utils.error_handler import lambda_error_handler, InputValidator, BusinessLogicError
from utils.keyed_lock import KeyedLock
from utils.storage import ArtifactStore, discard_artifact
from constants import *

UNKNOWN_COUNSELOR = CounselorIdentity(counselor_id="unknown", name="Unknown Counselor")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def resolve_identity(file_name: str) -> CounselorIdentity:
    """
    Counselor identity from a recording file name.

    'John_Smith_20230615.wav' -> John Smith (john_smith)
    'Jane123.wav' or 'Jane_0615.wav' -> single-token name

    Naming is a convention, not a contract: a typo in the file name
    silently produces a separate counselor.
    """
    stem = file_stem(PurePosixPath(file_name or "").name)
    segments = [s for s in stem.split("_") if s]
    if not segments:
        return UNKNOWN_COUNSELOR

    if len(segments) >= 2 and not segments[1][0].isdigit():
        name = f"{segments[0]} {segments[1]}".title()
    else:
        name = segments[0].title()

    counselor_id = _NON_ALNUM.sub("_", name.lower()).strip("_")
    if not counselor_id:
        return UNKNOWN_COUNSELOR
    return CounselorIdentity(counselor_id=counselor_id, name=name)


def make_evaluation_id(job_name: str) -> str:
    """Stable per job, so a replayed job maps to the same evaluation"""
    return f"eval_{job_name}"


def build_evaluation(file_name: str, totals: ScoreTotals, evaluation_id: str, result_key: str,
                     evaluation_date: Optional[str] = None) -> Evaluation:
    identity = resolve_identity(file_name)
    return Evaluation(
        counselor_id=identity.counselor_id,
        counselor_name=identity.name,
        evaluation_id=evaluation_id,
        source_file_name=PurePosixPath(file_name).name,
        evaluation_date=evaluation_date or datetime.now(timezone.utc).isoformat(),
        categories=totals.categories,
        total_score=totals.total_score,
        max_total=totals.max_total,
        percentage_score=totals.percentage_score,
        criteria_rating=totals.criteria_rating,
        result_key=result_key,
    )


class CounselorRecordLinker:
    """Appends evaluations to counselor histories, one writer per counselor at a time"""

    def __init__(self, repository, program: str = PROGRAM_NAME, locks: Optional[KeyedLock] = None):
        self.repository = repository
        self.program = program
        self.locks = locks if locks is not None else KeyedLock()

    def link(self, file_name: str, evaluation: Evaluation) -> CounselorProfile:
        identity = resolve_identity(file_name)
        if identity.counselor_id != evaluation.counselor_id:
            raise BusinessLogicError(
                f"Evaluation {evaluation.evaluation_id} belongs to {evaluation.counselor_id}, "
                f"not {identity.counselor_id}",
                details={"fileName": file_name, "evaluationId": evaluation.evaluation_id}
            )

        with self.locks.hold(identity.counselor_id):
            profile = self.repository.append_evaluation(
                identity, evaluation, self.program, helper.utc_now_iso()
            )

        helper.log_json("INFO", "COUNSELOR_RECORD_LINKED",
                        counselorId=identity.counselor_id,
                        evaluationId=evaluation.evaluation_id,
                        historyLength=len(profile.evaluation_history),
                        criteria=evaluation.criteria_rating.value)
        return profile


_linker = None


def _get_linker() -> CounselorRecordLinker:
    global _linker
    if _linker is None:
        _linker = CounselorRecordLinker(DynamoDBCounselorRepository())
    return _linker


@lambda_error_handler()
def lambda_handler(event, context):
    """
    Persist the evaluation and link it to the counselor's profile.

    Input:
        - bucket: str
        - aggregatedKey: str (results/aggregated_{stem}.json)
        - fileName: str
        - jobName: str

    Output:
        - everything in the input, plus
        - counselorId: str
        - evaluationId: str
        - criteria: str

    The aggregated artifact is removed if linking fails, so no partial
    evaluation remains.
    """
    InputValidator.validate_required_fields(event, ["bucket", "aggregatedKey", "fileName", "jobName"], "link input")
    aggregated_key = InputValidator.validate_s3_key(event["aggregatedKey"], "aggregatedKey")

    store = ArtifactStore(event["bucket"])
    totals = ScoreTotals.model_validate(store.get_json(aggregated_key))
    evaluation = build_evaluation(event["fileName"], totals, make_evaluation_id(event["jobName"]), aggregated_key)

    try:
        _get_linker().link(event["fileName"], evaluation)
    except Exception:
        helper.log_json("ERROR", "LINK_FAILED_REMOVING_ARTIFACT", aggregatedKey=aggregated_key,
                        evaluationId=evaluation.evaluation_id)
        discard_artifact(store, aggregated_key, evaluationId=evaluation.evaluation_id)
        raise

    return {
        **event,
        "counselorId": evaluation.counselor_id,
        "evaluationId": evaluation.evaluation_id,
        "criteria": evaluation.criteria_rating.value,
    }
