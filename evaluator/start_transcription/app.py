"""
Start Transcription Lambda - Step Functions workflow step
Submits a Transcribe Call Analytics job for one recording
"""
from transcription.orchestrator import TranscriptionJobOrchestrator
from transcription.service import TranscribeCallAnalyticsService
from utils import helper
from utils.error_handler import lambda_error_handler, InputValidator, TranscriptionFailed
from utils.job_store import JobStatusTable
from constants import *

_orchestrator = None


def _get_orchestrator() -> TranscriptionJobOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = TranscriptionJobOrchestrator(
            TranscribeCallAnalyticsService(),
            status_store=JobStatusTable(),
        )
    return _orchestrator


@lambda_error_handler()
def lambda_handler(event, context):
    """
    Submit the transcription job.

    Input:
        - bucket: str
        - key: str (records/{fileName})
        - fileName: str
        - fileNameWithoutExt: str (optional)
        - timestamp: int (optional, ms)

    Output:
        - everything in the input, plus
        - jobName: str
        - jobStatus: str (POLLING)
        - startedAt: float
        - attempts: int
    """
    InputValidator.validate_required_fields(event, ["bucket", "key"], "transcription input")
    bucket = InputValidator.validate_bucket_name(event["bucket"])
    key = InputValidator.validate_s3_key(event["key"])

    job = _get_orchestrator().submit(key, bucket=bucket)
    if job.failure_reason:
        raise TranscriptionFailed(
            f"Transcription job {job.job_name} could not be started",
            failure_reason=job.failure_reason,
            details={"jobName": job.job_name, "key": key}
        )

    helper.log_json("INFO", "START_TRANSCRIPTION_OK", jobName=job.job_name, key=key)
    return {
        **event,
        "jobName": job.job_name,
        "jobStatus": job.status.value,
        "startedAt": job.started_at,
        "attempts": job.attempts,
    }
