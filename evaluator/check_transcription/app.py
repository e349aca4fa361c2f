"""
Check Transcription Lambda - Step Functions workflow step
Runs one status check; the state machine's Wait state spaces the checks
"""
from models import Job, JobStatus
from start_transcription.app import _get_orchestrator
from utils import helper
from utils.error_handler import lambda_error_handler, InputValidator, TranscriptionFailed
from constants import *


@lambda_error_handler()
def lambda_handler(event, context):
    """
    Advance the transcription job by one status check.

    Input:
        - bucket, key, fileName: str
        - jobName: str
        - startedAt: float
        - attempts: int

    Output:
        - everything in the input, plus
        - jobStatus: str (POLLING|COMPLETED)
        - attempts: int
        - transcriptKey: str (when COMPLETED)

    Raises TranscriptionFailed when the job ends FAILED so the state machine
    can route to its failure branch.
    """
    InputValidator.validate_required_fields(event, ["bucket", "key", "jobName", "startedAt"], "status check input")

    job = Job(
        job_name=event["jobName"],
        source_key=event["key"],
        bucket=event["bucket"],
        file_name=event.get("fileName") or event["key"].rsplit("/", 1)[-1],
        status=JobStatus.POLLING,
        attempts=int(event.get("attempts", 0)),
        started_at=float(event["startedAt"]),
    )

    job = _get_orchestrator().advance(job)

    if job.status == JobStatus.FAILED:
        raise TranscriptionFailed(
            f"Transcription job {job.job_name} failed: {job.failure_reason}",
            failure_reason=job.failure_reason,
            details={"jobName": job.job_name, "attempts": job.attempts}
        )

    helper.log_json("INFO", "CHECK_TRANSCRIPTION_OK", jobName=job.job_name,
                    jobStatus=job.status.value, attempts=job.attempts)
    output = {**event, "jobStatus": job.status.value, "attempts": job.attempts}
    if job.transcript_key:
        output["transcriptKey"] = job.transcript_key
    return output
