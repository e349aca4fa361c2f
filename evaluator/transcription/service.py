"""
Amazon Transcribe Call Analytics wrapper.

Channel 1 carries the counselor (AGENT), channel 0 the caller (CUSTOMER).
Output lands at transcripts/analytics/{jobName}.json.
"""
import re
from typing import Callable, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from constants import TRANSCRIBE_ROLE_ARN, LANGUAGE_CODE
from utils import helper
from utils.aws_clients import get_transcribe_client
from utils.error_handler import ExternalServiceError, TransientPollError, TranscriptionFailed
from utils.retry_handler import RetryHandler, is_transient_error, transcribe_retry_config
from utils.storage import StorageLayout

_JOB_NAME_UNSAFE = re.compile(r"[^0-9a-zA-Z._-]+")
MAX_JOB_NAME_LENGTH = 200


def make_job_name(stem: str, timestamp_ms: int) -> str:
    """'{stem}-{timestampMs}', restricted to characters Transcribe accepts"""
    safe_stem = _JOB_NAME_UNSAFE.sub("_", stem).strip("_") or "recording"
    suffix = f"-{timestamp_ms}"
    return safe_stem[:MAX_JOB_NAME_LENGTH - len(suffix)] + suffix


class TranscribeCallAnalyticsService:
    def __init__(self, client=None, role_arn: str = TRANSCRIBE_ROLE_ARN,
                 language_code: str = LANGUAGE_CODE, layout: Optional[StorageLayout] = None,
                 sleep: Optional[Callable[[float], None]] = None):
        self.client = client or get_transcribe_client()
        self.role_arn = role_arn
        self.language_code = language_code
        self.layout = layout or StorageLayout()
        self.retry_handler = RetryHandler(transcribe_retry_config, sleep=sleep)

    def start_job(self, job_name: str, bucket: str, source_key: str) -> None:
        """Submit the job. Raises TranscriptionFailed once retries are spent."""
        params = {
            "CallAnalyticsJobName": job_name,
            "Media": {"MediaFileUri": f"s3://{bucket}/{source_key}"},
            "OutputLocation": self.layout.raw_transcript_output_uri(bucket),
            "DataAccessRoleArn": self.role_arn,
            "Settings": {
                "LanguageOptions": [self.language_code],
                "Summarization": {"GenerateAbstractiveSummary": True},
            },
            "ChannelDefinitions": [
                {"ChannelId": 1, "ParticipantRole": "AGENT"},
                {"ChannelId": 0, "ParticipantRole": "CUSTOMER"},
            ],
        }
        try:
            self.retry_handler.retry_call(self.client.start_call_analytics_job, **params)
        except (ClientError, BotoCoreError) as e:
            helper.log_json("ERROR", "TRANSCRIPTION_SUBMIT_FAILED", jobName=job_name, sourceKey=source_key, error=str(e))
            raise TranscriptionFailed(
                f"Failed to start transcription job {job_name}: {e}",
                failure_reason=f"Submission failed: {e}",
                details={"jobName": job_name, "sourceKey": source_key}
            )

    def get_status(self, job_name: str) -> Tuple[str, Optional[str]]:
        """
        Returns (CallAnalyticsJobStatus, FailureReason).

        Throttling, 5xx and connection errors raise TransientPollError; the
        caller decides when to check again.
        """
        try:
            response = self.client.get_call_analytics_job(CallAnalyticsJobName=job_name)
        except (ClientError, BotoCoreError) as e:
            if is_transient_error(e, transcribe_retry_config.retryable_errors):
                raise TransientPollError(f"Transient error checking job {job_name}: {e}",
                                         details={"jobName": job_name})
            raise ExternalServiceError(
                f"Failed to check transcription job {job_name}: {e}",
                service="transcribe",
                details={"jobName": job_name}
            )

        job = response.get("CallAnalyticsJob") or {}
        return job.get("CallAnalyticsJobStatus", ""), job.get("FailureReason")
