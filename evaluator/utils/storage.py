"""
Evaluation bucket layout and JSON artifact access.

Every artifact key is derivable from the recording's file stem or the
transcription job name:

    records/{fileName}
    transcripts/analytics/{jobName}.json
    transcripts/formatted/formatted_{stem}.json
    results/llmOutput/analysis_{stem}.json
    results/aggregated_{stem}.json
"""

import json
from typing import Any, Callable, Optional

from botocore.exceptions import ClientError

from constants import (
    RECORDINGS_PREFIX, RAW_TRANSCRIPT_PREFIX, FORMATTED_TRANSCRIPT_PREFIX,
    SCORING_OUTPUT_PREFIX, RESULTS_PREFIX,
)
from utils import helper
from utils.aws_clients import get_s3_client
from utils.error_handler import handle_s3_error
from utils.retry_handler import S3RetryWrapper


class StorageLayout:
    """Derives artifact keys from file stems and job names"""

    def __init__(self,
                 recordings_prefix: str = RECORDINGS_PREFIX,
                 raw_transcript_prefix: str = RAW_TRANSCRIPT_PREFIX,
                 formatted_prefix: str = FORMATTED_TRANSCRIPT_PREFIX,
                 scoring_output_prefix: str = SCORING_OUTPUT_PREFIX,
                 results_prefix: str = RESULTS_PREFIX):
        self.recordings_prefix = recordings_prefix
        self.raw_transcript_prefix = raw_transcript_prefix
        self.formatted_prefix = formatted_prefix
        self.scoring_output_prefix = scoring_output_prefix
        self.results_prefix = results_prefix

    def is_recording_key(self, key: str) -> bool:
        return key.startswith(self.recordings_prefix) and len(key) > len(self.recordings_prefix)

    def recording_key(self, file_name: str) -> str:
        return f"{self.recordings_prefix}{file_name}"

    def raw_transcript_key(self, job_name: str) -> str:
        return f"{self.raw_transcript_prefix}{job_name}.json"

    def raw_transcript_output_uri(self, bucket: str) -> str:
        """OutputLocation for the transcription job; the service appends {jobName}.json"""
        return f"s3://{bucket}/{self.raw_transcript_prefix}"

    def formatted_transcript_key(self, stem: str) -> str:
        return f"{self.formatted_prefix}formatted_{stem}.json"

    def scoring_output_key(self, stem: str) -> str:
        return f"{self.scoring_output_prefix}analysis_{stem}.json"

    def aggregated_key(self, stem: str) -> str:
        return f"{self.results_prefix}aggregated_{stem}.json"


class ArtifactStore:
    """JSON get/put/delete against one bucket, with S3 retries"""

    def __init__(self, bucket: str, client=None, sleep: Optional[Callable[[float], None]] = None):
        self.bucket = bucket
        self.s3 = S3RetryWrapper(client or get_s3_client(), sleep=sleep)

    def get_json(self, key: str) -> Any:
        try:
            response = self.s3.get_object(self.bucket, key)
            body = response["Body"].read().decode("utf-8")
        except ClientError as e:
            handle_s3_error(e, self.bucket, key)
        return json.loads(body)

    def put_json(self, key: str, data: Any) -> str:
        payload = json.dumps(data, ensure_ascii=False, indent=2, default=str)
        try:
            self.s3.put_object(
                self.bucket, key, payload.encode("utf-8"),
                ContentType="application/json"
            )
        except ClientError as e:
            handle_s3_error(e, self.bucket, key)
        helper.log_json("INFO", "ARTIFACT_SAVED", bucket=self.bucket, key=key, size=len(payload))
        return key

    def delete(self, key: str) -> None:
        try:
            self.s3.delete_object(self.bucket, key)
        except ClientError as e:
            handle_s3_error(e, self.bucket, key)
        helper.log_json("INFO", "ARTIFACT_DELETED", bucket=self.bucket, key=key)


def discard_artifact(store, key: str, **context) -> bool:
    """
    Best-effort delete used while another error is propagating.
    A failed delete is logged and reported as False, never raised.
    """
    try:
        store.delete(key)
        return True
    except Exception as e:
        helper.log_json("ERROR", "ARTIFACT_CLEANUP_FAILED", key=key,
                        error=f"{type(e).__name__}: {e}", **context)
        return False
