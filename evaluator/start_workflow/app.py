"""
Start Workflow Lambda - S3 trigger
Starts one evaluation state machine execution per recording uploaded under records/
"""
import json
import re
import time
from typing import Dict, List, Optional
from urllib.parse import unquote_plus

from botocore.exceptions import ClientError

from models import file_stem
from utils import helper
from utils.aws_clients import AWSClients
from utils.error_handler import lambda_error_handler, ValidationError, ExternalServiceError
from utils.retry_handler import RetryHandler, stepfunctions_retry_config
from utils.storage import StorageLayout
from constants import *

_EXECUTION_NAME_UNSAFE = re.compile(r"[^0-9a-zA-Z_-]+")
MAX_EXECUTION_NAME_LENGTH = 80


def make_execution_name(stem: str, timestamp_ms: int) -> str:
    suffix = f"-{timestamp_ms}"
    safe = _EXECUTION_NAME_UNSAFE.sub("_", stem).strip("_") or "recording"
    return safe[:MAX_EXECUTION_NAME_LENGTH - len(suffix)] + suffix


def parse_s3_records(event: Dict, layout: Optional[StorageLayout] = None) -> List[Dict]:
    """
    (bucket, key, fileName) for each ObjectCreated record under the recordings prefix.

    Keys arrive URL-encoded ('+' for spaces); other prefixes are skipped.
    """
    layout = layout or StorageLayout()
    recordings = []
    for record in event.get("Records") or []:
        s3_info = record.get("s3") or {}
        bucket = (s3_info.get("bucket") or {}).get("name")
        raw_key = (s3_info.get("object") or {}).get("key")
        if not bucket or not raw_key:
            raise ValidationError("S3 record is missing bucket name or object key", details={"record": record})

        key = unquote_plus(raw_key)
        if not layout.is_recording_key(key):
            helper.log_json("INFO", "SKIPPING_NON_RECORDING_KEY", bucket=bucket, key=key)
            continue

        file_name = key.rsplit("/", 1)[-1]
        recordings.append({
            "bucket": bucket,
            "key": key,
            "fileName": file_name,
            "fileNameWithoutExt": file_stem(file_name),
        })
    return recordings


def start_execution(recording: Dict, sfn=None, state_machine_arn: str = STATE_MACHINE_ARN,
                    retry_handler: Optional[RetryHandler] = None, now_ms: Optional[int] = None) -> str:
    sfn = sfn or AWSClients.stepfunctions()
    retry_handler = retry_handler or RetryHandler(stepfunctions_retry_config)
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    execution_name = make_execution_name(recording["fileNameWithoutExt"], timestamp)

    payload = {**recording, "timestamp": timestamp}
    try:
        response = retry_handler.retry_call(
            sfn.start_execution,
            stateMachineArn=state_machine_arn,
            name=execution_name,
            input=json.dumps(payload),
        )
    except ClientError as e:
        raise ExternalServiceError(
            f"Failed to start execution for {recording['key']}: {e}",
            service="stepfunctions",
            details={"key": recording["key"], "executionName": execution_name}
        )

    helper.log_json("INFO", "WORKFLOW_STARTED", executionName=execution_name,
                    key=recording["key"], executionArn=response.get("executionArn"))
    return execution_name


@lambda_error_handler()
def lambda_handler(event, context):
    """
    Input:
        - S3 ObjectCreated event (Records[].s3.bucket.name, Records[].s3.object.key)

    Output:
        - started: list of execution names
        - skipped: int (records outside the recordings prefix)
    """
    if not STATE_MACHINE_ARN:
        raise ValidationError("STATE_MACHINE_ARN is not configured", field="STATE_MACHINE_ARN")

    recordings = parse_s3_records(event)
    started = [start_execution(recording, state_machine_arn=STATE_MACHINE_ARN) for recording in recordings]

    return {
        "started": started,
        "skipped": len(event.get("Records") or []) - len(recordings),
    }
