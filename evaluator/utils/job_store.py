"""
Job status table - one item per transcription job, keyed by jobName.

Written by the orchestrator on every status change and by the state
machine's terminal status step.
"""
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from botocore.exceptions import ClientError

from constants import JOB_TABLE, JOB_RECORD_TTL_DAYS
from models import Job
from utils import helper
from utils.aws_clients import AWSClients
from utils.error_handler import PersistenceError
from utils.retry_handler import DynamoDBRetryWrapper


class JobStatusTable:
    def __init__(self, table_name: str = JOB_TABLE, resource=None,
                 sleep: Optional[Callable[[float], None]] = None):
        self.table = DynamoDBRetryWrapper(table_name, resource or AWSClients.dynamodb_resource(), sleep=sleep)

    def record(self, job: Job, force: bool = False) -> bool:
        """Persist the job's current state"""
        metadata = job.model_dump(by_alias=True, exclude={"job_name", "status"}, exclude_none=True)
        return self.update(job.job_name, job.status.value, metadata, force=force)

    def update(self, job_name: str, status: str, metadata: Optional[Dict] = None, force: bool = False) -> bool:
        """
        Set status plus any metadata fields.

        A COMPLETED job is never moved back to another status unless force is
        set. Returns False when the write was skipped for that reason.
        """
        status_up = status.upper()
        now_iso = datetime.now(timezone.utc).isoformat()
        exp_ts = int((datetime.now(timezone.utc) + timedelta(days=JOB_RECORD_TTL_DAYS)).timestamp())

        set_parts = ["#status = :status", "updatedAt = :u", "expiresAt = :e"]
        names = {"#status": "status"}
        vals = {":status": status_up, ":u": now_iso, ":e": exp_ts}

        for k, v in helper.to_ddb_numbers(metadata or {}).items():
            names[f"#{k}"] = k
            vals[f":{k}"] = v
            set_parts.append(f"#{k} = :{k}")

        kwargs = dict(
            UpdateExpression="SET " + ", ".join(set_parts),
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=vals,
        )
        if status_up != "COMPLETED" and not force:
            vals[":done"] = "COMPLETED"
            kwargs["ConditionExpression"] = "attribute_not_exists(#status) OR #status <> :done"

        try:
            self.table.update_item(Key={"jobName": job_name}, **kwargs)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code == "ConditionalCheckFailedException":
                helper.log_json("WARNING", "JOB_STATUS_ALREADY_COMPLETED", jobName=job_name, status=status_up)
                return False
            raise PersistenceError(
                f"Failed to record status {status_up} for job {job_name}: {e}",
                details={"jobName": job_name, "error_code": code}
            )

        helper.log_json("INFO", "JOB_STATUS_RECORDED", jobName=job_name, status=status_up)
        return True

    def get(self, job_name: str) -> Optional[Dict]:
        item = self.table.get_item(Key={"jobName": job_name}).get("Item")
        return helper.from_ddb_numbers(item) if item else None
