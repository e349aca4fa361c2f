"""
Update Status Lambda - Step Functions workflow step
Records the job's final status in the job table
"""
from utils.error_handler import lambda_error_handler, ValidationError
from utils.job_store import JobStatusTable
from models import JobStatus
from constants import *

_table = None


def _get_table() -> JobStatusTable:
    global _table
    if _table is None:
        _table = JobStatusTable()
    return _table


@lambda_error_handler()
def lambda_handler(event, context):
    """
    Update job status in DynamoDB.

    Input:
        - jobName: str
        - status: str (STARTED|POLLING|COMPLETED|FAILED)
        - metadata: dict (optional additional fields, e.g. failureReason, evaluationId)
        - force: bool (optional, default False)

    Output:
        - success: bool (False when a COMPLETED record was left untouched)
        - status: str
    """
    job_name = event.get("jobName")
    status = event.get("status")
    metadata = event.get("metadata") or {}
    force = bool(event.get("force", False))

    if not job_name:
        raise ValidationError("jobName is required", field="jobName")

    if not status:
        raise ValidationError("status is required", field="status")

    status_up = status.upper()
    if status_up not in JobStatus.__members__:
        raise ValidationError(f"Unknown status '{status}'", field="status",
                              details={"allowed": list(JobStatus.__members__)})

    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object", field="metadata")

    written = _get_table().update(job_name, status_up, metadata, force=force)

    return {
        "success": written,
        "status": status_up
    }
