"""
Transcription job orchestrator.

    STARTED --submit ok--------------------------> POLLING (first check due now)
    STARTED --submit failed----------------------> FAILED
    POLLING --QUEUED/IN_PROGRESS-----------------> POLLING (next check in poll_interval)
    POLLING --COMPLETED--------------------------> COMPLETED (transcriptKey set)
    POLLING --FAILED / attempts > max_attempts---> FAILED (failureReason set)
    POLLING --now - startedAt > job_timeout------> FAILED

A transient status-query error keeps the job in POLLING but spends one
attempt. Every transition returns a new Job and is written to the status
store.
"""
import threading
from typing import Optional

from constants import EVALUATION_BUCKET, POLL_INTERVAL_SECONDS, MAX_POLL_ATTEMPTS, JOB_TIMEOUT_SECONDS
from models import Job, JobStatus, file_stem
from transcription.service import make_job_name
from utils import helper
from utils.clock import SystemClock
from utils.error_handler import BusinessLogicError, ExternalServiceError, TransientPollError, TranscriptionFailed
from utils.storage import StorageLayout

PENDING_STATUSES = ("QUEUED", "IN_PROGRESS")


class TranscriptionJobOrchestrator:
    def __init__(self, service, clock=None, status_store=None, layout: Optional[StorageLayout] = None,
                 poll_interval: float = POLL_INTERVAL_SECONDS, max_attempts: int = MAX_POLL_ATTEMPTS,
                 job_timeout: float = JOB_TIMEOUT_SECONDS):
        self.service = service
        self.clock = clock or SystemClock()
        self.status_store = status_store
        self.layout = layout or StorageLayout()
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.job_timeout = job_timeout
        self._cancelled = threading.Event()

    def submit(self, source_key: str, bucket: str = EVALUATION_BUCKET, job_name: Optional[str] = None) -> Job:
        """Start transcription for one recording. The returned Job carries the job name."""
        now = self.clock.now()
        file_name = source_key.rsplit("/", 1)[-1]
        job = Job(
            job_name=job_name or make_job_name(file_stem(file_name), int(now * 1000)),
            source_key=source_key,
            bucket=bucket,
            file_name=file_name,
            status=JobStatus.STARTED,
            started_at=now,
        )
        self._record(job)

        try:
            self.service.start_job(job.job_name, bucket, source_key)
        except TranscriptionFailed as e:
            return self.fail(job, e.failure_reason)

        job = job.model_copy(update={"status": JobStatus.POLLING, "next_check_at": now})
        self._record(job)
        helper.log_json("INFO", "TRANSCRIPTION_JOB_SUBMITTED", jobName=job.job_name, sourceKey=source_key)
        return job

    def advance(self, job: Job) -> Job:
        """Run at most one status check. Returns the job unchanged when terminal or not yet due."""
        if job.is_terminal:
            return job
        if job.status != JobStatus.POLLING:
            raise BusinessLogicError(f"Job {job.job_name} has not been submitted",
                                     details={"jobName": job.job_name, "status": job.status.value})

        now = self.clock.now()
        if now - job.started_at > self.job_timeout:
            return self.fail(job, f"Job exceeded timeout of {self.job_timeout}s")
        if job.next_check_at is not None and now < job.next_check_at:
            return job

        attempts = job.attempts + 1
        if attempts > self.max_attempts:
            return self.fail(job, f"Exceeded {self.max_attempts} status checks")

        try:
            status, failure_reason = self.service.get_status(job.job_name)
        except TransientPollError as e:
            helper.log_json("WARNING", "TRANSCRIPTION_POLL_TRANSIENT_ERROR",
                            jobName=job.job_name, attempts=attempts, error=str(e))
            return job.model_copy(update={
                "attempts": attempts,
                "next_check_at": now + self.poll_interval,
                "last_error": str(e),
            })
        except ExternalServiceError as e:
            return self.fail(job.model_copy(update={"attempts": attempts}), str(e))

        if status == "COMPLETED":
            job = job.model_copy(update={
                "status": JobStatus.COMPLETED,
                "attempts": attempts,
                "next_check_at": None,
                "transcript_key": self.layout.raw_transcript_key(job.job_name),
            })
            self._record(job)
            helper.log_json("INFO", "TRANSCRIPTION_JOB_COMPLETED", jobName=job.job_name,
                            attempts=attempts, transcriptKey=job.transcript_key)
            return job

        if status == "FAILED":
            return self.fail(job.model_copy(update={"attempts": attempts}),
                             failure_reason or "Transcription job failed")

        if status not in PENDING_STATUSES:
            helper.log_json("WARNING", "TRANSCRIPTION_UNKNOWN_STATUS", jobName=job.job_name, status=status)

        return job.model_copy(update={"attempts": attempts, "next_check_at": now + self.poll_interval})

    def run_until_terminal(self, job: Job) -> Job:
        """Drive the job with clock-driven waits until COMPLETED or FAILED"""
        while not job.is_terminal:
            now = self.clock.now()
            deadline = job.started_at + self.job_timeout
            if now >= deadline:
                return self.fail(job, f"Job exceeded timeout of {self.job_timeout}s")

            due = job.next_check_at if job.next_check_at is not None else now
            delay = min(due, deadline) - now
            if delay > 0 and not self.clock.wait(delay, self._cancelled):
                return self.fail(job, "Cancelled")
            if self._cancelled.is_set():
                return self.fail(job, "Cancelled")

            job = self.advance(job)
        return job

    def fail(self, job: Job, reason: str) -> Job:
        """
        Mark the job FAILED. A COMPLETED job can still fail in a later
        pipeline stage; an already FAILED job is returned unchanged.
        """
        if job.status == JobStatus.FAILED:
            return job
        downstream = job.status == JobStatus.COMPLETED
        job = job.model_copy(update={
            "status": JobStatus.FAILED,
            "failure_reason": reason,
            "next_check_at": None,
        })
        self._record(job, force=downstream)
        helper.log_json("ERROR", "TRANSCRIPTION_JOB_FAILED", jobName=job.job_name,
                        attempts=job.attempts, failureReason=reason)
        return job

    def cancel(self):
        self._cancelled.set()

    def _record(self, job: Job, force: bool = False):
        if self.status_store is not None:
            self.status_store.record(job, force=force)
