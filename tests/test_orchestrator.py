#!/usr/bin/env python3
"""
Unit tests for the transcription job orchestrator and the Transcribe wrapper
"""

import unittest
from unittest.mock import Mock

from botocore.exceptions import ClientError, EndpointConnectionError

from fakes import FakeClock, ScriptedTranscribeService, InMemoryJobStatusStore, submit_failure

from models import JobStatus
from transcription.orchestrator import TranscriptionJobOrchestrator
from transcription.service import TranscribeCallAnalyticsService, make_job_name, MAX_JOB_NAME_LENGTH
from utils.error_handler import (
    BusinessLogicError, ExternalServiceError, TransientPollError, TranscriptionFailed
)

SOURCE_KEY = "records/John_Smith_20230615.wav"
START = 1000.0


def client_error(code, status=400, operation='GetCallAnalyticsJob'):
    return ClientError(
        error_response={'Error': {'Code': code, 'Message': code}, 'ResponseMetadata': {'HTTPStatusCode': status}},
        operation_name=operation
    )


class OrchestratorTestCase(unittest.TestCase):

    def make(self, statuses=("COMPLETED",), submit_error=None, **kwargs):
        self.clock = FakeClock(start=START)
        self.service = ScriptedTranscribeService(statuses, submit_error=submit_error)
        self.status_store = InMemoryJobStatusStore()
        kwargs.setdefault("poll_interval", 30)
        kwargs.setdefault("max_attempts", 60)
        kwargs.setdefault("job_timeout", 1800)
        return TranscriptionJobOrchestrator(self.service, clock=self.clock,
                                            status_store=self.status_store, **kwargs)


class TestSubmit(OrchestratorTestCase):

    def test_submit_moves_job_to_polling(self):
        orchestrator = self.make()
        job = orchestrator.submit(SOURCE_KEY, bucket="qa-bucket")

        self.assertEqual(job.status, JobStatus.POLLING)
        self.assertEqual(job.job_name, "John_Smith_20230615-1000000")
        self.assertEqual(job.file_name, "John_Smith_20230615.wav")
        self.assertEqual(job.started_at, START)
        self.assertEqual(job.next_check_at, START)
        self.assertEqual(job.attempts, 0)
        self.assertEqual(self.service.submitted, [(job.job_name, "qa-bucket", SOURCE_KEY)])
        self.assertEqual(self.status_store.statuses(), ["STARTED", "POLLING"])

    def test_explicit_job_name_is_used(self):
        orchestrator = self.make()
        job = orchestrator.submit(SOURCE_KEY, bucket="qa-bucket", job_name="replayed-job")
        self.assertEqual(job.job_name, "replayed-job")

    def test_submit_failure_returns_failed_job(self):
        orchestrator = self.make(submit_error=submit_failure("BadRequestException: media format not supported"))
        job = orchestrator.submit(SOURCE_KEY, bucket="qa-bucket")

        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.failure_reason, "BadRequestException: media format not supported")
        self.assertEqual(self.status_store.statuses(), ["STARTED", "FAILED"])

        # nothing left to poll
        self.assertIs(orchestrator.run_until_terminal(job), job)
        self.assertEqual(self.service.status_calls, 0)


class TestPolling(OrchestratorTestCase):

    def test_completes_after_two_pending_checks(self):
        orchestrator = self.make(["IN_PROGRESS", "IN_PROGRESS", "COMPLETED"])
        job = orchestrator.run_until_terminal(orchestrator.submit(SOURCE_KEY, bucket="qa-bucket"))

        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.attempts, 3)
        self.assertEqual(job.transcript_key, f"transcripts/analytics/{job.job_name}.json")
        self.assertIsNone(job.failure_reason)
        self.assertEqual(self.service.status_calls, 3)
        self.assertEqual(self.clock.waits, [30, 30])
        self.assertEqual(self.status_store.statuses(), ["STARTED", "POLLING", "COMPLETED"])

    def test_queued_is_treated_as_pending(self):
        orchestrator = self.make(["QUEUED", "COMPLETED"])
        job = orchestrator.run_until_terminal(orchestrator.submit(SOURCE_KEY, bucket="qa-bucket"))
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.attempts, 2)

    def test_failed_job_carries_service_reason(self):
        orchestrator = self.make(["IN_PROGRESS", ("FAILED", "The media file is corrupt.")])
        job = orchestrator.run_until_terminal(orchestrator.submit(SOURCE_KEY, bucket="qa-bucket"))

        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.failure_reason, "The media file is corrupt.")
        self.assertEqual(job.attempts, 2)
        self.assertIsNone(job.transcript_key)

    def test_failed_without_reason_gets_default(self):
        orchestrator = self.make([("FAILED", None)])
        job = orchestrator.run_until_terminal(orchestrator.submit(SOURCE_KEY, bucket="qa-bucket"))
        self.assertEqual(job.failure_reason, "Transcription job failed")

    def test_max_attempts_bounds_status_queries(self):
        orchestrator = self.make(["IN_PROGRESS"], max_attempts=3)
        job = orchestrator.run_until_terminal(orchestrator.submit(SOURCE_KEY, bucket="qa-bucket"))

        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertIn("Exceeded 3 status checks", job.failure_reason)
        self.assertEqual(self.service.status_calls, 3)

    def test_transient_error_spends_an_attempt_and_retries(self):
        orchestrator = self.make([TransientPollError("Rate exceeded"), "COMPLETED"])
        job = orchestrator.run_until_terminal(orchestrator.submit(SOURCE_KEY, bucket="qa-bucket"))

        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.attempts, 2)
        self.assertEqual(self.clock.waits, [30])

    def test_transient_errors_still_bounded_by_max_attempts(self):
        orchestrator = self.make([TransientPollError("Rate exceeded")], max_attempts=2)
        job = orchestrator.run_until_terminal(orchestrator.submit(SOURCE_KEY, bucket="qa-bucket"))

        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(self.service.status_calls, 2)

    def test_permanent_status_error_fails_job(self):
        orchestrator = self.make([ExternalServiceError("Job not found", service="transcribe")])
        job = orchestrator.run_until_terminal(orchestrator.submit(SOURCE_KEY, bucket="qa-bucket"))

        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.attempts, 1)
        self.assertIn("Job not found", job.failure_reason)

    def test_timeout_fails_job(self):
        orchestrator = self.make(["IN_PROGRESS"], job_timeout=100)
        job = orchestrator.run_until_terminal(orchestrator.submit(SOURCE_KEY, bucket="qa-bucket"))

        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertIn("timeout", job.failure_reason)
        self.assertEqual(self.service.status_calls, 4)
        self.assertEqual(self.clock.waits, [30, 30, 30, 10])
        self.assertLessEqual(self.clock.now() - START, 100)

    def test_cancel_fails_pending_job(self):
        orchestrator = self.make(["IN_PROGRESS"])
        job = orchestrator.submit(SOURCE_KEY, bucket="qa-bucket")
        orchestrator.cancel()

        job = orchestrator.run_until_terminal(job)

        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.failure_reason, "Cancelled")
        self.assertEqual(self.service.status_calls, 0)


class TestAdvance(OrchestratorTestCase):

    def test_check_not_due_returns_job_unchanged(self):
        orchestrator = self.make(["IN_PROGRESS"])
        job = orchestrator.advance(orchestrator.submit(SOURCE_KEY, bucket="qa-bucket"))

        self.assertEqual(job.attempts, 1)
        self.assertEqual(job.next_check_at, START + 30)

        again = orchestrator.advance(job)
        self.assertEqual(again, job)
        self.assertEqual(self.service.status_calls, 1)

        self.clock.advance(30)
        self.assertEqual(orchestrator.advance(job).attempts, 2)

    def test_terminal_job_is_not_queried(self):
        orchestrator = self.make()
        job = orchestrator.run_until_terminal(orchestrator.submit(SOURCE_KEY, bucket="qa-bucket"))

        self.assertIs(orchestrator.advance(job), job)
        self.assertEqual(self.service.status_calls, 1)

    def test_unsubmitted_job_is_rejected(self):
        orchestrator = self.make()
        job = orchestrator.submit(SOURCE_KEY, bucket="qa-bucket").model_copy(update={"status": JobStatus.STARTED})

        with self.assertRaises(BusinessLogicError):
            orchestrator.advance(job)

    def test_advance_past_timeout_fails_without_query(self):
        orchestrator = self.make(["IN_PROGRESS"], job_timeout=60)
        job = orchestrator.submit(SOURCE_KEY, bucket="qa-bucket")
        self.clock.advance(61)

        job = orchestrator.advance(job)

        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(self.service.status_calls, 0)


class TestFail(OrchestratorTestCase):

    def test_downstream_failure_overrides_completed_status(self):
        orchestrator = self.make()
        job = orchestrator.run_until_terminal(orchestrator.submit(SOURCE_KEY, bucket="qa-bucket"))

        failed = orchestrator.fail(job, "scoring: output failed validation")

        self.assertEqual(failed.status, JobStatus.FAILED)
        self.assertEqual(failed.transcript_key, job.transcript_key)
        self.assertEqual(self.status_store.records[-1], (job.job_name, "FAILED", True))

    def test_failed_job_is_not_failed_twice(self):
        orchestrator = self.make([("FAILED", "bad audio")])
        job = orchestrator.run_until_terminal(orchestrator.submit(SOURCE_KEY, bucket="qa-bucket"))
        count = len(self.status_store.records)

        self.assertIs(orchestrator.fail(job, "again"), job)
        self.assertEqual(len(self.status_store.records), count)
        self.assertEqual(job.failure_reason, "bad audio")


class TestJobName(unittest.TestCase):

    def test_unsafe_characters_are_replaced(self):
        self.assertEqual(make_job_name("John Smith (1)", 5), "John_Smith_1-5")

    def test_empty_stem_falls_back(self):
        self.assertEqual(make_job_name("***", 7), "recording-7")

    def test_length_is_capped(self):
        name = make_job_name("a" * 300, 1700000000000)
        self.assertEqual(len(name), MAX_JOB_NAME_LENGTH)
        self.assertTrue(name.endswith("-1700000000000"))


class TestTranscribeService(unittest.TestCase):

    def setUp(self):
        self.client = Mock()
        self.sleep = Mock()
        self.service = TranscribeCallAnalyticsService(
            client=self.client, role_arn="arn:aws:iam::123456789012:role/transcribe", sleep=self.sleep
        )

    def test_start_job_request_shape(self):
        self.service.start_job("job-1", "qa-bucket", SOURCE_KEY)

        kwargs = self.client.start_call_analytics_job.call_args.kwargs
        self.assertEqual(kwargs["CallAnalyticsJobName"], "job-1")
        self.assertEqual(kwargs["Media"], {"MediaFileUri": f"s3://qa-bucket/{SOURCE_KEY}"})
        self.assertEqual(kwargs["OutputLocation"], "s3://qa-bucket/transcripts/analytics/")
        self.assertEqual(kwargs["DataAccessRoleArn"], "arn:aws:iam::123456789012:role/transcribe")
        self.assertEqual(kwargs["Settings"]["LanguageOptions"], ["en-US"])
        roles = {c["ChannelId"]: c["ParticipantRole"] for c in kwargs["ChannelDefinitions"]}
        self.assertEqual(roles, {1: "AGENT", 0: "CUSTOMER"})

    def test_start_job_retries_throttling(self):
        self.client.start_call_analytics_job.side_effect = [client_error("LimitExceededException"), {}]

        self.service.start_job("job-1", "qa-bucket", SOURCE_KEY)

        self.assertEqual(self.client.start_call_analytics_job.call_count, 2)
        self.sleep.assert_called_once()

    def test_start_job_rejection_raises_transcription_failed(self):
        self.client.start_call_analytics_job.side_effect = client_error("BadRequestException")

        with self.assertRaises(TranscriptionFailed) as ctx:
            self.service.start_job("job-1", "qa-bucket", SOURCE_KEY)

        self.assertIn("BadRequestException", ctx.exception.failure_reason)
        self.client.start_call_analytics_job.assert_called_once()

    def test_get_status(self):
        self.client.get_call_analytics_job.return_value = {
            "CallAnalyticsJob": {"CallAnalyticsJobStatus": "FAILED", "FailureReason": "Invalid sample rate"}
        }
        self.assertEqual(self.service.get_status("job-1"), ("FAILED", "Invalid sample rate"))
        self.client.get_call_analytics_job.assert_called_once_with(CallAnalyticsJobName="job-1")

    def test_get_status_throttling_is_transient(self):
        self.client.get_call_analytics_job.side_effect = client_error("ThrottlingException")
        with self.assertRaises(TransientPollError):
            self.service.get_status("job-1")

    def test_get_status_connection_error_is_transient(self):
        self.client.get_call_analytics_job.side_effect = EndpointConnectionError(endpoint_url="https://transcribe")
        with self.assertRaises(TransientPollError):
            self.service.get_status("job-1")

    def test_get_status_not_found_is_permanent(self):
        self.client.get_call_analytics_job.side_effect = client_error("NotFoundException")
        with self.assertRaises(ExternalServiceError) as ctx:
            self.service.get_status("job-1")
        self.assertNotIsInstance(ctx.exception, TransientPollError)


if __name__ == '__main__':
    unittest.main()
