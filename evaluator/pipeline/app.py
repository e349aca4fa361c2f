"""
Evaluation pipeline driver.

Runs one recording through every stage in-process:

    transcription -> formatting -> scoring -> aggregation -> linking

Each job is independent; run_many drives several on a thread pool. The only
suspension point is the orchestrator's clock-driven wait. A job that fails at
any stage is marked FAILED with the stage in its failure reason, and no
Evaluation is left behind.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional

from aggregate_scores.app import RatingThresholds, aggregate
from format_transcript.app import format_transcript
from link_counselor.app import CounselorRecordLinker, build_evaluation, make_evaluation_id
from link_counselor.repository import DynamoDBCounselorRepository
from models import CounselorProfile, Evaluation, Job, JobStatus
from rubric import RubricDefinition, load_rubric
from score_transcript.app import RubricScorer, scoring_output_document
from transcription.orchestrator import TranscriptionJobOrchestrator
from transcription.service import TranscribeCallAnalyticsService
from utils import helper
from utils.error_handler import EvaluatorError, JobTimeoutError
from utils.job_store import JobStatusTable
from utils.storage import ArtifactStore, StorageLayout, discard_artifact
from constants import *

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    source_key: str
    job: Optional[Job] = None
    evaluation: Optional[Evaluation] = None
    profile: Optional[CounselorProfile] = None
    stage: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.evaluation is not None and self.error is None


class EvaluationPipeline:
    def __init__(self, orchestrator: TranscriptionJobOrchestrator, store: ArtifactStore,
                 scorer: RubricScorer, linker: CounselorRecordLinker,
                 rubric: Optional[RubricDefinition] = None, layout: Optional[StorageLayout] = None,
                 multiplier: int = SCORE_MULTIPLIER, thresholds: Optional[RatingThresholds] = None):
        self.orchestrator = orchestrator
        self.store = store
        self.scorer = scorer
        self.linker = linker
        self.rubric = rubric or load_rubric()
        self.layout = layout or StorageLayout()
        self.multiplier = multiplier
        self.thresholds = thresholds

    @classmethod
    def from_environment(cls, bucket: str = EVALUATION_BUCKET) -> "EvaluationPipeline":
        """Wire the pipeline to the configured AWS resources"""
        rubric = load_rubric()
        return cls(
            orchestrator=TranscriptionJobOrchestrator(TranscribeCallAnalyticsService(), status_store=JobStatusTable()),
            store=ArtifactStore(bucket),
            scorer=RubricScorer(rubric),
            linker=CounselorRecordLinker(DynamoDBCounselorRepository()),
            rubric=rubric,
        )

    def _check_deadline(self, job: Job, stage: str):
        elapsed = self.orchestrator.clock.now() - job.started_at
        if elapsed > self.orchestrator.job_timeout:
            raise JobTimeoutError(
                f"Job exceeded timeout of {self.orchestrator.job_timeout}s before {stage}",
                details={"jobName": job.job_name, "elapsed": round(elapsed, 1)}
            )

    def run(self, source_key: str) -> PipelineResult:
        """Evaluate one recording already stored under the recordings prefix"""
        job = self.orchestrator.submit(source_key, bucket=self.store.bucket)
        job = self.orchestrator.run_until_terminal(job)
        if job.status != JobStatus.COMPLETED:
            return PipelineResult(source_key=source_key, job=job, stage="transcription", error=job.failure_reason)

        stem = job.file_stem
        stage = "formatting"
        try:
            self._check_deadline(job, stage)
            transcript = format_transcript(self.store.get_json(job.transcript_key))
            self.store.put_json(self.layout.formatted_transcript_key(stem), transcript.model_dump(by_alias=True))

            stage = "scoring"
            self._check_deadline(job, stage)
            results = self.scorer.score(transcript, self.rubric, job_name=job.job_name)
            result_key = self.layout.scoring_output_key(stem)
            self.store.put_json(result_key, scoring_output_document(results))

            stage = "aggregation"
            totals = aggregate(results, self.rubric, self.multiplier, self.thresholds)
            aggregated_key = self.layout.aggregated_key(stem)
            self.store.put_json(aggregated_key, totals.model_dump(by_alias=True, mode="json"))

            stage = "linking"
            evaluation = build_evaluation(job.file_name, totals, make_evaluation_id(job.job_name), aggregated_key)
            try:
                self._check_deadline(job, stage)
                profile = self.linker.link(job.file_name, evaluation)
            except Exception:
                discard_artifact(self.store, aggregated_key, jobName=job.job_name)
                raise

        except EvaluatorError as e:
            job = self.orchestrator.fail(job, f"{stage}: {e.message}")
            return PipelineResult(source_key=source_key, job=job, stage=stage, error=e.message)
        except Exception as e:
            self.orchestrator.fail(job, f"{stage}: {type(e).__name__}: {e}")
            raise

        helper.log_json("INFO", "PIPELINE_COMPLETED",
                        jobName=job.job_name,
                        counselorId=evaluation.counselor_id,
                        evaluationId=evaluation.evaluation_id,
                        percentageScore=evaluation.display_percentage,
                        criteria=evaluation.criteria_rating.value)
        return PipelineResult(source_key=source_key, job=job, evaluation=evaluation, profile=profile)

    def run_many(self, source_keys: List[str], max_workers: int = 4) -> List[PipelineResult]:
        """Evaluate independent recordings concurrently; results follow input order"""
        with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
            futures = [executor.submit(self.run, key) for key in source_keys]
            results = []
            for key, future in zip(source_keys, futures):
                try:
                    results.append(future.result())
                except Exception as e:
                    logger.exception("Pipeline crashed for %s", key)
                    results.append(PipelineResult(source_key=key, error=f"{type(e).__name__}: {e}"))
            return results

    def cancel(self):
        self.orchestrator.cancel()
