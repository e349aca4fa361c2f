#!/usr/bin/env python3
"""
Run the evaluation pipeline locally for recordings already in the bucket.

    python evaluator/tools/evaluate_recordings.py records/John_Smith_20230615.wav --out results.csv
    python evaluator/tools/evaluate_recordings.py John_Smith_20230615.wav Jane_Doe_20230616.wav --workers 2

Configuration comes from the environment (or a .env file): EVALUATION_BUCKET,
TRANSCRIBE_ROLE_ARN, JOB_TABLE, EVALUATIONS_TABLE, COUNSELOR_PROFILES_TABLE.
"""
import argparse
import csv
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

# constants reads the environment at import time
load_dotenv()
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from constants import EVALUATION_BUCKET  # noqa: E402
from pipeline.app import EvaluationPipeline  # noqa: E402
from utils.storage import StorageLayout  # noqa: E402

OUT_FIELDS = ["sourceKey", "jobName", "status", "counselorId", "evaluationId",
              "percentageScore", "criteria", "stage", "error"]


def to_source_key(value: str, layout: StorageLayout) -> str:
    """Accept either a full key or a bare file name under the recordings prefix"""
    return value if layout.is_recording_key(value) else layout.recording_key(value)


def result_row(result) -> dict:
    job = result.job
    evaluation = result.evaluation
    return {
        "sourceKey": result.source_key,
        "jobName": job.job_name if job else "",
        "status": job.status.value if job else "ERROR",
        "counselorId": evaluation.counselor_id if evaluation else "",
        "evaluationId": evaluation.evaluation_id if evaluation else "",
        "percentageScore": evaluation.display_percentage if evaluation else "",
        "criteria": evaluation.criteria_rating.value if evaluation else "",
        "stage": result.stage or "",
        "error": result.error or "",
    }


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Evaluate counseling call recordings against the QA rubric")
    ap.add_argument("recordings", nargs="+", help="Recording keys (records/...) or file names")
    ap.add_argument("--bucket", default=EVALUATION_BUCKET, help="Evaluation bucket")
    ap.add_argument("--workers", type=int, default=4, help="Recordings evaluated concurrently")
    ap.add_argument("--out", default="", help="Optional CSV file for the results")
    args = ap.parse_args(argv)

    if args.bucket.startswith("MISSING_"):
        ap.error("set EVALUATION_BUCKET or pass --bucket")

    layout = StorageLayout()
    keys = [to_source_key(value, layout) for value in args.recordings]

    pipeline = EvaluationPipeline.from_environment(args.bucket)
    signal.signal(signal.SIGINT, lambda *_: pipeline.cancel())

    rows = [result_row(result) for result in pipeline.run_many(keys, max_workers=args.workers)]

    for row in rows:
        summary = f"{row['percentageScore']}% {row['criteria']}" if row["criteria"] else f"{row['stage']}: {row['error']}"
        print(f"{row['sourceKey']} :: {row['status']} -> {summary}")

    if args.out:
        with open(args.out, "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=OUT_FIELDS)
            writer.writeheader()
            writer.writerows(rows)
        print(f"\nWrote {len(rows)} rows to {args.out}")

    return 0 if all(row["criteria"] for row in rows) else 1


if __name__ == "__main__":
    sys.exit(main())
