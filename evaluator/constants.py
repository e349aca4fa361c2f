# evaluator/constants.py
"""
Centralized constants for the Counselor QA evaluation pipeline.
These values are used across multiple modules to maintain consistency.
"""

import os

# AWS Configuration
DEFAULT_REGION = "us-east-1"
AWS_REGION = os.getenv("AWS_REGION", DEFAULT_REGION)

# Model Configuration
DEFAULT_MODEL_ID = "amazon.nova-pro-v1:0"
DEFAULT_LANGUAGE_CODE = "en-US"

# S3 layout (all keys derivable from the recording's file stem or job name)
DEFAULT_RECORDINGS_PREFIX = "records/"
DEFAULT_RAW_TRANSCRIPT_PREFIX = "transcripts/analytics/"
DEFAULT_FORMATTED_TRANSCRIPT_PREFIX = "transcripts/formatted/"
DEFAULT_SCORING_OUTPUT_PREFIX = "results/llmOutput/"
DEFAULT_RESULTS_PREFIX = "results/"

# Workflow timing (mirrors the state machine: 30s wait, 30 minute timeout)
DEFAULT_POLL_INTERVAL_SECONDS = 30
DEFAULT_MAX_POLL_ATTEMPTS = 60
DEFAULT_JOB_TIMEOUT_SECONDS = 1800

# Scoring policy
DEFAULT_SCORE_MULTIPLIER = 4
DEFAULT_MEETS_CRITERIA_THRESHOLD = 80.0
DEFAULT_IMPROVEMENT_NEEDED_THRESHOLD = 70.0
DEFAULT_PROGRAM = "National Hotline Program"


# Required Environment Variables (validated at runtime)
def get_required_env(key: str) -> str:
    """Get required environment variable, fail gracefully during development"""
    value = os.environ.get(key)
    if not value:
        # In production Lambda, these will be set
        if os.environ.get("AWS_LAMBDA_FUNCTION_NAME"):
            raise ValueError(f"Required environment variable {key} not set")
        return f"MISSING_{key}"
    return value


EVALUATION_BUCKET = get_required_env("EVALUATION_BUCKET")
JOB_TABLE = get_required_env("JOB_TABLE")
EVALUATIONS_TABLE = get_required_env("EVALUATIONS_TABLE")
COUNSELOR_PROFILES_TABLE = get_required_env("COUNSELOR_PROFILES_TABLE")

# Optional wiring
STATE_MACHINE_ARN = os.getenv("STATE_MACHINE_ARN", "")
TRANSCRIBE_ROLE_ARN = os.getenv("TRANSCRIBE_ROLE_ARN", "")
RUBRIC_PATH = os.getenv("RUBRIC_PATH", "")

# Environment-driven configuration with defaults
MODEL_ID = os.getenv("MODEL_ID", DEFAULT_MODEL_ID)
LANGUAGE_CODE = os.getenv("LANGUAGE_CODE", DEFAULT_LANGUAGE_CODE)
SCORING_TEMPERATURE = float(os.getenv("SCORING_TEMPERATURE", "0.1"))
SCORING_MAX_TOKENS = int(os.getenv("SCORING_MAX_TOKENS", "4096"))

RECORDINGS_PREFIX = os.getenv("RECORDINGS_PREFIX", DEFAULT_RECORDINGS_PREFIX)
RAW_TRANSCRIPT_PREFIX = os.getenv("RAW_TRANSCRIPT_PREFIX", DEFAULT_RAW_TRANSCRIPT_PREFIX)
FORMATTED_TRANSCRIPT_PREFIX = os.getenv("FORMATTED_TRANSCRIPT_PREFIX", DEFAULT_FORMATTED_TRANSCRIPT_PREFIX)
SCORING_OUTPUT_PREFIX = os.getenv("SCORING_OUTPUT_PREFIX", DEFAULT_SCORING_OUTPUT_PREFIX)
RESULTS_PREFIX = os.getenv("RESULTS_PREFIX", DEFAULT_RESULTS_PREFIX)

POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", str(DEFAULT_POLL_INTERVAL_SECONDS)))
MAX_POLL_ATTEMPTS = int(os.getenv("MAX_POLL_ATTEMPTS", str(DEFAULT_MAX_POLL_ATTEMPTS)))
JOB_TIMEOUT_SECONDS = int(os.getenv("JOB_TIMEOUT_SECONDS", str(DEFAULT_JOB_TIMEOUT_SECONDS)))

# Criteria rating bands are policy: override per deployment, never inline
SCORE_MULTIPLIER = int(os.getenv("SCORE_MULTIPLIER", str(DEFAULT_SCORE_MULTIPLIER)))
MEETS_CRITERIA_THRESHOLD = float(os.getenv("MEETS_CRITERIA_THRESHOLD", str(DEFAULT_MEETS_CRITERIA_THRESHOLD)))
IMPROVEMENT_NEEDED_THRESHOLD = float(
    os.getenv("IMPROVEMENT_NEEDED_THRESHOLD", str(DEFAULT_IMPROVEMENT_NEEDED_THRESHOLD))
)
PROGRAM_NAME = os.getenv("DEFAULT_PROGRAM", DEFAULT_PROGRAM)

# Job records expire from the job table after this many days
JOB_RECORD_TTL_DAYS = int(os.getenv("JOB_RECORD_TTL_DAYS", "90"))
