"""
Pipeline data models.

Snake_case in Python, camelCase on the wire (Step Functions payloads and S3
artifacts). Dump with model_dump(by_alias=True) when crossing a boundary.
"""
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, computed_field, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrozenCamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------- Transcription job ----------
class JobStatus(str, Enum):
    STARTED = "STARTED"
    POLLING = "POLLING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Job(FrozenCamelModel):
    """One recording's transcription job. Transitions return a new Job."""
    job_name: str
    source_key: str
    bucket: str
    file_name: str
    status: JobStatus = JobStatus.STARTED
    attempts: int = 0
    started_at: float
    next_check_at: Optional[float] = None
    transcript_key: Optional[str] = None
    failure_reason: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def file_stem(self) -> str:
        return file_stem(self.file_name)


def file_stem(file_name: str) -> str:
    """'records/John_Smith_20230615.wav' -> 'John_Smith_20230615'"""
    name = PurePosixPath(file_name or "").name
    return name.rsplit(".", 1)[0] if "." in name else name


# ---------- Transcript ----------
class SpeakerRole(str, Enum):
    COUNSELOR = "COUNSELOR"
    CALLER = "CALLER"


class Utterance(FrozenCamelModel):
    speaker_role: SpeakerRole
    text: str
    start_offset_ms: int
    end_offset_ms: Optional[int] = None
    sentiment: Optional[str] = None


def format_offset(ms: int) -> str:
    """Milliseconds -> MM:SS.mmm"""
    ms = max(0, int(ms))
    minutes, rem = divmod(ms, 60_000)
    seconds, millis = divmod(rem, 1000)
    return f"{minutes:02d}:{seconds:02d}.{millis:03d}"


class Transcript(FrozenCamelModel):
    utterances: List[Utterance]
    summary: str
    sentiment: Dict[str, float] = Field(default_factory=dict)
    issues: List[str] = Field(default_factory=list)
    pii_redacted: bool = False

    def render(self) -> str:
        """Canonical text handed to the scorer, one 'MM:SS.mmm ROLE: text' line per turn"""
        return "\n".join(
            f"{format_offset(u.start_offset_ms)} {u.speaker_role.value}: {u.text}"
            for u in self.utterances
        )


# ---------- Scoring ----------
class CriterionResult(FrozenCamelModel):
    criterion_name: str
    raw_score: StrictInt
    label: str = ""
    observation: str = ""
    evidence: str = ""


class CategoryScore(FrozenCamelModel):
    category_name: str
    raw_score: int
    multiplied_score: int
    max_points: int
    criteria: Dict[str, CriterionResult]


class CriteriaRating(str, Enum):
    MEETS_CRITERIA = "Meets Criteria"
    IMPROVEMENT_NEEDED = "Improvement Needed"
    NOT_AT_CRITERIA = "Not at Criteria"


class ScoreTotals(FrozenCamelModel):
    categories: List[CategoryScore]
    total_raw_score: int
    total_score: int
    max_total: int
    percentage_score: float
    criteria_rating: CriteriaRating


# ---------- Counselor records ----------
class CounselorIdentity(FrozenCamelModel):
    counselor_id: str
    name: str


class Evaluation(FrozenCamelModel):
    counselor_id: str
    counselor_name: str
    evaluation_id: str
    source_file_name: str
    evaluation_date: str
    categories: List[CategoryScore]
    total_score: int
    max_total: int
    percentage_score: float
    criteria_rating: CriteriaRating
    result_key: str

    @computed_field
    @property
    def display_percentage(self) -> float:
        return round(self.percentage_score, 1)

    @model_validator(mode="after")
    def check_totals(self):
        if self.total_score != sum(c.multiplied_score for c in self.categories):
            raise ValueError("totalScore must equal the sum of category scores")
        if self.max_total != sum(c.max_points for c in self.categories):
            raise ValueError("maxTotal must equal the sum of category max points")
        if not 0 <= self.percentage_score <= 100:
            raise ValueError("percentageScore must be within [0, 100]")
        return self


class CounselorProfile(CamelModel):
    counselor_id: str
    name: str
    programs: List[str] = Field(default_factory=list)
    evaluation_history: List[str] = Field(default_factory=list)
    is_active: bool = True
    created_at: str
    updated_at: str


class CounselorRecord(CamelModel):
    """A profile read together with its stored evaluations, newest first"""
    profile: CounselorProfile
    evaluations: List[Dict[str, Any]] = Field(default_factory=list)
    evaluation_count: int = 0
    last_evaluation_date: Optional[str] = None
