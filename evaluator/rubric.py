"""
Scoring rubric for hotline counseling calls.

The rubric is loaded once per process and passed explicitly to the scorer and
the aggregator. Category and criterion order is significant: aggregated output
follows it.
"""
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from constants import RUBRIC_PATH


class RubricDefinition(BaseModel):
    """Ordered mapping of category -> (ordered mapping of criterion -> weight)"""
    model_config = ConfigDict(frozen=True)

    categories: Dict[str, Dict[str, int]]

    @field_validator("categories")
    @classmethod
    def validate_weights(cls, v):
        if not v:
            raise ValueError("rubric must have at least one category")
        for category, criteria in v.items():
            if not criteria:
                raise ValueError(f"category '{category}' has no criteria")
            for name, weight in criteria.items():
                if isinstance(weight, bool) or weight <= 0:
                    raise ValueError(f"criterion '{name}' must have a positive integer weight, got {weight}")
        return v

    @model_validator(mode="after")
    def validate_unique_criteria(self):
        seen = set()
        for criteria in self.categories.values():
            for name in criteria:
                if name in seen:
                    raise ValueError(f"criterion '{name}' appears in more than one category")
                seen.add(name)
        return self

    def criterion_weights(self) -> Dict[str, int]:
        """Flat criterion -> weight mapping in rubric order"""
        return {name: weight for criteria in self.categories.values() for name, weight in criteria.items()}

    def criterion_names(self) -> List[str]:
        return list(self.criterion_weights())

    @property
    def total_weight(self) -> int:
        return sum(self.criterion_weights().values())


DEFAULT_RUBRIC = RubricDefinition(categories={
    "RAPPORT SKILLS": {
        "Tone": 1,
        "Professional": 1,
        "Conversational Style": 1,
        "Supportive Initial Statement": 1,
        "Affirmation and Praise": 1,
        "Reflection of Feelings": 2,
        "Explores Problem(s)": 1,
        "Values the Person": 1,
        "Non-Judgmental": 1,
    },
    "COUNSELING SKILLS": {
        "Clarifies Non-Suicidal Safety": 1,
        "Suicide Safety Assessment-SSA Initiation and Completion": 4,
        "Exploration of Buffers": 1,
        "Restates then Collaborates Options": 1,
        "Identifies a Concrete Plan of Safety and Well-being": 2,
        "Appropriate Termination": 1,
    },
    "ORGANIZATIONAL SKILLS": {
        "POP Model - does not rush": 1,
        "POP Model - does not dwell": 1,
    },
    "TECHNICAL SKILLS": {
        "Greeting": 1,
    },
})

_rubric_cache: Dict[str, RubricDefinition] = {}


def load_rubric(path: Optional[str] = None) -> RubricDefinition:
    """
    Load the rubric once per process.

    Reads the JSON file at `path` (or RUBRIC_PATH) when set, otherwise returns
    the default hotline rubric. The file holds {"categories": {...}}.
    """
    source = path if path is not None else RUBRIC_PATH
    cache_key = source or "default"
    if cache_key in _rubric_cache:
        return _rubric_cache[cache_key]

    if source:
        rubric = RubricDefinition.model_validate_json(Path(source).read_text(encoding="utf-8"))
    else:
        rubric = DEFAULT_RUBRIC

    _rubric_cache[cache_key] = rubric
    return rubric
