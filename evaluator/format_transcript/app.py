"""
Format Transcript Lambda - Step Functions workflow step
Normalizes Transcribe Call Analytics output into a counselor/caller conversation
"""
from typing import Any, Dict, List

from models import SpeakerRole, Transcript, Utterance, file_stem
from utils import helper
from utils.error_handler import lambda_error_handler, InputValidator, FormattingError
from utils.storage import ArtifactStore, StorageLayout
from constants import *

# Call Analytics participant roles -> conversation roles
ROLE_MAP = {
    "AGENT": SpeakerRole.COUNSELOR,
    "CUSTOMER": SpeakerRole.CALLER,
}

PII_MARKER = "[PII]"


def _mapping(value) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _summary(raw: Dict[str, Any]) -> str:
    try:
        content = raw["ConversationCharacteristics"]["ContactSummary"]["AutoGenerated"]["OverallSummary"]["Content"]
    except (KeyError, TypeError):
        raise FormattingError("Transcription output has no call summary",
                              details={"field": "ConversationCharacteristics.ContactSummary"})
    if content is None:
        return ""
    if not isinstance(content, str):
        raise FormattingError("Call summary is not text", details={"type": type(content).__name__})
    return content


def _overall_sentiment(raw: Dict[str, Any]) -> Dict[str, float]:
    characteristics = _mapping(raw.get("ConversationCharacteristics"))
    overall = _mapping(_mapping(characteristics.get("Sentiment")).get("OverallSentiment"))
    sentiment = {}
    for participant, score in overall.items():
        role = ROLE_MAP.get(participant)
        if role is not None and isinstance(score, (int, float)) and not isinstance(score, bool):
            sentiment[role.value] = float(score)
    return sentiment


def _issue_snippets(content: str, issues: Any) -> List[str]:
    if not isinstance(issues, list):
        return []
    snippets = []
    for issue in issues:
        offsets = _mapping(_mapping(issue).get("CharacterOffsets"))
        begin, end = offsets.get("Begin"), offsets.get("End")
        if isinstance(begin, int) and isinstance(end, int) and not isinstance(begin, bool) and 0 <= begin < end:
            snippets.append(content[begin:end])
    return snippets


def format_transcript(raw: Dict[str, Any]) -> Transcript:
    """
    Build the canonical Transcript from raw Call Analytics JSON.

    Turn order is kept exactly as transcribed. Raises FormattingError when the
    speaker-turn list or the summary field is missing, or a turn is malformed.
    Sentiment, issues and redaction markers are optional.
    """
    if not isinstance(raw, dict):
        raise FormattingError("Transcription output must be a JSON object")

    turns = raw.get("Transcript")
    if not isinstance(turns, list):
        raise FormattingError("Transcription output has no speaker-turn list", details={"field": "Transcript"})
    if not turns:
        raise FormattingError("Transcription output has no speaker turns", details={"field": "Transcript"})

    summary = _summary(raw)

    utterances = []
    issues = []
    for index, turn in enumerate(turns):
        if not isinstance(turn, dict):
            raise FormattingError(f"Turn {index} is not an object", details={"turn": index})

        participant = turn.get("ParticipantRole")
        role = ROLE_MAP.get(participant)
        if role is None:
            raise FormattingError(f"Turn {index} has unknown participant role '{participant}'",
                                  details={"turn": index, "role": participant})

        content = turn.get("Content")
        if not isinstance(content, str):
            raise FormattingError(f"Turn {index} has no text content", details={"turn": index})

        try:
            start = int(turn.get("BeginOffsetMillis", 0))
            end = turn.get("EndOffsetMillis")
            end = int(end) if end is not None else None
        except (TypeError, ValueError):
            raise FormattingError(f"Turn {index} has invalid offsets", details={"turn": index})

        # optional; dropped unless it is a label string
        sentiment = turn.get("Sentiment")
        if not isinstance(sentiment, str):
            sentiment = None

        utterances.append(Utterance(
            speaker_role=role,
            text=content,
            start_offset_ms=start,
            end_offset_ms=end,
            sentiment=sentiment,
        ))
        issues.extend(_issue_snippets(content, turn.get("IssuesDetected")))

    redacted = _mapping(raw.get("ContentMetadata")).get("Output") == "Redacted" \
        or any(PII_MARKER in u.text for u in utterances)

    return Transcript(
        utterances=utterances,
        summary=summary,
        sentiment=_overall_sentiment(raw),
        issues=issues,
        pii_redacted=redacted,
    )


@lambda_error_handler()
def lambda_handler(event, context):
    """
    Format the raw transcription output and store it.

    Input:
        - bucket: str
        - transcriptKey: str (transcripts/analytics/{jobName}.json)
        - fileName: str

    Output:
        - everything in the input, plus
        - formattedKey: str (transcripts/formatted/formatted_{stem}.json)
        - utteranceCount: int
    """
    InputValidator.validate_required_fields(event, ["bucket", "transcriptKey", "fileName"], "format input")
    transcript_key = InputValidator.validate_s3_key(event["transcriptKey"], "transcriptKey")

    store = ArtifactStore(event["bucket"])
    layout = StorageLayout()

    raw = store.get_json(transcript_key)
    transcript = format_transcript(raw)

    formatted_key = layout.formatted_transcript_key(file_stem(event["fileName"]))
    store.put_json(formatted_key, transcript.model_dump(by_alias=True))

    helper.log_json("INFO", "TRANSCRIPT_FORMATTED",
                    jobName=event.get("jobName"),
                    formattedKey=formatted_key,
                    utterances=len(transcript.utterances),
                    piiRedacted=transcript.pii_redacted)

    return {**event, "formattedKey": formatted_key, "utteranceCount": len(transcript.utterances)}
