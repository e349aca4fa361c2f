# evaluator/prompts.py
"""
Prompt templates for rubric scoring.

The scorer fills SCORING_PROMPT_TEMPLATE with the rubric, per-criterion score
anchors and the rendered transcript. CORRECTION_PROMPT_TEMPLATE is appended
for the single corrective attempt when the first response fails validation.
"""

SCORING_PROMPT_VERSION = "2026-10-01-a"

SCORING_SYSTEM_MESSAGE = (
    "You are an unbiased, strict hotline QA evaluator. Do not inflate or pad any scores. "
    "Score each rubric item only when the transcript fully meets its definition; otherwise "
    "assign the lower value. Always use the provided tool to submit your scores."
)

SCORING_PROMPT_TEMPLATE = """Evaluate the crisis counselor (COUNSELOR) on this call against the rubric below.

Use the submit_rubric_scores tool. Submit exactly one result for every criterion listed, using the criterion name exactly as written.

For every criterion:
- score: a whole number between 0 and the criterion's maximum points.
- label: "Yes", "Somewhat" or "No".
- observation: one sentence explaining the score and any deduction.
- evidence: the exact transcript line that triggered the score, including its timestamp and speaker (e.g. "00:24.500 COUNSELOR: It's great that you're reaching out."). Use "N/A" when no line applies and give the lowest score.

Strict scoring rules:
1. If the transcript does not include the required behavior, score 0.
2. If it only partially meets the definition, use the middle value.
3. Only award full points on unambiguous, on-point evidence.
4. Use only lines from the transcript below; do not invent or paraphrase evidence.

RUBRIC (category -> criterion -> maximum points):
{rubric_json}

SCORE ANCHORS:
{criterion_guide}

CALL SUMMARY:
{summary}

TRANSCRIPT:
{transcript}"""

CORRECTION_PROMPT_TEMPLATE = """Your previous submission was rejected for these reasons:
{violations}

Submit the complete set of results again with the submit_rubric_scores tool. Include every criterion exactly once, with an integer score within its range."""

# Score anchors for the default hotline rubric (criterion -> guidance)
CRITERION_GUIDE = {
    "Tone": "0 = aggressive, impatient or indifferent; 1 = warm, calm, patient and genuine.",
    "Professional": "0 = slang, inappropriate conversation or off-policy; 1 = appropriate for a crisis counselor.",
    "Conversational Style": "0 = counselor dominates or barely speaks; 1 = balanced back-and-forth matching the caller.",
    "Supportive Initial Statement": (
        "0 = no early reassurance; 1 = within the first few minutes assures the caller they reached "
        "the right place or did the right thing by calling."
    ),
    "Affirmation and Praise": "0 = misses chances to affirm; 1 = quality affirmations whenever opportunities arise.",
    "Reflection of Feelings": (
        "0 = no feeling reflections; 1 = only basic or shallow reflections ('that sounds hard'); "
        "2 = deep reflections that name the feeling and connect it to the caller's story."
    ),
    "Explores Problem(s)": (
        "0 = interrupts, seems disinterested or relies on yes/no questions; "
        "1 = open-ended questions that let the caller fully explain."
    ),
    "Values the Person": "0 = contempt, blame or invalidation; 1 = unconditional positive regard.",
    "Non-Judgmental": "0 = judgement or personal opinions about the caller or people in their life; 1 = none offered.",
    "Clarifies Non-Suicidal Safety": (
        "0 = fails to ask about abuse, self-injury or violence concerns that came up; "
        "1 = asks appropriate clarifying questions (default 1 if no such concern was present)."
    ),
    "Suicide Safety Assessment-SSA Initiation and Completion": (
        "0 = no assessment or a leading one ('you're not suicidal, are you?'); "
        "1 = caller denies suicidality and the counselor does not clarify; "
        "2 = initiates but misses two or more required questions; "
        "3 = initiates but misses one required question; "
        "4 = conversationally asks all required questions ('Are you thinking of ending your life?', "
        "'Have you done something today to end your life?', 'In the last 2 months have you thought about suicide?')."
    ),
    "Exploration of Buffers": (
        "0 = does not explore protective factors; 1 = asks about buffers "
        "(default 1 if there is no suicidal or non-suicidal safety concern)."
    ),
    "Restates then Collaborates Options": (
        "0 = tells the caller what to do without seeking input; "
        "1 = restates the concern and brainstorms options with the caller."
    ),
    "Identifies a Concrete Plan of Safety and Well-being": (
        "0 = no concrete plan; 1 = a plan for right now or for a future crisis; "
        "2 = a plan for both right now and a future crisis."
    ),
    "Appropriate Termination": (
        "0 = hangs up, ends prematurely or omits a closing statement or required follow up; "
        "1 = timely ending with a closing statement and follow up offered."
    ),
    "POP Model - does not rush": (
        "0 = rushes to options and plan before exploring the problem; "
        "1 = explores the problem sufficiently before moving on."
    ),
    "POP Model - does not dwell": (
        "0 = lets the caller ruminate without moving to options and plan; "
        "1 = moves from problem to options and plan smoothly."
    ),
    "Greeting": "0 = incorrect, incomplete or unpleasant greeting; 1 = correct, pleasant and timely greeting.",
}
