"""
Per-phase prompt templates.

The agent definition file supplies each specialist's instructions; these
templates only carry the session-specific context for one invocation.
"""

DISCOVERY_PROMPT = """\
Build request from the user:
{request}

Decide whether the request is specific enough to build. If it is, reply with
a line containing only DISCOVERY_COMPLETE followed by a refined brief. If it is
not, reply with a line containing only DISCOVERY_QUESTIONS followed by a
bulleted list of the questions you need answered.
"""

DISCOVERY_FOLLOWUP = """\
Build request from the user:
{request}

Discovery so far:
{transcript}

Round {round} of {max_rounds}. Either finish with DISCOVERY_COMPLETE and a
refined brief, or ask remaining questions after DISCOVERY_QUESTIONS.
"""

DISCOVERY_FINAL = """\
Build request from the user:
{request}

Discovery so far:
{transcript}

This is the final discovery round. You MUST reply with a line containing only
DISCOVERY_COMPLETE followed by the refined brief. Resolve any remaining
ambiguity with reasonable, explicitly stated assumptions.
"""

NO_ANSWER = "(no answer; resolve with a reasonable, explicitly stated assumption)"

ANALYST_PROMPT = """\
Refined build brief:
{brief}

Produce the project brief with PROJECT_NAME, LANGUAGE, DATABASE, FRONTEND,
SCOPE and a COMPONENTS list.
"""

ARCHITECT_PROMPT = """\
Project brief:
{brief_text}
Begin architecture design in {project_dir}.
"""

TEST_WRITER_PROMPT = "Read specs/ in {project_dir} and write failing tests. Begin."

DEVELOPER_PROMPT = (
    "Read the tests and specs/ in {project_dir}. Implement until all tests pass. Begin."
)

DEVELOPER_RETRY_PROMPT = """\
Read the tests and specs/ in {project_dir}.
The previous iteration was rejected with this feedback:
{feedback}

Fix the issues, keep all tests passing. Begin.
"""

QA_PROMPT = """\
Verify the build in {project_dir}: run the full test suite and check the
implementation against specs/. End your reply with exactly one line:
VERIFICATION: PASS
or
VERIFICATION: FAIL | <reason>
"""

REVIEWER_PROMPT = """\
Review the code in {project_dir} for correctness, security and adherence to
specs/. End your reply with exactly one line:
REVIEW: APPROVED
or
REVIEW: CHANGES_REQUESTED | <feedback>
"""

DELIVERY_PROMPT = (
    "Create docs and skill file for {project_name} in {project_dir}. "
    "Skills dir: {skills_dir}."
)


def format_transcript(rounds: list[dict]) -> str:
    """Render discovery questions and answers for the next round."""
    parts = []
    for number, entry in enumerate(rounds, start=1):
        parts.append(f"Round {number} questions:")
        parts.extend(f"- {question}" for question in entry.get("questions", []))
        parts.append(f"Answer: {entry.get('answer') or NO_ANSWER}")
    return "\n".join(parts)
