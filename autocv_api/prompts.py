"""Prompt construction for resume analysis and refinement passes."""

from autocv_api.models import RefinementRequest

SYSTEM_PROMPT = """You are an experienced career consultant and resume editor.
You review resumes, tailor them to job postings, and rewrite them so they are
clear, specific and results-oriented.

Guidelines:
- Only use facts present in the resume - never invent employers, dates or degrees
- Prefer concrete, measurable achievements over generic claims
- Keep the candidate's voice; improve structure and wording"""

OUTPUT_INSTRUCTIONS = """OUTPUT FORMAT (follow strictly):
Respond with exactly one JSON code block fenced as ```json ... ``` and nothing
before or after it. The JSON object must be valid and contain all of these fields:
- "summary": a short career summary (string)
- "skills": key skills (array of strings)
- "strengths": key strengths (array of strings)
- "improvementSuggestions": concrete, actionable suggestions (array of strings)
- "suggestedResumeMarkdown": the full rewritten resume as one markdown string
Inside strings, encode line breaks as \\n and escape double quotes."""


def _job_posting_block(job_posting_text: str) -> str:
    if job_posting_text and job_posting_text.strip():
        return f"JOB POSTING:\n```\n{job_posting_text}\n```"
    return "JOB POSTING: not provided. Give general-purpose improvements."


def build_analysis_prompt(
    resume_text: str,
    job_posting_text: str = "",
    refinement: RefinementRequest | None = None,
) -> str:
    """Build the user message for an analysis or refinement pass."""
    parts = [
        f"RESUME:\n```\n{resume_text}\n```",
        _job_posting_block(job_posting_text),
    ]

    if refinement is None:
        parts.append(
            "TASK: Analyze the resume against the job posting and rewrite it so the "
            "candidate is as strong a match as the facts allow."
        )
    else:
        if refinement.previous_output:
            parts.append(f"PREVIOUS ANALYSIS:\n```\n{refinement.previous_output}\n```")
        parts.append(
            "TASK: Regenerate the full analysis, applying the user's refinement request "
            "first and foremost.\n"
            f'- Section to change: "{refinement.target_section}"\n'
            f'- Requested change: "{refinement.user_instruction}"\n'
            "Other fields may be updated when the change affects them."
        )

    parts.append(OUTPUT_INSTRUCTIONS)
    return "\n\n".join(parts)


def build_messages(
    resume_text: str,
    job_posting_text: str = "",
    refinement: RefinementRequest | None = None,
) -> list[dict[str, str]]:
    """Build the chat-completions message list for one generation pass."""
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {
            "role": "user",
            "content": build_analysis_prompt(resume_text, job_posting_text, refinement),
        },
    ]
