"""Prompt templates for reply generation and back-memory summarization."""

SUMMARY_PROMPT = """
You maintain the back memory of a long role-play conversation. Summarize the
conversation below concisely, in at most 2000 characters. The summary is read
by another model, not by a person: write compact bullet points under these
headings and nothing else.

[Story so far]
[Key events]
[Characters and roles]
[Relationship between the user and the character]
""".strip()


SPEAKER_LABELS = {"user": "User", "model": "Character"}


PROFILE_BLOCK = """
### User profile
- Nickname: {nickname}
- Age: {age}
- Gender: {gender}
- Details: {description}
""".strip()


LENGTH_DIRECTIVE = """
## Response length
- Write approximately {target_length} characters. Current multiplier: {multiplier}.
- Reach the target by deepening the scene and expanding actions and dialogue, not by padding.
""".strip()


SUMMARY_BLOCK = """
# Back memory
{summary}
""".strip()


MEMORY_BLOCK_HEADER = "# Long-term memories\n- The following memories were activated by the current conversation."


__all__ = [
    "LENGTH_DIRECTIVE",
    "MEMORY_BLOCK_HEADER",
    "PROFILE_BLOCK",
    "SPEAKER_LABELS",
    "SUMMARY_BLOCK",
    "SUMMARY_PROMPT",
]
