"""Prompt validation for generation requests.

Validates text prompts before they are queued or sent to a provider.
"""

MAX_PROMPT_LENGTH = 4000


def validate_prompt(prompt: str) -> str:
    """Validate prompt text for image or video generation.

    Args:
        prompt: Text prompt from the storyboard client

    Returns:
        Prompt with surrounding whitespace removed

    Raises:
        ValueError: If prompt is empty, not a string, or exceeds MAX_PROMPT_LENGTH characters
    """
    if not isinstance(prompt, str):
        raise ValueError(f"Prompt must be a string, got {type(prompt).__name__}")

    prompt = prompt.strip()
    if not prompt:
        raise ValueError("Prompt cannot be empty")

    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValueError(
            f"Prompt exceeds maximum length of {MAX_PROMPT_LENGTH} characters (got {len(prompt)})"
        )

    return prompt
