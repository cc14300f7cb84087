"""
Prompt Template Registry

Deterministic prompt text used by the state machine. Every prompt the
machine emits has a template here, so a session can run end to end
without the generation collaborator. When generation is available the
rendered template doubles as the fallback text for that request.

Template Text:
- TEMPLATE_TEXT maps template IDs to patterns with {placeholder} fields
- render() fills the pattern; missing placeholders raise KeyError
"""

from enum import Enum
from typing import Dict


class PromptTemplateID(str, Enum):
    """
    Template identifiers.

    Naming convention: <SITUATION>_<DETAIL>
    """
    STAGE_INTRO = "stage_intro"
    CONFIRM_HIGH = "confirm_high"
    CONFIRM_MEDIUM = "confirm_medium"
    CONFIRM_SUGGESTION = "confirm_suggestion"
    REFINE_LOW = "refine_low"
    REFINE_REPROMPT = "refine_reprompt"
    REFINE_STILL_PENDING = "refine_still_pending"
    ACCEPTED = "accepted"
    FORCED_ACCEPTED = "forced_accepted"
    MICRO_STEP = "micro_step"
    MICRO_STEP_BACK = "micro_step_back"
    MICRO_STEP_AT_START = "micro_step_at_start"
    SENTINEL_TOO_EARLY = "sentinel_too_early"
    COMPOSITE_CONFIRM = "composite_confirm"
    COMPOSITE_RESTART = "composite_restart"
    JUMP_ACCEPTED = "jump_accepted"
    JUMP_REJECTED = "jump_rejected"
    ROLLBACK = "rollback"
    NOTHING_PENDING = "nothing_pending"
    RESET = "reset"
    COMPLETE = "complete"


TEMPLATE_TEXT: Dict[PromptTemplateID, str] = {
    PromptTemplateID.STAGE_INTRO: "{label}: {prompt}",
    PromptTemplateID.CONFIRM_HIGH: (
        "\"{value}\" is a strong {label}. Shall we lock it in, or would you like to refine it?"
    ),
    PromptTemplateID.CONFIRM_MEDIUM: (
        "\"{value}\" is a good start for your {label}. {hint} "
        "Keep it as is, or refine it?"
    ),
    PromptTemplateID.CONFIRM_SUGGESTION: (
        "Good choice. \"{value}\" works as your {label}. Shall we build on it, or refine it further?"
    ),
    PromptTemplateID.REFINE_LOW: (
        "\"{value}\" is a start. {hint}"
    ),
    PromptTemplateID.REFINE_REPROMPT: (
        "No problem, let's rework your {label}. {prompt}"
    ),
    PromptTemplateID.REFINE_STILL_PENDING: (
        "Let's strengthen \"{value}\" a little before we move on. {hint}"
    ),
    PromptTemplateID.ACCEPTED: (
        "Saved your {label}: \"{value}\"."
    ),
    PromptTemplateID.FORCED_ACCEPTED: (
        "Let's keep moving. I've saved \"{value}\" as your {label}; you can revisit it later."
    ),
    PromptTemplateID.MICRO_STEP: (
        "{group} {number} - {slot}:"
    ),
    PromptTemplateID.MICRO_STEP_BACK: (
        "Going back. {group} {number} - {slot}:"
    ),
    PromptTemplateID.MICRO_STEP_AT_START: (
        "We're already at the first step. {group} {number} - {slot}:"
    ),
    PromptTemplateID.SENTINEL_TOO_EARLY: (
        "Please add at least {min_groups} {group_plural} before finishing. {group} {number} - {slot}:"
    ),
    PromptTemplateID.COMPOSITE_CONFIRM: (
        "Here is your {label}:\n{value}\nDoes this look right?"
    ),
    PromptTemplateID.COMPOSITE_RESTART: (
        "Let's walk through your {label} again from the top. {group} {number} - {slot}:"
    ),
    PromptTemplateID.JUMP_ACCEPTED: (
        "Moving to {label}."
    ),
    PromptTemplateID.JUMP_REJECTED: (
        "{reason}"
    ),
    PromptTemplateID.ROLLBACK: (
        "{reason}. {prompt}"
    ),
    PromptTemplateID.NOTHING_PENDING: (
        "There is nothing waiting for confirmation. {prompt}"
    ),
    PromptTemplateID.RESET: (
        "Starting fresh. {prompt}"
    ),
    PromptTemplateID.COMPLETE: (
        "Your blueprint is complete."
    ),
}


def get_template_text(template_id: str) -> str:
    """
    Get template text pattern for a template ID.

    Args:
        template_id: Template identifier string

    Returns:
        str: Template pattern with {placeholder} fields

    Raises:
        KeyError: If template_id not found in registry
    """
    return TEMPLATE_TEXT[PromptTemplateID(template_id)]


def render(template_id: str, **values) -> str:
    """
    Render a template.

    Args:
        template_id: Template identifier
        **values: Placeholder values

    Returns:
        str: Rendered text with collapsed whitespace
    """
    text = get_template_text(template_id).format(**values)
    # Hints are optional; an empty one leaves a double space behind
    return "\n".join(" ".join(line.split()) for line in text.split("\n"))


def validate_template_id(template_id: str) -> bool:
    """Check if a template ID exists in the registry."""
    try:
        return PromptTemplateID(template_id) in TEMPLATE_TEXT
    except ValueError:
        return False
