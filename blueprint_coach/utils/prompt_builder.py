"""
Prompt Builder - Turn a generation request into model prompt text

Responsibilities:
- Validate the generation context carried by a RequestGeneration command
- Render a deterministic instruction prompt for the coaching model

NOT responsible for:
- Model calls (generation adapters)
- Deciding what happens next (state machine)

Design principles:
- Fail-fast validation (no partial builds)
- Same request -> same prompt text
- The deterministic fallback text is always included, so the model
  rephrases a known-correct message rather than inventing the next step
"""

import logging
from typing import Any, Dict

from blueprint_coach.commands import RequestGeneration

logger = logging.getLogger(__name__)

OUTPUT_LABELS = {
    "topic1.value": "Big Idea",
    "topic2.value": "Essential Question",
    "topic3.value": "Challenge",
    "journey.value": "Learning Journey",
    "deliverables.value": "Deliverables",
}

PURPOSE_GUIDANCE = {
    "awaiting_confirm": "Acknowledge the teacher's draft warmly and ask whether to keep it or refine it.",
    "awaiting_refine": "Encourage the teacher and give one concrete suggestion to strengthen the draft.",
    "reprompt": "Invite the teacher to try again with a fresh idea.",
    "committed": "Celebrate briefly, then introduce the next step.",
    "forced_commit": "Reassure the teacher the draft is saved, then introduce the next step.",
    "composite_ready": "Present the assembled section and ask the teacher to confirm it.",
    "jumped": "Introduce the section the teacher moved to.",
    "rolled_back": "Explain kindly why we returned to an earlier section.",
}

REQUIRED_CONTEXT_KEYS = ("stage", "stage_label", "outcome")


class PromptBuildError(Exception):
    """Raised when a prompt cannot be built from an incomplete request"""
    pass


def build_prompt(request: RequestGeneration) -> str:
    """
    Build the coaching prompt for a generation request.

    Args:
        request: Side-effect command emitted by the state machine

    Returns:
        str: Plain-text prompt (formatting for the model is applied by the client)

    Raises:
        PromptBuildError: If the request lacks fallback text or context keys
    """
    if not request.fallback_text.strip():
        raise PromptBuildError(f"Request '{request.purpose}' has no fallback text")
    context: Dict[str, Any] = request.context or {}
    missing = [k for k in REQUIRED_CONTEXT_KEYS if k not in context]
    if missing:
        raise PromptBuildError(f"Request '{request.purpose}' context missing {missing}")

    lines = [
        "You are a project-based learning coach helping a teacher design a project blueprint.",
        f"Current section: {context['stage_label']}.",
    ]

    outputs = context.get("outputs") or {}
    if outputs:
        lines.append("Confirmed so far:")
        for key, value in outputs.items():
            lines.append(f"- {OUTPUT_LABELS.get(key, key)}: {value}")

    if context.get("pending"):
        lines.append(f"Draft under discussion: {context['pending']}")
    if context.get("hint"):
        lines.append(f"Coaching hint: {context['hint']}")

    guidance = PURPOSE_GUIDANCE.get(request.purpose, "Respond helpfully and keep the teacher moving forward.")
    lines.extend([
        "",
        f"Task: {guidance}",
        "Rewrite the message below in a warm, concise voice (at most three sentences).",
        "Keep every question and instruction it contains. Do not add new steps.",
        "",
        f"Message: {request.fallback_text}",
    ])

    prompt = "\n".join(lines)
    logger.debug(f"Built prompt for '{request.purpose}' ({len(prompt)} chars)")
    return prompt
