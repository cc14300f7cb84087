"""
Test Generation - Prompt building and generator adapters

Run with: pytest tests/test_generation.py
"""

import asyncio
from unittest.mock import Mock

import pytest

from blueprint_coach.commands import RequestGeneration
from blueprint_coach.contracts import Stage
from blueprint_coach.errors import GenerationUnavailable
from blueprint_coach.utils.generators import HuggingFaceGenerator, TemplateGenerator
from blueprint_coach.utils.prompt_builder import PromptBuildError, build_prompt


def make_request(**overrides):
    fields = dict(
        purpose="awaiting_confirm",
        stage=Stage.TOPIC_2,
        context={
            "stage": "topic_2",
            "stage_label": "Essential Question",
            "outcome": "awaiting_confirm",
            "outputs": {"topic1.value": "Energy shapes communities"},
            "pending": "How might we power our town fairly?",
            "hint": None,
        },
        fallback_text="\"How might we power our town fairly?\" is a strong Essential Question.",
    )
    fields.update(overrides)
    return RequestGeneration(**fields)


# =============================================================================
# Prompt builder
# =============================================================================

def test_prompt_includes_context_and_fallback():
    prompt = build_prompt(make_request())

    assert "Current section: Essential Question." in prompt
    assert "- Big Idea: Energy shapes communities" in prompt
    assert "Draft under discussion: How might we power our town fairly?" in prompt
    assert "keep it or refine it" in prompt
    assert prompt.endswith(
        "Message: \"How might we power our town fairly?\" is a strong Essential Question."
    )
    assert "Coaching hint" not in prompt


def test_prompt_is_deterministic():
    assert build_prompt(make_request()) == build_prompt(make_request())


def test_prompt_requires_fallback_and_context():
    with pytest.raises(PromptBuildError, match="no fallback text"):
        build_prompt(make_request(fallback_text="  "))

    with pytest.raises(PromptBuildError) as excinfo:
        build_prompt(make_request(context={"stage": "topic_2"}))
    assert "stage_label" in str(excinfo.value)
    assert "outcome" in str(excinfo.value)


# =============================================================================
# Generators
# =============================================================================

def test_template_generator_returns_fallback():
    request = make_request()

    assert asyncio.run(TemplateGenerator().generate(request)) == request.fallback_text


def test_huggingface_generator_calls_client():
    client = Mock()
    client.generate.return_value = "  What a thoughtful question! Shall we keep it?  "
    generator = HuggingFaceGenerator(client, max_tokens=80, temperature=0.2)

    text = asyncio.run(generator.generate(make_request()))

    assert text == "What a thoughtful question! Shall we keep it?"
    prompt, max_tokens, temperature = client.generate.call_args[0]
    assert prompt.startswith("You are a project-based learning coach")
    assert (max_tokens, temperature) == (80, 0.2)


def test_huggingface_generator_empty_output_is_unavailable():
    client = Mock()
    client.generate.return_value = "   "

    with pytest.raises(GenerationUnavailable):
        asyncio.run(HuggingFaceGenerator(client).generate(make_request()))


def test_huggingface_generator_bad_request_is_unavailable():
    client = Mock()

    with pytest.raises(GenerationUnavailable):
        asyncio.run(HuggingFaceGenerator(client).generate(make_request(fallback_text="")))
    client.generate.assert_not_called()


def test_huggingface_generator_requires_client():
    with pytest.raises(TypeError, match="generate"):
        HuggingFaceGenerator(object())


# =============================================================================
# HuggingFace client formatting (no model is loaded)
# =============================================================================

@pytest.fixture
def hf_client():
    pytest.importorskip("torch")
    pytest.importorskip("transformers")
    from blueprint_coach.utils import hf_client
    return hf_client


@pytest.mark.parametrize("name,family", [
    ("mistralai/Mixtral-8x7B-Instruct-v0.1", "mixtral"),
    ("mistralai/Mistral-7B-Instruct-v0.2", "mistral"),
    ("meta-llama/Llama-2-7b-chat-hf", "llama"),
    ("HuggingFaceH4/zephyr-7b-beta", "zephyr"),
    ("microsoft/Phi-3-mini-4k-instruct", "phi"),
    ("gpt2", None),
])
def test_model_family(hf_client, name, family):
    assert hf_client.model_family(name) == family


def test_format_prompt_without_chat_template(hf_client):
    client = hf_client.HuggingFaceClient.__new__(hf_client.HuggingFaceClient)
    client.tokenizer = Mock(chat_template=None)

    client.family = "mistral"
    assert client.format_prompt("Hello") == "[INST] Hello [/INST]"

    client.family = None
    assert client.format_prompt("Hello") == "Hello"


def test_format_prompt_prefers_chat_template(hf_client):
    client = hf_client.HuggingFaceClient.__new__(hf_client.HuggingFaceClient)
    client.family = "mistral"
    client.tokenizer = Mock(chat_template="{{ messages }}")
    client.tokenizer.apply_chat_template.return_value = "<s>templated</s>"

    assert client.format_prompt("Hello") == "<s>templated</s>"
    client.tokenizer.apply_chat_template.assert_called_once_with(
        [{"role": "user", "content": "Hello"}], tokenize=False, add_generation_prompt=True
    )
