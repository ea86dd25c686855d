import json

from fakes import FakeBackend, text

from agent_runtime.llm.credentials import CredentialProfile
from agent_runtime.llm.gateway import ModelGateway
from agent_runtime.subagents.registry import SubagentSpec
from agent_runtime.subagents.router import (
    PlannedSubtask,
    auto_select_subagent,
    build_subagent_batch_prompt,
    extract_json_block,
    plan_decomposition,
    select_with_model,
    should_decompose,
    tokenize,
)

SUBAGENTS = [
    SubagentSpec(name="reviewer", description="reviews code for bugs", system_prompt="Review."),
    SubagentSpec(name="writer", description="writes documentation", system_prompt="Write."),
]

LONG_REQUEST = (
    "Research the three most popular Python web frameworks, compare their performance "
    "and then write a short summary document for the team."
)


def _gateway(*responses) -> tuple[ModelGateway, FakeBackend]:
    backend = FakeBackend(list(responses))
    return ModelGateway(backend=backend, fallback_profile=CredentialProfile(id="t", api_key="k")), backend


def test_tokenize_drops_short_tokens_and_stopwords() -> None:
    assert tokenize("Please review THIS code-base for bugs!") == ["review", "code", "base", "bugs"]


def test_keyword_overlap_selects_reviewer() -> None:
    selection = auto_select_subagent("please review this code for bugs", SUBAGENTS)

    assert selection is not None
    assert selection.subagent.name == "reviewer"
    assert selection.score == 2
    assert selection.matched == ["bugs", "code"]


def test_no_overlap_selects_nothing() -> None:
    assert auto_select_subagent("what is the weather like in paris", SUBAGENTS) is None


def test_explicit_name_wins() -> None:
    selection = auto_select_subagent("ask the writer to look at the code bugs", SUBAGENTS)

    assert selection.subagent.name == "writer"
    assert selection.reason == "explicit name"


def test_skip_phrase_disables_routing() -> None:
    assert auto_select_subagent("no subagent please, review this code for bugs", SUBAGENTS) is None


def test_tie_selects_nothing() -> None:
    subagents = [
        SubagentSpec(name="alpha", description="handles parsing errors", system_prompt="a"),
        SubagentSpec(name="beta", description="handles parsing errors", system_prompt="b"),
    ]

    assert auto_select_subagent("fix the parsing errors", subagents) is None


def test_should_decompose_needs_length_and_a_multi_step_marker() -> None:
    assert should_decompose(LONG_REQUEST)
    assert not should_decompose("review and fix")
    assert not should_decompose(
        "Explain in detail why the sky looks blue to people standing on the ground at noon"
    )


def test_plan_decomposition_keeps_valid_tasks_only() -> None:
    plan_json = {
        "decompose": True,
        "reason": "independent parts",
        "tasks": [
            {"title": "Research", "prompt": "Compare frameworks", "subagent": "none"},
            {"title": "Docs", "prompt": "Write the summary", "subagent": "writer"},
            {"title": "Ghost", "prompt": "Do magic", "subagent": "wizard"},
            {"title": "Empty", "prompt": "", "subagent": "writer"},
        ],
    }
    gateway, backend = _gateway(text("Here you go:\n" + json.dumps(plan_json)))

    plan = plan_decomposition(LONG_REQUEST, SUBAGENTS, gateway)

    assert plan is not None
    assert plan.reason == "independent parts"
    assert [(task.title, task.subagent) for task in plan.tasks] == [("Research", "none"), ("Docs", "writer")]
    assert "Available subagents:" in backend.calls[0]["messages"][1]["content"]


def test_plan_decomposition_declined_or_failed_returns_none() -> None:
    gateway, _ = _gateway(text('{"decompose": false, "reason": "simple"}'))
    assert plan_decomposition(LONG_REQUEST, SUBAGENTS, gateway) is None

    gateway, _ = _gateway(RuntimeError("backend down"))
    assert plan_decomposition(LONG_REQUEST, SUBAGENTS, gateway) is None

    assert plan_decomposition(LONG_REQUEST, SUBAGENTS, None) is None


def test_select_with_model_applies_confidence_floor() -> None:
    gateway, _ = _gateway(text('{"name": "writer", "reason": "docs", "confidence": 0.9}'))
    selection = select_with_model("document the API", SUBAGENTS, gateway)
    assert selection.subagent.name == "writer"

    gateway, _ = _gateway(text('{"name": "writer", "reason": "maybe", "confidence": 0.3}'))
    assert select_with_model("document the API", SUBAGENTS, gateway) is None

    gateway, _ = _gateway(text('{"name": "none", "confidence": 1}'))
    assert select_with_model("document the API", SUBAGENTS, gateway) is None


def test_batch_prompt_lists_assigned_subtasks() -> None:
    prompt = build_subagent_batch_prompt(
        "ship the release",
        [PlannedSubtask(title="Notes", prompt="Write release notes", subagent="writer")],
    )

    assert "User request:\nship the release" in prompt
    assert prompt.endswith("- Notes: Write release notes")


def test_extract_json_block_tolerates_surrounding_text() -> None:
    assert extract_json_block('Sure! {"a": 1} hope that helps') == {"a": 1}
    assert extract_json_block("no json here") is None
    assert extract_json_block("[1, 2]") is None
