"""Capabilities the orchestration loop provides itself."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import Field, field_validator

from agent_runtime.errors import CapabilityExecutionError
from agent_runtime.subagents.registry import SubagentRegistry
from agent_runtime.tools.registry import Capability, ExecutionContext, StrictModel

REWIND_CAPABILITY = "rewind"
SUBAGENT_TASK_CAPABILITY = "task"
CREATE_SUBAGENT_CAPABILITY = "create_subagent"

TodoStatus = Literal["pending", "in_progress", "done"]


class ThinkInput(StrictModel):
    thought: str = Field(description="Internal reasoning or notes")

    @field_validator("thought")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("thought is required")
        return value


class TodoItem(StrictModel):
    title: str = Field(description="Title of the todo item")
    status: TodoStatus = Field(default="pending", description="Current status")


class SetTodoListInput(StrictModel):
    todos: list[TodoItem] = Field(
        description="The full updated todo list. Must include ALL items with current statuses."
    )


class RewindInput(StrictModel):
    checkpoint_id: int = Field(ge=0, description="Checkpoint ID to revert to")
    message: str = Field(description="Message to your past self")


class SubagentTaskInput(StrictModel):
    description: str = Field(default="", description="Short task description (3-5 words)")
    subagent_name: str = Field(description="Subagent name to run")
    prompt: str = Field(
        description=(
            "Detailed task prompt for the subagent. Include ALL necessary context, file paths, "
            "and background since the subagent cannot see your conversation history."
        )
    )


class CreateSubagentInput(StrictModel):
    name: str = Field(description="Unique subagent name")
    description: str = Field(default="", description="Short description of the subagent")
    system_prompt: str = Field(description="System prompt for the subagent")
    tools: list[str] | None = Field(
        default=None, description="Optional allow-list of capability names for this subagent"
    )
    exclude_tools: list[str] | None = Field(
        default=None, description="Optional deny-list of capability names for this subagent"
    )


def think(payload: ThinkInput, context: ExecutionContext) -> dict[str, Any]:
    if context.emit is not None:
        context.emit("think", {"content": payload.thought})
    return {"logged": True}


def set_todo_list(payload: SetTodoListInput, context: ExecutionContext) -> dict[str, Any]:
    items = [item.model_dump() for item in payload.todos if item.title.strip()]
    for item in items:
        item["title"] = item["title"].strip()
    if context.emit is not None:
        context.emit("todo_list", {"items": items})
    return {"updated": True, "count": len(items)}


def rewind(payload: RewindInput, context: ExecutionContext) -> dict[str, Any]:
    message = payload.message.strip()
    if not message:
        raise CapabilityExecutionError("message is required for a rewind")
    if context.request_rewind is None:
        raise CapabilityExecutionError("Rewind is not available in this context")
    context.request_rewind(payload.checkpoint_id, message)
    return {"sent": True, "checkpoint_id": payload.checkpoint_id}


def build_builtin_capabilities(subagents: SubagentRegistry) -> list[Capability]:
    def run_subagent_task(payload: SubagentTaskInput, context: ExecutionContext) -> dict[str, Any]:
        name = payload.subagent_name.strip()
        prompt = payload.prompt.strip()
        if not prompt:
            raise CapabilityExecutionError("prompt is required")
        spec = subagents.get(name)
        if spec is None:
            raise CapabilityExecutionError(f"Subagent not found: {name}")
        if context.run_subagent is None:
            raise CapabilityExecutionError("Subagent runner is not available")
        output = context.run_subagent(spec, prompt, call_id=context.call_id)
        return {"subagent": name, "output": output or ""}

    def create_subagent(payload: CreateSubagentInput, context: ExecutionContext) -> dict[str, Any]:
        created = subagents.create(
            {
                "name": payload.name,
                "description": payload.description,
                "system_prompt": payload.system_prompt,
                "allowed_capabilities": payload.tools,
                "denied_capabilities": payload.exclude_tools or [],
            }
        )
        return {"created": True, "name": created.name, "available": subagents.names()}

    def describe_subagent_task() -> str:
        listing = "\n".join(f"- {spec.name}: {spec.description}" for spec in subagents.list())
        return "\n".join(
            [
                "Dispatch a subagent to execute a focused task.",
                "Subagents run in isolated context and cannot see the main agent history.",
                "Provide all necessary background in the prompt.",
                "",
                "Available subagents:",
                listing or "No subagents configured.",
            ]
        )

    def restrict_subagent_names(schema: dict[str, Any]) -> dict[str, Any]:
        names = subagents.names()
        if names:
            schema["properties"]["subagent_name"]["enum"] = names
        return schema

    return [
        Capability(
            name="think",
            description=(
                "Log an internal thought without responding to the user. "
                "Use this to reason silently."
            ),
            input_model=ThinkInput,
            fn=think,
        ),
        Capability(
            name="set_todo_list",
            description="\n".join(
                [
                    "Set (replace) the current todo list to track progress on multi-step tasks.",
                    "Each call must include the FULL list; there is no partial update.",
                    "Use it for tasks with several milestones, not for single-step requests.",
                ]
            ),
            input_model=SetTodoListInput,
            fn=set_todo_list,
        ),
        Capability(
            name=REWIND_CAPABILITY,
            description="\n".join(
                [
                    "Send a message to your past self by reverting context to a checkpoint.",
                    "Use this to compress noisy steps and prevent re-work on long tasks.",
                    "",
                    "You will see checkpoint markers in the context as:",
                    "<system>CHECKPOINT {id}</system>",
                    "",
                    "Rules:",
                    "- Provide a valid checkpoint_id from the context.",
                    "- The message should summarize what you already did or learned.",
                    "- This does NOT revert external changes; it only rewinds the conversation.",
                    "- Do NOT explain this to the user; write only for your past self.",
                ]
            ),
            input_model=RewindInput,
            fn=rewind,
        ),
        Capability(
            name=SUBAGENT_TASK_CAPABILITY,
            description=describe_subagent_task,
            input_model=SubagentTaskInput,
            fn=run_subagent_task,
            schema_hook=restrict_subagent_names,
        ),
        Capability(
            name=CREATE_SUBAGENT_CAPABILITY,
            description=(
                "Create a dynamic subagent with a custom system prompt "
                "and optional capability restrictions."
            ),
            input_model=CreateSubagentInput,
            fn=create_subagent,
        ),
    ]
