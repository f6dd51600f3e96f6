"""Plan-mode resolution: turn a request into a plan, a removal or a reply.

A single one-shot assistant call picks one of three tools and returns
JSON. Everything here except plan_with_tools() is pure, so the
parsing rules are testable without a process.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any

from .errors import PlannerError
from .models import MASTER_ID, ExecutionPlan, PlanOutcome, Task
from .stream_json import run_claude_once

logger = logging.getLogger(__name__)

TOOLS_DESCRIPTION = """
Available tools:
1. chat - For greetings, questions, conversations (not coding tasks)
2. build - For coding tasks: features, bug fixes, refactoring, file changes
3. remove - For removing/cleaning up worker agents
"""

TOOLS_SYSTEM_PROMPT = f"""You are Gekto, a friendly task orchestration assistant with access to tools.

{TOOLS_DESCRIPTION}

Analyze the user message and respond with the appropriate tool.

RESPONSE FORMAT - Always respond with JSON:
{{
  "tool": "chat" | "build" | "remove",
  "params": {{ ... tool-specific parameters ... }}
}}

For "chat" tool:
{{ "tool": "chat", "params": {{ "message": "Your friendly response here" }} }}

For "build" tool:
{{ "tool": "build", "params": {{ "tasks": [
  {{ "id": "task_1", "description": "Brief desc", "prompt": "Detailed prompt for worker", "files": ["path/file.ts"], "dependencies": [] }}
] }} }}

For "remove" tool:
{{ "tool": "remove", "params": {{ "target": "all" | "workers" | "completed" | ["specific_id_1", "specific_id_2"] }} }}

Examples:
- "hey" -> {{ "tool": "chat", "params": {{ "message": "Hey! How can I help?" }} }}
- "add dark mode" -> {{ "tool": "build", "params": {{ "tasks": [...] }} }}
- "remove all agents" -> {{ "tool": "remove", "params": {{ "target": "all" }} }}
- "remove all workers" -> {{ "tool": "remove", "params": {{ "target": "workers" }} }}
- "clean up finished agents" -> {{ "tool": "remove", "params": {{ "target": "completed" }} }}
- "kill agent worker_123" -> {{ "tool": "remove", "params": {{ "target": ["worker_123"] }} }}

Respond ONLY with valid JSON, nothing else."""

MSG_NO_JSON = "Sorry, I had trouble understanding that. Could you try again?"
MSG_UNKNOWN_TOOL = "I'm not sure how to help with that."
MSG_FAILED = "Sorry, something went wrong. Could you try again?"

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if isinstance(v, (str, int))]


def create_plan_from_tasks(
    tasks: list[Any],
    plan_id: str,
    original_prompt: str,
) -> ExecutionPlan:
    """Build a plan from loosely-typed task dicts, filling defaults."""
    parsed: list[Task] = []
    for i, raw in enumerate(tasks or []):
        if not isinstance(raw, dict):
            continue
        parsed.append(Task(
            id=str(raw.get("id") or f"task_{i + 1}"),
            description=str(raw.get("description") or "Task"),
            prompt=str(raw.get("prompt") or original_prompt),
            files=_str_list(raw.get("files")),
            dependencies=_str_list(raw.get("dependencies")),
        ))

    if not parsed:
        parsed.append(Task(
            id="task_1",
            description="Execute task",
            prompt=original_prompt,
        ))

    return ExecutionPlan(
        id=plan_id,
        original_prompt=original_prompt,
        tasks=parsed,
    )


def _is_worker(agent: dict[str, Any]) -> bool:
    return bool(agent.get("isWorker")) or str(agent.get("lizardId", "")).startswith("worker_")


def resolve_remove_target(
    target: Any,
    active_agents: list[dict[str, Any]],
) -> list[str]:
    """Map a remove target to concrete session ids. Never includes master."""
    if isinstance(target, list):
        return [str(t) for t in target if str(t) != MASTER_ID]

    if target == "all":
        return [
            a["lizardId"] for a in active_agents
            if a.get("lizardId") and a["lizardId"] != MASTER_ID
        ]
    # No per-session completion status is tracked, so "completed"
    # removes workers like "workers" does.
    if target in ("workers", "completed"):
        return [
            a["lizardId"] for a in active_agents
            if a.get("lizardId") and a["lizardId"] != MASTER_ID and _is_worker(a)
        ]
    return []


def parse_tool_response(
    text: str,
    plan_id: str,
    original_prompt: str,
    active_agents: list[dict[str, Any]],
) -> PlanOutcome:
    """Interpret the tool-selection reply. Never raises."""
    match = _JSON_OBJECT_RE.search(text or "")
    if not match:
        logger.error("plan_tools: no JSON found in response: %.200s", text)
        return PlanOutcome.chat(MSG_NO_JSON)

    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        logger.error("plan_tools: failed to parse response: %s", exc)
        return PlanOutcome.chat(MSG_FAILED)
    if not isinstance(parsed, dict):
        return PlanOutcome.chat(MSG_FAILED)

    tool = parsed.get("tool")
    params = parsed.get("params") or {}
    if not isinstance(params, dict):
        params = {}

    if tool == "chat":
        return PlanOutcome.chat(str(params.get("message") or "Hello!"))
    if tool == "build":
        tasks = params.get("tasks")
        return PlanOutcome(
            kind="plan",
            plan=create_plan_from_tasks(
                tasks if isinstance(tasks, list) else [],
                plan_id,
                original_prompt,
            ),
        )
    if tool == "remove":
        return PlanOutcome(
            kind="remove",
            remove=resolve_remove_target(params.get("target"), active_agents),
        )

    logger.error("plan_tools: unknown tool %r", tool)
    return PlanOutcome.chat(MSG_UNKNOWN_TOOL)


def build_context_prompt(prompt: str, active_agents: list[dict[str, Any]]) -> str:
    ids = [a["lizardId"] for a in active_agents if a.get("lizardId")]
    if not ids:
        return prompt
    return f"{prompt}\n\n[Context: Active agents: {', '.join(ids)}]"


async def plan_with_tools(
    prompt: str,
    plan_id: str,
    working_dir: str,
    active_agents: list[dict[str, Any]],
    *,
    executable: str | list[str] = "claude",
    model: str = "haiku",
    timeout: float = 120.0,
) -> PlanOutcome:
    """Resolve a plan-mode request into exactly one outcome."""
    logger.info("plan_tools: processing %.100s", prompt)
    try:
        text = await run_claude_once(
            executable,
            build_context_prompt(prompt, active_agents),
            model=model,
            system_prompt=TOOLS_SYSTEM_PROMPT,
            cwd=working_dir,
            timeout=timeout,
        )
    except PlannerError as exc:
        logger.error("plan_tools: tool call failed: %s", exc)
        return PlanOutcome.chat(MSG_FAILED)
    logger.debug("plan_tools: raw response: %.300s", text)
    return parse_tool_response(text, plan_id, prompt, active_agents)
