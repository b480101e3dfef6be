# agent.py
# Durable agent loop.
#
# The loop is the kernel. The model is a passive responder: this class owns
# control flow, tool dispatch, state and persistence. Every completed step is
# snapshotted, and a rerun of the same task adopts existing snapshots instead
# of asking the model again.
#
# Control flow per step:
#   snapshot n+1 exists? → adopt it, restore cache + artifacts
#   otherwise            → model turn → sandboxed tool calls
#                          → capture cache + artifacts → save snapshot n+1
#
# All terminal output is delegated to display.py; no formatting here.

import base64
import logging
from pathlib import Path
from typing import Any, Protocol

from netfs_agent import display
from netfs_agent.models import ExecutionResult, ModelResponse, ToolCall
from netfs_agent.netfs import NetworkBackedFileSystem
from netfs_agent.sandbox import Sandbox
from netfs_agent.state import AgentState
from netfs_agent.state_cache import StateCache

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# System Prompt and Tools
# ---------------------------------------------------------------------------

SYSTEM_PROMPT_TEMPLATE = """\
You are a helpful agent that can execute Python code in a sandbox (execute_python).

You don't have network access, but you have a powerful file system which allows
you to access system resources.

<file-system-paths>
Special file system paths:

{network_paths}
/output               files produced here the user can see.
</file-system-paths>\
"""

EXECUTE_PYTHON_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "execute_python",
        "description": "Execute Python code in the sandbox. Returns the output of the code execution.",
        "parameters": {
            "type": "object",
            "properties": {
                "code": {
                    "type": "string",
                    "description": "The Python code to execute",
                },
            },
            "required": ["code"],
        },
    },
}

TOOLS = [EXECUTE_PYTHON_TOOL]


def build_system_prompt(network: NetworkBackedFileSystem) -> str:
    """System prompt listing the network paths this adapter actually serves."""
    lines = [f"{path:<21} {description}" for path, description in network.advertised_paths()]
    return SYSTEM_PROMPT_TEMPLATE.format(network_paths="\n".join(lines))


class ReasoningModel(Protocol):
    """Anything that turns (system, tools, history) into the next model turn."""

    def create(
        self,
        system: str,
        tools: list[dict[str, Any]],
        messages: list[dict[str, Any]],
    ) -> ModelResponse: ...


# ---------------------------------------------------------------------------
# Agent Loop
# ---------------------------------------------------------------------------


class AgentLoop:
    """
    Step-indexed, resumable agent loop.

    Example:
        loop = AgentLoop(ReasoningClient(model), build_sandbox(settings))
        state = loop.run("task-0", AgentState(messages=[...]), max_steps=10)
    """

    def __init__(
        self,
        client: ReasoningModel,
        sandbox: Sandbox,
        cache: StateCache | None = None,
    ) -> None:
        self.client = client
        self.sandbox = sandbox
        self.cache = cache if cache is not None else StateCache()
        self.system_prompt = build_system_prompt(sandbox.network)

    # ------------------------------------------------------------------
    # Live subsystems
    # ------------------------------------------------------------------

    def capture(self, state: AgentState) -> None:
        state.capture_network_cache(self.sandbox.network)
        state.capture_output_files(self.sandbox.fs, self.sandbox.output_dir)

    def restore(self, state: AgentState) -> None:
        state.restore_network_cache(self.sandbox.network)
        state.restore_output_files(self.sandbox.fs, self.sandbox.output_dir)

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    def execute_tool(self, call: ToolCall, state: AgentState) -> ExecutionResult:
        """Run one tool call. Problems with the call become a failed result."""
        if call.name != "execute_python":
            return ExecutionResult(stderr=f"Unknown tool: {call.name}", success=False)

        try:
            arguments = call.parsed_arguments()
        except ValueError as exc:
            return ExecutionResult(stderr=f"Malformed arguments for {call.name}: {exc}", success=False)

        code = arguments.get("code")
        if not isinstance(code, str):
            return ExecutionResult(stderr="execute_python requires a string 'code' argument", success=False)

        return self.sandbox.execute(code, state.output_capture)

    # ------------------------------------------------------------------
    # One step
    # ------------------------------------------------------------------

    def run_step(self, state: AgentState) -> AgentState:
        """
        Advance the state by exactly one model turn.

        end_turn marks the state done; tool_use runs every requested tool
        and appends one tool message per call. The network cache and output
        artifacts are captured afterwards either way.
        """
        step = state.advance()
        display.step_start(step)

        response = self.client.create(self.system_prompt, TOOLS, state.messages)
        display.stop_reason(response.stop_reason)
        state.messages.append(response.to_message())

        if response.stop_reason == "end_turn":
            display.final_result(response.text)
            state.mark_done()
        else:
            display.assistant_text(response.text)
            for call in response.tool_calls:
                display.tool_call(call.name, call.arguments)
                result = self.execute_tool(call, state)
                display.tool_result(result)
                state.messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": result.model_dump_json(),
                    }
                )

        self.capture(state)
        return state

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def _load_snapshot(self, task_id: str, step: int) -> AgentState | None:
        cached = self.cache.load_state(task_id, step)
        if cached is not None and cached.step_count != step:
            logger.warning(
                "snapshot for step %d of %s records step %d; recomputing",
                step,
                task_id,
                cached.step_count,
            )
            cached = None
        if cached is None:
            self.cache.discard(task_id, step)
        return cached

    def run(
        self,
        task_id: str,
        initial_state: AgentState,
        *,
        max_steps: int = 10,
        use_cache: bool = True,
        clear_cache_on_start: bool = False,
    ) -> AgentState:
        """
        Drive the task until the model ends its turn or max_steps is reached.

        With use_cache, step n+1 is read from its snapshot when one exists
        and is computed (then saved) otherwise, so a rerun after a crash
        only asks the model for the steps it never finished.
        """
        if clear_cache_on_start:
            self.cache.clear_cache(task_id)

        state = initial_state.clone()
        state.metadata.task_id = task_id
        self.restore(state)

        while state.step_count < max_steps:
            next_step = state.step_count + 1
            cached = self._load_snapshot(task_id, next_step) if use_cache else None

            if cached is not None:
                display.cache_hit(next_step)
                state = cached
                self.restore(state)
            else:
                self.run_step(state)
                if use_cache:
                    self.cache.save_state(task_id, state.step_count, state)

            if state.done:
                break

        display.total_steps(state.step_count)
        return state


# ---------------------------------------------------------------------------
# Output artifacts
# ---------------------------------------------------------------------------


def expose_files(state: AgentState, output_dir: Path | str) -> list[Path]:
    """Copy the state's /output artifacts into a host directory."""
    output_dir = Path(output_dir)
    if not state.output_files:
        display.no_files()
        return []

    output_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    for name, encoded in state.output_files.items():
        if Path(name).name != name or name in ("", ".", ".."):
            display.file_expose_failed(name, "not a plain file name")
            continue
        target = output_dir / name
        try:
            target.write_bytes(base64.b64decode(encoded, validate=True))
        except (OSError, ValueError) as exc:
            display.file_expose_failed(name, str(exc))
            continue
        written.append(target)

    display.files_exposed(str(output_dir), [path.name for path in written])
    return written
