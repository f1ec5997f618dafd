from __future__ import annotations

from pathlib import Path
import shlex

from autosolve.agent_adapter import AgentBackend, AgentInvocation
from autosolve.classifier import RecordFacts, as_object_dict
from autosolve.models import AgentBackendName, PromptPair


_TOOL_ITEM_TYPES = frozenset({"command_execution", "mcp_tool_call", "file_change", "web_search"})


class CodexBackend(AgentBackend):
    name: AgentBackendName = "codex"

    def build_invocation(
        self, prompts: PromptPair, *, resume_session_id: str | None = None
    ) -> AgentInvocation:
        cmd = [self._config.effective_binary, "exec"]
        if resume_session_id is not None:
            cmd.extend(["resume", resume_session_id])
        cmd.extend(["--json", "--skip-git-repo-check", "--full-auto"])
        self._append_common_options(cmd)
        cmd.append("-")
        # No separate system prompt flag; both prompts go over stdin.
        return AgentInvocation(argv=tuple(cmd), input_text=f"{prompts.system}\n\n{prompts.user}")

    def interpret_record(self, record: dict[str, object]) -> RecordFacts:
        return interpret_codex_record(record)

    def resume_command(self, session_id: str, *, working_dir: Path) -> str:
        return (
            f"(cd {shlex.quote(str(working_dir))} && "
            f"{shlex.quote(self._config.effective_binary)} resume {shlex.quote(session_id)})"
        )

    def _append_common_options(self, cmd: list[str]) -> None:
        if self._config.model:
            cmd.extend(["--model", self._config.model])
        if self._config.extra_args:
            cmd.extend(self._config.extra_args)


def interpret_codex_record(record: dict[str, object]) -> RecordFacts:
    record_type = record.get("type")
    session_id = _extract_thread_id(record)
    message_count = 0
    tool_use_count = 0
    text: str | None = None

    if record_type == "item.completed":
        item_obj = as_object_dict(record.get("item"))
        if item_obj is not None:
            item_type = item_obj.get("type")
            item_text = item_obj.get("text")
            if item_type == "agent_message":
                message_count = 1
                if isinstance(item_text, str) and item_text.strip():
                    text = item_text
            elif item_type in _TOOL_ITEM_TYPES:
                tool_use_count = 1
            elif item_type == "error" and isinstance(item_text, str):
                text = item_text
    elif record_type == "error":
        message = record.get("message")
        if isinstance(message, str) and message.strip():
            text = message
    elif record_type == "turn.failed":
        error_obj = as_object_dict(record.get("error"))
        message = error_obj.get("message") if error_obj is not None else None
        if isinstance(message, str) and message.strip():
            text = message

    return RecordFacts(
        session_id=session_id,
        message_count=message_count,
        tool_use_count=tool_use_count,
        text=text,
    )


def _extract_thread_id(record: dict[str, object]) -> str | None:
    if record.get("type") == "thread.started":
        thread_id = record.get("thread_id")
        if isinstance(thread_id, str) and thread_id:
            return thread_id
    session_id = record.get("session_id")
    if isinstance(session_id, str) and session_id:
        return session_id
    return None
