from __future__ import annotations

import json
from pathlib import Path
import shlex

from autosolve.agent_adapter import AgentBackend, AgentInvocation
from autosolve.classifier import RecordFacts, as_object_dict
from autosolve.models import AgentBackendName, PromptPair


DEFAULT_CLAUDE_MODEL = "sonnet"
_MESSAGE_TYPES = frozenset({"message", "assistant"})


class ClaudeBackend(AgentBackend):
    name: AgentBackendName = "claude"

    @property
    def model(self) -> str:
        return self._config.model or DEFAULT_CLAUDE_MODEL

    def build_invocation(
        self, prompts: PromptPair, *, resume_session_id: str | None = None
    ) -> AgentInvocation:
        argv = [self._config.effective_binary]
        if resume_session_id is not None:
            argv.extend(["--resume", resume_session_id])
        argv.extend(
            [
                "--output-format",
                "stream-json",
                "--verbose",
                "--dangerously-skip-permissions",
                "--model",
                self.model,
            ]
        )
        argv.extend(self._config.extra_args)
        if resume_session_id is not None:
            # Resumed sessions do not read the prompt from stdin.
            argv.extend(["-p", prompts.user, "--append-system-prompt", prompts.system])
            return AgentInvocation(argv=tuple(argv), input_text=None)
        argv.extend(["--append-system-prompt", prompts.system])
        return AgentInvocation(argv=tuple(argv), input_text=prompts.user)

    def interpret_record(self, record: dict[str, object]) -> RecordFacts:
        return interpret_claude_record(record)

    def resume_command(self, session_id: str, *, working_dir: Path) -> str:
        return (
            f"(cd {shlex.quote(str(working_dir))} && "
            f"{shlex.quote(self._config.effective_binary)} --resume {shlex.quote(session_id)})"
        )


def interpret_claude_record(record: dict[str, object]) -> RecordFacts:
    session_id = record.get("session_id")
    record_type = record.get("type")
    message_count = 1 if record_type in _MESSAGE_TYPES else 0
    tool_use_count = 1 if record_type == "tool_use" else 0
    text: str | None = None

    if record_type == "text":
        text = _non_empty_str(record.get("text"))
    elif record_type == "error":
        text = _non_empty_str(record.get("error")) or json.dumps(record, sort_keys=True)
    elif record_type == "result":
        text = _non_empty_str(record.get("result"))
    elif record_type == "assistant":
        message = as_object_dict(record.get("message"))
        content = message.get("content") if message is not None else None
        if isinstance(content, list):
            for item in content:
                item_obj = as_object_dict(item)
                if item_obj is None:
                    continue
                item_type = item_obj.get("type")
                if item_type == "text":
                    text = _non_empty_str(item_obj.get("text")) or text
                elif item_type == "tool_use":
                    tool_use_count += 1

    return RecordFacts(
        session_id=session_id if isinstance(session_id, str) and session_id else None,
        message_count=message_count,
        tool_use_count=tool_use_count,
        text=text,
    )


def _non_empty_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None
