from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import tomllib
from typing import cast

from autosolve.models import AgentBackendName, UncommittedChangesPolicy


DEFAULT_COMMIT_MESSAGE = "Auto-commit: Changes made by the agent during problem-solving session"


@dataclass(frozen=True)
class RuntimeConfig:
    log_dir: Path = Path("~/.autosolve/logs").expanduser()
    verbose: str | None = None


@dataclass(frozen=True)
class AgentConfig:
    backend: AgentBackendName = "claude"
    binary: str | None = None
    model: str | None = None
    extra_args: tuple[str, ...] = ()

    @property
    def effective_binary(self) -> str:
        return self.binary or self.backend


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    base_delay_seconds: float = 5.0


@dataclass(frozen=True)
class RestartPolicy:
    max_iterations: int = 3
    uncommitted_changes: UncommittedChangesPolicy = "restart"
    auto_continue_on_limit: bool = False
    max_limit_waits: int = 5
    commit_message: str = DEFAULT_COMMIT_MESSAGE


@dataclass(frozen=True)
class WatchConfig:
    enabled: bool = False
    interval_seconds: int = 60
    max_consecutive_errors: int = 10


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    restart: RestartPolicy = field(default_factory=RestartPolicy)
    watch: WatchConfig = field(default_factory=WatchConfig)


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    try:
        with path.open("rb") as fh:
            data = tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{path} is not valid TOML: {exc}") from exc
    return parse_config(data)


def parse_config(data: dict[str, object]) -> AppConfig:
    runtime_data = _optional_table(data, "runtime") or {}
    agent_data = _optional_table(data, "agent") or {}
    retry_data = _optional_table(data, "retry") or {}
    restart_data = _optional_table(data, "restart") or {}
    watch_data = _optional_table(data, "watch") or {}

    runtime = _parse_runtime_config(runtime_data)
    agent = AgentConfig(
        backend=_parse_backend(agent_data.get("backend", "claude"), key="agent.backend"),
        binary=_optional_str(agent_data, "binary"),
        model=_optional_str(agent_data, "model"),
        extra_args=_tuple_of_str_with_default(agent_data, "extra_args", ()),
    )
    retry = RetryConfig(
        max_retries=_int_with_default(retry_data, "max_retries", 3),
        base_delay_seconds=_number_with_default(retry_data, "base_delay_seconds", 5.0),
    )
    restart = RestartPolicy(
        max_iterations=_int_with_default(restart_data, "max_iterations", 3),
        uncommitted_changes=_parse_uncommitted_policy(
            restart_data.get("uncommitted_changes", "restart"),
            key="restart.uncommitted_changes",
        ),
        auto_continue_on_limit=_bool_with_default(restart_data, "auto_continue_on_limit", False),
        max_limit_waits=_int_with_default(restart_data, "max_limit_waits", 5),
        commit_message=_str_with_default(restart_data, "commit_message", DEFAULT_COMMIT_MESSAGE),
    )
    watch = WatchConfig(
        enabled=_bool_with_default(watch_data, "enabled", False),
        interval_seconds=_int_with_default(watch_data, "interval_seconds", 60),
        max_consecutive_errors=_int_with_default(watch_data, "max_consecutive_errors", 10),
    )

    if retry.max_retries < 0:
        raise ConfigError("retry.max_retries must be >= 0")
    if retry.base_delay_seconds < 0:
        raise ConfigError("retry.base_delay_seconds must be >= 0")
    if restart.max_iterations < 1:
        raise ConfigError("restart.max_iterations must be >= 1")
    if restart.max_limit_waits < 0:
        raise ConfigError("restart.max_limit_waits must be >= 0")
    if watch.interval_seconds < 1:
        raise ConfigError("watch.interval_seconds must be >= 1")
    if watch.max_consecutive_errors < 1:
        raise ConfigError("watch.max_consecutive_errors must be >= 1")

    return AppConfig(runtime=runtime, agent=agent, retry=retry, restart=restart, watch=watch)


def _parse_runtime_config(runtime_data: dict[str, object]) -> RuntimeConfig:
    log_dir = _optional_path(runtime_data, "log_dir")
    verbose = runtime_data.get("verbose")
    if verbose is not None:
        if isinstance(verbose, bool):
            verbose = "high" if verbose else None
        elif not isinstance(verbose, str) or verbose.strip().lower() not in {"low", "high"}:
            raise ConfigError("runtime.verbose must be one of: low, high, true, false")
        else:
            verbose = verbose.strip().lower()
    if log_dir is None:
        return RuntimeConfig(verbose=cast(str | None, verbose))
    return RuntimeConfig(log_dir=log_dir, verbose=cast(str | None, verbose))


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _number_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)


def _tuple_of_str_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    return _tuple_of_str(data, key)


def _optional_path(data: dict[str, object], key: str) -> Path | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    return Path(value).expanduser()


def _parse_backend(value: object, *, key: str) -> AgentBackendName:
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be one of: claude, codex")
    normalized = value.strip().lower()
    if normalized not in {"claude", "codex"}:
        raise ConfigError(f"{key} must be one of: claude, codex")
    return cast(AgentBackendName, normalized)


def _parse_uncommitted_policy(value: object, *, key: str) -> UncommittedChangesPolicy:
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be one of: restart, commit, ignore")
    normalized = value.strip().lower()
    if normalized not in {"restart", "commit", "ignore"}:
        raise ConfigError(f"{key} must be one of: restart, commit, ignore")
    return cast(UncommittedChangesPolicy, normalized)
