"""Load ``.ralphy/config.yaml`` into typed settings.

Example::

    provider:
      type: linear          # or: github
      team_id: TEAM-UUID
      project_id: PROJECT-UUID
      project_name: Backend
    labels:
      ready: ralph-ready
    claude:
      max_iterations: 20
      timeout_seconds: 300
      model: sonnet
    prioritizer:
      backend: cli          # or: api (Anthropic Messages API)
    rate_limit:
      max_retries: null     # null = retry forever
    review_state: In Review

Secrets stay out of the file: the Linear key comes from ``LINEAR_API_KEY``.
Most scalar settings can be overridden with ``RALPHY_*`` variables
(``RALPHY_MAX_ITERATIONS``, ``RALPHY_MODEL``, ``RALPHY_TIMEOUT``,
``RALPHY_READY_LABEL`` ...).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from github_service import GitHubTicketService
from linear_service import LinearTicketService
from loop_runner import RunnerSettings
from prioritizer import AnthropicAdvisor, ClaudeCliAdvisor, Prioritizer
from tickets import GitHubProvider, LinearProvider, TicketProvider, TicketService

CONFIG_DIR = ".ralphy"
CONFIG_FILE = "config.yaml"
ENV_PREFIX = "RALPHY_"

PRIORITIZER_BACKENDS = ("cli", "api")


class ConfigError(Exception):
    """Raised when the configuration is missing or invalid."""


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env(name: str) -> str | None:
    return os.environ.get(f"{ENV_PREFIX}{name}")


def _coalesce_env(name: str) -> str | None:
    prefixed = f"{ENV_PREFIX}{name}"
    if prefixed in os.environ:
        return os.environ[prefixed]
    if name in os.environ:
        return os.environ[name]
    return None


@dataclass
class LabelsConfig:
    ready: str = "ralph-ready"
    candidate: str = "ralph-candidate"
    enriched: str = "ralph-enriched"
    pr_feedback: str = "ralph-pr-feedback"


@dataclass
class ClaudeConfig:
    max_iterations: int = 20
    timeout_seconds: int = 300
    model: str = "sonnet"


@dataclass
class PrioritizerConfig:
    backend: str = "cli"
    model: str = "haiku"
    timeout_seconds: int = 30
    api_model: str = "claude-haiku-4-5"


@dataclass
class RateLimitConfig:
    max_retries: int | None = None
    default_wait_seconds: int = 300


@dataclass
class RalphyConfig:
    provider: TicketProvider
    labels: LabelsConfig = field(default_factory=LabelsConfig)
    claude: ClaudeConfig = field(default_factory=ClaudeConfig)
    prioritizer: PrioritizerConfig = field(default_factory=PrioritizerConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    review_state: str = "In Review"
    add_comments: bool = True
    auto_commit: bool = True
    root: Path = field(default_factory=Path.cwd)

    @property
    def ralphy_dir(self) -> Path:
        return self.root / CONFIG_DIR

    @property
    def history_dir(self) -> Path:
        return self.ralphy_dir / "history"

    @property
    def context_dir(self) -> Path:
        return self.ralphy_dir / "context"


def config_path(root: str | Path | None = None) -> Path:
    return Path(root or Path.cwd()) / CONFIG_DIR / CONFIG_FILE


def is_initialized(root: str | Path | None = None) -> bool:
    return config_path(root).is_file()


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def _section(raw: dict, key: str) -> dict:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a mapping")
    return value


def _positive_int(value: Any, name: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{name}' must be an integer, got {value!r}") from exc
    if number <= 0:
        raise ConfigError(f"'{name}' must be positive, got {number}")
    return number


def _pick(section: dict, key: str, env_name: str | None, default: Any) -> Any:
    """Environment override, then file value, then *default*."""
    if env_name is not None:
        env = _env(env_name)
        if env is not None:
            return env
    value = section.get(key)
    return default if value is None else value


def _parse_provider(raw: dict) -> TicketProvider:
    section = _section(raw, "provider")
    kind = str(section.get("type") or "linear").lower()
    if kind == "linear":
        team_id = _pick(section, "team_id", "TEAM_ID", None)
        if not team_id:
            raise ConfigError("provider.team_id is required for Linear")
        api_key = _coalesce_env("LINEAR_API_KEY") or section.get("api_key")
        if not api_key:
            raise ConfigError("LINEAR_API_KEY is not set (get one from Linear > Settings > API)")
        return LinearProvider(
            team_id=str(team_id),
            api_key=str(api_key),
            project_id=section.get("project_id"),
            project_name=section.get("project_name"),
        )
    if kind == "github":
        repo = _pick(section, "repo", "GITHUB_REPO", None)
        if not repo or "/" not in str(repo):
            raise ConfigError("provider.repo must be 'owner/name' for GitHub")
        return GitHubProvider(
            repo=str(repo),
            repo_path=str(section.get("repo_path") or "."),
            project_name=section.get("project_name"),
        )
    raise ConfigError(f"Unsupported provider type: {kind!r} (expected 'linear' or 'github')")


def _parse_bool_value(section: dict, key: str, env_name: str, default: bool) -> bool:
    value = _pick(section, key, env_name, default)
    if isinstance(value, bool):
        return value
    return _parse_bool(str(value))


def parse_config(raw: dict, root: Path) -> RalphyConfig:
    """Build a RalphyConfig from an already-loaded YAML mapping."""
    if not isinstance(raw, dict):
        raise ConfigError("Config file must contain a mapping")

    labels_raw = _section(raw, "labels")
    labels = LabelsConfig(
        ready=str(_pick(labels_raw, "ready", "READY_LABEL", LabelsConfig.ready)),
        candidate=str(_pick(labels_raw, "candidate", "CANDIDATE_LABEL", LabelsConfig.candidate)),
        enriched=str(_pick(labels_raw, "enriched", "ENRICHED_LABEL", LabelsConfig.enriched)),
        pr_feedback=str(_pick(labels_raw, "pr_feedback", None, LabelsConfig.pr_feedback)),
    )

    claude_raw = _section(raw, "claude")
    claude = ClaudeConfig(
        max_iterations=_positive_int(
            _pick(claude_raw, "max_iterations", "MAX_ITERATIONS", ClaudeConfig.max_iterations),
            "claude.max_iterations",
        ),
        timeout_seconds=_positive_int(
            _pick(claude_raw, "timeout_seconds", "TIMEOUT", ClaudeConfig.timeout_seconds),
            "claude.timeout_seconds",
        ),
        model=str(_pick(claude_raw, "model", "MODEL", ClaudeConfig.model)),
    )

    prio_raw = _section(raw, "prioritizer")
    backend = str(_pick(prio_raw, "backend", "PRIORITIZER_BACKEND", PrioritizerConfig.backend)).lower()
    if backend not in PRIORITIZER_BACKENDS:
        raise ConfigError(f"prioritizer.backend must be one of {', '.join(PRIORITIZER_BACKENDS)}")
    prioritizer = PrioritizerConfig(
        backend=backend,
        model=str(_pick(prio_raw, "model", "PRIORITIZER_MODEL", PrioritizerConfig.model)),
        timeout_seconds=_positive_int(
            _pick(prio_raw, "timeout_seconds", None, PrioritizerConfig.timeout_seconds),
            "prioritizer.timeout_seconds",
        ),
        api_model=str(_pick(prio_raw, "api_model", None, PrioritizerConfig.api_model)),
    )

    rate_raw = _section(raw, "rate_limit")
    max_retries = _pick(rate_raw, "max_retries", "RATE_LIMIT_MAX_RETRIES", None)
    rate_limit = RateLimitConfig(
        max_retries=None if max_retries is None else _positive_int(max_retries, "rate_limit.max_retries"),
        default_wait_seconds=_positive_int(
            _pick(rate_raw, "default_wait_seconds", None, RateLimitConfig.default_wait_seconds),
            "rate_limit.default_wait_seconds",
        ),
    )

    return RalphyConfig(
        provider=_parse_provider(raw),
        labels=labels,
        claude=claude,
        prioritizer=prioritizer,
        rate_limit=rate_limit,
        review_state=str(_pick(raw, "review_state", "REVIEW_STATE", "In Review")),
        add_comments=_parse_bool_value(raw, "add_comments", "ADD_COMMENTS", True),
        auto_commit=_parse_bool_value(raw, "auto_commit", "AUTO_COMMIT", True),
        root=root,
    )


def load_config(root: str | Path | None = None) -> RalphyConfig:
    """Read and validate ``<root>/.ralphy/config.yaml``.

    Raises ConfigError when the file is missing, is not valid YAML, or fails
    validation.
    """
    root_path = Path(root or Path.cwd()).resolve()
    path = config_path(root_path)
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}. Create it to configure Ralphy.")
    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Cannot read {path}: {exc}") from exc
    return parse_config(raw or {}, root_path)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

def create_ticket_service(config: RalphyConfig) -> TicketService:
    provider = config.provider
    if isinstance(provider, LinearProvider):
        return LinearTicketService(api_key=provider.api_key)
    if isinstance(provider, GitHubProvider):
        repo_path = Path(provider.repo_path)
        if not repo_path.is_absolute():
            repo_path = config.root / repo_path
        return GitHubTicketService(repo=provider.repo, repo_path=repo_path)
    raise ConfigError(f"Unsupported ticket provider: {provider!r}")


def build_prioritizer(config: RalphyConfig) -> Prioritizer:
    settings = config.prioritizer
    if settings.backend == "api":
        return Prioritizer(AnthropicAdvisor(model=settings.api_model, timeout=settings.timeout_seconds))
    return Prioritizer(ClaudeCliAdvisor(model=settings.model, timeout=settings.timeout_seconds))


def build_runner_settings(
    config: RalphyConfig,
    max_iterations: int | None = None,
    auto_commit: bool | None = None,
    verbose: bool = False,
) -> RunnerSettings:
    """RunnerSettings from config, with optional command-line overrides."""
    return RunnerSettings(
        max_iterations=config.claude.max_iterations if max_iterations is None else max_iterations,
        model=config.claude.model,
        timeout=config.claude.timeout_seconds,
        repo_path=config.root,
        context_dir=config.context_dir,
        add_comments=config.add_comments,
        auto_commit=config.auto_commit if auto_commit is None else auto_commit,
        review_state=config.review_state,
        max_rate_limit_retries=config.rate_limit.max_retries,
        default_rate_limit_wait_ms=config.rate_limit.default_wait_seconds * 1000,
        verbose=verbose,
    )


def describe_config(config: RalphyConfig) -> dict[str, Any]:
    """Secret-free view of the configuration for ``ralphy status``."""
    provider = config.provider
    info: dict[str, Any] = {"provider": provider.type, "project": provider.project_name}
    if isinstance(provider, LinearProvider):
        info.update(team_id=provider.team_id, project_id=provider.project_id)
    else:
        info.update(repo=provider.repo)
    info.update(
        labels={
            "ready": config.labels.ready,
            "candidate": config.labels.candidate,
            "enriched": config.labels.enriched,
        },
        claude={
            "max_iterations": config.claude.max_iterations,
            "timeout_seconds": config.claude.timeout_seconds,
            "model": config.claude.model,
        },
        prioritizer=config.prioritizer.backend,
        review_state=config.review_state,
    )
    return info
