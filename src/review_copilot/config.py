"""Configuration loading and validation for Review Copilot."""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

PROVIDERS = ("openai", "anthropic", "custom")
PROMPT_MODES = ("extend", "replace")


class ConfigurationError(Exception):
    """Raised when a review cannot start because of missing or invalid configuration."""

    pass


@dataclass
class ModelConfig:
    """Configuration for one language model endpoint."""

    provider: str
    model_id: str
    api_key: str = ""
    api_endpoint: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    name: str = ""

    @property
    def label(self) -> str:
        """Provider/model identifier used in logs and run records."""
        return f"{self.provider}/{self.model_id}"


@dataclass
class GitLabConfig:
    """GitLab integration configuration."""

    url: str
    token: str
    webhook_secret: str | None = None
    timeout_seconds: int = 30


@dataclass
class RepositoryConfig:
    """Per-repository review settings (read-only to the pipeline)."""

    id: str
    project_id: int
    name: str
    path: str
    active: bool = True
    auto_review: bool = False
    watch_branches: str | None = None
    custom_prompt: str | None = None
    custom_prompt_mode: str = "extend"
    default_model: str | None = None
    model: ModelConfig | None = None


@dataclass
class PipelineSettings:
    """Review pipeline configuration."""

    batch_threshold: int = 20
    max_critical_findings: int = 10
    dedup_window_minutes: int = 5
    post_placeholder: bool = True
    max_diff_chars: int = 100_000


@dataclass
class DatabaseSettings:
    """Persistence configuration."""

    url: str = "sqlite:///review_copilot.db"
    echo: bool = False


@dataclass
class ServerSettings:
    """Server configuration."""

    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class Config:
    """Complete application configuration."""

    gitlab: GitLabConfig
    models: dict[str, ModelConfig] = field(default_factory=dict)
    default_model: str | None = None
    repositories: list[RepositoryConfig] = field(default_factory=list)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    server: ServerSettings = field(default_factory=ServerSettings)


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from file and environment.

    Args:
        config_path: Path to config file (default: config.yaml)

    Returns:
        Loaded configuration
    """
    # Find config file
    if config_path is None:
        config_path = Path("config.yaml")
        if not config_path.exists():
            config_path = Path("config.example.yaml")

    raw_config: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            raw_config = yaml.safe_load(f) or {}

    raw_config = _expand_env_vars(raw_config)

    return _parse_config(raw_config)


def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand environment variables in config."""
    if isinstance(obj, str):
        if obj.startswith("${") and obj.endswith("}"):
            env_var = obj[2:-1]
            return os.environ.get(env_var, "")
        return obj
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def _parse_model(raw: dict[str, Any], name: str = "") -> ModelConfig:
    """Parse one model entry."""
    max_tokens = raw.get("max_tokens")
    temperature = raw.get("temperature")
    return ModelConfig(
        name=name,
        provider=str(raw.get("provider", "openai")).lower(),
        model_id=raw.get("model_id") or raw.get("model") or "",
        api_key=raw.get("api_key") or "",
        api_endpoint=raw.get("api_endpoint") or None,
        max_tokens=int(max_tokens) if max_tokens else None,
        temperature=float(temperature) if temperature is not None and temperature != "" else None,
    )


def _parse_config(raw: dict[str, Any]) -> Config:
    """Parse raw config dict into Config object."""
    # GitLab config
    gitlab_raw = raw.get("gitlab", {})
    gitlab = GitLabConfig(
        url=gitlab_raw.get("url") or os.environ.get("GITLAB_URL", "https://gitlab.com"),
        token=gitlab_raw.get("token") or os.environ.get("GITLAB_TOKEN", ""),
        webhook_secret=gitlab_raw.get("webhook_secret") or os.environ.get("GITLAB_WEBHOOK_SECRET"),
        timeout_seconds=gitlab_raw.get("timeout_seconds", 30),
    )

    models = {
        name: _parse_model(model_raw or {}, name)
        for name, model_raw in (raw.get("models") or {}).items()
    }

    repositories = []
    for repo_raw in raw.get("repositories", []) or []:
        override = repo_raw.get("model")
        repositories.append(
            RepositoryConfig(
                id=str(repo_raw["id"]),
                project_id=int(repo_raw["project_id"]),
                name=repo_raw.get("name") or str(repo_raw["id"]),
                path=repo_raw.get("path") or repo_raw.get("name") or "",
                active=repo_raw.get("active", True),
                auto_review=repo_raw.get("auto_review", False),
                watch_branches=repo_raw.get("watch_branches"),
                custom_prompt=repo_raw.get("custom_prompt"),
                custom_prompt_mode=repo_raw.get("custom_prompt_mode") or "extend",
                default_model=repo_raw.get("default_model"),
                model=_parse_model(override, "custom") if override else None,
            )
        )

    pipe_raw = raw.get("pipeline", {})
    pipeline = PipelineSettings(
        batch_threshold=pipe_raw.get("batch_threshold", 20),
        max_critical_findings=pipe_raw.get("max_critical_findings", 10),
        dedup_window_minutes=pipe_raw.get("dedup_window_minutes", 5),
        post_placeholder=pipe_raw.get("post_placeholder", True),
        max_diff_chars=pipe_raw.get("max_diff_chars", 100_000),
    )

    db_raw = raw.get("database", {})
    database = DatabaseSettings(
        url=db_raw.get("url") or os.environ.get("DATABASE_URL", "sqlite:///review_copilot.db"),
        echo=db_raw.get("echo", False),
    )

    server_raw = raw.get("server", {})
    server = ServerSettings(
        host=server_raw.get("host", "0.0.0.0"),
        port=server_raw.get("port", 8080),
    )

    return Config(
        gitlab=gitlab,
        models=models,
        default_model=raw.get("default_model"),
        repositories=repositories,
        pipeline=pipeline,
        database=database,
        server=server,
    )


def validate_config(config: Config) -> list[str]:
    """Validate configuration and return list of errors.

    Args:
        config: Configuration to validate

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []

    if not config.gitlab.token:
        errors.append("Missing GitLab token (set GITLAB_TOKEN or gitlab.token)")

    if not config.gitlab.url:
        errors.append("Missing GitLab URL (set GITLAB_URL or gitlab.url)")

    for name, model in config.models.items():
        if model.provider not in PROVIDERS:
            errors.append(f"Model '{name}' has unknown provider '{model.provider}'")
        if not model.api_key:
            errors.append(f"Model '{name}' has no api_key")
        if not model.model_id:
            errors.append(f"Model '{name}' has no model_id")

    if config.default_model and config.default_model not in config.models:
        errors.append(f"default_model '{config.default_model}' is not defined under models")

    seen: set[str] = set()
    for repo in config.repositories:
        if repo.id in seen:
            errors.append(f"Duplicate repository id '{repo.id}'")
        seen.add(repo.id)
        if repo.custom_prompt_mode not in PROMPT_MODES:
            errors.append(
                f"Repository '{repo.id}' has invalid custom_prompt_mode '{repo.custom_prompt_mode}'"
            )
        if repo.default_model and repo.default_model not in config.models:
            errors.append(
                f"Repository '{repo.id}' references unknown model '{repo.default_model}'"
            )

    if config.pipeline.batch_threshold < 1:
        errors.append("pipeline.batch_threshold must be >= 1")

    return errors


class RepositoryRegistry:
    """Read-only view over configured repositories and models."""

    def __init__(self, config: Config) -> None:
        self._config = config
        self._by_id = {repo.id: repo for repo in config.repositories}

    def get(self, repository_id: str) -> RepositoryConfig | None:
        """Look up a repository by its configured id."""
        return self._by_id.get(repository_id)

    def find_by_project(self, project_id: int) -> RepositoryConfig | None:
        """Find the active repository for a GitLab project id."""
        for repo in self._config.repositories:
            if repo.project_id == project_id and repo.active:
                return repo
        return None

    def resolve_model(self, repo: RepositoryConfig) -> ModelConfig:
        """Resolve the effective model for a repository.

        Precedence: repository override > repository default > global default.

        Raises:
            ConfigurationError: If no model resolves or it has no credential
        """
        model = repo.model
        if model is None and repo.default_model:
            model = self._config.models.get(repo.default_model)
            if model is None:
                raise ConfigurationError(
                    f"Repository '{repo.id}' references unknown model '{repo.default_model}'"
                )
        if model is None and self._config.default_model:
            model = self._config.models.get(self._config.default_model)
        if model is None:
            raise ConfigurationError(f"No model configured for repository '{repo.id}'")
        if not model.api_key:
            raise ConfigurationError(f"Model '{model.label}' has no API key")
        return replace(model)

    @staticmethod
    def resolve_system_prompt(repo: RepositoryConfig, base_prompt: str, output_format: str) -> str:
        """Build the effective system prompt for a repository.

        In ``extend`` mode the repository text is appended to the base prompt;
        in ``replace`` mode it replaces the base prompt, keeping the output
        format the parser depends on.
        """
        if not repo.custom_prompt:
            return base_prompt
        if repo.custom_prompt_mode == "replace":
            return f"{repo.custom_prompt}\n{output_format}"
        return f"{base_prompt}\n\n## Repository requirements\n{repo.custom_prompt}"
