"""Three-layer config loading and merging."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .errors import ConfigError


# ---------------------------------------------------------------------------
# Config dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ProviderCreds:
    api_key: str = ""


@dataclass
class ProvidersConfig:
    anthropic: ProviderCreds = field(default_factory=ProviderCreds)
    openai: ProviderCreds = field(default_factory=ProviderCreds)
    google: ProviderCreds = field(default_factory=ProviderCreds)


@dataclass
class RouterConfig:
    retry_limit: int = 2            # parse/validation retries per task
    dispatch_retry_limit: int = 2   # timeout/boundary-failure retries per task
    max_steps: int = 20             # dispatched tasks per run
    design_first: bool = True


@dataclass
class DispatchConfig:
    backend: str = "text_gen"       # "text_gen" | "claude_code" | "agent"
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-5"
    timeout_sec: float = 600.0
    max_prior_artifacts: int = 50
    max_turns: int = 50


@dataclass
class StateConfig:
    db_path: str = ".maestro/state.db"
    markdown_path: str = ".maestro/workflow_state.md"


@dataclass
class NotifyConfig:
    webhook_url: str = ""
    events: list[str] = field(default_factory=lambda: [
        "workflow.blocked", "workflow.terminated",
    ])


@dataclass
class LoggingConfig:
    level: str = "INFO"
    log_dir: str = ""


@dataclass
class Config:
    modes_dir: str = ".maestro/modes"
    router: RouterConfig = field(default_factory=RouterConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    state: StateConfig = field(default_factory=StateConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    project_root: str = ""

    def resolve(self, path: str) -> Path:
        """Resolve a config path relative to the project root."""
        p = Path(path)
        if p.is_absolute() or not self.project_root:
            return p
        return Path(self.project_root) / p

    def api_key(self, provider: str) -> str:
        creds = getattr(self.providers, provider, None)
        return creds.api_key if isinstance(creds, ProviderCreds) else ""


# ---------------------------------------------------------------------------
# Deep merge
# ---------------------------------------------------------------------------

def deep_merge(base: dict, override: dict) -> dict:
    """Field-level deep merge. Lists are replaced, None values ignored."""
    result = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# ---------------------------------------------------------------------------
# Dict → Config mapping
# ---------------------------------------------------------------------------

def _section(data: dict, name: str) -> dict:
    value = data.get(name)
    return value if isinstance(value, dict) else {}


def _dict_to_config(data: dict, project_root: str) -> Config:
    cfg = Config(project_root=project_root)

    if "modes_dir" in data:
        cfg.modes_dir = data["modes_dir"]

    r = _section(data, "router")
    cfg.router = RouterConfig(
        retry_limit=int(r.get("retry_limit", cfg.router.retry_limit)),
        dispatch_retry_limit=int(r.get("dispatch_retry_limit", cfg.router.dispatch_retry_limit)),
        max_steps=int(r.get("max_steps", cfg.router.max_steps)),
        design_first=bool(r.get("design_first", cfg.router.design_first)),
    )

    d = _section(data, "dispatch")
    cfg.dispatch = DispatchConfig(
        backend=d.get("backend", cfg.dispatch.backend),
        provider=d.get("provider", cfg.dispatch.provider),
        model=d.get("model", cfg.dispatch.model),
        timeout_sec=float(d.get("timeout_sec", cfg.dispatch.timeout_sec)),
        max_prior_artifacts=int(d.get("max_prior_artifacts", cfg.dispatch.max_prior_artifacts)),
        max_turns=int(d.get("max_turns", cfg.dispatch.max_turns)),
    )

    s = _section(data, "state")
    cfg.state = StateConfig(
        db_path=s.get("db_path", cfg.state.db_path),
        markdown_path=s.get("markdown_path", cfg.state.markdown_path),
    )

    n = _section(data, "notify")
    if n:
        cfg.notify = NotifyConfig(
            webhook_url=n.get("webhook_url", ""),
            events=n.get("events", cfg.notify.events),
        )

    lg = _section(data, "logging")
    cfg.logging = LoggingConfig(
        level=str(lg.get("level", cfg.logging.level)),
        log_dir=lg.get("log_dir", cfg.logging.log_dir),
    )

    p = _section(data, "providers")
    if p:
        cfg.providers = ProvidersConfig(
            anthropic=ProviderCreds(api_key=_section(p, "anthropic").get("api_key", "")),
            openai=ProviderCreds(api_key=_section(p, "openai").get("api_key", "")),
            google=ProviderCreds(api_key=_section(p, "google").get("api_key", "")),
        )

    return cfg


# ---------------------------------------------------------------------------
# Load config (3-layer)
# ---------------------------------------------------------------------------

def _read_yaml(path: Path, strict: bool) -> dict:
    if not path.exists():
        return {}
    parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        if strict:
            raise ConfigError(
                f"Invalid {path.name}: expected mapping, got {type(parsed).__name__}"
            )
        return {}
    return parsed


def load_config(project_root: str | Path) -> Config:
    """Load and merge config from up to 3 layers.

    Priority (highest first):
      1. Environment variables (API keys, log level)
      2. .maestro/local.config.yaml
      3. .maestro/config.yaml
    """
    project_root = Path(project_root)
    maestro_dir = project_root / ".maestro"

    base_data = _read_yaml(maestro_dir / "config.yaml", strict=True)
    local_data = _read_yaml(maestro_dir / "local.config.yaml", strict=False)

    merged = deep_merge(base_data, local_data)
    cfg = _dict_to_config(merged, str(project_root))

    env_anthropic = os.environ.get("ANTHROPIC_API_KEY")
    if env_anthropic:
        cfg.providers.anthropic.api_key = env_anthropic

    env_openai = os.environ.get("OPENAI_API_KEY")
    if env_openai:
        cfg.providers.openai.api_key = env_openai

    env_google = os.environ.get("GOOGLE_API_KEY")
    if env_google:
        cfg.providers.google.api_key = env_google

    env_level = os.environ.get("MAESTRO_LOG_LEVEL")
    if env_level:
        cfg.logging.level = env_level

    return cfg
