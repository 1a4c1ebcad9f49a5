"""
Runtime configuration for the copilot.

Centralizes tunables for the phase pipeline (cache TTL, retry bounds,
summarization thresholds, model names) so they can be changed from the
environment without touching the phase code.
"""

import os
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

from dotenv import load_dotenv


# Agents that can have a per-agent model override (OPENAI_MODEL_<AGENT>)
AGENT_NAMES = [
    "triage",
    "field-selector",
    "analysis-planner",
    "query-compiler",
    "lightweight-summarizer",
    "analyst",
]

# Environment needed to launch the Tableau MCP server
TABLEAU_MCP_ENV = ["TRANSPORT", "SERVER", "SITE_NAME", "PAT_NAME", "PAT_VALUE"]


@dataclass
class AppConfig:
    """
    Configuration for one copilot process.

    Attributes:
        site_name: Tableau site, used to scope the metadata disk cache
        logs_dir: Root directory for artifacts, metadata cache and analysis logs
        metadata_cache_ttl_ms: Metadata expiry in milliseconds (0 = never expires)
        tableau_client_timeout_ms: Timeout for a single datasource query
        fetch_max_attempts: Compiler/execute attempts per fetch
        analysis_max_attempts: Analysis-plan attempts (one retry with a hint)
        selector_max_fields: Upper bound on the allow-list handed to the compiler
        ci_rows_threshold: Row count above which the code-interpreter path is used
        ci_timeout_s: Budget for the code-interpreter summarization call
        ci_delete_files_after: Remove uploaded artifacts after the CI call
        lightweight_char_budget: Characters of artifact JSON sent to the narrator
        default_model: Model used when an agent has no override
        agent_models: Per-agent model overrides
        locale: Locale for event narration
    """

    site_name: str = "default"
    logs_dir: str = "logs"

    metadata_cache_ttl_ms: int = 0
    tableau_client_timeout_ms: int = 15000

    fetch_max_attempts: int = 3
    analysis_max_attempts: int = 2
    selector_max_fields: int = 8

    ci_rows_threshold: int = 30
    ci_timeout_s: float = 180.0
    ci_delete_files_after: bool = True
    lightweight_char_budget: int = 12000

    default_model: str = "gpt-4.1-mini"
    agent_models: Dict[str, str] = field(default_factory=dict)

    locale: str = "en"

    def model_for(self, agent_name: str) -> str:
        """Resolve the model for an agent, falling back to the default."""
        return self.agent_models.get(agent_name) or self.default_model


# Default configuration instance
DEFAULT_CONFIG = AppConfig()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(float(raw))
    except ValueError:
        return default
    return value if value >= 0 else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def load_config(env_file: Optional[str] = None, **overrides) -> AppConfig:
    """
    Build an AppConfig from the environment.

    Loads a .env file first (existing variables win), then overlays the
    known variables on top of DEFAULT_CONFIG. Malformed numeric values
    fall back to the defaults.

    Args:
        env_file: Optional explicit .env path
        **overrides: Field overrides applied last (useful in tests)

    Returns:
        AppConfig for this process
    """
    load_dotenv(env_file) if env_file else load_dotenv()

    agent_models = {}
    for name in AGENT_NAMES:
        env_key = "OPENAI_MODEL_" + name.upper().replace("-", "_")
        value = os.environ.get(env_key, "").strip()
        if value:
            agent_models[name] = value

    site = os.environ.get("SITE_NAME", "").strip() or DEFAULT_CONFIG.site_name

    config = AppConfig(
        site_name=site,
        logs_dir=os.environ.get("LOGS_DIR", "").strip() or DEFAULT_CONFIG.logs_dir,
        metadata_cache_ttl_ms=_env_int("METADATA_CACHE_TTL_MS", DEFAULT_CONFIG.metadata_cache_ttl_ms),
        tableau_client_timeout_ms=_env_int(
            "TABLEAU_CLIENT_TIMEOUT_MS", DEFAULT_CONFIG.tableau_client_timeout_ms
        ),
        fetch_max_attempts=_env_int("FETCH_MAX_ATTEMPTS", DEFAULT_CONFIG.fetch_max_attempts) or 1,
        selector_max_fields=_env_int("SELECTOR_MAX_FIELDS", DEFAULT_CONFIG.selector_max_fields) or 1,
        ci_rows_threshold=_env_int("CI_ROWS_THRESHOLD", DEFAULT_CONFIG.ci_rows_threshold),
        ci_timeout_s=_env_float("CI_TIMEOUT_S", DEFAULT_CONFIG.ci_timeout_s),
        ci_delete_files_after=_env_bool("CI_DELETE_FILE_AFTER", DEFAULT_CONFIG.ci_delete_files_after),
        lightweight_char_budget=_env_int(
            "LIGHTWEIGHT_CHAR_BUDGET", DEFAULT_CONFIG.lightweight_char_budget
        ),
        default_model=os.environ.get("OPENAI_MODEL_DEFAULT", "").strip() or DEFAULT_CONFIG.default_model,
        agent_models=agent_models,
        locale=os.environ.get("LOCALE", "").strip().lower() or DEFAULT_CONFIG.locale,
    )
    if overrides:
        config = replace(config, **overrides)
    return config


def missing_env(keys: List[str]) -> List[str]:
    """Return the names in `keys` that are unset or blank in the environment."""
    missing = []
    for key in keys:
        value = os.environ.get(key)
        if value is None or not value.strip():
            missing.append(key)
    return missing


def tableau_mcp_prerequisites() -> List[str]:
    """Missing environment variables needed to start the Tableau MCP server."""
    required = list(TABLEAU_MCP_ENV)
    if os.environ.get("TRANSPORT", "").strip().lower() == "stdio":
        required.append("TABLEAU_MCP_FILEPATH")
    return missing_env(required)
