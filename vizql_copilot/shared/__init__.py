"""
Shared infrastructure for all phases.

Modules:
- config: AppConfig and environment loading
- errors: Error taxonomy and user-facing formatting
- cancellation: AbortSignal and run_cancelable
- retry: RetryPolicy and attempt_with_feedback
- events: EventBus
- artifacts: Query result artifacts
- llm: Agent capability layer (OpenAI client with retry logic)
- logging: Structured JSON logging and the per-session analysis log
- contracts: Query, analysis plan and event contracts
- schemas: Session state models
"""

from vizql_copilot.shared.config import AppConfig, DEFAULT_CONFIG, load_config
from vizql_copilot.shared.logging.config import setup_logging, log_phase_transition

__all__ = [
    "AppConfig",
    "DEFAULT_CONFIG",
    "load_config",
    "setup_logging",
    "log_phase_transition",
]
