"""
IP-based rate limiting for the execution trigger (POST /jobs/run-next).
"""
from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address

from jobengine.config.load_config import ExecuteConfig


limiter = Limiter(key_func=get_remote_address)

# Rewritten by `configure_execute_limit` once the app's config is known.
_execute_limit = "10/60 seconds"


def execute_limit_for(cfg: ExecuteConfig) -> str:
    return f"{cfg.max_requests}/{cfg.window_s} seconds"


def configure_execute_limit(cfg: ExecuteConfig) -> str:
    global _execute_limit
    _execute_limit = execute_limit_for(cfg)
    return _execute_limit


def execute_limit() -> str:
    """Limit provider for the run-next route; read on every request."""
    return _execute_limit
