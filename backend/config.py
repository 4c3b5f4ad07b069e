"""
Runtime configuration for FormPilot.

Every setting is read once from the environment at import time. Defaults are
tuned for local development against SQLite.
"""

import os

DATABASE_URL = os.environ.get(
    "DATABASE_URL",
    "sqlite+aiosqlite:///./formpilot_dev.db",
)

# Model used by the form-building assistant (see agents.form_agent._MODEL_MAP)
AGENT_MODEL = os.environ.get("FORMPILOT_MODEL", "gpt-4o-mini")

# Continuation polling: wait for the agent channel to go idle before
# injecting the synthetic "Continue" message.
CONTINUE_POLL_INTERVAL = float(os.environ.get("FORMPILOT_CONTINUE_POLL_INTERVAL", "0.1"))
CONTINUE_MAX_INTERVAL = float(os.environ.get("FORMPILOT_CONTINUE_MAX_INTERVAL", "1.0"))
CONTINUE_BACKOFF = float(os.environ.get("FORMPILOT_CONTINUE_BACKOFF", "1.5"))
CONTINUE_MAX_WAIT = float(os.environ.get("FORMPILOT_CONTINUE_MAX_WAIT", "60"))

# Automatically ask the agent for the next stage once a confirmed batch
# advanced the build workflow.
AUTO_CONTINUE = os.environ.get("FORMPILOT_AUTO_CONTINUE", "true").lower() == "true"

LOG_LEVEL = os.environ.get("FORMPILOT_LOG_LEVEL", "INFO").upper()
