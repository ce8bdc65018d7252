"""Shared defaults for practiceflow."""

DEFAULT_MAX_STEPS_PER_RUN = 100
DEFAULT_SWEEP_BATCH_SIZE = 50
DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0
DEFAULT_WEBHOOK_TIMEOUT_SECONDS = 10.0

EXECUTION_TOPIC = "workflow_executions"
