"""Engine-wide defaults."""

DEFAULT_SNAPSHOT_LIMIT = 50
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MAX_ROLLBACKS = 1
DEFAULT_AGENT_TIMEOUT = 30.0
DEFAULT_OLLAMA_URL = "http://localhost:11434"
SKIPPED_STEP_ERROR = "skipped"
UNKNOWN_AGENT_NAME = "Unknown Agent"

# Context keys maintained by the executor and read by branch predicates.
CONTEXT_INITIAL_INPUT = "initial_input"
CONTEXT_STEP_OUTCOMES = "step_outcomes"
CONTEXT_LAST_OUTCOME = "last_outcome"
CONTEXT_SKIPPED_STEPS = "skipped_steps"
