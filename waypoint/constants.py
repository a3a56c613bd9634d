"""Default limits and thresholds for waypoint runs."""

DEFAULT_ESCALATION_THRESHOLD = 0.75
DEFAULT_KNOWLEDGE_CONFIDENCE = 0.95
DEFAULT_REASONING_TEMPERATURE = 0.3
DEFAULT_MIN_REASONING_CONFIDENCE = 0.3
DEFAULT_MAX_REASONING_CONFIDENCE = 0.9

DEFAULT_MAX_ESCALATIONS = 3
DEFAULT_MAX_RETRIES = 3
DEFAULT_RUN_TIMEOUT_SECONDS = 30 * 60
DEFAULT_CHECKPOINT_RETENTION = 5
MIN_CHECKPOINT_RETENTION = 2

RESUME_TOPIC = "resume"
ESCALATION_ID_PREFIX = "esc-"
STATUS_FILE_NAME = "workflow-status.yaml"
# run variable holding human answers keyed by step id; not usable as a step id
DECISIONS_VARIABLE = "decisions"
