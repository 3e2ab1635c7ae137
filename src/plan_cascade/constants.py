STATE_DIR_NAME = ".plan_cascade"
CONFIG_FILE = "config.yaml"
QUEUE_FILE = "subtasks.json"
FEEDBACK_DIR = "feedback"
LOGS_DIR = "logs"
TASKS_DIR = "tasks"
STORIES_DIR = "stories"
DEFAULT_MILESTONES_DIR = "docs/planning/milestones"

CLI_NAME = "plan-cascade"

SUBTASK_ID_PREFIX = "SUB-"
SUBTASK_ID_WIDTH = 3

# Keys that may appear in a queue file but are never persisted back.
DERIVED_QUEUE_KEYS = ("fingerprint",)
LEGACY_SUBTASK_KEYS = ("status",)

DEFAULT_REVIEWER_COMMAND = "claude -p --output-format json"
VALIDATION_TIMEOUT_SECONDS = 60
CALIBRATION_TIMEOUT_SECONDS = 600
DEFAULT_EXECUTOR_TIMEOUT_MINUTES = 60
TIMEOUT_WARNING_THRESHOLD_SECONDS = 1.0

CALIBRATION_BATCH_SIZE = 5
CHARS_PER_TOKEN = 4

EXIT_OK = 0
EXIT_FAILURE = 1

BANNER_WIDTH = 60
