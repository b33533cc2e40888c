STATE_DIR_NAME = ".flow_runner"
CONFIG_FILE = "config.yaml"
FLOWS_FILE = "flows.yaml"
FLOWS_LOCK_FILE = "flows.lock"
RUNS_DIR = "runs"
ARTIFACTS_DIR = "artifacts"
ACTIVITY_FILE = "activity.jsonl"
WINDOWS_LOCK_BYTES = 4096

DEFAULT_TOOL_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_CONCURRENCY = 4
DEFAULT_AI_ENDPOINT = "https://api.openai.com/v1/chat/completions"
DEFAULT_AI_MODEL = "gpt-4o-mini"
DEFAULT_GENERATION_MODEL = "gpt-4o"
AI_API_KEY_ENV = "OPENAI_API_KEY"
MOCK_AI_TAG = "[MOCK AI OUTPUT]"

# Webhook deliveries give up within this share of the node timeout
NOTIFICATION_DELIVERY_SHARE = 0.8

EXECUTION_MODES = ("simulate", "live")

# Node grid used when a generated graph omits positions
LAYOUT_COLUMNS = 4
LAYOUT_X_SPACING = 320
LAYOUT_Y_SPACING = 200
