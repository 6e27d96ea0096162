"""Default values shared across stepflow."""

DEFAULT_MAX_DELAY_MS = 60_000
DEFAULT_STEP_TIMEOUT = 300.0
DEFAULT_HTTP_TIMEOUT = 30.0
MAX_RETRY_ATTEMPTS = 5
MAX_WORKFLOW_RETRIES = 5
DEFAULT_OUTPUT_KEY = "result"
HTTP_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH")
EVENT_TOPIC_PREFIX = "execution"
EXPRESSION_CACHE_SIZE = 512
