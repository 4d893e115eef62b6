DEFAULT_CONFIG_PATH = "zapflow.yaml"

DEFAULT_FALLBACK_MESSAGE = (
    "Sorry, I had a problem processing your message. Please try again later."
)
DEFAULT_NO_WORKFLOW_MESSAGE = (
    "Sorry, there is no conversation flow available to assist you right now."
)
DEFAULT_INPUT_PROMPT = "Waiting for your reply..."
DEFAULT_END_MESSAGE = "Conversation finished"

DEFAULT_SEND_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY = 0.5
DEFAULT_CONFLICT_RETRIES = 3
DEFAULT_MAX_STEPS_PER_MESSAGE = 50
DEFAULT_HTTP_TIMEOUT = 10.0
DEFAULT_GRAPH_CACHE_TTL = 60.0

ZAPI_DEFAULT_URL = "https://api.z-api.io"
