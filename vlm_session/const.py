"""Default values shared by the configuration, CLI and HTTP layers."""

DEFAULT_CONTEXT_LENGTH = 4096
DEFAULT_BATCH_SIZE = 512
DEFAULT_N_GPU_LAYERS = -1
DEFAULT_TEMPERATURE = 0.2
DEFAULT_SEED = 1234
DEFAULT_MAX_TOKENS = 512
DEFAULT_CHAT_TEMPLATE = "vicuna"

# Thread selection ceiling for decode/batch threads.
MAX_AUTO_THREADS = 8
RESERVED_CORES = 2

DEFAULT_QUEUE_SIZE = 16
DEFAULT_QUEUE_TIMEOUT = 300

DEFAULT_BIND_HOST = "127.0.0.1"
DEFAULT_PORT = 8000

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FILE = None
DEFAULT_NO_LOG_FILE = False

DESCRIBE_PROMPT = "Can you describe this image"
