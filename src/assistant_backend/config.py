import logging
import os
import sys

from dotenv import load_dotenv

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
dotenv_path = os.path.join(ROOT_DIR, ".env")

load_dotenv(dotenv_path)

SYSTEM_PROMPT = os.environ.get(
    "SYSTEM_PROMPT",
    """You are a helpful assistant. Default to English unless the user asks for Spanish ('es').
Weather:
  When asked about weather or given a city/location:
    (1) ALWAYS call the weather tool with { location }.
    (2) Reply with a one-sentence summary like: Weather in {location}: {conditions}, {temperature}°C (feels {feelsLike}°C).
  If the location is ambiguous, ask the user to clarify before calling the tool.
Movies:
  When asked about a movie title:
    (1) ALWAYS call the movie tool with { title }.
    (2) Reply with a one-sentence summary like: {title} ({year}): {genre}.
  If the title is ambiguous, ask the user to clarify before calling the tool.
If a tool fails, explain the failure to the user in one or two plain sentences.
""",
)

# Only required when the Azure OpenAI backend is selected.
AZURE_OPENAI_MODEL = os.environ.get("AZURE_OPENAI_MODEL")
AZURE_OPENAI_ENDPOINT = os.environ.get("AZURE_OPENAI_ENDPOINT")
AZURE_OPENAI_API_KEY = os.environ.get("AZURE_OPENAI_API_KEY")
AZURE_OPENAI_API_VERSION = os.environ.get("AZURE_OPENAI_API_VERSION")

# "azure" or "keyword"
ASSISTANT_MODEL = os.environ.get("ASSISTANT_MODEL", "azure")

# Read at call time by the movie tool, see tools.get_movie.
OMDB_API_KEY_ENV = "OMDB_API_KEY"

TOOL_TIMEOUT_SECONDS = float(os.environ.get("TOOL_TIMEOUT_SECONDS", "10"))
STREAM_QUEUE_SIZE = int(os.environ.get("STREAM_QUEUE_SIZE", "32"))
PROTOCOL_STRICT = os.environ.get("PROTOCOL_STRICT", "false").lower() in ("1", "true", "yes")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


def configure_logging(log_level: str = LOG_LEVEL) -> None:
    """
    Configure application-wide logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # Set third-party loggers to WARNING to reduce noise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
