"""Central configuration for paths and constants."""

import os
from pathlib import Path

# Data directory, override with TALKBACK_DATA_DIR env var
DATA_DIR = Path(os.environ.get("TALKBACK_DATA_DIR", str(Path.home() / ".talkback")))

# Database path
SQLITE_PATH = DATA_DIR / "conversations.db"

# Generation backend (any OpenAI-compatible /v1/chat/completions server)
GENERATION_BASE_URL = os.environ.get("TALKBACK_GENERATION_URL", "http://127.0.0.1:1234")
GENERATION_MODEL = os.environ.get("TALKBACK_MODEL", "")
GENERATION_API_KEY = os.environ.get("TALKBACK_GENERATION_API_KEY")
GENERATION_TIMEOUT_SECONDS = 120.0

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant. Respond concisely and professionally."
)

# Named system prompts selectable for the voice loop
PERSONALITIES = {
    "Standard": DEFAULT_SYSTEM_PROMPT,
    "Sarcastic": (
        "Respond as a highly sarcastic and witty AI. Use dry humor and playful "
        "cynicism. Keep responses concise and witty."
    ),
    "Friendly": (
        "Respond as an exceptionally friendly and helpful AI. Use warm and "
        "encouraging language, and show genuine interest. Keep your tone light "
        "and approachable."
    ),
    "Teacher": (
        "Respond as a patient and knowledgeable teacher, explaining concepts "
        "clearly and simply, and guiding the user to understanding."
    ),
}

# Conversations
TITLE_MAX_WORDS = 6
UNTITLED = "Untitled"
RECENT_CONVERSATIONS_LIMIT = 20

# Persistence waits this long for the transport side to finish before writing
TRANSPORT_SETTLE_TIMEOUT_SECONDS = 30.0

# User-visible failure text
GENERATION_FAILED_MESSAGE = (
    "Sorry, the assistant could not respond right now. Please try again."
)
GENERATION_INTERRUPTED_NOTICE = "\n\n[Response interrupted: the connection to the assistant failed.]"

# Voice loop timing
ERROR_DISPLAY_SECONDS = 5.0
RESUME_LISTENING_DELAY_SECONDS = 0.5

# Speech-to-text error codes. Anything not listed as transient is fatal.
FATAL_ENGINE_ERRORS = {
    "not-allowed",
    "service-not-allowed",
    "audio-capture",
    "language-not-supported",
    "bad-grammar",
}
TRANSIENT_ENGINE_ERRORS = {"network", "no-speech", "aborted"}


def _parse_tokens(raw: str) -> dict[str, str]:
    """Parse ``token=owner,token2=owner2`` into a token → owner map."""
    tokens: dict[str, str] = {}
    for pair in raw.split(","):
        token, sep, owner = pair.strip().partition("=")
        if sep and token and owner:
            tokens[token.strip()] = owner.strip()
    return tokens


# HTTP API
API_TOKENS = _parse_tokens(os.environ.get("TALKBACK_API_TOKENS", ""))
HOST = os.environ.get("TALKBACK_HOST", "127.0.0.1")
PORT = int(os.environ.get("TALKBACK_PORT", "8000"))

# Owner used by the local CLI and MCP server
DEFAULT_OWNER_ID = os.environ.get("TALKBACK_OWNER_ID", "local")
