import os
from dataclasses import dataclass, field

import dotenv

# Sampling per pathway. The ask pathway talks to a small reasoning model with
# a short output cap, the chat pathway to the larger tool-enabled model.
ASK_TEMPERATURE = 1.0
ASK_TOP_P = 0.95
ASK_MAX_TOKENS = 1024

CHAT_TEMPERATURE = 0.7
CHAT_TOP_P = 0.95
CHAT_MAX_TOKENS = 8192

# Timeouts in seconds.
PROVIDER_TIMEOUT = 30
CHAT_TIMEOUT = 90
IMAGE_TOOL_TIMEOUT = 90
IMAGE_WORKER_TIMEOUT = 60
SANDBOX_TIMEOUT = 30
TELEGRAPH_TIMEOUT = 10

GROUP_HISTORY_LIMIT = 20
PRIVATE_HISTORY_LIMIT = 30
# Extra messages fetched so filtering (commands, empty text) still fills the window.
HISTORY_OVERFETCH = 5
REPLY_LOOKUP_WINDOW = 10

MAX_TOOL_ITERATIONS = 5
TELEGRAM_MESSAGE_LIMIT = 4096

ASPECT_RATIOS = frozenset(
    {"1:1", "2:3", "3:2", "3:4", "4:3", "4:5", "5:4", "9:16", "16:9", "21:9"}
)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./data/zeno.db"


def _parse_chat_ids(raw: str) -> frozenset[int]:
    ids: set[int] = set()
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            ids.add(int(part))
        except ValueError:
            continue
    return frozenset(ids)


def _parse_bool(raw: str | None, default: bool) -> bool:
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Process configuration, loaded once at startup."""

    telegram_bot_token: str
    aistudio_api_key: str
    bot_handle: str = ""
    ask_command: str = "askai"
    add_key_command: str = "addaikey"
    mention_trigger: str = "@ask"
    database_url: str = DEFAULT_DATABASE_URL
    allowed_chat_ids: frozenset[int] = field(default_factory=frozenset)
    max_media_size: int = 5 * 1024 * 1024
    default_model: str = "gemini-3-flash-preview"
    image_model: str = "gemini-2.5-flash-image"
    high_image_model: str = "gemini-3-pro-image-preview"
    ask_model: str = "qwen-3-32b"
    ask_base_url: str = "https://api.cerebras.ai/v1"
    ask_provider: str = "cerebras"
    sandbox_container: str = "zeno-sandbox"
    generated_dir: str = "./data/generated"
    enable_grounding: bool = True
    image_queue_size: int = 100
    api_port: int = 8001
    persona: str = ""
    logfire_token: str | None = None

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the environment (and a .env file if present)."""
        dotenv.load_dotenv()
        env = os.environ

        token = env.get("TELEGRAM_BOT_TOKEN")
        if not token:
            raise RuntimeError("TELEGRAM_BOT_TOKEN not set in environment")

        aistudio_key = env.get("AISTUDIO_API_KEY")
        if not aistudio_key:
            raise RuntimeError(
                "AISTUDIO_API_KEY not set in environment. "
                "It is the service-wide key used for mention and reply triggers."
            )

        try:
            max_media_size = int(env.get("MAX_MEDIA_SIZE") or 0) or 5 * 1024 * 1024
            image_queue_size = int(env.get("IMAGE_QUEUE_SIZE") or 100)
            api_port = int(env.get("API_PORT") or 8001)
        except ValueError as e:
            raise RuntimeError(
                "MAX_MEDIA_SIZE, IMAGE_QUEUE_SIZE and API_PORT must be integers"
            ) from e

        defaults = cls(telegram_bot_token=token, aistudio_api_key=aistudio_key)
        return cls(
            telegram_bot_token=token,
            aistudio_api_key=aistudio_key,
            bot_handle=env.get("BOT_HANDLE", "").lstrip("@"),
            ask_command=env.get("ASK_COMMAND") or defaults.ask_command,
            add_key_command=env.get("ADD_KEY_COMMAND") or defaults.add_key_command,
            mention_trigger=env.get("MENTION_TRIGGER") or defaults.mention_trigger,
            database_url=env.get("DATABASE_URL") or DEFAULT_DATABASE_URL,
            allowed_chat_ids=_parse_chat_ids(env.get("ALLOWED_CHAT_IDS", "")),
            max_media_size=max_media_size,
            default_model=env.get("DEFAULT_MODEL") or defaults.default_model,
            image_model=env.get("IMAGE_MODEL") or defaults.image_model,
            high_image_model=env.get("HIGH_IMAGE_MODEL") or defaults.high_image_model,
            ask_model=env.get("ASK_MODEL") or defaults.ask_model,
            ask_base_url=env.get("ASK_BASE_URL") or defaults.ask_base_url,
            sandbox_container=env.get("SANDBOX_CONTAINER") or defaults.sandbox_container,
            generated_dir=env.get("GENERATED_DIR") or defaults.generated_dir,
            enable_grounding=_parse_bool(env.get("ENABLE_GROUNDING"), True),
            image_queue_size=image_queue_size,
            api_port=api_port,
            persona=env.get("BOT_PERSONA", "").strip(),
            logfire_token=env.get("LOGFIRE_TOKEN") or None,
        )

    def chat_allowed(self, chat_id: int) -> bool:
        return not self.allowed_chat_ids or chat_id in self.allowed_chat_ids
