import pytest

from zeno.config import DEFAULT_DATABASE_URL, Settings

ENV_KEYS = [
    "TELEGRAM_BOT_TOKEN",
    "AISTUDIO_API_KEY",
    "BOT_HANDLE",
    "ALLOWED_CHAT_IDS",
    "DATABASE_URL",
    "MAX_MEDIA_SIZE",
    "ENABLE_GROUNDING",
    "BOT_PERSONA",
]


@pytest.fixture
def env(monkeypatch, mocker):
    mocker.patch("zeno.config.dotenv.load_dotenv")
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
    monkeypatch.setenv("AISTUDIO_API_KEY", "service-key")
    return monkeypatch


def test_defaults(env):
    settings = Settings.from_env()
    assert settings.ask_command == "askai"
    assert settings.mention_trigger == "@ask"
    assert settings.database_url == DEFAULT_DATABASE_URL
    assert settings.max_media_size == 5 * 1024 * 1024
    assert settings.enable_grounding
    assert settings.chat_allowed(-42)


def test_overrides(env):
    env.setenv("BOT_HANDLE", "@OtherBot")
    env.setenv("ALLOWED_CHAT_IDS", "-1001, 42,not-a-number,")
    env.setenv("ENABLE_GROUNDING", "false")
    env.setenv("BOT_PERSONA", "  You are Bob.  ")

    settings = Settings.from_env()

    assert settings.bot_handle == "OtherBot"
    assert settings.allowed_chat_ids == frozenset({-1001, 42})
    assert settings.chat_allowed(42)
    assert not settings.chat_allowed(7)
    assert not settings.enable_grounding
    assert settings.persona == "You are Bob."


@pytest.mark.parametrize("missing", ["TELEGRAM_BOT_TOKEN", "AISTUDIO_API_KEY"])
def test_required_keys(env, missing):
    env.delenv(missing)
    with pytest.raises(RuntimeError, match=missing):
        Settings.from_env()


def test_bad_integer(env):
    env.setenv("MAX_MEDIA_SIZE", "five megabytes")
    with pytest.raises(RuntimeError, match="must be integers"):
        Settings.from_env()
