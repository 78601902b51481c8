from datetime import datetime, timezone

import pytest
from telegram import Chat, Message, MessageEntity, User
from telegram.error import BadRequest, NetworkError, TimedOut

from conftest import BOT_ID, GROUP_ID, make_message
from zeno.errors import FormattingError, OperationTimeout, TransportError
from zeno.messaging import TelegramMessenger, display_name, from_telegram

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
GROUP = Chat(id=GROUP_ID, type="supergroup", title="Test group")
ALICE = User(id=1, first_name="Alice", is_bot=False, username="alice")
ZENO = User(id=BOT_ID, first_name="Zeno", is_bot=True, username="NityaXbot")


def _tg_message(message_id, text, user=ALICE, **kwargs):
    return Message(message_id=message_id, date=NOW, chat=GROUP, from_user=user, text=text, **kwargs)


def test_display_name_fallbacks():
    assert display_name(make_message(1, username="alice")) == "@alice"
    assert display_name(make_message(1, username=None, first_name="Alice")) == "Alice"
    assert display_name(make_message(1, username=None, first_name=None, user_id=7)) == "User_7"
    assert display_name(make_message(1, user_id=None)) == "Unknown"
    long_name = make_message(1, username=None, first_name="A" * 50)
    assert len(display_name(long_name)) == 32


def test_from_telegram():
    original = _tg_message(4, "earlier", user=ZENO)
    message = _tg_message(
        5,
        "hey @NityaXbot look",
        entities=(MessageEntity(type=MessageEntity.MENTION, offset=4, length=10),),
        reply_to_message=original,
    )

    converted = from_telegram(message)

    assert converted.id == 5
    assert converted.chat_id == GROUP_ID
    assert converted.chat_type == "supergroup"
    assert converted.sender_id == 1
    assert converted.reply_to_id == 4
    assert [(e.type, e.text) for e in converted.entities] == [("mention", "@NityaXbot")]
    assert converted.media is None


def test_from_telegram_uses_caption():
    message = Message(
        message_id=6, date=NOW, chat=GROUP, from_user=ALICE, caption="what is this?"
    )
    assert from_telegram(message).text == "what is this?"


def test_channel_sender():
    channel = Chat(id=-100123, type="channel")
    message = Message(message_id=7, date=NOW, chat=GROUP, sender_chat=channel, text="news")
    converted = from_telegram(message)
    assert converted.sender is None
    assert display_name(converted) == "Channel_-100123"


@pytest.fixture
def bot(mocker):
    bot = mocker.Mock()
    bot.send_message = mocker.AsyncMock(return_value=_tg_message(50, "sent", user=ZENO))
    bot.edit_message_text = mocker.AsyncMock(return_value=_tg_message(50, "edited", user=ZENO))
    return bot


@pytest.fixture
def telegram_messenger(bot, storage):
    return TelegramMessenger(bot, storage)


async def test_sent_messages_are_logged(telegram_messenger, bot, storage):
    message_id = await telegram_messenger.send_message(
        GROUP_ID, "sent", reply_to=4, buttons=[("🔗 Show sources", "sources:abc")]
    )

    assert message_id == 50
    kwargs = bot.send_message.call_args.kwargs
    assert kwargs["reply_parameters"].message_id == 4
    assert kwargs["reply_markup"].inline_keyboard[0][0].callback_data == "sources:abc"
    [logged] = await storage.get_messages(GROUP_ID, [50])
    assert logged.sender_id == BOT_ID


async def test_history_comes_from_the_log(telegram_messenger):
    question = _tg_message(2, "question", reply_to_message=_tg_message(1, "context"))
    await telegram_messenger.remember(question)

    history = await telegram_messenger.get_history(GROUP_ID, before_id=3, limit=10)
    assert [m.id for m in history] == [2, 1]


@pytest.mark.parametrize(
    "error, expected",
    [
        (TimedOut(), OperationTimeout),
        (BadRequest("Can't parse entities: unclosed bold"), FormattingError),
        (NetworkError("connection reset"), TransportError),
    ],
)
async def test_telegram_errors_are_translated(telegram_messenger, bot, error, expected):
    bot.edit_message_text.side_effect = error
    with pytest.raises(expected):
        await telegram_messenger.edit_message(GROUP_ID, 50, "*x", parse_mode="Markdown")


async def test_unchanged_edit_is_not_an_error(telegram_messenger, bot):
    bot.edit_message_text.side_effect = BadRequest("Message is not modified")
    await telegram_messenger.edit_message(GROUP_ID, 50, "same")
