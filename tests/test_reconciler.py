import pytest

from conftest import GROUP_ID
from zeno.errors import ImageQueueFull, TransportError
from zeno.reconciler import (
    GENERATING_TEXT,
    NO_RESPONSE_TEXT,
    PLACEHOLDER_TEXT,
    ResponseReconciler,
    extract_image_directives,
)
from zeno.schemas import GroundingLink


@pytest.fixture
def worker(mocker):
    worker = mocker.Mock()
    worker.submit = mocker.Mock()
    return worker


@pytest.fixture
def telegraph(mocker):
    telegraph = mocker.Mock()
    telegraph.publish = mocker.AsyncMock(return_value="https://graph.org/Answer-10-19")
    return telegraph


@pytest.fixture
def reconciler(messenger, storage, worker, telegraph):
    return ResponseReconciler(messenger, storage, worker, telegraph)


@pytest.fixture
async def placeholder(reconciler):
    return await reconciler.open(GROUP_ID, reply_to=10)


def test_extract_image_directives():
    text, prompts = extract_image_directives(
        "Here you go!\n\n[IMAGE: a red fox in snow]\n\n\nEnjoy [image:  tiny robot ]"
    )
    assert prompts == ["a red fox in snow", "tiny robot"]
    assert text == "Here you go!\n\nEnjoy"


async def test_open_sends_placeholder_reply(messenger, placeholder):
    assert messenger.sent[0]["text"] == PLACEHOLDER_TEXT
    assert messenger.sent[0]["reply_to"] == 10
    assert placeholder.message_id == messenger.sent[0]["id"]


async def test_open_failure_propagates(reconciler, messenger):
    messenger.fail_send = True
    with pytest.raises(TransportError):
        await reconciler.open(GROUP_ID, reply_to=10)


async def test_finish_markdown(reconciler, messenger, placeholder):
    await reconciler.finish(placeholder, "*bold* answer", markdown=True)
    assert messenger.last_edit["text"] == "*bold* answer"
    assert messenger.last_edit["parse_mode"] == "Markdown"
    assert messenger.last_edit["message_id"] == placeholder.message_id


async def test_finish_plain(reconciler, messenger, placeholder):
    await reconciler.finish(placeholder, "*not bold*", markdown=False)
    assert messenger.last_edit["parse_mode"] is None


async def test_rejected_markdown_falls_back_to_plain(reconciler, messenger, placeholder):
    messenger.reject_markdown = True
    await reconciler.finish(placeholder, "broken *markdown", markdown=True)
    assert messenger.last_edit["text"] == "broken *markdown"
    assert messenger.last_edit["parse_mode"] is None


async def test_directives_become_image_jobs(reconciler, messenger, worker, placeholder):
    await reconciler.finish(
        placeholder, "Sure!\n[IMAGE: a cat on a piano]", markdown=False, image_directives=True
    )
    job = worker.submit.call_args.args[0]
    assert job.prompt == "a cat on a piano"
    assert job.chat_id == GROUP_ID
    assert job.reply_to_message_id == 10
    assert messenger.last_edit["text"] == "Sure!"


async def test_directive_only_answer_shows_generating(reconciler, messenger, worker, placeholder):
    await reconciler.finish(placeholder, "[IMAGE: a cat]", markdown=False, image_directives=True)
    assert messenger.last_edit["text"] == GENERATING_TEXT


async def test_directives_left_alone_when_disabled(reconciler, messenger, worker, placeholder):
    await reconciler.finish(placeholder, "[IMAGE: a cat]", markdown=False)
    worker.submit.assert_not_called()
    assert messenger.last_edit["text"] == "[IMAGE: a cat]"


async def test_full_queue_is_visible(reconciler, messenger, worker, placeholder):
    worker.submit.side_effect = ImageQueueFull("full")
    await reconciler.finish(placeholder, "Okay [IMAGE: a cat]", markdown=False, image_directives=True)
    assert "skipped: a cat" in messenger.last_edit["text"]
    assert messenger.last_edit["text"].startswith("Okay")


async def test_empty_answer(reconciler, messenger, placeholder):
    await reconciler.finish(placeholder, "   ", markdown=True)
    assert messenger.last_edit["text"] == NO_RESPONSE_TEXT


async def test_sources_button(reconciler, messenger, placeholder):
    await reconciler.finish(placeholder, "cited", markdown=True, links_id="abc")
    assert messenger.last_edit["buttons"] == [("🔗 Show sources", "sources:abc")]


async def test_long_answer_goes_to_telegraph(reconciler, messenger, telegraph, placeholder):
    text = "word " * 2000
    await reconciler.finish(placeholder, text, markdown=True, title="essay")

    telegraph.publish.assert_awaited_once_with("essay", text)
    edited = messenger.last_edit["text"]
    assert edited.endswith("https://graph.org/Answer-10-19")
    assert len(edited) < 4096


async def test_long_answer_is_split_when_publishing_fails(
    reconciler, messenger, telegraph, placeholder
):
    telegraph.publish.side_effect = TransportError("telegraph down")
    text = "\n".join(f"line {i} " + "x" * 80 for i in range(100))

    await reconciler.finish(placeholder, text, markdown=True, links_id="abc")

    follow_ups = messenger.sent[1:]
    assert follow_ups
    assert all(len(m["text"]) <= 4096 for m in follow_ups)
    assert len(messenger.last_edit["text"]) <= 4096
    assert follow_ups[-1]["buttons"] == [("🔗 Show sources", "sources:abc")]
    assert all(m["reply_to"] == placeholder.message_id for m in follow_ups)


async def test_sources_are_delivered_once(reconciler, messenger, storage):
    links_id = await storage.create_links(
        [
            GroundingLink(title="Alpha", uri="https://alpha.example"),
            GroundingLink(title="Beta", uri="https://beta.example"),
        ]
    )

    first = await reconciler.deliver_sources(GROUP_ID, 77, links_id)
    second = await reconciler.deliver_sources(GROUP_ID, 77, links_id)

    assert first == "Sources sent."
    assert second == "Sources were already sent."
    assert len(messenger.sent) == 1
    assert messenger.sent[0]["reply_to"] == 77
    assert "1. Alpha\nhttps://alpha.example" in messenger.sent[0]["text"]
    assert "2. Beta" in messenger.sent[0]["text"]
    assert messenger.cleared == [(GROUP_ID, 77)]
    assert (await storage.get_links(links_id)).sent


async def test_unknown_sources(reconciler, messenger):
    assert await reconciler.deliver_sources(GROUP_ID, 77, "missing") == "Sources not found."
    assert messenger.sent == []
