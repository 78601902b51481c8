import enum
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from pydantic_ai import Agent, BinaryContent
from pydantic_ai.capabilities import WebSearch
from pydantic_ai.exceptions import UsageLimitExceeded
from pydantic_ai.messages import ModelResponse, UserContent
from pydantic_ai.models import Model
from pydantic_ai.native_tools import WebSearchTool
from pydantic_ai.usage import UsageLimits

from .config import MAX_TOOL_ITERATIONS
from .errors import EmptyResultError, PersistenceError
from .providers import model_errors
from .schemas import Attachment, GroundingLink
from .storage import Storage
from .tools import ChatDeps, chat_toolset
from .utils import get_current_time, strip_think_blocks

logger = logging.getLogger(__name__)

DEFAULT_PERSONA = (
    "You are Zeno, a friendly and knowledgeable assistant living in Telegram chats. "
    "You answer the person who addressed you, using the chat context only when it helps."
)

tooldescriptions = {
    "create_image": """## Create Image
Use this when the user asks you to draw, generate or create a picture. Write a detailed prompt in English. Only set high_quality when the user explicitly asks for it. The tool returns a file path; the image is NOT visible to the user until you call Send File with that path.""",
    "send_file": """## Send File
Sends a file you generated earlier to the chat. Only paths returned by other tools work.""",
    "run_code": """## Run Code
Runs a short python, shell or javascript program in a sandbox and returns stdout. Use it for arithmetic, data wrangling and anything you would otherwise have to guess. The sandbox has no access to the chat.""",
}

def get_time_prompt() -> str:
    now = get_current_time()
    return f"""
# INFO
Today is {now.strftime("%Y-%m-%d")} ({now.strftime("%A")})
The current time is {now.strftime("%H:%M:%S")} (UTC)
"""


def ask_system_prompt(persona: str = "") -> str:
    """Prompt for the ask command: plain text only, images via directives."""
    return f"""{persona or DEFAULT_PERSONA}

# RULES
Reply in plain text. Do not use Markdown, HTML or any other markup.
Keep answers short unless the user asks for detail.
The user message contains up to three blocks: the recent chat context, the message being replied to and the question itself. Answer the question.
If the user asks for a picture, put a line of the form [IMAGE: detailed English description] in your answer. The picture is generated and sent separately, so do not describe it again.
{get_time_prompt()}"""


def chat_system_prompt(persona: str = "") -> str:
    """Prompt for mention and reply triggers: light Markdown and tools."""
    return f"""{persona or DEFAULT_PERSONA}

# RULES
You may format with Telegram Markdown: *bold*, _italic_, `inline code` and ``` fenced code blocks. No headings, tables or nested formatting.
The user message contains up to three blocks: the recent chat context, the message being replied to and the question itself. Answer the question.
Attached files belong to the message they are listed under.
Use web search when the question is about current events or facts you are unsure about.

# Tools
{tooldescriptions["create_image"]}

{tooldescriptions["send_file"]}

{tooldescriptions["run_code"]}
{get_time_prompt()}"""




def build_ask_agent(model: Model, persona: str = "") -> Agent[None, str]:
    return Agent(model=model, name="ask", instructions=ask_system_prompt(persona))


def build_chat_agent(model: Model, persona: str = "", grounding: bool = True) -> Agent[ChatDeps, str]:
    return Agent(
        model=model,
        name="chat",
        deps_type=ChatDeps,
        instructions=chat_system_prompt(persona),
        toolsets=[chat_toolset],
        capabilities=[WebSearch()] if grounding else [],
    )


def user_prompt(text: str, attachments: Sequence[Attachment] = ()) -> list[UserContent]:
    prompt: list[UserContent] = [text] if text else []
    prompt.extend(BinaryContent(data=a.data, media_type=a.mime_type) for a in attachments)
    return prompt


def grounding_links(response: ModelResponse) -> list[GroundingLink]:
    """Web sources the model's own search reported, deduplicated by URI."""
    links: list[GroundingLink] = []
    seen: set[str] = set()
    for call, result in response.native_tool_calls:
        if call.tool_name != WebSearchTool.kind:
            continue
        sources = result.content
        if isinstance(sources, dict):
            sources = sources.get("sources")
        if not isinstance(sources, list):
            continue
        for source in sources:
            if not isinstance(source, dict):
                continue
            uri = source.get("uri") or source.get("url")
            if not uri or uri in seen:
                continue
            seen.add(uri)
            links.append(GroundingLink(title=source.get("title") or source.get("domain") or uri, uri=uri))
    return links


class ExchangeState(enum.Enum):
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"


@dataclass
class ExchangeOutcome:
    text: str
    links_id: str | None
    iterations: int
    state: ExchangeState
    capped: bool = False


async def run_exchange(
    agent: Agent,
    prompt: str | Sequence[UserContent],
    storage: Storage,
    deps: ChatDeps | None = None,
    max_iterations: int = MAX_TOOL_ITERATIONS,
) -> ExchangeOutcome:
    """Drive one exchange: model call, sequential tool calls, repeat.

    The latest non-empty model text wins. Grounding links are persisted as
    soon as they appear; a storage failure only loses the sources button.
    A model turn that still asks for tools on the last allowed round ends the
    exchange with whatever text was accumulated; those tools are not run.

    Raises:
        EmptyResultError: the very first model call produced nothing.
        ProviderError, TransportError, OperationTimeout: a model call failed.
    """
    text = ""
    links_id: str | None = None
    rounds = 0
    state = ExchangeState.AWAITING_MODEL
    limits = UsageLimits(request_limit=max_iterations)
    label = agent.name or "model"

    with model_errors(label):
        try:
            async with agent.iter(prompt, deps=deps, usage_limits=limits) as run:
                async for node in run:
                    if not Agent.is_call_tools_node(node):
                        continue
                    rounds += 1
                    response = node.model_response

                    answer = strip_think_blocks(response.text or "")
                    if answer:
                        text = answer

                    links = grounding_links(response)
                    if links:
                        try:
                            links_id = await storage.create_links(links)
                        except PersistenceError:
                            logger.exception("Could not store %d grounding links", len(links))

                    if not response.tool_calls:
                        if not text and rounds == 1:
                            raise EmptyResultError(f"{label} model returned nothing")
                        if not answer:
                            logger.info("Empty model turn after %d tool rounds, finishing", rounds - 1)
                        return ExchangeOutcome(text, links_id, rounds, ExchangeState.DONE)

                    if rounds >= max_iterations:
                        break
                    state = ExchangeState.EXECUTING_TOOLS

                if run.result is not None:
                    return ExchangeOutcome(text, links_id, rounds, ExchangeState.DONE)
        except UsageLimitExceeded as exc:
            logger.info("%s run stopped by its usage limit: %s", label, exc)

    logger.warning("Tool loop hit the %d iteration cap", max_iterations)
    return ExchangeOutcome(text, links_id, rounds, state, capped=True)
