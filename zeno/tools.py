"""Tools exposed to the chat model.

The async functions at the bottom are what the chat agent sees; each one
forwards its arguments to ``ToolEngine.execute`` through the run's deps.
There every call is validated into a variant of a closed union
discriminated by ``name`` and dispatched. Every outcome, including bad
arguments, comes back as a ToolResult so the model can self-correct.
"""

import asyncio
import logging
import mimetypes
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, Literal, Union

import pydantic
from pydantic import BaseModel, Field, TypeAdapter, field_validator
from pydantic_ai import RunContext
from pydantic_ai.toolsets import FunctionToolset

from .config import ASPECT_RATIOS, IMAGE_TOOL_TIMEOUT, SANDBOX_TIMEOUT
from .errors import (
    EmptyResultError,
    OperationTimeout,
    SandboxTimeout,
    TransportError,
    ValidationError,
)
from .messaging import Messenger
from .providers import ProviderGateway
from .sandbox import INTERPRETERS, Sandbox
from .schemas import ToolCall, ToolResult

logger = logging.getLogger(__name__)

SEND_FILE_CAPTION = "Here is your file"

TOOL_STATUS = {
    "create_image": "🎨 Generating image...",
    "send_file": "📎 Sending file...",
    "run_code": "⚙️ Running code...",
}

_EXTENSIONS = {"image/jpeg": ".jpg", "image/png": ".png", "image/webp": ".webp", "image/gif": ".gif"}


class CreateImage(BaseModel):
    name: Literal["create_image"] = "create_image"
    prompt: str
    aspect_ratio: str = ""
    high_quality: bool = False

    @field_validator("prompt")
    @classmethod
    def _prompt_not_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("prompt must not be empty")
        return value

    @field_validator("aspect_ratio", mode="before")
    @classmethod
    def _known_ratio(cls, value: Any) -> str:
        # unknown ratios fall back to the provider default instead of failing
        if isinstance(value, str) and value.strip() in ASPECT_RATIOS:
            return value.strip()
        return ""


class SendFile(BaseModel):
    name: Literal["send_file"] = "send_file"
    path: str

    @field_validator("path")
    @classmethod
    def _path_not_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("path must not be empty")
        return value


class RunCode(BaseModel):
    name: Literal["run_code"] = "run_code"
    language: str
    code: str

    @field_validator("language")
    @classmethod
    def _supported_language(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in INTERPRETERS:
            raise ValueError(
                f"unsupported language {value!r}; use one of {', '.join(sorted(INTERPRETERS))}"
            )
        return value

    @field_validator("code")
    @classmethod
    def _code_not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("code must not be empty")
        return value


ToolInvocation = Annotated[Union[CreateImage, SendFile, RunCode], Field(discriminator="name")]
_invocation_adapter: TypeAdapter[ToolInvocation] = TypeAdapter(ToolInvocation)


def parse_invocation(call: ToolCall) -> CreateImage | SendFile | RunCode:
    """Validate a ToolCall into its tool variant.

    Raises:
        ValidationError: unknown tool name or bad arguments.
    """
    try:
        return _invocation_adapter.validate_python({**call.arguments, "name": call.name})
    except pydantic.ValidationError as exc:
        if any(err["type"] == "union_tag_invalid" for err in exc.errors()):
            raise ValidationError(f"unknown tool {call.name!r}") from exc
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:]) or 'arguments'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ValidationError(f"invalid arguments for {call.name}: {details}") from exc


def extension_for(mime_type: str) -> str:
    ext = _EXTENSIONS.get(mime_type.lower())
    if ext:
        return ext
    return mimetypes.guess_extension(mime_type) or ".bin"


@dataclass
class ToolContext:
    chat_id: int
    reply_to: int | None = None


class ToolEngine:
    def __init__(
        self,
        gateway: ProviderGateway,
        messenger: Messenger,
        sandbox: Sandbox,
        generated_dir: Path,
    ):
        self.gateway = gateway
        self.messenger = messenger
        self.sandbox = sandbox
        self.generated_dir = Path(generated_dir)

    async def execute(self, call: ToolCall, context: ToolContext) -> ToolResult:
        try:
            invocation = parse_invocation(call)
        except ValidationError as exc:
            logger.info("Rejected tool call %s in chat %s: %s", call.name, context.chat_id, exc)
            return ToolResult.failure(exc)

        if isinstance(invocation, CreateImage):
            return await self.create_image(invocation)
        if isinstance(invocation, SendFile):
            return await self.send_file(invocation, context)
        return await self.run_code(invocation)

    async def create_image(self, tool: CreateImage) -> ToolResult:
        try:
            result = await self.gateway.generate_image(
                tool.prompt,
                high_quality=tool.high_quality,
                aspect_ratio=tool.aspect_ratio,
                timeout=IMAGE_TOOL_TIMEOUT,
            )
        except OperationTimeout as exc:
            return ToolResult.failure(exc, message="image generation timed out")
        except (TransportError, EmptyResultError) as exc:
            logger.warning("create_image failed: %s", exc)
            return ToolResult.failure(exc, message="image generation failed")

        if not result.images:
            return ToolResult.failure(
                "the image model returned no image", model_text=result.text
            )

        image = result.images[0]
        self.generated_dir.mkdir(parents=True, exist_ok=True)
        path = self.generated_dir / f"{uuid.uuid4().hex}{extension_for(image.mime_type)}"
        await asyncio.to_thread(path.write_bytes, image.data)
        logger.info("Saved generated image to %s", path)
        return ToolResult.ok(
            path=str(path),
            mime_type=image.mime_type,
            message="Image saved. Call send_file with this path to deliver it.",
        )

    def _resolve(self, raw: str) -> Path:
        path = Path(raw)
        if not path.is_absolute():
            candidate = self.generated_dir / path
            path = candidate if candidate.exists() else path
        path = path.resolve()
        root = self.generated_dir.resolve()
        if root != path and root not in path.parents:
            raise ValidationError(f"{raw} is not a generated file")
        if not path.is_file():
            raise ValidationError(f"file {raw} does not exist")
        return path

    async def send_file(self, tool: SendFile, context: ToolContext) -> ToolResult:
        try:
            path = self._resolve(tool.path)
        except ValidationError as exc:
            return ToolResult.failure(exc)

        try:
            await self.messenger.send_document(
                context.chat_id, path, caption=SEND_FILE_CAPTION, reply_to=context.reply_to
            )
        except (TransportError, OperationTimeout) as exc:
            logger.warning("send_file %s to chat %s failed: %s", path, context.chat_id, exc)
            return ToolResult.failure(exc, message="could not deliver the file")
        return ToolResult.ok(message=f"sent {path.name} to the chat")

    async def run_code(self, tool: RunCode) -> ToolResult:
        try:
            result = await self.sandbox.run(tool.language, tool.code, timeout=SANDBOX_TIMEOUT)
        except SandboxTimeout as exc:
            return ToolResult.failure(exc, message="execution timed out")
        except TransportError as exc:
            logger.warning("run_code: sandbox unavailable: %s", exc)
            return ToolResult.failure(exc, message="sandbox unavailable")

        if result.success:
            return ToolResult.ok(stdout=result.stdout, stderr=result.stderr)
        return ToolResult.failure(
            f"exited with status {result.exit_code}",
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
        )


def status_for(name: str) -> str:
    return TOOL_STATUS.get(name, f"Running {name}...")


StatusCallback = Callable[[str], Awaitable[None]]


@dataclass
class ChatDeps:
    """Per-exchange dependencies of the chat agent's tools."""

    engine: ToolEngine
    context: ToolContext
    on_status: StatusCallback | None = None


async def _dispatch(ctx: RunContext[ChatDeps], name: str, **arguments: Any) -> dict[str, Any]:
    deps = ctx.deps
    if deps.on_status is not None:
        await deps.on_status(status_for(name))
    logger.info("Executing tool %s (step %d) in chat %s", name, ctx.run_step, deps.context.chat_id)
    call = ToolCall(name=name, arguments=arguments, id=ctx.tool_call_id)
    result = await deps.engine.execute(call, deps.context)
    return result.model_dump()


async def create_image(
    ctx: RunContext[ChatDeps], prompt: str, aspect_ratio: str = "", high_quality: bool = False
) -> dict[str, Any]:
    """Create Image.

    Generate an image from a text prompt and save it. Returns the path of the
    saved image; call send_file with that path to deliver it.

    Parameters
    - prompt: str, what to draw, in English
    - aspect_ratio: str, one of 1:1, 2:3, 3:2, 3:4, 4:3, 4:5, 5:4, 9:16, 16:9, 21:9; empty for automatic
    - high_quality: bool, only when the user explicitly asks for high quality

    Returns
    - dict: success flag and payload
    """
    return await _dispatch(
        ctx, "create_image", prompt=prompt, aspect_ratio=aspect_ratio, high_quality=high_quality
    )


async def send_file(ctx: RunContext[ChatDeps], path: str) -> dict[str, Any]:
    """Send File.

    Send a previously generated file to the chat as a document.

    Parameters
    - path: str

    Returns
    - dict: success flag and payload
    """
    return await _dispatch(ctx, "send_file", path=path)


async def run_code(ctx: RunContext[ChatDeps], language: str, code: str) -> dict[str, Any]:
    """Run Code.

    Run a short program in an isolated sandbox and return its stdout.

    Parameters
    - language: str, python, shell or javascript
    - code: str

    Returns
    - dict: success flag with stdout and stderr
    """
    return await _dispatch(ctx, "run_code", language=language, code=code)


# one tool at a time; a result is in the history before the next call starts
chat_toolset = FunctionToolset(tools=[create_image, send_file, run_code], sequential=True)
