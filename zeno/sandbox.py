"""Run untrusted code inside a long-lived, isolated container.

The container (``SANDBOX_CONTAINER``) is provisioned outside the bot; this
module only pipes code into an interpreter running there via ``docker exec``
and enforces the wall-clock limit. Isolation is the container's job.
"""

import asyncio
import logging
import math
from dataclasses import dataclass

from .config import SANDBOX_TIMEOUT
from .errors import SandboxTimeout, TransportError

logger = logging.getLogger(__name__)

# language -> interpreter reading the program from stdin
INTERPRETERS: dict[str, list[str]] = {
    "python": ["python3", "-"],
    "shell": ["sh", "-s"],
    "javascript": ["node", "-"],
}

# Output cap so one chatty program can't flood the model context.
OUTPUT_LIMIT = 8_000

# Exit codes of the in-container `timeout` wrapper: 124 after TERM, 128 + 9 after KILL.
TIMEOUT_EXIT_CODES = (124, 137)

# Slack for the local `docker exec` client once the in-container limit fired.
KILL_GRACE = 5


@dataclass
class SandboxResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def _truncate(output: bytes) -> str:
    text = output.decode("utf-8", errors="replace")
    if len(text) > OUTPUT_LIMIT:
        return text[:OUTPUT_LIMIT] + "\n...[TRUNCATED]"
    return text


class Sandbox:
    def __init__(self, container: str, docker: str = "docker"):
        self.container = container
        self.docker = docker

    async def run(self, language: str, code: str, timeout: float = SANDBOX_TIMEOUT) -> SandboxResult:
        """Execute ``code`` and capture stdout/stderr separately.

        Raises:
            SandboxTimeout: the program ran past ``timeout`` and was killed.
            TransportError: the sandbox could not be reached.
        """
        # the limit is enforced inside the container; killing the local
        # client alone would leave the program running there
        argv = [
            self.docker,
            "exec",
            "-i",
            self.container,
            "timeout",
            "-s",
            "KILL",
            str(math.ceil(timeout)),
            *INTERPRETERS[language],
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TransportError(f"sandbox {self.container} unreachable") from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(code.encode("utf-8")), timeout + KILL_GRACE
            )
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise SandboxTimeout(f"execution exceeded {timeout}s") from exc

        # docker itself reports 125 when it cannot run the container
        if process.returncode == 125:
            raise TransportError(
                f"sandbox {self.container} unavailable: {_truncate(stderr).strip()}"
            )
        if process.returncode in TIMEOUT_EXIT_CODES:
            raise SandboxTimeout(f"execution exceeded {timeout}s")

        logger.debug("sandbox %s exited with %s", language, process.returncode)
        return SandboxResult(
            stdout=_truncate(stdout), stderr=_truncate(stderr), exit_code=process.returncode
        )
