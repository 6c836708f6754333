"""Local codex CLI runtime: locate, probe and invoke the ``codex`` binary.

Invocation is one subprocess per prompt (``codex exec ... --json <prompt>``)
with stdin closed. Output is newline-delimited JSON; we pick the most useful
record and hand its text to the normalizer.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import re
import shutil
import signal
from pathlib import Path

from workbench_agent.config import DEFAULT_CODEX_ARGS, AgentConfig
from workbench_agent.errors import (
    EmptyOutputError,
    LocalRuntimeError,
    RuntimeNonZeroExitError,
    RuntimeNotFoundError,
    RuntimeTimeoutError,
)
from workbench_agent.models import AgentReply, CodexConfig, CodexHealth, Message
from workbench_agent.normalizer import normalize

logger = logging.getLogger(__name__)

CHANNEL_EXEC = "exec"
CHANNEL_DIRECT = "direct"

MIN_TIMEOUT_MS = 1000

# How long to wait for the pipes to close once the process group is killed.
KILL_GRACE_S = 2.0

# Extra characters a template reply may carry around a known pattern
# (an emoji, a name) and still count as the template.
TEMPLATE_LENGTH_SLACK = 8

_FOLD = re.compile(r"[\W_]+", re.UNICODE)


def _known_locations() -> list[Path]:
    home = Path.home()
    paths = [
        home / ".local" / "bin" / "codex",
        home / ".npm-global" / "bin" / "codex",
        Path("/opt/homebrew/bin/codex"),
        Path("/usr/local/bin/codex"),
    ]
    appdata = os.environ.get("APPDATA")
    if appdata:
        paths.append(Path(appdata) / "npm" / "codex.cmd")
    return paths


def _fold(text: str) -> str:
    return _FOLD.sub("", text.casefold())


def _agent_message_text(record: dict) -> str | None:
    """Text of an agent message record, in either framing codex has used."""
    item = record.get("item")
    if record.get("type") == "item.completed" and isinstance(item, dict):
        if item.get("type") == "agent_message" and isinstance(item.get("text"), str):
            return item["text"]
    msg = record.get("msg")
    if isinstance(msg, dict) and msg.get("type") == "agent_message":
        if isinstance(msg.get("message"), str):
            return msg["message"]
    return None


def parse_output_lines(stdout: str) -> str:
    """Pick the reply text out of codex's JSON-lines output.

    A record carrying ``payload: {reply, actions}`` wins outright. Otherwise the
    last agent message is used, and failing that the raw stdout.
    """
    last_message = None
    for line in stdout.splitlines():
        stripped = line.strip()
        if not stripped.startswith("{"):
            continue
        try:
            record = json.loads(stripped)
        except (ValueError, RecursionError):
            continue
        if not isinstance(record, dict):
            continue
        payload = record.get("payload")
        if isinstance(payload, dict) and "reply" in payload:
            return json.dumps(payload, ensure_ascii=False)
        text = _agent_message_text(record)
        if text is not None and text.strip():
            last_message = text
    return last_message if last_message is not None else stdout.strip()


def _kill_tree(proc: asyncio.subprocess.Process) -> None:
    """Kill the process and everything it spawned.

    The npm shim starts the native binary as a child that inherits our pipes,
    so killing only the direct child leaves them open.
    """
    with contextlib.suppress(ProcessLookupError, PermissionError):
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()


def build_prompt(messages: list[Message], system_prompt: str) -> str:
    """Flatten the conversation into a single exec prompt."""
    lines = [system_prompt, "", "Conversation:"]
    for message in messages:
        lines.append(f"{message.role}: {message.content}")
    lines.append("")
    lines.append("Respond with the JSON object only.")
    return "\n".join(lines)


class CodexRuntime:
    """Adapter around the local codex executable."""

    def __init__(self, agent_config: AgentConfig | None = None):
        self._agent = agent_config or AgentConfig()
        self._patterns = [_fold(p) for p in self._agent.template_patterns if _fold(p)]
        self.invocations = 0
        self.reinforced_retries = 0

    def resolve_binary(self, config: CodexConfig) -> str:
        """Path of the codex binary.

        Raises:
            RuntimeNotFoundError: override missing, or nothing found on PATH
                or in the usual install locations.
        """
        if config.binary_path_override:
            override = Path(config.binary_path_override).expanduser()
            if not override.is_file():
                raise RuntimeNotFoundError(f"codex binary not found at {override}")
            return str(override)

        found = shutil.which("codex")
        if found:
            return found
        for candidate in _known_locations():
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return str(candidate)
        raise RuntimeNotFoundError("codex binary not found on PATH")

    async def _run_process(self, argv: list[str], timeout_ms: int) -> tuple[int, str, str]:
        timeout_s = max(timeout_ms, MIN_TIMEOUT_MS) / 1000
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=os.name == "posix",
            )
        except OSError as e:
            raise RuntimeNotFoundError(f"failed to start {argv[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
        except asyncio.TimeoutError as exc:
            _kill_tree(proc)
            with contextlib.suppress(asyncio.TimeoutError, ProcessLookupError):
                await asyncio.wait_for(proc.wait(), timeout=KILL_GRACE_S)
            raise RuntimeTimeoutError(timeout_s) from exc

        return (
            proc.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def invoke(self, binary: str, config: CodexConfig, prompt: str) -> str:
        """Run one exec turn and return the extracted reply text."""
        args = config.invocation_args or list(DEFAULT_CODEX_ARGS)
        self.invocations += 1
        code, stdout, stderr = await self._run_process([binary, *args, prompt], config.timeout_ms)
        if code != 0:
            raise RuntimeNonZeroExitError(code, stderr.strip()[-500:])
        if not stdout.strip():
            raise EmptyOutputError("codex returned empty output")
        return parse_output_lines(stdout)

    def is_template_reply(self, reply: AgentReply) -> bool:
        """True for a canned self-introduction with no actions."""
        if reply.actions:
            return False
        folded = _fold(reply.reply)
        if not folded:
            return False
        for pattern in self._patterns:
            if folded == pattern:
                return True
            if pattern in folded and len(folded) - len(pattern) <= TEMPLATE_LENGTH_SLACK:
                return True
        return False

    async def run(self, config: CodexConfig, prompt: str) -> AgentReply:
        """Invoke and normalize, re-prompting once if codex only greets us."""
        binary = self.resolve_binary(config)
        reply = normalize(await self.invoke(binary, config, prompt))
        if not self.is_template_reply(reply):
            return reply

        logger.info("codex returned a template reply, re-prompting once")
        self.reinforced_retries += 1
        reinforced = f"{prompt}\n\n{self._agent.reinforced_prompt}"
        return normalize(await self.invoke(binary, config, reinforced))

    async def probe(self, config: CodexConfig, channel: str = CHANNEL_EXEC) -> None:
        """Check a channel answers ``--help``. Raises LocalRuntimeError on failure."""
        binary = self.resolve_binary(config)
        if channel == CHANNEL_DIRECT:
            subcommand = list(config.direct_channel_args) or ["mcp-server"]
        elif channel == CHANNEL_EXEC:
            subcommand = (config.invocation_args or list(DEFAULT_CODEX_ARGS))[:1]
        else:
            raise ValueError(f"Unknown channel: {channel}")

        code, _, stderr = await self._run_process(
            [binary, *subcommand, "--help"], config.timeout_ms
        )
        if code != 0:
            raise RuntimeNonZeroExitError(code, stderr.strip()[-500:])

    async def health(self, config: CodexConfig) -> CodexHealth:
        """Aggregate binary resolution and both channel probes."""
        try:
            binary = self.resolve_binary(config)
        except RuntimeNotFoundError as e:
            return CodexHealth(found=False, message=str(e))

        available = {}
        problems = []
        for channel in (CHANNEL_EXEC, CHANNEL_DIRECT):
            try:
                await self.probe(config, channel)
                available[channel] = True
            except LocalRuntimeError as e:
                available[channel] = False
                problems.append(f"{channel}: {e}")

        if not problems:
            message = "codex ready"
        else:
            message = "; ".join(problems)
        return CodexHealth(
            found=True,
            binary=binary,
            direct_channel_available=available[CHANNEL_DIRECT],
            exec_available=available[CHANNEL_EXEC],
            message=message,
        )
