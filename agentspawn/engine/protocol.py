"""Prompt correlation protocols.

A protocol turns prompt text into bytes for the agent's stdin and
interprets each stdout line: response text, and whether the line is the
explicit end-of-response signal.

StreamJsonProtocol speaks the agent CLI's line-delimited JSON mode:

    in:  {"type": "user", "message": {"role": "user", "content": "..."}}
    out: {"type": "assistant", "message": {"content": [{"type": "text", ...}]}}
         {"type": "result", ...}          <- completion signal
"""
from __future__ import annotations

import abc
import json
import logging
from dataclasses import dataclass

from .models import SessionConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParsedLine:
    text: str = ""
    done: bool = False


class PromptProtocol(abc.ABC):
    """Encodes prompts and recognises response chunks and completion."""

    name: str = ""

    @abc.abstractmethod
    def encode_prompt(self, text: str) -> bytes:
        ...

    @abc.abstractmethod
    def parse_line(self, line: bytes) -> ParsedLine:
        ...

    def command_args(self) -> list[str]:
        """Extra agent CLI arguments this protocol requires."""
        return []


class PlainTextProtocol(PromptProtocol):
    """Newline-terminated text in, raw lines out. Completion is by idle only."""

    name = "plain"

    def encode_prompt(self, text: str) -> bytes:
        if not text.endswith("\n"):
            text += "\n"
        return text.encode("utf-8")

    def parse_line(self, line: bytes) -> ParsedLine:
        return ParsedLine(text=line.decode("utf-8", errors="replace"))


class StreamJsonProtocol(PromptProtocol):
    """Line-delimited JSON events with an explicit result event."""

    name = "stream-json"

    def encode_prompt(self, text: str) -> bytes:
        payload = {
            "type": "user",
            "message": {"role": "user", "content": text},
        }
        return (json.dumps(payload) + "\n").encode("utf-8")

    def parse_line(self, line: bytes) -> ParsedLine:
        raw = line.decode("utf-8", errors="replace").strip()
        if not raw:
            return ParsedLine()
        try:
            event = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON agent line: %s", raw[:120])
            return ParsedLine()
        if not isinstance(event, dict):
            return ParsedLine()

        kind = event.get("type")
        if kind == "assistant":
            message = event.get("message") or {}
            content = message.get("content") if isinstance(message, dict) else None
            if isinstance(content, str):
                return ParsedLine(text=content)
            parts: list[str] = []
            if isinstance(content, list):
                for block in content:
                    if (
                        isinstance(block, dict)
                        and block.get("type") == "text"
                        and isinstance(block.get("text"), str)
                    ):
                        parts.append(block["text"])
            return ParsedLine(text="".join(parts))
        if kind == "result":
            return ParsedLine(done=True)
        return ParsedLine()

    def command_args(self) -> list[str]:
        return [
            "--print",
            "--input-format", "stream-json",
            "--output-format", "stream-json",
            "--verbose",
        ]


_PROTOCOLS: dict[str, type[PromptProtocol]] = {
    PlainTextProtocol.name: PlainTextProtocol,
    StreamJsonProtocol.name: StreamJsonProtocol,
}


def get_protocol(name: str) -> PromptProtocol:
    try:
        return _PROTOCOLS[name]()
    except KeyError:
        raise ValueError(
            f"Unknown protocol {name!r}; expected one of {sorted(_PROTOCOLS)}"
        ) from None


def build_agent_command(
    config: SessionConfig,
    base_command: list[str],
    protocol: PromptProtocol,
) -> list[str]:
    """Full argv for one session's agent process."""
    cmd = list(base_command)
    cmd.extend(protocol.command_args())
    if config.permission_mode is not None:
        cmd.extend(["--permission-mode", config.permission_mode.value])
    if config.system_prompt:
        cmd.extend(["--append-system-prompt", config.system_prompt])
    return cmd
