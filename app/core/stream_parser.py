"""Parse Claude Code ``--output-format stream-json`` output.

stdout arrives in arbitrary chunks.  :class:`StreamParser` frames it into
complete lines and turns each line into one tagged event:

* :class:`LogEvent`, when the whole line is exactly one JSON object;
* :class:`TextChunk` for anything else (plain text, truncated JSON, a JSON
  array or scalar, an object followed by trailing text).

A line counts as JSON only when a single :meth:`json.JSONDecoder.raw_decode`
consumes all of it, so a text answer that merely starts with ``{`` stays
text.  Lines from the sandbox wrapper (``[CLAUDE-WRAPPER] ...``) are
diagnostics and produce no event.

:class:`StreamAccumulator` folds events into the final output, usage and
log list.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from app.core.logging import get_logger
from app.core.models import ClaudeUsage

logger = get_logger("claude.stream")

WRAPPER_PREFIX = "[CLAUDE-WRAPPER]"
NO_OUTPUT_SENTINEL = "Claude Code executed successfully but produced no output"

_decoder = json.JSONDecoder()


@dataclass(frozen=True)
class LogEvent:
    """A JSON object emitted by the CLI."""

    data: dict[str, Any]

    @property
    def type(self) -> str:
        return str(self.data.get("type", ""))


@dataclass(frozen=True)
class TextChunk:
    """A non-JSON line, kept verbatim (without its newline)."""

    text: str


StreamEvent = LogEvent | TextChunk


def classify_line(line: str) -> StreamEvent | None:
    """Turn one output line into an event, or ``None`` for blank/wrapper lines."""
    stripped = line.strip()
    if not stripped:
        return None
    if stripped.startswith(WRAPPER_PREFIX):
        logger.debug("wrapper | %s", stripped)
        return None
    if stripped.startswith("{"):
        try:
            obj, end = _decoder.raw_decode(stripped)
        except json.JSONDecodeError:
            obj, end = None, 0
        if isinstance(obj, dict) and end == len(stripped):
            return LogEvent(obj)
    return TextChunk(line.rstrip("\r\n"))


class StreamParser:
    """Incremental line framer for a byte stream."""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> Iterator[StreamEvent]:
        """Consume *chunk* and yield events for every line it completes."""
        self._buffer += chunk
        while True:
            newline = self._buffer.find("\n")
            if newline < 0:
                return
            line, self._buffer = self._buffer[:newline], self._buffer[newline + 1:]
            event = classify_line(line)
            if event is not None:
                yield event

    def flush(self) -> Iterator[StreamEvent]:
        """Yield the trailing unterminated line, if any."""
        line, self._buffer = self._buffer, ""
        event = classify_line(line)
        if event is not None:
            yield event


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, (float, str)):
        try:
            return int(float(value))
        except (ValueError, OverflowError):
            return None
    return None


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        return float(value)
    except ValueError:
        return None


def parse_usage(message: dict[str, Any]) -> ClaudeUsage | None:
    """Read token counts and cost from a result event.

    Fields of the wrong shape are ignored rather than failing the run.
    """
    usage = message.get("usage")
    cost = message.get("total_cost_usd")
    if not isinstance(usage, dict) and cost is None:
        return None
    usage = usage if isinstance(usage, dict) else {}
    return ClaudeUsage(
        input_tokens=_as_int(usage.get("input_tokens")) or 0,
        output_tokens=_as_int(usage.get("output_tokens")) or 0,
        cache_creation_input_tokens=_as_int(usage.get("cache_creation_input_tokens")),
        cache_read_input_tokens=_as_int(usage.get("cache_read_input_tokens")),
        cost_usd=_as_float(cost),
    )


@dataclass
class StreamAccumulator:
    """Collects events into the pieces of a :class:`~app.core.models.ClaudeCodeResult`."""

    result_text: str | None = None
    result_subtype: str | None = None
    duration_ms: int | None = None
    usage: ClaudeUsage | None = None
    json_logs: list[dict[str, Any]] = field(default_factory=list)
    text_lines: list[str] = field(default_factory=list)

    def add(self, event: StreamEvent) -> None:
        if isinstance(event, TextChunk):
            self.text_lines.append(event.text)
            return

        message = event.data
        self.json_logs.append(message)
        if event.type == "result":
            result = message.get("result")
            if isinstance(result, str):
                self.result_text = result
            subtype = message.get("subtype")
            self.result_subtype = subtype if isinstance(subtype, str) else None
            self.duration_ms = _as_int(message.get("duration_ms"))
            self.usage = parse_usage(message) or self.usage
            logger.info(
                "claude | result subtype=%s duration_ms=%s cost=%s",
                self.result_subtype,
                self.duration_ms,
                message.get("total_cost_usd"),
            )
        elif event.type == "assistant":
            self._log_assistant(message)
        else:
            logger.debug("claude | event type=%s", event.type or "?")

    @staticmethod
    def _log_assistant(message: dict[str, Any]) -> None:
        body = message.get("message")
        if not isinstance(body, dict):
            logger.debug("claude | assistant event without a message object")
            return
        content = body.get("content")
        for part in content if isinstance(content, list) else []:
            if isinstance(part, dict) and part.get("type") == "tool_use":
                logger.info("claude | tool_use %s", part.get("name", "?"))
        if body.get("stop_reason"):
            logger.debug("claude | stop_reason=%s", body["stop_reason"])

    @property
    def fallback_text(self) -> str:
        return "\n".join(self.text_lines).strip()

    def final_output(self, raw_stdout: str, stderr: str) -> str:
        """Pick the output: result field → text lines → raw stdout → stderr → sentinel."""
        for candidate in (self.result_text, self.fallback_text, raw_stdout.strip(), stderr.strip()):
            if candidate:
                return candidate
        return NO_OUTPUT_SENTINEL
