from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from fama.backends.base import (
    ExecutionProvider,
    ProviderError,
    ProviderEvent,
    ProviderProcessError,
    ProviderRequest,
)


class ClaudeCodeProvider(ExecutionProvider):
    name = "claude"

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(self, request: ProviderRequest) -> list[str]:
        command = [self.binary, "-p", request.task, "--output-format", "stream-json", "--verbose"]
        if request.system_prompt:
            command.extend(["--append-system-prompt", request.system_prompt])
        if request.model:
            command.extend(["--model", request.model])
        if request.max_turns:
            command.extend(["--max-turns", str(request.max_turns)])
        if request.allowed_tools:
            command.extend(["--allowedTools", ",".join(request.allowed_tools)])
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        message = event.get("message")
        content = message.get("content") if isinstance(message, dict) else event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict) and item.get("type", "text") == "text":
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    @staticmethod
    def _to_event(payload: dict[str, Any]) -> ProviderEvent | None:
        kind = payload.get("type")
        if kind == "result":
            if payload.get("subtype", "success") == "success" and not payload.get("is_error"):
                return ProviderEvent(
                    type="result",
                    text=str(payload.get("result") or ""),
                    cost_usd=payload.get("total_cost_usd"),
                    turns=payload.get("num_turns"),
                    raw=payload,
                )
            errors = payload.get("errors")
            return ProviderEvent(
                type="error",
                text=str(payload.get("result") or payload.get("subtype") or ""),
                errors=[str(item) for item in errors] if isinstance(errors, list) else [],
                cost_usd=payload.get("total_cost_usd"),
                raw=payload,
            )
        if kind in {"assistant", "text"}:
            content = ClaudeCodeProvider._extract_content(payload)
            if content:
                return ProviderEvent(type="text", text=content, raw=payload)
        return None

    async def query(self, request: ProviderRequest) -> AsyncIterator[ProviderEvent]:
        cwd = request.cwd or self.working_directory
        command = self.build_command(request)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ProviderProcessError(
                f"Claude binary not found: {self.binary}",
                provider=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise ProviderProcessError(
                "Claude provider did not expose stdout.", provider=self.name, retriable=False
            )

        parse_buffer = ""
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                payload = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                yield ProviderEvent(type="text", text=line)
                continue

            if isinstance(payload, dict):
                event = self._to_event(payload)
                if event is not None:
                    yield event

        if parse_buffer:
            yield ProviderEvent(type="text", text=parse_buffer)

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            raise ProviderError(
                f"Claude provider failed with exit code {return_code}: {stderr_output}",
                provider=self.name,
                exit_code=return_code,
                retriable=True,
            )
