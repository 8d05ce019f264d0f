"""LLM completion provider and the file editor built on it."""

import asyncio
import logging
import os
import re
from typing import Any, Dict, List, Optional

import aiohttp

from devflow.exceptions import CollaboratorUnavailableError
from devflow.interfaces.collaborators import FileEditResult, ICompletionProvider

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^```[\w+-]*\n(?P<body>.*?)\n?```\s*$", re.DOTALL)


class OpenAICompatibleCompletionProvider:
    """Async client for an OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        timeout_seconds: float = 60,
        temperature: float = 0.2,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def complete(self, messages: List[Dict[str, str]]) -> str:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
        }
        session = await self._get_session()
        try:
            async with session.post(f"{self.base_url}/chat/completions", json=payload) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise CollaboratorUnavailableError(
                        "completion-provider", f"Completion request failed ({resp.status}): {body[:500]}"
                    )
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise CollaboratorUnavailableError("completion-provider", f"Completion request failed: {exc}") from exc

        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise CollaboratorUnavailableError(
                "completion-provider", "Malformed completion response"
            ) from exc


def strip_code_fence(text: str) -> str:
    match = _FENCE.match(text.strip())
    return match.group("body") if match else text


class CompletionFileEditor:
    """Rewrites a whole file from a change description using the completion provider."""

    SYSTEM_PROMPT = (
        "You edit source files. Reply with the complete new file content only, "
        "without commentary."
    )

    def __init__(self, provider: Optional[ICompletionProvider]):
        self.provider = provider

    async def apply_change(self, file_path: str, change_description: str) -> FileEditResult:
        if self.provider is None:
            return FileEditResult(success=False, file_path=file_path, error="No completion provider configured")
        try:
            current = await asyncio.to_thread(_read_text, file_path)
            messages = [
                {"role": "system", "content": self.SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": f"File: {file_path}\nChange: {change_description}\n\nCurrent content:\n{current}",
                },
            ]
            new_content = strip_code_fence(await self.provider.complete(messages))
            await asyncio.to_thread(_write_text, file_path, new_content)
        except Exception as exc:
            logger.warning("Edit of %s failed: %s", file_path, exc)
            return FileEditResult(success=False, file_path=file_path, error=str(exc))
        return FileEditResult(success=True, file_path=file_path, new_content=new_content)


def _read_text(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    except FileNotFoundError:
        return ""


def _write_text(path: str, content: str) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
