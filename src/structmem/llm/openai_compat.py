"""
OpenAI 兼容端点适配器

支持 OpenAI 官方 API 以及 DashScope、Kimi、硅基流动等兼容 /chat/completions 的服务。
"""

import asyncio
import logging

import httpx

from .base import TextCompleter

logger = logging.getLogger(__name__)


class OpenAICompatibleCompleter(TextCompleter):
    """通过 /chat/completions 实现 TextCompleter"""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        timeout: float = 60.0,
        system_prompt: str = "",
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.system_prompt = system_prompt
        self._client: httpx.AsyncClient | None = None
        self._client_loop_id: int | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """获取或创建 HTTP 客户端

        httpx.AsyncClient 绑定到创建时的事件循环，循环变化时重新创建。
        """
        try:
            current_loop_id = id(asyncio.get_running_loop())
        except RuntimeError:
            current_loop_id = None

        if (
            self._client is None
            or self._client.is_closed
            or self._client_loop_id != current_loop_id
        ):
            if self._client is not None and not self._client.is_closed:
                await self._client.aclose()
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
            )
            self._client_loop_id = current_loop_id

        return self._client

    async def complete(
        self,
        prompt: str,
        *,
        max_tokens: int = 1000,
        temperature: float = 0.3,
    ) -> str:
        client = await self._get_client()

        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": prompt})

        body = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }

        logger.debug(f"OpenAI-compatible request to {self.base_url}: model={self.model}")
        response = await client.post(
            f"{self.base_url}/chat/completions",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json=body,
        )
        response.raise_for_status()
        data = response.json()

        choices = data.get("choices") or []
        if not choices:
            return ""
        return (choices[0].get("message") or {}).get("content") or ""

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
