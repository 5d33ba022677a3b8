"""Telegram Bot API 异步客户端。

只实现桥接需要的几个方法：getMe、getUpdates（长轮询）、sendMessage、
editMessageText、sendChatAction。所有调用统一走 call()，
网络错误包装为 NetworkError，API 返回 ok=false 包装为 ApiError。
"""

from typing import Any, Dict, List, Optional

import httpx

from openshell.domain.exceptions import ApiError, NetworkError


class TelegramClient:
    def __init__(
        self,
        token: str,
        base_url: str = "https://api.telegram.org",
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._base = f"{base_url.rstrip('/')}/bot{token}"
        self._client = client or httpx.AsyncClient(timeout=timeout, trust_env=False)

    async def call(self, method: str, **params: Any) -> Any:
        payload = {k: v for k, v in params.items() if v is not None}
        try:
            resp = await self._client.post(f"{self._base}/{method}", json=payload)
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise NetworkError(code="NETWORK_ERROR", message=str(e), method=method)
        try:
            data = resp.json()
        except ValueError:
            raise ApiError(code="API_ERROR", message=resp.text, method=method, status=resp.status_code)
        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description") if isinstance(data, dict) else None
            raise ApiError(
                code="API_ERROR",
                message=description or resp.text,
                method=method,
                status=resp.status_code,
            )
        return data.get("result")

    async def get_me(self) -> Dict[str, Any]:
        return await self.call("getMe")

    async def get_updates(self, offset: Optional[int] = None, timeout: int = 30) -> List[Dict[str, Any]]:
        result = await self.call("getUpdates", offset=offset, timeout=timeout, allowed_updates=["message"])
        return result or []

    async def send_message(self, chat_id: int, text: str, reply_to_message_id: Optional[int] = None) -> Dict[str, Any]:
        return await self.call("sendMessage", chat_id=chat_id, text=text, reply_to_message_id=reply_to_message_id)

    async def edit_message_text(self, chat_id: int, message_id: int, text: str) -> Any:
        return await self.call("editMessageText", chat_id=chat_id, message_id=message_id, text=text)

    async def send_chat_action(self, chat_id: int, action: str = "typing") -> Any:
        return await self.call("sendChatAction", chat_id=chat_id, action=action)

    async def aclose(self) -> None:
        await self._client.aclose()
