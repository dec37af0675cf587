from typing import Optional

import httpx

from atende.logging_config import get_logger
from atende.services.channel.base import ChannelAdapter, ChannelError, ChannelSessionError, to_chat_id

logger = get_logger("channel.wppconnect")

_SESSION_ERRORS = ("session not found", "not connected")


class WPPConnectAdapter(ChannelAdapter):
    """WPPConnect server REST client.

    Bearer tokens are generated per session with the server secret and kept
    in memory until the server rejects them.
    """

    def __init__(
        self,
        base_url: str,
        secret: str,
        *,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.secret = secret
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._tokens: dict[str, str] = {}

    async def _token(self, session: str) -> str:
        token = self._tokens.get(session)
        if token:
            return token
        data = await self._request("POST", f"/api/{session}/{self.secret}/generate-token")
        token = data.get("token")
        if not token:
            raise ChannelSessionError(f"Could not generate token for session {session}")
        self._tokens[session] = token
        return token

    async def _request(self, method: str, path: str, *, json: Optional[dict] = None, token: Optional[str] = None) -> dict:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            response = await self._client.request(method, f"{self.base_url}{path}", headers=headers, json=json)
        except httpx.HTTPError as exc:
            raise ChannelError(f"WPPConnect request failed: {exc}") from exc

        if response.status_code == 401:
            raise ChannelSessionError(f"WPPConnect unauthorized for {path}")
        if response.status_code >= 500:
            raise ChannelError(f"WPPConnect error {response.status_code}: {response.text[:200]}")
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"response": data}
        message = str(data.get("message") or "").lower()
        if any(marker in message for marker in _SESSION_ERRORS):
            raise ChannelSessionError(f"WPPConnect session error: {message}")
        return data

    async def _send(self, session: str, path: str, payload: dict) -> bool:
        token = await self._token(session)
        try:
            data = await self._request("POST", f"/api/{session}/{path}", json=payload, token=token)
        except ChannelSessionError:
            self._tokens.pop(session, None)
            raise
        ok = data.get("status") == "success"
        if not ok:
            logger.warning(
                "WPPConnect send not acknowledged",
                extra={"context": {"session": session, "path": path, "response": str(data)[:200]}},
            )
        return ok

    async def send_text(self, session: str, recipient: str, text: str) -> bool:
        return await self._send(
            session,
            "send-message",
            {"phone": to_chat_id(recipient), "message": text, "isGroup": False},
        )

    async def send_file(
        self,
        session: str,
        recipient: str,
        file_url: str,
        file_name: str,
        caption: Optional[str] = None,
    ) -> bool:
        return await self._send(
            session,
            "send-file",
            {
                "phone": to_chat_id(recipient),
                "path": file_url,
                "filename": file_name,
                "caption": caption or "",
                "isGroup": False,
            },
        )

    async def send_image(self, session: str, recipient: str, image_url: str, caption: Optional[str] = None) -> bool:
        return await self._send(
            session,
            "send-image",
            {"phone": to_chat_id(recipient), "path": image_url, "caption": caption or "", "isGroup": False},
        )

    async def get_status(self, session: str) -> str:
        try:
            token = await self._token(session)
            data = await self._request("GET", f"/api/{session}/check-connection-session", token=token)
        except ChannelSessionError:
            return "DISCONNECTED"
        connected = data.get("status") is True or data.get("message") == "Connected"
        return "CONNECTED" if connected else "DISCONNECTED"

    async def start_session(self, session: str, webhook_url: Optional[str] = None) -> dict:
        token = await self._token(session)
        payload = {"waitQrCode": True}
        if webhook_url:
            payload["webhook"] = webhook_url
        data = await self._request("POST", f"/api/{session}/start-session", json=payload, token=token)
        return {"status": data.get("status"), "qrcode": data.get("qrcode"), "urlcode": data.get("urlcode")}

    async def logout(self, session: str) -> bool:
        token = await self._token(session)
        data = await self._request("POST", f"/api/{session}/logout-session", token=token)
        self._tokens.pop(session, None)
        return data.get("status") in ("success", True)

    async def close(self) -> None:
        await self._client.aclose()
