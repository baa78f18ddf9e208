# src/taskboard/backend/ws_channel.py

from __future__ import annotations

import logging

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..core.errors import ConnectivityError

logger = logging.getLogger(__name__)


class WebSocketPushChannel:
    """
    PushChannel over the backend websocket (/ws).

    One connection per open(); frames are returned as text. Reconnecting is
    the listener's job, this class never retries on its own.
    """

    def __init__(self, url: str, *, open_timeout: float = 5.0) -> None:
        self._url = url
        self._open_timeout = open_timeout
        self._conn: ClientConnection | None = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def connected(self) -> bool:
        return self._conn is not None

    async def open(self) -> None:
        await self.close()
        try:
            self._conn = await connect(self._url, open_timeout=self._open_timeout)
        except (WebSocketException, OSError) as exc:
            raise ConnectivityError(f"cannot connect to {self._url}: {exc}") from exc
        logger.info("Connected to %s", self._url)

    async def receive(self) -> str:
        conn = self._conn
        if conn is None:
            raise ConnectivityError("push channel is not open")
        try:
            frame = await conn.recv()
        except ConnectionClosed as exc:
            raise ConnectivityError(f"push channel closed (code={exc.rcvd.code if exc.rcvd else 'n/a'})") from exc
        except (WebSocketException, OSError) as exc:
            raise ConnectivityError(f"push channel error: {exc}") from exc

        if isinstance(frame, bytes):
            return frame.decode("utf-8", errors="replace")
        return frame

    async def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            await conn.close()
        except (WebSocketException, OSError):
            logger.debug("Ignoring error while closing %s", self._url, exc_info=True)
