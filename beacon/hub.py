"""
beacon/hub.py — 实时通道服务端连接表

按 userId 维护已连接的 WebSocket；broadcast() 向全部或指定用户推送一条
{type, data} 消息。发送失败的连接视为已断开并移出连接表。
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

from beacon.events import log_event, E
from beacon.log import get_logger

logger = get_logger(__name__)


class NotificationHub:
    def __init__(self):
        self._sockets: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def join(self, user_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            self._sockets.setdefault(user_id, set()).add(websocket)
            total = self._count()
        log_event(logger, E.HUB_JOIN, user_id=user_id, connections=total)

    async def leave(self, user_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            sockets = self._sockets.get(user_id)
            if sockets is not None:
                sockets.discard(websocket)
                if not sockets:
                    self._sockets.pop(user_id, None)
            total = self._count()
        log_event(logger, E.HUB_LEAVE, user_id=user_id, connections=total)

    def _count(self) -> int:
        return sum(len(s) for s in self._sockets.values())

    @property
    def connections(self) -> int:
        return self._count()

    def users(self) -> List[str]:
        return sorted(self._sockets.keys())

    async def broadcast(self, message: Dict[str, Any], user_ids: Optional[Iterable[str]] = None) -> int:
        """推送消息，返回成功送达的连接数。"""
        async with self._lock:
            if user_ids is None:
                targets = [(uid, ws) for uid, sockets in self._sockets.items() for ws in sockets]
            else:
                wanted = {str(u) for u in user_ids}
                targets = [(uid, ws) for uid, sockets in self._sockets.items() if uid in wanted for ws in sockets]

        delivered = 0
        for uid, ws in targets:
            try:
                await ws.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning("推送失败，移除连接: user_id=%s error=%s", uid, e)
                await self.leave(uid, ws)
        log_event(logger, E.HUB_BROADCAST, type=message.get("type"), targets=len(targets), delivered=delivered)
        return delivered


hub = NotificationHub()
