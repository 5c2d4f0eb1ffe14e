"""
实时计划更新推送

Keeps the open WebSocket sessions of each user and pushes `plan_update`
messages after a committed subscription change. Sends are bounded by a
timeout; a socket that fails or times out is dropped.
"""

import asyncio
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

from FinalRound.config.settings import get_settings
from FinalRound.observability.logging import LogModule, get_module_logger
from FinalRound.services.billing.state_machine import SubscriptionState
from FinalRound.utils.time import isoformat_utc, utcnow

logger = get_module_logger(LogModule.NOTIFY)


def build_plan_update_message(state: SubscriptionState) -> Dict[str, Any]:
    return {
        "type": "plan_update",
        "plan": state.tier,
        "subscription": {
            "subscriptionId": state.subscription_id,
            "status": state.status,
            "nextBillingTime": isoformat_utc(state.next_billing_time),
            "cancelAtPeriodEnd": state.cancel_at_period_end,
            "cancelScheduledAt": isoformat_utc(state.cancel_scheduled_at),
        },
        "timestamp": isoformat_utc(utcnow()),
    }


class LiveUpdateBroadcaster:
    """用户计划更新 WebSocket 管理器"""

    _instance: Optional["LiveUpdateBroadcaster"] = None

    def __new__(cls, *args: Any, **kwargs: Any) -> "LiveUpdateBroadcaster":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self, send_timeout: Optional[float] = None):
        if self._initialized:
            return

        # user_id -> connections
        self._user_connections: Dict[int, Set[WebSocket]] = {}
        self.send_timeout = send_timeout or get_settings().billing.broadcast_timeout

        self._initialized = True

    # ==================== 连接管理 ====================

    async def connect(self, websocket: WebSocket, user_id: int) -> None:
        await websocket.accept()
        self._user_connections.setdefault(user_id, set()).add(websocket)
        logger.info("Billing WebSocket connected for user %s", user_id)

    def disconnect(self, websocket: WebSocket, user_id: int) -> None:
        connections = self._user_connections.get(user_id)
        if not connections:
            return
        connections.discard(websocket)
        if not connections:
            del self._user_connections[user_id]
        logger.info("Billing WebSocket disconnected for user %s", user_id)

    def connection_count(self, user_id: int) -> int:
        return len(self._user_connections.get(user_id, ()))

    # ==================== 消息广播 ====================

    async def broadcast_plan_update(self, user_id: int, state: SubscriptionState) -> int:
        """Send the plan update to every session of `user_id`; returns sockets reached."""
        connections = self._user_connections.get(user_id, set()).copy()
        if not connections:
            return 0

        message = build_plan_update_message(state)
        sent_count = 0
        for connection in connections:
            try:
                await asyncio.wait_for(connection.send_json(message), timeout=self.send_timeout)
                sent_count += 1
            except Exception as e:
                logger.warning("Failed to send plan update to user %s: %s", user_id, e)
                self.disconnect(connection, user_id)

        logger.debug("Plan update for user %s sent to %d session(s)", user_id, sent_count)
        return sent_count


def get_live_update_broadcaster() -> LiveUpdateBroadcaster:
    return LiveUpdateBroadcaster()
