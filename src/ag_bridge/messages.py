"""
双向短消息收件箱（MessageBus）。

约定：
- 历史是一个容量受限的环形缓冲：超过上限时先淘汰最旧的消息；
- `inbox()` 是对历史的只读过滤 + 排序视图，可重复调用、无副作用；
- 是否唤醒 agent 由调用方（service 层）根据 `to == "agent"` 决定。
"""

from __future__ import annotations

import itertools
import logging
import uuid
from collections import deque
from typing import Deque, Iterable, Iterator, List, Optional

from ag_bridge.errors import NotFound, ValidationFailed
from ag_bridge.models import Message
from ag_bridge.timeutil import now_rfc3339

logger = logging.getLogger(__name__)

RECIPIENTS = ("agent", "user")
ACK_STATUSES = ("read", "done")
DEFAULT_MAX_HISTORY = 200


class MessageBus:
    """消息历史的唯一持有者（仅在事件循环线程上访问）。"""

    def __init__(self, messages: Iterable[Message] = (), *, max_history: int = DEFAULT_MAX_HISTORY) -> None:
        """
        创建 MessageBus。

        参数：
        - messages：从快照恢复的历史（旧 → 新）
        - max_history：历史容量上限
        """

        self._max_history = max(1, int(max_history))
        self._history: Deque[Message] = deque(messages, maxlen=self._max_history)

    def send(
        self,
        *,
        to: Optional[str],
        text: Optional[str],
        sender: Optional[str] = None,
        channel: Optional[str] = None,
    ) -> Message:
        """
        追加一条消息。

        异常：
        - ValidationFailed(missing_fields)：缺少 to 或 text
        - ValidationFailed(invalid_input)：to 不是 agent/user
        """

        if not to or not text:
            raise ValidationFailed("missing_fields", "fields 'to' and 'text' are required")
        if to not in RECIPIENTS:
            raise ValidationFailed("invalid_input", f"'to' must be one of {list(RECIPIENTS)}")

        msg = Message(
            id=f"msg_{uuid.uuid4().hex[:16]}",
            created_at=now_rfc3339(),
            from_=str(sender) if sender else "user",
            to=to,  # type: ignore[arg-type]
            channel=str(channel) if channel else "general",
            text=str(text),
        )
        evicted = self._history[0] if len(self._history) == self._max_history else None
        self._history.append(msg)
        if evicted is not None:
            logger.debug("Message history full; evicted %s", evicted.id)
        return msg

    def iter_inbox(self, *, to: Optional[str] = None, status: Optional[str] = None) -> Iterator[Message]:
        """
        按最新优先迭代消息（可选按收件人/状态过滤）。

        说明：
        - `status == "all"` 等价于不过滤状态；
        - 同一时刻创建的消息，后发送者在前。
        """

        items = reversed(self._history)
        if to:
            items = (m for m in items if m.to == to)
        if status and status != "all":
            items = (m for m in items if m.status == status)
        yield from sorted(items, key=lambda m: m.created_at, reverse=True)

    def inbox(self, *, to: Optional[str] = None, status: Optional[str] = None, limit: Optional[int] = None) -> List[Message]:
        """
        返回过滤后的收件箱快照（最新优先，可选截断）。

        说明：
        - `limit=None` 不截断；`limit=0` 返回空列表（HTTP 查询参数 `limit=0` 同样如此）。
        """

        it = self.iter_inbox(to=to, status=status)
        if limit is not None:
            it = itertools.islice(it, max(0, int(limit)))
        return list(it)

    def ack(self, message_id: str, status: Optional[str] = None) -> Message:
        """
        原地更新消息状态。

        参数：
        - status：read|done（缺省为 read）

        异常：
        - ValidationFailed：status 非法
        - NotFound：id 不存在
        """

        new_status = status or "read"
        if new_status not in ACK_STATUSES:
            raise ValidationFailed("invalid_input", f"status must be one of {list(ACK_STATUSES)}")
        for msg in self._history:
            if msg.id == message_id:
                msg.status = new_status  # type: ignore[assignment]
                return msg
        raise NotFound("message not found", extra={"id": str(message_id)})

    def items(self) -> List[Message]:
        """全部历史（旧 → 新；用于快照）。"""

        return list(self._history)

    def __len__(self) -> int:
        """当前历史条数。"""

        return len(self._history)
