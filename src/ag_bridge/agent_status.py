"""Agent 存活状态与进度检查点。"""

from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, List, Optional

from ag_bridge.errors import ValidationFailed
from ag_bridge.models import AgentStatus, Checkpoint
from ag_bridge.timeutil import now_rfc3339

AGENT_STATES = ("idle", "working", "waiting", "error")

# 检查点信封字段由服务端分配，客户端 body 不能覆盖
_ENVELOPE_FIELDS = ("id", "ts")


class AgentStatusTracker:
    """
    agent 最近状态（单一可变单元，不保留历史）。

    语义：
    - heartbeat 只合并调用方提供的字段，未提供的字段保留旧值；
    - 无论提供了哪些字段，`lastSeen` 总会刷新为当前时间。
    """

    def __init__(self, status: Optional[AgentStatus] = None) -> None:
        """创建 tracker（可从快照恢复）。"""

        self._status = status or AgentStatus()

    def heartbeat(self, *, state: Optional[str] = None, task: Optional[str] = None, note: Optional[str] = None) -> AgentStatus:
        """
        合并一次心跳上报。

        说明：
        - `None`（包括 JSON 里显式的 `null`）表示“未提供”，保留旧值；
        - 清空 task/note 需要显式传空串 `""`。

        异常：
        - ValidationFailed：state 不在 idle/working/waiting/error 之内
        """

        if state and state not in AGENT_STATES:
            raise ValidationFailed("invalid_input", f"state must be one of {list(AGENT_STATES)}")

        update: Dict[str, Any] = {"last_seen": now_rfc3339()}
        if state:
            update["state"] = state
        if task is not None:
            update["task"] = str(task)
        if note is not None:
            update["note"] = str(note)
        self._status = self._status.model_copy(update=update)
        return self._status

    def current(self) -> AgentStatus:
        """当前状态。"""

        return self._status


class CheckpointLog:
    """追加写的检查点日志（schema-free）。"""

    def __init__(self, checkpoints: Iterable[Checkpoint] = ()) -> None:
        """创建检查点日志（可从快照恢复，保持追加顺序）。"""

        self._items: List[Checkpoint] = list(checkpoints)

    def append(self, body: Any) -> Checkpoint:
        """
        追加一个检查点。

        异常：
        - ValidationFailed：body 不是 JSON object
        """

        if not isinstance(body, dict):
            raise ValidationFailed("invalid_input", "checkpoint body must be an object")
        extra = {k: v for k, v in body.items() if k not in _ENVELOPE_FIELDS}
        cp = Checkpoint.model_validate({**extra, "id": f"cp_{uuid.uuid4().hex[:16]}", "ts": now_rfc3339()})
        self._items.append(cp)
        return cp

    def items(self) -> List[Checkpoint]:
        """全部检查点（旧 → 新）。"""

        return list(self._items)
