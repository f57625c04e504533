"""
实时事件扇出（BroadcastHub）。

约定：
- 事件信封：`{"event": <name>, "payload": <object>, "ts": <RFC3339>}`；
- 新连接的观察者先收到 `hello`，再按创建顺序收到所有 pending 审批的 `approval_requested`
  （断线重连补齐），之后才是实时事件；
- 投递是 at-most-once / best-effort：断线期间的事件不会重放，也没有投递确认；
- `publish()` 不阻塞：每个观察者有独立 outbox + 发送任务，慢/死连接只影响它自己。
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from ag_bridge.timeutil import now_rfc3339

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING = 256


class EventSink(Protocol):
    """观察者连接的最小接口（Starlette `WebSocket` 满足该协议）。"""

    async def send_text(self, data: str) -> None:  # pragma: no cover - protocol
        """发送一帧文本。"""


def make_envelope(event: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """构造事件信封。"""

    return {"event": str(event), "payload": dict(payload or {}), "ts": now_rfc3339()}


class Observer:
    """一个已鉴权的实时观察者（连接 + outbox + 发送任务）。"""

    def __init__(self, sink: EventSink, *, observer_id: int) -> None:
        """创建观察者（尚未启动发送任务）。"""

        self.id = observer_id
        self.sink = sink
        self.outbox: "asyncio.Queue[str]" = asyncio.Queue()
        self.task: Optional["asyncio.Task[None]"] = None

    def __repr__(self) -> str:
        """便于日志排障的表示。"""

        return f"Observer(id={self.id}, pending={self.outbox.qsize()})"


class BroadcastHub:
    """已连接观察者的集合与事件扇出。"""

    def __init__(self, *, max_pending: int = DEFAULT_MAX_PENDING) -> None:
        """
        创建 BroadcastHub。

        参数：
        - max_pending：单个观察者允许积压的最大事件数；超过即判定为慢连接并断开
        """

        self._max_pending = max(1, int(max_pending))
        self._observers: Set[Observer] = set()
        self._closers: Set["asyncio.Task[None]"] = set()
        self._next_id = 1

    @property
    def observer_count(self) -> int:
        """当前观察者数量。"""

        return len(self._observers)

    def attach(self, sink: EventSink, *, backlog: Iterable[Dict[str, Any]] = ()) -> Observer:
        """
        注册一个新观察者，并排入 hello + pending 审批回放。

        说明：
        - hello/回放与注册发生在同一个不可抢占的步骤里，保证它们先于任何实时事件。
        """

        obs = Observer(sink, observer_id=self._next_id)
        self._next_id += 1
        obs.outbox.put_nowait(json.dumps(make_envelope("hello", {"ts": now_rfc3339()}), ensure_ascii=False))
        replayed = 0
        for approval in backlog:
            obs.outbox.put_nowait(json.dumps(make_envelope("approval_requested", approval), ensure_ascii=False))
            replayed += 1
        self._observers.add(obs)
        obs.task = asyncio.get_running_loop().create_task(self._pump(obs))
        logger.info("Observer %d connected (replayed %d pending approvals)", obs.id, replayed)
        return obs

    def detach(self, obs: Observer) -> None:
        """移除观察者并停止其发送任务（幂等）。"""

        if obs not in self._observers:
            return
        self._observers.discard(obs)
        task = obs.task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        logger.info("Observer %d disconnected", obs.id)

    def publish(self, event: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """
        向所有观察者投递一个事件（不阻塞）。

        返回：
        - 成功排队的观察者数量
        """

        text = json.dumps(make_envelope(event, payload), ensure_ascii=False)
        delivered = 0
        for obs in list(self._observers):
            if obs.outbox.qsize() >= self._max_pending:
                logger.warning("Observer %d is too slow (%d pending); dropping it", obs.id, obs.outbox.qsize())
                self.detach(obs)
                self._close_quietly(obs)
                continue
            obs.outbox.put_nowait(text)
            delivered += 1
        return delivered

    def _close_quietly(self, obs: Observer) -> None:
        """尽力关闭被丢弃观察者的底层连接。"""

        close = getattr(obs.sink, "close", None)
        if close is None:
            return

        async def _close() -> None:
            """后台关闭（失败仅记录 debug）。"""

            try:
                await close(code=1013)
            except Exception:
                logger.debug("Closing dropped observer %d failed", obs.id, exc_info=True)

        task = asyncio.get_running_loop().create_task(_close())
        self._closers.add(task)
        task.add_done_callback(self._closers.discard)

    async def _pump(self, obs: Observer) -> None:
        """把 outbox 中的事件依次写给连接；写失败即移除该观察者。"""

        while True:
            text = await obs.outbox.get()
            try:
                await obs.sink.send_text(text)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.debug("Send to observer %d failed; dropping it", obs.id, exc_info=True)
                self.detach(obs)
                return

    async def aclose(self) -> None:
        """停止全部发送任务并等待进行中的关闭（服务关闭时调用）。"""

        tasks: List["asyncio.Task[None]"] = [o.task for o in self._observers if o.task is not None]
        tasks.extend(self._closers)
        for obs in list(self._observers):
            self.detach(obs)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
