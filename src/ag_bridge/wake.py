"""
唤醒调度（WakeScheduler）。

状态：
- idle：没有进行中的尝试，也没有重试循环；
- inflight：某次尝试正在等待 waker 返回；
- backoff：agent 忙，固定间隔的重试循环在运行。

约束：
- single-flight：同一时刻最多一次 waker 调用；
- throttle：两次尝试的间隔不小于 `throttle_sec`，被节流/被占用的尝试返回 `skipped`；
- bounded retry：`busy` 进入重试循环，最多 `max_retries` 次后放弃并记录日志；
  `ok` 与其它失败（hard）都会立即停止循环。
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

logger = logging.getLogger(__name__)

Waker = Callable[[], Awaitable[Dict[str, Any]]]
Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[Any]]


class WakeState(str, Enum):
    """调度器对外可观测的状态。"""

    IDLE = "idle"
    INFLIGHT = "inflight"
    BACKOFF = "backoff"


@dataclass(frozen=True)
class WakeOutcome:
    """
    一次尝试的结果。

    字段：
    - kind：ok | busy | hard | skipped
    - result：waker 返回的原始结果（skipped 时为跳过原因）
    """

    kind: str
    result: Dict[str, Any] = field(default_factory=dict)


def classify_result(result: Any) -> str:
    """把 waker 结果归类为 ok / busy / hard。"""

    if not isinstance(result, dict):
        return "hard"
    if result.get("ok") is True:
        return "ok"
    reason = result.get("reason")
    if isinstance(reason, str) and "busy" in reason:
        return "busy"
    return "hard"


class WakeScheduler:
    """把“有新消息给 agent”转化为受控的 waker 调用。"""

    def __init__(
        self,
        waker: Optional[Waker],
        *,
        throttle_sec: float = 2.0,
        retry_interval_sec: float = 5.0,
        max_retries: int = 24,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        """
        创建调度器。

        参数：
        - waker：实际执行唤醒的协程函数；None 表示禁用唤醒
        - throttle_sec：两次尝试之间的最小间隔
        - retry_interval_sec：busy 重试间隔
        - max_retries：重试上限
        - clock/sleep：可注入的时钟与睡眠（测试用）
        """

        self._waker = waker
        self._throttle_sec = max(0.0, float(throttle_sec))
        self._retry_interval_sec = max(0.0, float(retry_interval_sec))
        self._max_retries = max(0, int(max_retries))
        self._clock = clock
        self._sleep = sleep

        self._state = WakeState.IDLE
        self._last_attempt_at: Optional[float] = None
        self._backoff_task: Optional["asyncio.Task[None]"] = None
        self._tasks: Set["asyncio.Task[Any]"] = set()

        self.attempts = 0
        self.retry_attempts = 0

    @property
    def enabled(self) -> bool:
        """是否配置了 waker。"""

        return self._waker is not None

    @property
    def state(self) -> WakeState:
        """当前状态。"""

        return self._state

    def _set_state(self, new: WakeState) -> None:
        """状态迁移（记录 debug 日志）。"""

        if new is not self._state:
            logger.debug("Wake state %s -> %s", self._state.value, new.value)
            self._state = new

    def _settle(self) -> None:
        """一次尝试结束后回到 backoff（循环仍在运行）或 idle。"""

        self._set_state(WakeState.BACKOFF if self._backoff_running() else WakeState.IDLE)

    def _backoff_running(self) -> bool:
        """重试循环是否仍在运行。"""

        return self._backoff_task is not None and not self._backoff_task.done()

    def _track(self, task: "asyncio.Task[Any]") -> None:
        """记录后台任务，便于关闭时等待。"""

        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def trigger(self) -> None:
        """
        请求一次唤醒（不阻塞调用方）。

        说明：
        - 仅在 idle 时发起尝试；inflight/backoff 期间为 no-op（由进行中的尝试或重试循环负责）；
        - 没有运行中的事件循环时仅记录日志。
        """

        if self._waker is None:
            logger.debug("Wake requested but no waker is configured")
            return
        if self._state is not WakeState.IDLE:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Wake requested outside of an event loop; ignored")
            return
        self._track(loop.create_task(self.attempt()))

    async def attempt(self, *, is_retry: bool = False) -> WakeOutcome:
        """
        执行一次受 single-flight 与 throttle 约束的尝试。

        返回：
        - WakeOutcome：kind 为 ok/busy/hard/skipped
        """

        if self._waker is None:
            return WakeOutcome("skipped", {"reason": "disabled"})
        if self._state is WakeState.INFLIGHT:
            return WakeOutcome("skipped", {"reason": "inflight"})
        now = self._clock()
        if self._last_attempt_at is not None and now - self._last_attempt_at < self._throttle_sec:
            return WakeOutcome("skipped", {"reason": "throttled"})

        self._set_state(WakeState.INFLIGHT)
        self._last_attempt_at = now
        self.attempts += 1
        if not is_retry:
            logger.info("Waking agent")
        try:
            result = await self._waker()
        except asyncio.CancelledError:
            self._settle()
            raise
        except Exception as exc:
            logger.exception("Waker raised")
            result = {"ok": False, "error": "waker_exception", "details": str(exc)}

        kind = classify_result(result)
        if kind == "ok":
            logger.info("Wake succeeded (%s)", result.get("method", "-"))
            self._stop_backoff()
        elif kind == "busy":
            self._start_backoff()
        else:
            logger.warning("Wake failed: %s", json.dumps(result, ensure_ascii=False, default=str))
            self._stop_backoff()
        self._settle()
        return WakeOutcome(kind, dict(result) if isinstance(result, dict) else {"result": result})

    def _start_backoff(self) -> None:
        """启动重试循环（已在运行时不重复启动）。"""

        if self._backoff_running():
            return
        self.retry_attempts = 0
        logger.info(
            "Agent busy; retrying every %.1fs (at most %d times)",
            self._retry_interval_sec,
            self._max_retries,
        )
        self._backoff_task = asyncio.get_running_loop().create_task(self._backoff_loop())

    def _stop_backoff(self) -> None:
        """停止重试循环（从循环内部调用时只解除登记，由循环自行退出）。"""

        task = self._backoff_task
        self._backoff_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _backoff_loop(self) -> None:
        """固定间隔重试，直到成功、hard 失败或达到上限。"""

        me = asyncio.current_task()
        try:
            while self.retry_attempts < self._max_retries:
                await self._sleep(self._retry_interval_sec)
                if self._backoff_task is not me:
                    return
                self.retry_attempts += 1
                logger.debug("Wake retry %d/%d", self.retry_attempts, self._max_retries)
                await self.attempt(is_retry=True)
                if self._backoff_task is not me:
                    return
            logger.warning("Agent still busy after %d retries; giving up", self._max_retries)
        finally:
            if self._backoff_task is me:
                self._backoff_task = None
                if self._state is WakeState.BACKOFF:
                    self._set_state(WakeState.IDLE)

    async def join(self) -> None:
        """等待当前所有尝试与重试循环结束（测试与优雅关闭使用）。"""

        while True:
            pending = list(self._tasks)
            if self._backoff_running():
                pending.append(self._backoff_task)  # type: ignore[arg-type]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def aclose(self) -> None:
        """取消重试循环与进行中的尝试。"""

        backoff = self._backoff_task
        self._stop_backoff()
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if backoff is not None:
            pending.append(backoff)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._set_state(WakeState.IDLE)
