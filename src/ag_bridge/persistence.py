"""
快照持久化（PersistenceEngine）。

约定：
- 单文件 JSON 快照：`{version, strictMode, approvals[], messages[], agent, checkpoints[], tokens[]}`；
- 写入是 **防抖** 的：每次变更重置同一个定时器，安静期结束后只写一次最新状态（last-write-wins）；
- 每次写入是 **原子** 的：先写 `<state>.tmp`，再 `os.replace` 覆盖正式文件，崩溃不会留下半截主文件；
- 启动恢复：
  - 文件不存在：使用默认值并立即落盘；
  - 文件损坏：重命名为 `<state>.bad.<epoch_ms>`（隔离）后使用默认值，不阻断启动；
  - 其余：逐字段合并到默认值（未知字段忽略，缺失/非法字段保留默认值）。
    存在被跳过的非法条目时，先把原文件复制为 `<state>.bad.<epoch_ms>`，避免下一次写入后丢失。
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Set, Tuple

from pydantic import ValidationError

from ag_bridge.models import AgentStatus, Approval, BridgeSnapshot, Checkpoint, Message
from ag_bridge.timeutil import now_epoch_ms

logger = logging.getLogger(__name__)

SnapshotProvider = Callable[[], Dict[str, Any]]


def _merge(raw: Dict[str, Any]) -> Tuple[BridgeSnapshot, int]:
    """
    合并快照并统计被丢弃的条目数。

    返回：
    - (snapshot, dropped)：dropped 为未能通过校验而被跳过的元素/字段个数
    """

    snap = BridgeSnapshot()
    dropped = 0

    version = raw.get("version")
    if isinstance(version, int) and not isinstance(version, bool) and version > 0:
        snap.version = version
    strict = raw.get("strictMode")
    if isinstance(strict, bool):
        snap.strict_mode = strict

    for name, model in (("approvals", Approval), ("messages", Message), ("checkpoints", Checkpoint)):
        value = raw.get(name)
        if value is None:
            continue
        if not isinstance(value, list):
            logger.warning("Snapshot field %r is not a list; keeping defaults", name)
            dropped += 1
            continue
        items = []
        for index, item in enumerate(value):
            try:
                items.append(model.model_validate(item))
            except ValidationError as exc:
                logger.warning("Skipping malformed %s[%d] (%d errors)", name, index, exc.error_count())
                dropped += 1
        setattr(snap, name, items)

    agent = raw.get("agent")
    if isinstance(agent, dict):
        status = AgentStatus()
        for key, value in agent.items():
            try:
                status = AgentStatus.model_validate({**status.to_wire(), key: value})
            except ValidationError:
                logger.warning("Skipping malformed agent field %r", key)
                dropped += 1
        snap.agent = status
    elif agent is not None:
        logger.warning("Snapshot field 'agent' is not an object; keeping defaults")
        dropped += 1

    tokens = raw.get("tokens")
    if isinstance(tokens, list):
        snap.tokens = [t for t in tokens if isinstance(t, str) and t]

    return snap, dropped


def merge_snapshot(raw: Dict[str, Any]) -> BridgeSnapshot:
    """
    将已解析的快照 dict 逐字段合并到默认快照。

    规则：
    - 仅识别已知字段；类型/结构不符的字段保留默认值并记录 warning；
    - 列表字段逐个元素校验：非法元素被跳过，其余元素按原顺序保留；
    - `agent` 逐个 key 合并到默认状态，非法的 key 保留默认值。
    """

    return _merge(raw)[0]


class SnapshotStore:
    """
    快照文件的读写者（debounce + 原子替换 + 损坏隔离）。

    使用方式：
    - `load()` 在启动时同步调用一次；
    - `bind(provider)` 绑定“当前状态 → dict”的序列化函数；
    - 每次变更后调用 `schedule()`；关闭时 `await aclose()` 把未落盘的变更写出。
    """

    def __init__(self, *, path: Path, debounce_sec: float = 0.25) -> None:
        """
        创建快照存储。

        参数：
        - path：快照文件路径（父目录不存在时自动创建）
        - debounce_sec：防抖安静期（秒）
        """

        self.path = Path(path)
        self._debounce_sec = max(0.0, float(debounce_sec))
        self._provider: Optional[SnapshotProvider] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set["asyncio.Future[bool]"] = set()
        self._lock: Optional[asyncio.Lock] = None
        self._dirty = False

    @property
    def tmp_path(self) -> Path:
        """原子写入使用的临时文件路径。"""

        return self.path.with_name(self.path.name + ".tmp")

    @property
    def pending(self) -> bool:
        """是否存在尚未落盘的变更。"""

        return self._dirty

    def bind(self, provider: SnapshotProvider) -> None:
        """绑定快照序列化函数（在事件循环线程上调用）。"""

        self._provider = provider

    # ------------------------------------------------------------------
    # load
    # ------------------------------------------------------------------

    def _quarantine(self) -> Optional[Path]:
        """把损坏的快照文件改名隔离；失败返回 None。"""

        bad = self.path.with_name(f"{self.path.name}.bad.{now_epoch_ms()}")
        try:
            os.replace(self.path, bad)
        except OSError:
            logger.exception("Failed to quarantine corrupt snapshot %s", self.path)
            return None
        logger.warning("Corrupt snapshot renamed to %s", bad)
        return bad

    def _backup(self) -> Optional[Path]:
        """把部分非法的快照复制一份（原文件保留，随后会被正常覆盖）。"""

        bad = self.path.with_name(f"{self.path.name}.bad.{now_epoch_ms()}")
        try:
            shutil.copyfile(self.path, bad)
        except OSError:
            logger.exception("Failed to back up snapshot %s", self.path)
            return None
        logger.warning("Snapshot had malformed entries; original copied to %s", bad)
        return bad

    def load(self) -> BridgeSnapshot:
        """
        读取快照（启动时调用一次）。

        返回：
        - BridgeSnapshot：恢复出的状态；任何失败都回退到默认值而不是抛出。
        """

        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("No snapshot at %s; starting fresh", self.path)
            snap = BridgeSnapshot()
            self.save_now(snap.to_wire())
            return snap
        except OSError:
            logger.exception("Failed to read snapshot %s; starting with defaults", self.path)
            return BridgeSnapshot()

        try:
            raw = json.loads(text)
        except ValueError:
            logger.error("Snapshot %s is not valid JSON", self.path)
            self._quarantine()
            return BridgeSnapshot()
        if not isinstance(raw, dict):
            logger.error("Snapshot %s root is not an object", self.path)
            self._quarantine()
            return BridgeSnapshot()

        snap, dropped = _merge(raw)
        if dropped:
            self._backup()
        logger.info(
            "Snapshot loaded: %d approvals, %d messages, %d checkpoints, %d tokens, strict=%s",
            len(snap.approvals),
            len(snap.messages),
            len(snap.checkpoints),
            len(snap.tokens),
            snap.strict_mode,
        )
        return snap

    # ------------------------------------------------------------------
    # save
    # ------------------------------------------------------------------

    def _write_atomic(self, data: Dict[str, Any]) -> None:
        """写临时文件并 fsync，然后原子替换正式文件。"""

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.tmp_path
        with tmp.open("w", encoding="utf-8") as f:
            f.write(json.dumps(data, ensure_ascii=False, indent=2))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    def save_now(self, data: Dict[str, Any]) -> bool:
        """
        同步写入一份快照（best-effort）。

        返回：
        - True：写入成功；False：写入失败（已记录日志，不抛出）
        """

        try:
            self._write_atomic(data)
        except Exception:
            logger.exception("Failed to save snapshot %s", self.path)
            return False
        return True

    def schedule(self) -> None:
        """
        标记状态已变更，并（重新）安排一次防抖落盘。

        说明：
        - 已存在的定时器会被取消并重新计时（不堆叠多余的写入）；
        - 没有运行中的事件循环时（例如同步脚本），直接同步写入。
        """

        if self._provider is None:
            raise RuntimeError("SnapshotStore.schedule() called before bind()")
        self._dirty = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._dirty = False
            self.save_now(self._provider())
            return

        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self._debounce_sec, self._fire)

    def _fire(self) -> None:
        """定时器到期：启动一次 flush 任务。"""

        self._timer = None
        task = asyncio.ensure_future(self.flush())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def flush(self) -> bool:
        """
        立即把最新状态写盘。

        说明：
        - 序列化在事件循环线程上完成（拿到一致的快照），文件 I/O 放到线程池；
        - 多个 flush 通过锁串行化，后到者写的一定是更新的状态。
        """

        if self._provider is None:
            return False
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            self._dirty = False
            data = self._provider()
            try:
                await asyncio.to_thread(self._write_atomic, data)
            except Exception:
                logger.exception("Failed to save snapshot %s", self.path)
                self._dirty = True
                return False
        logger.debug("Snapshot saved to %s", self.path)
        return True

    async def aclose(self) -> None:
        """取消防抖定时器，等待进行中的写入，并写出尚未落盘的变更。"""

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._dirty:
            await self.flush()
