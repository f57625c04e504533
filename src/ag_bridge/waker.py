"""
Waker 协作者适配器：以子进程方式调用外部唤醒程序。

约定（外部程序）：
- 从环境变量 `AG_POKE_MESSAGE` 读取要注入的文本；
- 在 stdout 输出一个 JSON 对象（取最后一个非空行），至少包含 `ok: bool`；
- 失败时：`{"ok": false, "reason": "busy..."}` 为软失败（可重试），
  `{"ok": false, "error": <kind>, "details": ...}` 为硬失败。
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

MESSAGE_ENV = "AG_POKE_MESSAGE"
_STDOUT_TAIL = 2000


def parse_waker_output(text: str) -> Dict[str, Any]:
    """
    解析 waker 的 stdout。

    说明：
    - 优先取最后一个非空行作为 JSON；否则尝试整体解析（兼容多行 pretty-print）；
    - 都失败时返回 `{"ok": false, "error": "parse_error", "stdout": <tail>}`。
    """

    for line in reversed(text.splitlines()):
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except ValueError:
            break
        if isinstance(obj, dict):
            return obj
        break

    try:
        obj = json.loads(text)
    except ValueError:
        obj = None
    if isinstance(obj, dict):
        return obj
    return {"ok": False, "error": "parse_error", "stdout": text[-_STDOUT_TAIL:]}


class SubprocessWaker:
    """每次调用启动一次外部 waker 进程并返回其 JSON 结果（从不抛出）。"""

    def __init__(
        self,
        argv: Sequence[str],
        *,
        message: str = "check inbox",
        timeout_sec: float = 30.0,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        """
        创建适配器。

        参数：
        - argv：命令及参数（不经过 shell）
        - message：通过 `AG_POKE_MESSAGE` 传给 waker 的文本
        - timeout_sec：单次调用超时；超时会 kill 子进程
        - cwd/env：子进程工作目录与基础环境（缺省继承当前进程）
        """

        if not argv:
            raise ValueError("waker argv must not be empty")
        self.argv = [str(a) for a in argv]
        self.message = str(message)
        self.timeout_sec = float(timeout_sec)
        self.cwd = cwd
        self._base_env = dict(env) if env is not None else None

    def _child_env(self) -> Dict[str, str]:
        """子进程环境：基础环境 + 注入消息。"""

        env = dict(self._base_env if self._base_env is not None else os.environ)
        env[MESSAGE_ENV] = self.message
        return env

    @staticmethod
    async def _reap(proc: "asyncio.subprocess.Process") -> None:
        """kill 仍在运行的子进程并等待其退出。"""

        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        await proc.wait()

    async def __call__(self) -> Dict[str, Any]:
        """运行一次 waker。"""

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.cwd) if self.cwd is not None else None,
                env=self._child_env(),
            )
        except (OSError, ValueError) as exc:
            logger.error("Failed to start waker %s: %s", self.argv[0], exc)
            return {"ok": False, "error": "spawn_error", "details": str(exc)}

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_sec)
        except asyncio.TimeoutError:
            await self._reap(proc)
            return {"ok": False, "error": "timeout", "details": f"waker exceeded {self.timeout_sec:g}s"}
        except BaseException:
            # 被取消（例如关闭时）也不能留下子进程
            await asyncio.shield(self._reap(proc))
            raise

        if stderr:
            logger.debug("waker stderr: %s", stderr.decode("utf-8", errors="replace").strip())
        if proc.returncode:
            logger.debug("waker exited with code %s", proc.returncode)
        return parse_waker_output(stdout.decode("utf-8", errors="replace") if stdout else "")
