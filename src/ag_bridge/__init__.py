"""
ag-bridge：把本机 coding agent 的审批与消息桥接到手机端的本地服务。

说明：
- 手机端通过 6 位配对码换取 token，随后审批命令、收发短消息、查看 agent 状态；
- 服务端把状态保存在单个 JSON 快照中（防抖 + 原子写入），并通过 WebSocket 实时推送事件；
- 发给 agent 的消息会通过外部 waker 进程尝试唤醒 agent（节流 + busy 重试）。

入口：
- `ag_bridge.app.create_app()`：构造 FastAPI 应用
- `ag-bridge serve`：命令行启动（见 `ag_bridge.cli`）
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
