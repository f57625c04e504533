"""
状态聚合与服务门面（BridgeService）。

职责：
- 持有全部运行时状态（配对、审批、消息、agent 状态、检查点、strict mode）；
- 每个变更操作：校验 → 修改内存状态 → `schedule()` 防抖落盘 → 广播事件，
  整个过程在事件循环上一次完成（中间没有 await），因此对同一实体的操作按调用顺序生效；
- HTTP/WebSocket 层只做协议适配，业务语义都在这里。
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ag_bridge.agent_status import AgentStatusTracker, CheckpointLog
from ag_bridge.approvals import ApprovalStore
from ag_bridge.config import BridgeSettings
from ag_bridge.errors import ValidationFailed
from ag_bridge.hub import BroadcastHub, EventSink, Observer
from ag_bridge.messages import MessageBus
from ag_bridge.models import SNAPSHOT_VERSION, AgentStatus, Approval, BridgeSnapshot, Checkpoint, Message
from ag_bridge.pairing import PairingAuthority, is_loopback
from ag_bridge.persistence import SnapshotStore
from ag_bridge.policy import PolicyGate, load_policy
from ag_bridge.timeutil import now_rfc3339
from ag_bridge.wake import WakeScheduler, Waker
from ag_bridge.waker import SubprocessWaker

logger = logging.getLogger(__name__)


def _build_waker(settings: BridgeSettings) -> Optional[Waker]:
    """按配置构造子进程 waker；`wake.command` 为空时返回 None（禁用唤醒）。"""

    if not settings.wake.command:
        return None
    return SubprocessWaker(
        settings.wake.command,
        message=settings.wake.message,
        timeout_sec=settings.wake.timeout_sec,
        cwd=settings.root_path(),
    )


class BridgeService:
    """ag-bridge 的进程内状态聚合。"""

    def __init__(
        self,
        settings: Optional[BridgeSettings] = None,
        *,
        waker: Optional[Waker] = None,
        pairing_code: Optional[str] = None,
    ) -> None:
        """
        创建服务并从磁盘恢复状态。

        参数：
        - settings：配置（默认全部取默认值）
        - waker：注入的 waker（默认按 `wake.command` 构造子进程 waker）
        - pairing_code：固定配对码（测试用）
        """

        self.settings = settings or BridgeSettings()

        policy_path = self.settings.policy_file_path()
        self.gate = PolicyGate(load_policy(policy_path))
        self.store = SnapshotStore(
            path=self.settings.state_file_path(),
            debounce_sec=self.settings.persistence.debounce_ms / 1000.0,
        )
        snap = self.store.load()

        self.version = snap.version or SNAPSHOT_VERSION
        self.strict_mode = bool(snap.strict_mode)
        self.pairing = PairingAuthority(tokens=snap.tokens, code=pairing_code)
        self.approvals = ApprovalStore(snap.approvals, gate=self.gate)
        self.messages = MessageBus(snap.messages, max_history=self.settings.messages.max_history)
        self.agent = AgentStatusTracker(snap.agent)
        self.checkpoints = CheckpointLog(snap.checkpoints)
        self.hub = BroadcastHub()
        self.wake = WakeScheduler(
            waker if waker is not None else _build_waker(self.settings),
            throttle_sec=self.settings.wake.throttle_ms / 1000.0,
            retry_interval_sec=self.settings.wake.retry_interval_ms / 1000.0,
            max_retries=self.settings.wake.max_retries,
        )
        self.store.bind(self.snapshot)

        if snap.tokens:
            logger.warning("%d paired device token(s) restored; tokens never expire", len(snap.tokens))
        if not self.wake.enabled:
            logger.info("No wake command configured; agent wake-up is disabled")

    # ------------------------------------------------------------------
    # snapshot / lifecycle
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        """当前状态的可持久化表示。"""

        return BridgeSnapshot(
            version=self.version,
            strict_mode=self.strict_mode,
            approvals=self.approvals.items(),
            messages=self.messages.items(),
            agent=self.agent.current(),
            checkpoints=self.checkpoints.items(),
            tokens=self.pairing.tokens(),
        ).to_wire()

    def _changed(self, event: Optional[str] = None, payload: Optional[Dict[str, Any]] = None) -> None:
        """变更后的统一收尾：安排落盘，并（可选）广播事件。"""

        self.store.schedule()
        if event:
            self.hub.publish(event, payload)

    async def aclose(self) -> None:
        """停止唤醒与广播任务，并把未落盘的状态写出。"""

        await self.wake.aclose()
        await self.hub.aclose()
        await self.store.aclose()
        logger.info("Bridge state flushed to %s", self.store.path)

    # ------------------------------------------------------------------
    # pairing / auth
    # ------------------------------------------------------------------

    @property
    def pairing_code(self) -> str:
        """当前配对码。"""

        return self.pairing.code

    def claim(self, code: Any) -> str:
        """用配对码换取 token（持久化新 token）。"""

        token = self.pairing.claim(code)
        self._changed()
        return token

    def authorize_http(self, *, token: Optional[str], client_host: Optional[str]) -> bool:
        """HTTP 请求鉴权：loopback 旁路（可配置）或有效 token。"""

        if self.settings.auth.loopback_bypass and is_loopback(client_host):
            return True
        return self.pairing.authenticate(token)

    def authorize_stream(self, token: Optional[str]) -> bool:
        """实时事件流鉴权：总是要求有效 token。"""

        return self.pairing.authenticate(token)

    # ------------------------------------------------------------------
    # config / status
    # ------------------------------------------------------------------

    def set_strict_mode(self, value: Any) -> bool:
        """
        切换 strict mode。

        异常：
        - ValidationFailed：value 不是布尔值
        """

        if not isinstance(value, bool):
            raise ValidationFailed("invalid_input", "strictMode must be a boolean")
        self.strict_mode = value
        logger.info("Strict mode %s", "enabled" if value else "disabled")
        self._changed("config_changed", {"strictMode": value})
        return value

    def status(self) -> Dict[str, Any]:
        """整体状态概览。"""

        summary = self.approvals.summary()
        return {
            "ok": True,
            "ts": now_rfc3339(),
            "pendingApprovals": summary["pending"],
            "totalApprovals": summary["total"],
            "strictMode": self.strict_mode,
        }

    # ------------------------------------------------------------------
    # approvals
    # ------------------------------------------------------------------

    def request_approval(
        self,
        *,
        kind: Optional[str],
        details: Any = None,
        risk: Optional[str] = None,
        client_tag: Optional[str] = None,
    ) -> Approval:
        """创建审批（命令类先过 policy）。"""

        approval = self.approvals.request(
            kind=kind,
            details=details,
            risk=risk,
            client_tag=client_tag,
            strict_mode=self.strict_mode,
        )
        self._changed("approval_requested", approval.to_wire())
        return approval

    def decide_approval(self, approval_id: str, outcome: str) -> Approval:
        """对审批做一次性决策。"""

        approval = self.approvals.decide(approval_id, outcome)
        self._changed("approval_decided", {"id": approval.id, "status": approval.status})
        return approval

    def approval_summary(self) -> Dict[str, Any]:
        """审批计数（带时间戳）。"""

        return {"ok": True, "ts": now_rfc3339(), **self.approvals.summary()}

    # ------------------------------------------------------------------
    # messages
    # ------------------------------------------------------------------

    def send_message(
        self,
        *,
        to: Optional[str],
        text: Optional[str],
        sender: Optional[str] = None,
        channel: Optional[str] = None,
    ) -> Message:
        """发送消息；发给 agent 的消息会触发唤醒。"""

        msg = self.messages.send(to=to, text=text, sender=sender, channel=channel)
        self._changed("message_new", msg.to_wire())
        if msg.to == "agent":
            self.wake.trigger()
        return msg

    def inbox(self, *, to: Optional[str] = None, status: Optional[str] = None, limit: Optional[int] = None) -> List[Message]:
        """收件箱视图（最新优先）。"""

        return self.messages.inbox(to=to, status=status, limit=limit)

    def ack_message(self, message_id: str, status: Optional[str] = None) -> Message:
        """更新消息状态。"""

        msg = self.messages.ack(message_id, status)
        self._changed("message_ack", {"id": msg.id, "status": msg.status})
        return msg

    # ------------------------------------------------------------------
    # agent
    # ------------------------------------------------------------------

    def heartbeat(self, *, state: Optional[str] = None, task: Optional[str] = None, note: Optional[str] = None) -> AgentStatus:
        """合并 agent 心跳。"""

        status = self.agent.heartbeat(state=state, task=task, note=note)
        self._changed("agent_status", status.to_wire())
        return status

    def add_checkpoint(self, body: Any) -> Checkpoint:
        """追加进度检查点。"""

        cp = self.checkpoints.append(body)
        self._changed("checkpoint_new", cp.to_wire())
        return cp

    # ------------------------------------------------------------------
    # realtime
    # ------------------------------------------------------------------

    def attach_observer(self, sink: EventSink) -> Observer:
        """注册实时观察者并回放 pending 审批。"""

        return self.hub.attach(sink, backlog=[a.to_wire() for a in self.approvals.pending()])

    def detach_observer(self, obs: Observer) -> None:
        """注销实时观察者。"""

        self.hub.detach(obs)
