"""
审批请求生命周期（ApprovalStore）。

状态机：
- 创建即 `pending`；
- `decide()` 是一次性终态迁移：pending → approved | denied；
- 对已决策记录再次决策是冲突（409），不会静默覆盖，并在错误中返回当前记录。
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional

from ag_bridge.errors import Conflict, NotFound, PolicyDenied, ValidationFailed
from ag_bridge.models import Approval, ApprovalMeta
from ag_bridge.policy import PolicyGate
from ag_bridge.timeutil import now_rfc3339

logger = logging.getLogger(__name__)

DECISIONS = ("approved", "denied")


def _new_approval_id() -> str:
    """生成全局唯一的审批 id。"""

    return f"appr_{uuid.uuid4().hex}"


class ApprovalStore:
    """审批记录的唯一持有者（仅在事件循环线程上访问）。"""

    def __init__(self, approvals: Iterable[Approval] = (), *, gate: Optional[PolicyGate] = None) -> None:
        """
        创建 ApprovalStore。

        参数：
        - approvals：从快照恢复的记录（保持创建顺序）
        - gate：命令类审批使用的 policy 门禁
        """

        self._gate = gate or PolicyGate()
        self._items: List[Approval] = list(approvals)
        self._by_id: Dict[str, Approval] = {a.id: a for a in self._items}

    def request(
        self,
        *,
        kind: Optional[str],
        details: Any = None,
        risk: Optional[str] = None,
        client_tag: Optional[str] = None,
        strict_mode: bool,
    ) -> Approval:
        """
        创建一条 pending 审批。

        约束：
        - `kind == "command"` 时先用 PolicyGate 评估 `details.cmd`；拒绝发生在任何变更之前。

        异常：
        - ValidationFailed：details 不是 object
        - PolicyDenied：命令被 policy 拒绝（error 为 policy 原因码）
        """

        if details is not None and not isinstance(details, dict):
            raise ValidationFailed("invalid_input", "details must be an object")
        details = dict(details or {})

        if kind == "command":
            cmd = details.get("cmd")
            decision = self._gate.evaluate(cmd, strict_mode=strict_mode)
            if not decision.allowed:
                logger.warning("Blocked command %r: %s", cmd, decision.error)
                raise PolicyDenied(str(decision.error), f"command rejected by policy: {decision.error}")

        approval = Approval(
            id=_new_approval_id(),
            created_at=now_rfc3339(),
            kind=str(kind) if kind else "unknown",
            details=details,
            meta=ApprovalMeta(risk=str(risk) if risk else "unknown", client_tag=client_tag or None),
        )
        self._items.append(approval)
        self._by_id[approval.id] = approval
        logger.info("Approval requested: %s (%s)", approval.id, approval.kind)
        return approval

    def get(self, approval_id: str) -> Approval:
        """
        按 id 获取审批。

        异常：
        - NotFound：id 不存在
        """

        approval = self._by_id.get(str(approval_id))
        if approval is None:
            raise NotFound("approval not found", extra={"id": str(approval_id)})
        return approval

    def decide(self, approval_id: str, outcome: str) -> Approval:
        """
        对 pending 审批做一次性决策。

        异常：
        - ValidationFailed：outcome 不是 approved/denied
        - NotFound：id 不存在
        - Conflict(already_decided)：已是终态；extra 中携带未改变的当前记录
        """

        if outcome not in DECISIONS:
            raise ValidationFailed("invalid_input", f"decision must be one of {list(DECISIONS)}")
        approval = self.get(approval_id)
        if not approval.is_pending:
            raise Conflict(
                "already_decided",
                f"approval already {approval.status}",
                extra={"approval": approval.to_wire()},
            )
        approval.status = outcome  # type: ignore[assignment]
        approval.decided_at = now_rfc3339()
        logger.info("Approval %s %s", approval.id, outcome.upper())
        return approval

    def list(self) -> List[Approval]:
        """全部审批，按创建时间倒序（同一时刻后创建者在前）。"""

        return sorted(reversed(self._items), key=lambda a: a.created_at, reverse=True)

    def pending(self) -> List[Approval]:
        """pending 审批，按创建顺序（用于断线重连回放）。"""

        return [a for a in self._items if a.is_pending]

    def summary(self) -> Dict[str, int]:
        """按状态计数。"""

        counts = {"pending": 0, "approved": 0, "denied": 0}
        for a in self._items:
            counts[a.status] = counts.get(a.status, 0) + 1
        counts["total"] = len(self._items)
        return counts

    def items(self) -> List[Approval]:
        """全部审批（创建顺序；用于快照）。"""

        return list(self._items)
