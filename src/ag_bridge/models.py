"""
领域模型（持久化快照与 wire 结构）。

约定：
- wire key 使用 camelCase（`createdAt/decidedAt/lastSeen/clientTag/strictMode`），
  Python 侧字段使用 snake_case，通过 alias 映射；
- 序列化统一使用 `model_dump(by_alias=True)`；
- 反序列化时忽略未知字段，便于快照 schema 向前演进。
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ApprovalStatus = Literal["pending", "approved", "denied"]
MessageStatus = Literal["new", "read", "done"]
Recipient = Literal["agent", "user"]
AgentState = Literal["idle", "working", "waiting", "error"]

SNAPSHOT_VERSION = 1


class _WireModel(BaseModel):
    """wire 模型基类：alias 映射 + 忽略未知字段。"""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """转换为 JSON 可序列化 dict（camelCase key）。"""

        return self.model_dump(by_alias=True, mode="json")


class ApprovalMeta(_WireModel):
    """审批请求的附加元信息（风险等级 + 调用方标签）。"""

    risk: str = "unknown"
    client_tag: Optional[str] = Field(default=None, alias="clientTag")


class Approval(_WireModel):
    """
    一次审批请求。

    不变量：
    - `decided_at` 非空 ⇔ `status != "pending"`；
    - 一旦进入 approved/denied，状态不可再变。
    """

    id: str
    created_at: str = Field(alias="createdAt")
    kind: str = "unknown"
    details: Dict[str, Any] = Field(default_factory=dict)
    status: ApprovalStatus = "pending"
    decided_at: Optional[str] = Field(default=None, alias="decidedAt")
    meta: ApprovalMeta = Field(default_factory=ApprovalMeta)

    @model_validator(mode="after")
    def _check_decision(self) -> "Approval":
        """加载时校验 `decidedAt` 与 `status` 是否一致（赋值修改不经过此校验）。"""

        if (self.status == "pending") != (self.decided_at is None):
            raise ValueError("decidedAt must be set exactly when status is not pending")
        return self

    @property
    def is_pending(self) -> bool:
        """是否仍处于 pending。"""

        return self.status == "pending"


class Message(_WireModel):
    """双向短消息（手机 ↔ agent）。"""

    id: str
    created_at: str = Field(alias="createdAt")
    from_: str = Field(default="user", alias="from")
    to: Recipient
    channel: str = "general"
    text: str
    status: MessageStatus = "new"


class AgentStatus(_WireModel):
    """agent 最近一次上报的状态（单一可变单元，不保留历史）。"""

    state: AgentState = "idle"
    last_seen: Optional[str] = Field(default=None, alias="lastSeen")
    task: str = ""
    note: str = ""

    @field_validator("task", "note", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        """旧快照里的 null 视为空串。"""

        return "" if value is None else value


class Checkpoint(_WireModel):
    """
    进度检查点（schema-free）。

    说明：
    - 仅 `id/ts` 为信封字段；其余字段由客户端自由定义，原样保留。
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    ts: str


class BridgeSnapshot(_WireModel):
    """持久化快照：所有可变状态的可序列化投影（policy 除外）。"""

    version: int = SNAPSHOT_VERSION
    strict_mode: bool = Field(default=True, alias="strictMode")
    approvals: List[Approval] = Field(default_factory=list)
    messages: List[Message] = Field(default_factory=list)
    agent: AgentStatus = Field(default_factory=AgentStatus)
    checkpoints: List[Checkpoint] = Field(default_factory=list)
    tokens: List[str] = Field(default_factory=list)
