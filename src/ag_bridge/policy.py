"""
Policy Gate（命令 allow/deny 判定）。

说明：
- policy 文件提供两组有序正则：`deny` 与 `allow`；启动时加载一次，运行期不可变；
- 匹配语义为 `re.search`（子串/部分匹配），作用于原始命令文本；
- deny 永远优先；allow 仅在 strict 模式下生效；
- strict 模式是运行期可切换的状态位（持久化在快照里），不属于 policy 文件。
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, List, Optional, Pattern, Tuple

import yaml

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PolicyDecision:
    """
    Policy 决策输出（确定性）。

    字段：
    - allowed：是否放行
    - error：拒绝原因码（missing_command/command_denied/command_not_allowlisted）
    - matched_rule：命中的 deny 规则或 allow 规则（可选；便于诊断）
    """

    allowed: bool
    error: Optional[str] = None
    matched_rule: Optional[str] = None


def _compile_pattern(raw: str) -> Pattern[str]:
    """
    编译单条规则。

    非法正则不会导致 policy 整体失效：按字面子串匹配并记录 warning。
    """

    try:
        return re.compile(raw)
    except re.error as exc:
        logger.warning("Invalid policy pattern %r (%s); matching it as a literal substring", raw, exc)
        return re.compile(re.escape(raw))


def _compile_all(raws: Iterable[Any]) -> Tuple[Tuple[str, Pattern[str]], ...]:
    """编译规则列表（跳过空白/非字符串项）。"""

    out: List[Tuple[str, Pattern[str]]] = []
    for raw in raws or []:
        if not isinstance(raw, str) or not raw:
            continue
        out.append((raw, _compile_pattern(raw)))
    return tuple(out)


@dataclass(frozen=True)
class Policy:
    """已编译的 allow/deny 规则集（不可变）。"""

    deny: Tuple[Tuple[str, Pattern[str]], ...] = field(default_factory=tuple)
    allow: Tuple[Tuple[str, Pattern[str]], ...] = field(default_factory=tuple)

    @classmethod
    def from_lists(cls, *, deny: Iterable[Any] = (), allow: Iterable[Any] = ()) -> "Policy":
        """从原始字符串列表构造 Policy。"""

        return cls(deny=_compile_all(deny), allow=_compile_all(allow))


def load_policy(path: Path) -> Policy:
    """
    读取 policy 文件（JSON 或 YAML，根节点为 `{allow: [...], deny: [...]}`）。

    约束：
    - 文件缺失/解析失败/结构非法：返回空 policy 并记录 warning（服务照常启动）。
    """

    p = Path(path)
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except FileNotFoundError:
        logger.warning("Policy file %s not found; using an empty policy", p)
        return Policy()
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Policy file %s is unreadable (%s); using an empty policy", p, exc)
        return Policy()

    if data is None:
        data = {}
    if not isinstance(data, dict):
        logger.warning("Policy file %s root must be a mapping; using an empty policy", p)
        return Policy()

    deny = data.get("deny") if isinstance(data.get("deny"), list) else []
    allow = data.get("allow") if isinstance(data.get("allow"), list) else []
    policy = Policy.from_lists(deny=deny, allow=allow)
    logger.info("Loaded policy from %s (%d deny, %d allow)", p, len(policy.deny), len(policy.allow))
    return policy


def _first_match(rules: Iterable[Tuple[str, Pattern[str]]], command: str) -> Optional[str]:
    """返回第一条命中的规则原文；未命中返回 None。"""

    for raw, pattern in rules:
        if pattern.search(command):
            return raw
    return None


class PolicyGate:
    """命令 policy 门禁。"""

    def __init__(self, policy: Optional[Policy] = None) -> None:
        """创建 PolicyGate 并绑定（不可变的）policy。"""

        self._policy = policy or Policy()

    @property
    def policy(self) -> Policy:
        """当前 policy。"""

        return self._policy

    def evaluate(self, command: Optional[str], *, strict_mode: bool) -> PolicyDecision:
        """
        对单条命令做 policy 判定。

        步骤：
        1. 缺少命令 → missing_command
        2. 任一 deny 命中 → command_denied（与 strict 模式无关）
        3. strict 模式下必须命中至少一条 allow → 否则 command_not_allowlisted
        4. 其余放行
        """

        if not isinstance(command, str) or not command:
            return PolicyDecision(allowed=False, error="missing_command")

        denied = _first_match(self._policy.deny, command)
        if denied is not None:
            return PolicyDecision(allowed=False, error="command_denied", matched_rule=denied)

        if strict_mode:
            allowed = _first_match(self._policy.allow, command)
            if allowed is None:
                return PolicyDecision(allowed=False, error="command_not_allowlisted")
            return PolicyDecision(allowed=True, matched_rule=allowed)

        return PolicyDecision(allowed=True)
