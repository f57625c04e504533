"""
ag-bridge 错误分类（异常类型）。

说明：
- 所有可预期错误都在检测到它的操作边界处抛出 `BridgeError` 子类；
- HTTP 层统一渲染为 `{"ok": false, "error": <code>, "message": ..., **extra}`；
- `code` 为稳定的英文小写下划线错误码（客户端据此分支处理）。
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class BridgeError(Exception):
    """结构化错误基类（不建议直接抛出）。"""

    status_code: int = 500

    def __init__(self, code: str, message: str = "", *, extra: Optional[Dict[str, Any]] = None) -> None:
        """
        创建结构化错误。

        参数：
        - `code`：稳定错误码（例如 `not_found`/`already_decided`）
        - `message`：人类可读错误信息（英文）
        - `extra`：需要与错误一起返回给调用方的附加字段（例如冲突时的当前记录）
        """

        super().__init__(message or code)
        self.code = str(code)
        self.message = str(message or code)
        self.extra: Dict[str, Any] = dict(extra or {})

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_body(self) -> Dict[str, Any]:
        """转换为 HTTP 响应 body。"""

        body: Dict[str, Any] = {"ok": False, "error": self.code, "message": self.message}
        body.update(self.extra)
        return body


class AuthError(BridgeError):
    """缺失或无效凭证（在访问任何状态之前拒绝）。"""

    status_code = 401

    def __init__(self, message: str = "missing or invalid token") -> None:
        """创建鉴权错误。"""

        super().__init__("unauthorized", message)


class InvalidPairingCode(BridgeError):
    """配对码错误。"""

    status_code = 403

    def __init__(self) -> None:
        """创建配对码错误。"""

        super().__init__("invalid_code", "pairing code is invalid")


class ValidationFailed(BridgeError):
    """缺失/非法的必填字段（在任何变更之前拒绝，不产生部分状态）。"""

    status_code = 400


class NotFound(BridgeError):
    """引用了不存在的 id。"""

    status_code = 404

    def __init__(self, message: str = "not found", *, extra: Optional[Dict[str, Any]] = None) -> None:
        """创建 not_found 错误。"""

        super().__init__("not_found", message, extra=extra)


class Conflict(BridgeError):
    """对终态记录的再次决策；`extra` 中携带当前记录以便调用方对账。"""

    status_code = 409


class PolicyDenied(BridgeError):
    """命令被 policy 拒绝（deny 命中 / strict 模式未命中 allow / 缺少命令）。"""

    status_code = 403
