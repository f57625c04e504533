"""
配对与鉴权（PairingAuthority）。

说明：
- 进程启动时生成一个 6 位数字配对码；配对码不随使用失效，可授权多台设备；
- 配对码不持久化（每次重启重新生成）；签发的 token 持久化且永不过期/不可撤销
  （本地单操作者工具的刻意简化，不适合长期运行的多用户部署）。
"""

from __future__ import annotations

import hmac
import ipaddress
import logging
import secrets
from typing import Any, Dict, Iterable, List, Optional

from ag_bridge.errors import InvalidPairingCode

logger = logging.getLogger(__name__)


def generate_pairing_code() -> str:
    """生成 6 位数字配对码（100000..999999）。"""

    return str(100000 + secrets.randbelow(900000))


def generate_token() -> str:
    """生成不透明 bearer token（32 位十六进制）。"""

    return secrets.token_hex(16)


def is_loopback(host: Optional[str]) -> bool:
    """
    判断对端地址是否为本机回环地址。

    覆盖：`127.0.0.0/8`、`::1`、IPv4-mapped IPv6（`::ffff:127.x.x.x`）。
    非 IP 字符串（例如测试客户端的 `testclient`）一律视为非本机。
    """

    if not host:
        return False
    try:
        addr = ipaddress.ip_address(str(host).strip())
    except ValueError:
        return False
    mapped = getattr(addr, "ipv4_mapped", None)
    if mapped is not None:
        return bool(mapped.is_loopback)
    return bool(addr.is_loopback)


class PairingAuthority:
    """配对码 → token 的签发者，以及 token 的成员校验。"""

    def __init__(self, *, tokens: Iterable[str] = (), code: Optional[str] = None) -> None:
        """
        创建 PairingAuthority。

        参数：
        - tokens：已签发的 token（从快照恢复）
        - code：固定配对码（测试用；默认随机生成）
        """

        # dict 保留签发顺序（快照中 tokens[] 顺序稳定）
        self._tokens: Dict[str, None] = dict.fromkeys(str(t) for t in tokens if t)
        self._code = str(code) if code else generate_pairing_code()

    @property
    def code(self) -> str:
        """当前配对码。"""

        return self._code

    def claim(self, code: Any) -> str:
        """
        用配对码换取新 token。

        说明：
        - 手机端可能把配对码当数字提交，整数按十进制字符串比较。
        - 字符串按原样精确比较，不去除首尾空白。

        异常：
        - InvalidPairingCode：配对码缺失或错误
        """

        if isinstance(code, int) and not isinstance(code, bool):
            code = str(code)
        if not isinstance(code, str) or not code:
            raise InvalidPairingCode()
        if not hmac.compare_digest(code.encode("utf-8"), self._code.encode("utf-8")):
            raise InvalidPairingCode()
        token = generate_token()
        self._tokens[token] = None
        logger.info("New device paired (%d tokens issued)", len(self._tokens))
        return token

    def authenticate(self, token: Optional[str]) -> bool:
        """token 是否已签发（纯成员判断）。"""

        return bool(token) and token in self._tokens

    def tokens(self) -> List[str]:
        """已签发 token 列表（签发顺序）。"""

        return list(self._tokens)
