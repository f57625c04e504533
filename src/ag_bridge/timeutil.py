"""时间相关的共享工具函数。"""
from __future__ import annotations

import time
from datetime import datetime, timezone


def now_rfc3339() -> str:
    """
    返回当前 UTC 时间的 RFC3339 字符串（毫秒精度，以 Z 结尾）。

    说明：
    - 固定毫秒精度，保证字符串定长，可直接按字典序比较先后。
    """

    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_epoch_ms() -> int:
    """返回当前 epoch 毫秒数（用于隔离文件后缀等）。"""

    return int(time.time() * 1000)
