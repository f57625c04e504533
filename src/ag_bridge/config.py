"""
配置加载器（YAML + 环境变量）。

设计目标：
- 支持加载多个 YAML overlay，并按顺序做深度合并（后者覆盖前者）；
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误被静默吞掉）；
- 环境变量覆盖优先级最高（便于脚本/容器场景临时调整端口与数据目录）。

注意：
- policy（allow/deny 模式）不属于本配置，它来自独立的 policy 文件（见 `ag_bridge.policy`）。
"""

from __future__ import annotations

import os
import shlex
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Mapping, MutableMapping, Optional, Sequence

import yaml
from pydantic import BaseModel, ConfigDict, Field


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型（包括 list）：overlay 直接整体覆盖
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class ServerConfig(BaseModel):
    """HTTP/WebSocket 监听配置。"""

    model_config = ConfigDict(extra="forbid")

    host: str = "0.0.0.0"
    port: int = Field(default=8787, ge=0, le=65535)


class StorageConfig(BaseModel):
    """
    存储路径配置。

    说明：
    - 相对路径相对 `BridgeSettings.root` 解析；
    - `state_file` 相对 `data_dir` 解析。
    """

    model_config = ConfigDict(extra="forbid")

    data_dir: str = "data"
    state_file: str = "state.json"
    policy_file: str = "policy.json"


class PersistenceConfig(BaseModel):
    """快照落盘策略。"""

    model_config = ConfigDict(extra="forbid")

    debounce_ms: int = Field(default=250, ge=0)


class MessagesConfig(BaseModel):
    """消息历史容量。"""

    model_config = ConfigDict(extra="forbid")

    max_history: int = Field(default=200, ge=1)


class AuthConfig(BaseModel):
    """鉴权配置。"""

    model_config = ConfigDict(extra="forbid")

    token_header: str = "x-ag-token"
    # 本机（loopback）HTTP 请求免 token：同机 helper 进程（审批 CLI / MCP server）属于可信边界。
    loopback_bypass: bool = True


class WakeConfig(BaseModel):
    """
    唤醒调度（poke）配置。

    说明：
    - `command` 为 waker 进程 argv；为空表示禁用唤醒；
    - 节流/重试参数以毫秒为单位，默认对齐“2s 节流、5s 重试、最多 24 次（约 2 分钟）”。
    """

    model_config = ConfigDict(extra="forbid")

    command: List[str] = Field(default_factory=list)
    message: str = "check inbox"
    throttle_ms: int = Field(default=2000, ge=0)
    retry_interval_ms: int = Field(default=5000, ge=1)
    max_retries: int = Field(default=24, ge=0)
    timeout_sec: float = Field(default=30.0, gt=0)


class BridgeSettings(BaseModel):
    """ag-bridge 配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    root: str = "."
    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    messages: MessagesConfig = Field(default_factory=MessagesConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    wake: WakeConfig = Field(default_factory=WakeConfig)

    def root_path(self) -> Path:
        """返回解析后的根目录（绝对路径）。"""

        return Path(self.root).expanduser().resolve()

    def _resolve(self, raw: str, *, base: Path) -> Path:
        """将路径解析为绝对路径（相对路径相对 base）。"""

        p = Path(raw).expanduser()
        if not p.is_absolute():
            p = base / p
        return p.resolve()

    def data_dir_path(self) -> Path:
        """快照所在目录。"""

        return self._resolve(self.storage.data_dir, base=self.root_path())

    def state_file_path(self) -> Path:
        """快照文件路径。"""

        return self._resolve(self.storage.state_file, base=self.data_dir_path())

    def policy_file_path(self) -> Path:
        """policy 文件路径。"""

        return self._resolve(self.storage.policy_file, base=self.root_path())


# 环境变量 → 配置路径（点分）映射
_ENV_OVERRIDES: Dict[str, str] = {
    "AG_BRIDGE_ROOT": "root",
    "AG_BRIDGE_HOST": "server.host",
    "AG_BRIDGE_PORT": "server.port",
    "AG_BRIDGE_DATA_DIR": "storage.data_dir",
    "AG_BRIDGE_POLICY_FILE": "storage.policy_file",
    "AG_BRIDGE_WAKE_COMMAND": "wake.command",
    "AG_BRIDGE_WAKE_MESSAGE": "wake.message",
}


def _env_overlay(env: Mapping[str, str]) -> Dict[str, Any]:
    """
    把环境变量转换为配置 overlay。

    约定：
    - 空白值视为未设置；
    - `AG_BRIDGE_WAKE_COMMAND` 按 shell 规则切分为 argv。
    """

    out: Dict[str, Any] = {}
    for key, dotted in _ENV_OVERRIDES.items():
        raw = str(env.get(key) or "").strip()
        if not raw:
            continue
        value: Any = shlex.split(raw) if dotted == "wake.command" else raw
        node = out
        parts = dotted.split(".")
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value
    return out


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping: {path}")
    return data


def load_settings_dicts(config_dicts: Sequence[Mapping[str, Any]], *, env: Optional[Mapping[str, str]] = None) -> BridgeSettings:
    """
    合并多个 dict 配置与环境变量覆盖，返回校验后的 `BridgeSettings`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    - env：环境变量映射（默认 `os.environ`）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    _deep_merge(merged, _env_overlay(os.environ if env is None else env))
    return BridgeSettings.model_validate(merged)


def load_settings(config_paths: Sequence[Path] = (), *, env: Optional[Mapping[str, str]] = None) -> BridgeSettings:
    """
    加载并合并多个 YAML 配置文件，返回校验后的 `BridgeSettings`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    - env：环境变量映射（默认 `os.environ`）
    """

    overlays = [_load_yaml_file(Path(p)) for p in config_paths]
    return load_settings_dicts(overlays, env=env)
