"""
ag-bridge 命令行入口。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）；
- `main()` 返回 exit code 而不是直接 `sys.exit`，便于测试；
- 日志只在这里配置（`logging.basicConfig`），库代码只取 logger。
"""

from __future__ import annotations

import argparse
import logging
import socket
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from pydantic import ValidationError

from ag_bridge import __version__
from ag_bridge.config import BridgeSettings, load_settings

logger = logging.getLogger(__name__)

_LOG_LEVELS = ("critical", "error", "warning", "info", "debug")


def local_ipv4_addresses() -> List[str]:
    """
    枚举本机非回环 IPv4 地址（用于打印手机可访问的 URL）。

    说明：
    - 通过主机名解析 + 一次 UDP connect（不发送任何数据包）获取出口地址；失败则忽略。
    """

    found = set()
    try:
        for info in socket.getaddrinfo(socket.gethostname(), None, family=socket.AF_INET):
            ip = str(info[4][0])
            if not ip.startswith("127."):
                found.add(ip)
    except OSError:
        pass
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("10.255.255.255", 1))
            ip = str(s.getsockname()[0])
            if not ip.startswith("127.") and ip != "0.0.0.0":
                found.add(ip)
    except OSError:
        pass
    return sorted(found)


def format_banner(*, code: str, port: int, addresses: Sequence[str]) -> str:
    """构造启动横幅（配对码 + 可访问 URL）。"""

    lines = [
        "",
        f"  ag-bridge {__version__}",
        f"  Pairing code: {code}",
        f"  Local:        http://127.0.0.1:{port}",
    ]
    for ip in addresses:
        lines.append(f"  Network:      http://{ip}:{port}")
    lines.append("")
    return "\n".join(lines)


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(prog="ag-bridge", description="Local approval/message bridge for coding agents.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the bridge server")
    serve.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
    serve.add_argument("--host", default=None, help="Bind address (overrides config).")
    serve.add_argument("--port", type=int, default=None, help="Bind port (overrides config).")
    serve.add_argument("--log-level", default="info", choices=_LOG_LEVELS, help="Log level (default: info).")
    return parser


def _apply_overrides(settings: BridgeSettings, *, host: Optional[str], port: Optional[int]) -> BridgeSettings:
    """把命令行 host/port 覆盖到配置上。"""

    update = {}
    if host:
        update["host"] = host
    if port is not None:
        update["port"] = port
    if not update:
        return settings
    return settings.model_copy(update={"server": settings.server.model_copy(update=update)})


def _serve(args: argparse.Namespace) -> int:
    """`ag-bridge serve`：加载配置、构造应用并运行 uvicorn。"""

    import uvicorn

    from ag_bridge.app import create_app

    try:
        settings = load_settings([Path(p) for p in args.config])
    except (FileNotFoundError, ValueError, ValidationError) as exc:
        print(f"ag-bridge: invalid config: {exc}", file=sys.stderr)
        return 2
    settings = _apply_overrides(settings, host=args.host, port=args.port)

    app = create_app(settings)
    print(
        format_banner(
            code=app.state.bridge.pairing_code,
            port=settings.server.port,
            addresses=local_ipv4_addresses(),
        ),
        flush=True,
    )
    uvicorn.run(app, host=settings.server.host, port=settings.server.port, log_level=args.log_level)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]

    返回：
    - int：exit code
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        code = getattr(exc, "code", 2)
        return 2 if code is None else int(code)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    if args.command == "serve":
        return _serve(args)
    parser.print_help()
    return 2
