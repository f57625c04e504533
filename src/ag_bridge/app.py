"""
HTTP + WebSocket 接入层（FastAPI）。

说明：
- 路由只做协议适配（body/query → 参数，领域对象 → wire JSON），业务语义在 `BridgeService`；
- 所有路由均为 `async def`：状态变更在事件循环线程上一次完成；
- 错误统一渲染为 `{"ok": false, "error": <code>, "message": ..., **extra}`。
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Query, Request, WebSocket, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ag_bridge import __version__
from ag_bridge.config import BridgeSettings, load_settings
from ag_bridge.errors import AuthError, BridgeError
from ag_bridge.service import BridgeService
from ag_bridge.timeutil import now_rfc3339
from ag_bridge.wake import Waker

logger = logging.getLogger(__name__)


class _Req(BaseModel):
    """请求体基类：允许按字段名或 alias 填充。"""

    model_config = ConfigDict(populate_by_name=True)


class PairClaimReq(_Req):
    """`POST /pair/claim` 请求体。"""

    code: Any = None


class StrictModeReq(_Req):
    """`POST /config/strict-mode` 请求体。"""

    strict_mode: Any = Field(default=None, alias="strictMode")


class ApprovalRequestReq(_Req):
    """`POST /approvals/request` 请求体。"""

    kind: Optional[str] = None
    details: Any = None
    risk: Optional[str] = None
    client_tag: Optional[str] = Field(default=None, alias="clientTag")


class SendMessageReq(_Req):
    """`POST /messages/send` 请求体。"""

    to: Optional[str] = None
    text: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")
    channel: Optional[str] = None


class AckMessageReq(_Req):
    """`POST /messages/{id}/ack` 请求体。"""

    status: Optional[str] = None


class HeartbeatReq(_Req):
    """`POST /agent/heartbeat` 请求体。"""

    state: Optional[str] = None
    task: Optional[str] = None
    note: Optional[str] = None


def get_bridge(request: Request) -> BridgeService:
    """从应用状态取出 BridgeService。"""

    return request.app.state.bridge


async def require_auth(request: Request, bridge: BridgeService = Depends(get_bridge)) -> None:
    """
    HTTP 鉴权依赖。

    异常：
    - AuthError：既不是 loopback（或旁路已关闭），也没有有效 token
    """

    token = request.headers.get(bridge.settings.auth.token_header)
    host = request.client.host if request.client else None
    if not bridge.authorize_http(token=token, client_host=host):
        raise AuthError()


router = APIRouter()
authed = APIRouter(dependencies=[Depends(require_auth)])


@router.get("/health")
async def health() -> Dict[str, Any]:
    """存活探针（免鉴权）。"""

    return {"ok": True, "ts": now_rfc3339()}


@router.post("/pair/claim")
async def pair_claim(
    body: PairClaimReq = Body(default_factory=PairClaimReq),
    bridge: BridgeService = Depends(get_bridge),
) -> Dict[str, Any]:
    """用配对码换取 token（免鉴权）。"""

    return {"token": bridge.claim(body.code)}


@authed.get("/config")
async def get_config(bridge: BridgeService = Depends(get_bridge)) -> Dict[str, Any]:
    """读取运行时配置（strict mode）。"""

    return {"ok": True, "strictMode": bridge.strict_mode, "ts": now_rfc3339()}


@authed.post("/config/strict-mode")
async def set_strict_mode(
    body: StrictModeReq = Body(default_factory=StrictModeReq),
    bridge: BridgeService = Depends(get_bridge),
) -> Dict[str, Any]:
    """切换 strict mode 并广播 `config_changed`。"""

    value = bridge.set_strict_mode(body.strict_mode)
    return {"ok": True, "strictMode": value}


@authed.get("/status")
async def get_status(bridge: BridgeService = Depends(get_bridge)) -> Dict[str, Any]:
    """状态概览。"""

    return bridge.status()


@authed.get("/approvals")
async def list_approvals(bridge: BridgeService = Depends(get_bridge)) -> Dict[str, Any]:
    """全部审批（最新优先）。"""

    return {"approvals": [a.to_wire() for a in bridge.approvals.list()]}


@authed.post("/approvals/request")
async def request_approval(
    body: ApprovalRequestReq = Body(default_factory=ApprovalRequestReq),
    bridge: BridgeService = Depends(get_bridge),
) -> Dict[str, Any]:
    """创建审批；命令类先过 policy。"""

    approval = bridge.request_approval(
        kind=body.kind,
        details=body.details,
        risk=body.risk,
        client_tag=body.client_tag,
    )
    return {"ok": True, "approval": approval.to_wire()}


# 必须先于 `/approvals/{approval_id}` 注册，否则 "stream" 会被当成 id
@authed.get("/approvals/stream/summary")
async def approvals_summary(bridge: BridgeService = Depends(get_bridge)) -> Dict[str, Any]:
    """审批计数。"""

    return bridge.approval_summary()


@authed.get("/approvals/{approval_id}")
async def get_approval(approval_id: str, bridge: BridgeService = Depends(get_bridge)) -> Dict[str, Any]:
    """按 id 查询审批。"""

    return {"ok": True, "approval": bridge.approvals.get(approval_id).to_wire()}


@authed.post("/approvals/{approval_id}/approve")
async def approve(approval_id: str, bridge: BridgeService = Depends(get_bridge)) -> Dict[str, Any]:
    """批准审批。"""

    return {"ok": True, "approval": bridge.decide_approval(approval_id, "approved").to_wire()}


@authed.post("/approvals/{approval_id}/deny")
async def deny(approval_id: str, bridge: BridgeService = Depends(get_bridge)) -> Dict[str, Any]:
    """拒绝审批。"""

    return {"ok": True, "approval": bridge.decide_approval(approval_id, "denied").to_wire()}


@authed.post("/messages/send")
async def send_message(
    body: SendMessageReq = Body(default_factory=SendMessageReq),
    bridge: BridgeService = Depends(get_bridge),
) -> Dict[str, Any]:
    """发送消息（发给 agent 时触发唤醒）。"""

    msg = bridge.send_message(to=body.to, text=body.text, sender=body.from_, channel=body.channel)
    return {"ok": True, "message": msg.to_wire()}


@authed.get("/messages/inbox")
async def inbox(
    to: Optional[str] = None,
    status_: Optional[str] = Query(default=None, alias="status"),
    limit: Optional[int] = Query(default=None, ge=0),
    bridge: BridgeService = Depends(get_bridge),
) -> Dict[str, Any]:
    """收件箱（最新优先，可按 to/status 过滤）。"""

    messages = bridge.inbox(to=to, status=status_, limit=limit)
    return {"ok": True, "messages": [m.to_wire() for m in messages]}


@authed.post("/messages/{message_id}/ack")
async def ack_message(
    message_id: str,
    body: AckMessageReq = Body(default_factory=AckMessageReq),
    bridge: BridgeService = Depends(get_bridge),
) -> Dict[str, Any]:
    """更新消息状态（read|done）。"""

    return {"ok": True, "message": bridge.ack_message(message_id, body.status).to_wire()}


@authed.post("/agent/heartbeat")
async def heartbeat(
    body: HeartbeatReq = Body(default_factory=HeartbeatReq),
    bridge: BridgeService = Depends(get_bridge),
) -> Dict[str, Any]:
    """agent 心跳上报。"""

    agent = bridge.heartbeat(state=body.state, task=body.task, note=body.note)
    return {"ok": True, "agent": agent.to_wire()}


@authed.get("/agent/status")
async def agent_status(bridge: BridgeService = Depends(get_bridge)) -> Dict[str, Any]:
    """agent 最近状态。"""

    return {"ok": True, "agent": bridge.agent.current().to_wire()}


@authed.post("/checkpoint")
async def checkpoint(
    body: Dict[str, Any] = Body(default_factory=dict),
    bridge: BridgeService = Depends(get_bridge),
) -> Dict[str, Any]:
    """追加进度检查点（body 为任意 JSON object）。"""

    return {"ok": True, "checkpoint": bridge.add_checkpoint(body).to_wire()}


@router.websocket("/events")
async def events(websocket: WebSocket, token: Optional[str] = None) -> None:
    """实时事件流：握手时校验 `?token=`，之后只推送不接收。"""

    bridge: BridgeService = websocket.app.state.bridge
    if not bridge.authorize_stream(token):
        # accept 之前关闭：握手在传输层被拒绝（HTTP 403）
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    observer = bridge.attach_observer(websocket)
    try:
        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                break
    finally:
        bridge.detach_observer(observer)


async def _bridge_error_handler(request: Request, exc: BridgeError) -> JSONResponse:
    """渲染可预期的领域错误。"""

    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """请求体/查询参数解析失败（包括非法 JSON）→ 400 invalid_input。"""

    errors = exc.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    detail = str(first.get("msg") or "invalid request")
    message = f"{where}: {detail}" if where else detail
    return JSONResponse(status_code=400, content={"ok": False, "error": "invalid_input", "message": message})


async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """兜底：记录异常并返回 500，不影响后续请求。"""

    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"ok": False, "error": "internal_error", "message": "internal server error"},
    )


def create_app(
    settings: Optional[BridgeSettings] = None,
    *,
    waker: Optional[Waker] = None,
    pairing_code: Optional[str] = None,
) -> FastAPI:
    """
    构造 FastAPI 应用。

    参数：
    - settings：配置（默认从环境变量加载）
    - waker：注入的 waker（测试用；默认按配置构造）
    - pairing_code：固定配对码（测试用）

    说明：
    - 状态在构造时即从磁盘恢复；lifespan 结束时停止后台任务并把状态落盘。
    """

    bridge = BridgeService(settings or load_settings(), waker=waker, pairing_code=pairing_code)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        """应用生命周期：关闭时 flush。"""

        logger.info("ag-bridge ready (strictMode=%s)", bridge.strict_mode)
        try:
            yield
        finally:
            await bridge.aclose()

    app = FastAPI(title="ag-bridge", version=__version__, lifespan=lifespan)
    app.state.bridge = bridge
    app.add_exception_handler(BridgeError, _bridge_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)
    app.include_router(router)
    app.include_router(authed)
    return app
