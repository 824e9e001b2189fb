import asyncio
from contextlib import suppress

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from aichat.logging_config import logger
from aichat.services.cancellation import CancellationToken

# scope["state"] 中保存请求级取消令牌的键，deps.get_request_cancellation 读取
REQUEST_CANCELLATION_STATE_KEY = "request_cancellation"


class ClientDisconnectMiddleware:
    """
    纯 ASGI 中间件，必须挂在最外层。

    BaseHTTPMiddleware 会替换 receive，内层的 request.is_disconnected()
    收不到 http.disconnect；这里直接监听服务器原始的 receive：
    请求体读完之后由后台任务独占 receive，收到 http.disconnect 且响应尚未发送完毕时
    触发请求级 CancellationToken，进行中的生成随之取消。
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        token = CancellationToken()
        scope.setdefault("state", {})[REQUEST_CANCELLATION_STATE_KEY] = token

        body_done = asyncio.Event()
        disconnected = asyncio.Event()
        response_done = False

        def on_disconnect() -> None:
            disconnected.set()
            if response_done or token.cancelled:
                return
            logger.info("客户端已断开连接，取消请求: %s %s", scope.get("method"), scope.get("path"))
            token.cancel("client disconnected")

        async def watch() -> None:
            await body_done.wait()
            while True:
                message = await receive()
                if message["type"] == "http.disconnect":
                    on_disconnect()
                    return

        async def receive_wrapper() -> Message:
            if body_done.is_set():
                # 请求体已读完，后续只可能是断开事件，由 watch() 负责读取
                await disconnected.wait()
                return {"type": "http.disconnect"}
            message = await receive()
            if message["type"] == "http.disconnect":
                body_done.set()
                on_disconnect()
            elif not message.get("more_body", False):
                body_done.set()
            return message

        async def send_wrapper(message: Message) -> None:
            nonlocal response_done
            if message["type"] == "http.response.body" and not message.get("more_body", False):
                response_done = True
            await send(message)

        watcher = asyncio.create_task(watch())
        try:
            await self.app(scope, receive_wrapper, send_wrapper)
        finally:
            watcher.cancel()
            with suppress(asyncio.CancelledError):
                await watcher
