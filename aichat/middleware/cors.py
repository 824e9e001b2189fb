from starlette.datastructures import Headers
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import Response


class PreflightNoContentCORSMiddleware(CORSMiddleware):
    """
    Starlette 的 CORSMiddleware，但成功的预检请求（OPTIONS）返回 204 无响应体，
    与前端网关约定保持一致。
    """

    def preflight_response(self, request_headers: Headers) -> Response:
        response = super().preflight_response(request_headers=request_headers)
        if response.status_code != 200:
            return response
        headers = {
            key: value
            for key, value in response.headers.items()
            if key.lower() not in ("content-length", "content-type")
        }
        return Response(status_code=204, headers=headers)
