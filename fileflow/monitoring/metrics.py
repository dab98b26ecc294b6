from typing import Callable

import prometheus_client
from fastapi import FastAPI, Request, Response
from prometheus_client import Counter, Gauge, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.routing import Match

# HTTP 指标
REQUEST_COUNT = Counter(
    "fileflow_request_count", "请求总数", ["method", "endpoint", "status_code"]
)

REQUEST_LATENCY = Histogram(
    "fileflow_request_latency_seconds", "请求处理时间（秒）", ["method", "endpoint"]
)

ACTIVE_REQUESTS = Gauge(
    "fileflow_active_requests", "当前活跃请求数", ["method", "endpoint"]
)

ERROR_COUNT = Counter(
    "fileflow_error_count", "未处理异常总数", ["method", "endpoint", "error_type"]
)

# 业务指标
UPLOAD_COUNT = Counter("fileflow_upload_count", "文件上传次数", ["outcome"])

UPLOAD_BYTES = Counter("fileflow_upload_bytes", "成功写入存储的字节数")

PROCESSING_JOB_COUNT = Counter(
    "fileflow_processing_job_count", "异步处理任务次数", ["kind", "outcome"]
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Prometheus监控中间件
    """

    def get_path_template(self, request: Request) -> str:
        """使用路由模板作为标签，避免文件ID撑爆标签基数"""
        for route in request.app.routes:
            match, _ = route.matches(request.scope)
            if match == Match.FULL:
                return route.path
        return request.url.path

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        endpoint = self.get_path_template(request)

        ACTIVE_REQUESTS.labels(method=method, endpoint=endpoint).inc()
        response = None
        try:
            with REQUEST_LATENCY.labels(method=method, endpoint=endpoint).time():
                response = await call_next(request)
        except Exception as e:
            ERROR_COUNT.labels(
                method=method, endpoint=endpoint, error_type=type(e).__name__
            ).inc()
            raise
        finally:
            ACTIVE_REQUESTS.labels(method=method, endpoint=endpoint).dec()
            if response is not None:
                REQUEST_COUNT.labels(
                    method=method, endpoint=endpoint, status_code=response.status_code
                ).inc()

        return response


def setup_metrics(app: FastAPI) -> None:
    """
    配置Prometheus监控
    """
    app.add_middleware(PrometheusMiddleware)

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        return Response(prometheus_client.generate_latest(), media_type="text/plain")
