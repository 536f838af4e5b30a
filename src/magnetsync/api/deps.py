"""路由公共依赖."""

from fastapi import Header, Request

from magnetsync.context import AppContext


def get_context(request: Request) -> AppContext:
    """获取应用上下文."""
    return request.app.state.context


def get_owner_id(x_user_id: int = Header(1, ge=1, description="当前用户ID")) -> int:
    """从请求头读取当前用户."""
    return x_user_id
