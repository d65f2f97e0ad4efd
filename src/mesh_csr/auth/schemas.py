"""
认证结果的数据模型定义。
"""

from typing import List

from pydantic import BaseModel, Field


class Caller(BaseModel):
    """
    认证通过的调用方。每个请求创建一次，请求结束后丢弃。
    """
    identities: List[str] = Field(default_factory=list, description="SPIFFE 身份 URI 列表")
    authenticator_type: str
