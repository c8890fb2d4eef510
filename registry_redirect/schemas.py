# -*- coding: utf-8 -*-
"""
@FileName    : schemas.py
@Author      : jiaxin
@Date        : 2026/10/12
@Time        : 10:24
@Description :
"""
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, model_validator


class HealthCheckResponse(BaseModel):
    status: str
    message: str
    version: Optional[str] = None


class TokenResponse(BaseModel):
    """上游 token 接口返回体；部分实现只返回 access_token"""
    token: str
    access_token: Optional[str] = None

    @model_validator(mode='before')
    @classmethod
    def fallback_to_access_token(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("token") and data.get("access_token"):
            return {**data, "token": data["access_token"]}
        return data


class ListResponse(BaseModel):
    """GET /v2/<name>/tags/list 返回体，保留未知字段"""
    model_config = ConfigDict(extra="allow")

    name: str
    tags: Optional[List[str]] = None


class RegistryError(BaseModel):
    code: str
    message: str
    detail: Optional[Any] = None


class RegistryErrorResponse(BaseModel):
    errors: List[RegistryError]
