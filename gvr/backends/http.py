"""
协作服务 HTTP 客户端（graph / vector 服务共用）。

约定：
- 服务响应统一为 `{success, data, error: {code, message}}` 信封
- 网络错误 / 超时 / 5xx => `BackendUnavailableError`
- 404 => `NotFoundError`；`DIMENSION_MISMATCH` => `DimensionMismatchError`
- 其它 4xx 或 success=false => `BackendError`
- `data` 不符合模型（pydantic 校验失败） => `BackendError`
- 出错直接抛错（不要吞），降级由 GVR 引擎决定
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from gvr.infra.errors import BackendError
from gvr.infra.errors import BackendUnavailableError
from gvr.infra.errors import DimensionMismatchError
from gvr.infra.errors import NotFoundError

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

_DIMENSIONS_IN_MESSAGE = re.compile(r"expected\D*(\d+)\D+(?:got|actual)\D*(\d+)", re.IGNORECASE)

ModelT = TypeVar("ModelT", bound=BaseModel)


class ServiceClient:
    def __init__(self, base_url: str, http_client: httpx.AsyncClient, service_name: str) -> None:
        self._base_url = base_url.rstrip("/")
        self._http_client = http_client
        self._service_name = service_name

    async def request(
        self,
        method: str,
        path: str,
        params: Mapping[str, Any] | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> Any:
        """发送请求并拆开响应信封，返回 `data` 字段。"""
        url = f"{self._base_url}{API_PREFIX}{path}"
        try:
            response = await self._http_client.request(method, url, params=params, json=payload)
        except httpx.HTTPError as exc:
            logger.error(f"{self._service_name} unreachable: {method} {url}: {exc}")
            raise BackendUnavailableError(f"{self._service_name} unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise BackendUnavailableError(f"{self._service_name} error {response.status_code}: {response.text}")

        body = _json_body(response)
        code, message = _error_detail(body)
        if code == "DIMENSION_MISMATCH":
            raise _dimension_error(message)
        if response.status_code == 404:
            raise NotFoundError(f"{self._service_name} {path}: {message or 'not found'}")
        if response.status_code >= 400:
            raise BackendError(f"{self._service_name} error {response.status_code}: {code or ''} {message or response.text}")
        if not isinstance(body, dict) or not body.get("success"):
            raise BackendError(f"{self._service_name} request failed: {code or 'UNKNOWN'} {message or ''}")
        return body.get("data")

    def parse(self, model: type[ModelT], data: Any) -> ModelT:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            logger.error(f"{self._service_name} returned malformed {model.__name__}: {exc}")
            raise BackendError(f"{self._service_name} returned malformed {model.__name__}: {exc}") from exc

    def parse_list(self, model: type[ModelT], data: Any) -> list[ModelT]:
        if not data:
            return []
        if not isinstance(data, list):
            raise BackendError(f"{self._service_name} returned {type(data).__name__}, expected a list of {model.__name__}")
        return [self.parse(model, item) for item in data]


def _json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _error_detail(body: Any) -> tuple[str | None, str | None]:
    if not isinstance(body, dict):
        return None, None
    error = body.get("error")
    if not isinstance(error, dict):
        return None, None
    return error.get("code"), error.get("message")


def _dimension_error(message: str | None) -> DimensionMismatchError:
    match = _DIMENSIONS_IN_MESSAGE.search(message or "")
    if match is None:
        return DimensionMismatchError(expected=-1, actual=-1)
    return DimensionMismatchError(expected=int(match.group(1)), actual=int(match.group(2)))
