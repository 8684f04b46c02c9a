"""
HTTP invocation of named server-side functions.

``trigger_function`` workflow actions call ``POST {FUNCTIONS_BASE_URL}/{name}``
with the action args and a small event envelope as JSON body. A non-2xx reply
or a transport error raises :class:`FunctionInvocationError`.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import requests

from ..core.config import settings


logger = logging.getLogger("functions")


class FunctionInvocationError(RuntimeError):
    def __init__(self, name: str, message: str, *, status_code: Optional[int] = None) -> None:
        self.name = name
        self.status_code = status_code
        super().__init__(f"function {name}: {message}")


class FunctionInvoker:
    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        token: Optional[str] = None,
        timeout_sec: Optional[float] = None,
    ) -> None:
        base = base_url if base_url is not None else settings.functions_base_url
        self.base_url = (base or "").rstrip("/")
        self.token = token if token is not None else settings.functions_token
        self.timeout_sec = timeout_sec if timeout_sec is not None else settings.functions_timeout_sec

    def invoke(self, name: str, body: dict[str, Any]) -> Any:
        if not self.base_url:
            raise FunctionInvocationError(name, "FUNCTIONS_BASE_URL is not configured")
        url = f"{self.base_url}/{name}"
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            response = requests.post(url, headers=headers, json=body, timeout=(5, self.timeout_sec))
        except requests.RequestException as exc:
            raise FunctionInvocationError(name, f"request failed: {exc}") from exc

        if response.status_code // 100 != 2:
            raise FunctionInvocationError(
                name,
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        logger.info("Function invoked name=%s status=%s", name, response.status_code)
        try:
            return response.json()
        except ValueError:
            return None
