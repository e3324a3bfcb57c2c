"""
Response Envelope

Every JSON body leaving the service has the shape
``{"code": int, "message": str, "data"?: any}``; ``code == 0`` is success.
"""

from typing import Any

from fastapi.responses import JSONResponse

from src.core.config.constants import CODE_OK, HEADER_REQUEST_ID, HEADER_RETRY_AFTER
from src.core.exceptions import AppBaseError


def envelope(code: int, message: str, data: Any = None) -> dict[str, Any]:
    body: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        body["data"] = data
    return body


def success(data: Any = None, message: str = "success", status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=envelope(CODE_OK, message, data))


def error_response(
    exc: AppBaseError,
    request_id: str | None = None,
    retry_after: int | None = None,
) -> JSONResponse:
    """Render an application error with its status and public code."""
    body = exc.to_envelope()
    headers: dict[str, str] = {}
    if request_id:
        headers[HEADER_REQUEST_ID] = request_id
    if retry_after is not None:
        headers[HEADER_RETRY_AFTER] = str(retry_after)
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)
