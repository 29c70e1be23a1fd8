"""Response envelope shared by all routes.

Success: {"ok": true, "data": ...}
Failure: {"ok": false, "error": "<message>", "kind": "<error kind>"}
"""

from typing import Any

from fastapi.responses import JSONResponse

from costsync.exceptions import ConsistencyError
from costsync.serialization import to_jsonable


def ok(data: Any = None) -> JSONResponse:
    return JSONResponse(content={"ok": True, "data": to_jsonable(data)})


def error(message: str, kind: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        content={"ok": False, "error": message, "kind": kind},
        status_code=status_code,
    )


def from_exception(exc: ConsistencyError) -> JSONResponse:
    return error(exc.message, exc.kind, exc.status_code)
