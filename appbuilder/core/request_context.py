"""
Logging context carried across async calls: the request being served and the
build being driven. Each asyncio task sees its own values, so concurrent
builds never mix them up.
"""
import re
import uuid
from contextvars import ContextVar
from typing import Optional

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
build_id_var: ContextVar[str] = ContextVar("build_id", default="")

# Caller-supplied ids are echoed in headers and logs
REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def get_request_id() -> str:
    return request_id_var.get()


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set the request ID. Reuses a well-formed incoming id, else generates one."""
    if not request_id or not REQUEST_ID_PATTERN.match(request_id):
        request_id = uuid.uuid4().hex
    request_id_var.set(request_id)
    return request_id


def get_build_id() -> str:
    return build_id_var.get()


def set_build_id(build_id: str) -> None:
    """Tag every log record of the current task with this build."""
    build_id_var.set(build_id)
