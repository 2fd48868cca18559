"""
Shared FastAPI dependencies.

Authentication happens upstream; the gateway forwards the caller's id in
X-User-Id. Without the header, records are created without an owner and
lookups are not scoped.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Header, Request

from backend.app.runtime import DispatchRuntime


def get_runtime(request: Request) -> DispatchRuntime:
    return request.app.state.runtime


def get_user_id(x_user_id: Optional[int] = Header(None)) -> Optional[int]:
    return x_user_id
