"""Session helpers for remembering who started a redirect flow.

Session data lives in ``request.session`` (provided by Starlette's
``SessionMiddleware``).  Layout::

    {
        "subject": {"id": "4f2c...", "user_name": "alice"}
    }

Provider callbacks arrive straight from the user's browser, without the
gateway headers that identified the caller on the way out; the signed
session cookie carries the identity across.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class SessionRequest(Protocol):
    """Any object that exposes a mutable ``.session`` dict."""

    session: dict[str, Any]


def remember_subject(request: SessionRequest, user_id: str, user_name: str) -> None:
    request.session["subject"] = {"id": user_id, "user_name": user_name}


def recall_subject(request: SessionRequest) -> dict[str, str] | None:
    """Return the remembered ``{"id", "user_name"}``, or ``None``."""
    data = request.session.get("subject")
    if not isinstance(data, dict) or not data.get("id"):
        return None
    return {"id": str(data["id"]), "user_name": str(data.get("user_name") or data["id"])}

