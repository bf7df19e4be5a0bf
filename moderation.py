# moderation.py - Donkey Mapping Initiative
# Admin review of submitted surveys and user accounts.

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from backend import BackendClient, BackendError, NotFound


logger = logging.getLogger(__name__)

REVIEW_STATUSES = ("approved", "rejected")
CREATOR_EMBED = "*,users:created_by(name,email)"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def check_status(status) -> str:
    s = (status or "").strip().lower() if isinstance(status, str) else ""
    if s not in REVIEW_STATUSES:
        raise ValueError("Status must be 'approved' or 'rejected'")
    return s


def user_role(client: BackendClient, user_id: str) -> Optional[str]:
    try:
        row = client.select_one("users", columns="role", filters={"id": user_id})
    except BackendError as e:
        logger.warning("Role lookup failed for %s: %s", user_id, e.message)
        return None
    return row.get("role")


def require_admin(client: BackendClient, user_id: str) -> bool:
    """Any lookup failure is a refusal."""
    if not user_id:
        return False
    return user_role(client, user_id) == "admin"


def list_pending_surveys(client: BackendClient) -> List[dict]:
    return client.select(
        "surveys",
        columns=CREATOR_EMBED,
        filters={"status": "pending"},
        order="created_at.desc",
    )


def list_users(client: BackendClient) -> List[dict]:
    return client.select("users", order="created_at.desc")


def list_pending_users(client: BackendClient) -> List[dict]:
    return client.select("users", filters={"status": "pending"}, order="created_at.desc")


def search_users(users: List[dict], query: str) -> List[dict]:
    q = (query or "").strip().lower()
    if not q:
        return list(users)
    return [
        u for u in users
        if q in (u.get("name") or "").lower() or q in (u.get("email") or "").lower()
    ]


def set_survey_status(
    client: BackendClient,
    survey_id: str,
    status: str,
    admin_id: str,
    is_public: Optional[bool] = None,
) -> dict:
    values = {
        "status": check_status(status),
        "approved_by": admin_id,
        "approved_at": _now(),
    }
    if is_public is not None:
        values["is_public"] = bool(is_public)
    rows = client.update("surveys", values, {"id": survey_id})
    if not rows:
        raise NotFound("Survey not found", status=404)
    logger.info("Survey %s marked %s by %s", survey_id, values["status"], admin_id)
    return rows[0]


def set_user_status(client: BackendClient, user_id: str, status: str, admin_id: str) -> dict:
    values = {
        "status": check_status(status),
        "approved_by": admin_id,
        "approved_at": _now(),
    }
    rows = client.update("users", values, {"id": user_id})
    if not rows:
        raise NotFound("User not found", status=404)
    logger.info("User %s marked %s by %s", user_id, values["status"], admin_id)
    return rows[0]
