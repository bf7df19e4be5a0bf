# provisioning.py - Donkey Mapping Initiative
# Make sure every signed-in identity has a row in the application `users` table.

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Optional

from backend import BackendClient, BackendError, NotFound, UniqueViolation


logger = logging.getLogger(__name__)

DEFAULT_ROLE = "data_collector"
DEFAULT_STATUS = "approved"
DEFAULT_NAME = "User"
ENSURE_RPC = "create_user_if_not_exists"


@dataclass
class ProvisionResult:
    success: bool
    created: bool = False
    exists: bool = False
    error: str = ""
    step: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


def display_name(identity: dict) -> str:
    meta = identity.get("user_metadata") or {}
    for key in ("name", "full_name"):
        val = (meta.get(key) or "").strip() if isinstance(meta.get(key), str) else ""
        if val:
            return val
    return DEFAULT_NAME


def profile_from_identity(identity: dict, name: Optional[str] = None, role: Optional[str] = None) -> dict:
    return {
        "id": identity.get("id"),
        "email": identity.get("email") or "",
        "name": (name or "").strip() or display_name(identity),
        "role": role or DEFAULT_ROLE,
        "status": DEFAULT_STATUS,
    }


def ensure_user_row(service: BackendClient, profile: dict) -> ProvisionResult:
    """
    Idempotent insert-if-absent with elevated credentials.
    A primary-key conflict means a concurrent request won; that is success.
    """
    try:
        service.select_one("users", columns="id", filters={"id": profile["id"]})
        return ProvisionResult(True, exists=True, step="service")
    except NotFound:
        pass
    except BackendError as e:
        logger.error("User lookup failed for %s: %s", profile.get("id"), e.message)
        return ProvisionResult(False, error=e.message, step="service")

    try:
        service.insert("users", profile)
    except UniqueViolation:
        return ProvisionResult(True, exists=True, step="service")
    except BackendError as e:
        logger.error("User insert failed for %s: %s", profile.get("id"), e.message)
        return ProvisionResult(False, error=e.message, step="service")
    logger.info("Created users row for %s", profile.get("id"))
    return ProvisionResult(True, created=True, step="service")


def reconcile_user(
    identity: dict,
    user_client: Optional[BackendClient],
    service: Optional[BackendClient] = None,
) -> ProvisionResult:
    """
    Best effort, three steps, stop at the first that succeeds:
      1) the user's own client can see the row
      2) ensure_user_row with the service key
      3) the create_user_if_not_exists RPC as the user
    Nothing here raises; failures are logged and the caller carries on.
    """
    uid = identity.get("id")
    if not uid:
        return ProvisionResult(False, error="No authenticated user", step="identity")

    if user_client is not None:
        try:
            user_client.select_one("users", columns="id", filters={"id": uid})
            return ProvisionResult(True, exists=True, step="lookup")
        except NotFound:
            pass
        except BackendError as e:
            logger.warning("Own-row lookup failed for %s: %s", uid, e.message)

    profile = profile_from_identity(identity)

    if service is not None:
        result = ensure_user_row(service, profile)
        if result.success:
            return result
    else:
        logger.warning("Service key missing; skipping elevated provisioning for %s", uid)

    if user_client is None:
        return ProvisionResult(False, error="No client available", step="rpc")
    try:
        user_client.rpc(
            ENSURE_RPC,
            {
                "user_id": uid,
                "user_email": profile["email"],
                "user_name": profile["name"],
                "user_role": profile["role"],
            },
        )
    except BackendError as e:
        logger.warning("Provisioning RPC failed for %s: %s", uid, e.message)
        return ProvisionResult(False, error=e.message, step="rpc")
    return ProvisionResult(True, created=True, step="rpc")
