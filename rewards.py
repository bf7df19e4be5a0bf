# rewards.py - Donkey Mapping Initiative
# Points balance, reward catalogue and claims.

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from backend import BackendClient, BackendError


logger = logging.getLogger(__name__)

BASE_POINTS = 50
BONUS_POINTS = 50
CLAIM_STATUSES = ("processing", "delivered", "cancelled")
REFUND_ATTEMPTS = 3

SAMPLE_REWARDS = [
    {
        "id": "1",
        "name": "1GB Internet",
        "description": "1GB of mobile data for your phone",
        "points": 500,
        "image": "/rewards/internet.png",
    },
    {
        "id": "2",
        "name": "T-Shirt",
        "description": "Donkey Mapping Initiative T-shirt",
        "points": 1000,
        "image": "/rewards/tshirt.png",
    },
    {
        "id": "3",
        "name": "Coffee Mug",
        "description": "Branded coffee mug",
        "points": 750,
        "image": "/rewards/mug.png",
    },
]


class InsufficientPoints(Exception):
    def __init__(self, needed: int):
        super().__init__(f"You need {needed} more points to claim this reward.")
        self.needed = needed


class ClaimConflict(Exception):
    pass


def _safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def sample_rewards() -> List[dict]:
    return sorted((dict(r) for r in SAMPLE_REWARDS), key=lambda r: r["points"])


def list_rewards(client: Optional[BackendClient]) -> List[dict]:
    """Catalogue ordered by cost; the sample catalogue stands in when the table is empty or unreadable."""
    if client is None:
        return sample_rewards()
    try:
        rows = client.select("rewards", order="points.asc")
    except BackendError as e:
        logger.warning("Rewards query failed, showing sample catalogue: %s", e.message)
        return sample_rewards()
    return rows or sample_rewards()


def get_user_stats(client: Optional[BackendClient], user_id: str) -> Dict[str, int]:
    zeros = {"points": 0, "surveys_completed": 0}
    if client is None:
        return zeros
    try:
        row = client.select_one("users", columns="points,surveys_completed", filters={"id": user_id})
    except BackendError as e:
        logger.warning("Stats query failed for %s: %s", user_id, e.message)
        return zeros
    return {
        "points": _safe_int(row.get("points")),
        "surveys_completed": _safe_int(row.get("surveys_completed")),
    }


def points_for_submission(questions: List[dict], answers: Dict[str, Any]) -> int:
    """50 for any accepted submission plus up to 50 more for answering everything."""
    questions = questions or []
    if not questions:
        return BASE_POINTS
    answered = 0
    for q in questions:
        value = (answers or {}).get(q.get("id"))
        if value not in (None, "", [], {}):
            answered += 1
    return BASE_POINTS + (BONUS_POINTS * answered) // len(questions)


def award_points(client: BackendClient, user_id: str, points: int) -> bool:
    try:
        client.rpc("increment_user_points", {"user_id": user_id, "points_to_add": int(points)})
        return True
    except BackendError as e:
        logger.warning("Could not award %s points to %s: %s", points, user_id, e.message)
        return False


def get_reward(client: BackendClient, reward_id: str) -> dict:
    return client.select_one("rewards", filters={"id": reward_id})


def _refund(service: BackendClient, user_id: str, cost: int) -> None:
    """Give back cost on top of whatever the balance is now."""
    for _ in range(REFUND_ATTEMPTS):
        user = service.select_one("users", columns="id,points", filters={"id": user_id})
        current = _safe_int(user.get("points"))
        if service.update("users", {"points": current + cost}, {"id": user_id, "points": current}):
            return
    raise ClaimConflict(f"Could not refund {cost} points")


def claim_reward(service: BackendClient, user_id: str, reward_id: str) -> dict:
    reward = get_reward(service, reward_id)
    cost = _safe_int(reward.get("points"))

    user = service.select_one("users", columns="id,points", filters={"id": user_id})
    balance = _safe_int(user.get("points"))
    if balance < cost:
        raise InsufficientPoints(cost - balance)

    # Guard on the balance we read so two claims cannot both spend it.
    updated = service.update(
        "users",
        {"points": balance - cost},
        {"id": user_id, "points": balance},
    )
    if not updated:
        raise ClaimConflict("Your points balance changed. Please try again.")

    try:
        rows = service.insert(
            "claimed_rewards",
            {
                "user_id": user_id,
                "reward_id": reward.get("id"),
                "points": cost,
                "status": "processing",
            },
        )
    except BackendError:
        logger.error("Claim insert failed for %s, refunding %s points", user_id, cost)
        try:
            _refund(service, user_id, cost)
        except (BackendError, ClaimConflict) as e:
            logger.error("Refund of %s points to %s failed: %s", cost, user_id, e)
        raise
    claim = rows[0] if rows else {}
    claim.setdefault("reward_name", reward.get("name") or "")
    claim["balance"] = balance - cost
    return claim


def claim_history(client: BackendClient, user_id: str) -> List[dict]:
    rows = client.select(
        "claimed_rewards",
        columns="id,reward_id,rewards(name),points,claimed_at,status",
        filters={"user_id": user_id},
        order="claimed_at.desc",
    )
    out = []
    for r in rows:
        reward = r.get("rewards") or {}
        out.append({
            "id": r.get("id"),
            "reward_id": r.get("reward_id"),
            "reward_name": reward.get("name") if isinstance(reward, dict) else "",
            "points": _safe_int(r.get("points")),
            "claimed_at": r.get("claimed_at"),
            "status": r.get("status") or "processing",
        })
    return out

