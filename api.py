# api.py - Donkey Mapping Initiative
# JSON endpoints under /api.

from __future__ import annotations

import logging

from flask import Blueprint, g, jsonify, request

import backend
import moderation
import provisioning
import rewards
import surveys
from backend import BackendError, ConfigError, NotFound


logger = logging.getLogger(__name__)

bp = Blueprint("api", __name__, url_prefix="/api")


class ApiError(Exception):
    def __init__(self, status: int, message: str, **extra):
        super().__init__(message)
        self.status = status
        self.message = message
        self.extra = extra


@bp.errorhandler(ApiError)
def _api_error(e: ApiError):
    return jsonify({"error": e.message, **e.extra}), e.status


@bp.errorhandler(surveys.ValidationError)
def _validation_error(e: surveys.ValidationError):
    body = {"error": e.message}
    if e.field:
        body["field"] = e.field
    if e.errors:
        body["errors"] = e.errors
    return jsonify(body), 400


@bp.errorhandler(BackendError)
def _backend_error(e: BackendError):
    if isinstance(e, NotFound):
        return jsonify({"error": "Not found"}), 404
    logger.error("Backend error on %s %s: %s (%s)", request.method, request.path, e.message, e.code)
    return jsonify({"error": e.message}), 500


# ---------------------------
# Helpers
# ---------------------------

def _client():
    try:
        return backend.anon_client()
    except ConfigError as e:
        logger.error("Anon client unavailable: %s", e.message)
        raise ApiError(500, e.message)


def _service(**extra):
    try:
        return backend.service_client()
    except ConfigError as e:
        logger.error("Service client unavailable: %s", e.message)
        raise ApiError(500, e.message, **extra)


def _require_session(**extra):
    auth = g.get("auth")
    if auth is None:
        raise ApiError(401, "No authenticated session", **extra)
    return auth


def _require_admin():
    auth = _require_session()
    client = _client()
    if not moderation.require_admin(client, auth.user_id):
        raise ApiError(403, "Forbidden")
    return auth, client


def _json_body(**extra) -> dict:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ApiError(400, "Request body must be a JSON object", **extra)
    return body


# ---------------------------
# Admin
# ---------------------------

@bp.get("/admin/surveys")
def admin_surveys():
    _, client = _require_admin()
    try:
        rows = moderation.list_pending_surveys(client)
    except BackendError as e:
        logger.error("Pending surveys query failed: %s", e.message)
        raise ApiError(500, e.message or "Failed to fetch pending surveys")
    return jsonify(rows)


@bp.patch("/admin/surveys")
def admin_surveys_review():
    auth, client = _require_admin()
    body = _json_body()
    survey_id = body.get("id")
    if not survey_id:
        raise ApiError(400, "Survey id is required")
    is_public = body.get("is_public")
    if is_public is not None and not isinstance(is_public, bool):
        raise ApiError(400, "is_public must be true or false")
    try:
        status = moderation.check_status(body.get("status"))
    except ValueError as e:
        raise ApiError(400, str(e))
    row = moderation.set_survey_status(client, survey_id, status, auth.user_id, is_public=is_public)
    return jsonify(row)


@bp.get("/admin/users")
def admin_users():
    _, client = _require_admin()
    return jsonify(moderation.list_users(client))


@bp.patch("/admin/users")
def admin_users_review():
    auth, client = _require_admin()
    body = _json_body()
    user_id = body.get("id")
    if not user_id:
        raise ApiError(400, "User id is required")
    try:
        status = moderation.check_status(body.get("status"))
    except ValueError as e:
        raise ApiError(400, str(e))
    return jsonify(moderation.set_user_status(client, user_id, status, auth.user_id))


# ---------------------------
# Surveys
# ---------------------------

@bp.get("/surveys")
def surveys_list():
    return jsonify(surveys.list_public_surveys(_client()))


@bp.post("/surveys")
def surveys_create():
    auth = _require_session()
    client = _client()
    body = _json_body()
    try:
        row = surveys.create_survey(client, auth.user_id, body)
    except surveys.ProvisioningRequired as e:
        raise ApiError(500, str(e))
    logger.info("Survey %s created by %s", row.get("id"), auth.user_id)
    return jsonify(row), 201


@bp.get("/surveys/<survey_id>")
def surveys_get(survey_id):
    try:
        row = surveys.get_survey(_client(), survey_id)
    except NotFound:
        raise ApiError(404, "Survey not found")
    return jsonify(row)


@bp.post("/surveys/<survey_id>")
def surveys_respond(survey_id):
    auth = _require_session()
    client = _client()
    body = _json_body()
    try:
        survey = surveys.get_survey(client, survey_id)
    except NotFound:
        raise ApiError(404, "Survey not found")
    answers = body.get("responses")
    row = surveys.submit_response(client, survey, auth.user_id, answers, body.get("location"))
    points = rewards.points_for_submission(survey.get("questions") or [], answers or {})
    awarded = rewards.award_points(client, auth.user_id, points)
    return jsonify({**row, "points_earned": points if awarded else 0}), 201


# ---------------------------
# Users
# ---------------------------

@bp.get("/user/stats")
def user_stats():
    auth = _require_session()
    _client()  # misconfigured deployments answer 500, not zeros
    return jsonify(rewards.get_user_stats(backend.service_client_or_none(), auth.user_id))


@bp.post("/users/direct-create")
def users_direct_create():
    auth = _require_session(success=False)
    body = _json_body(success=False)
    user_id = body.get("userId")
    email = body.get("email")
    if not user_id or not email:
        raise ApiError(400, "userId and email are required", success=False)
    if str(user_id) != auth.user_id:
        raise ApiError(403, "Cannot create a user record for another account", success=False)
    service = _service(success=False)
    identity = {"id": user_id, "email": email, "user_metadata": auth.metadata}
    profile = provisioning.profile_from_identity(identity, name=body.get("name"))
    result = provisioning.ensure_user_row(service, profile)
    if not result.success:
        raise ApiError(500, result.error or "Failed to create user record", success=False)
    return jsonify(result.to_dict())


@bp.post("/users/ensure")
def users_ensure():
    auth = _require_session(success=False)
    service = _service(success=False)
    result = provisioning.ensure_user_row(service, provisioning.profile_from_identity(auth.identity()))
    if not result.success:
        raise ApiError(500, result.error or "Failed to ensure user record", success=False)
    return jsonify(result.to_dict())


# ---------------------------
# Map
# ---------------------------

@bp.get("/map/points")
def map_points():
    client = backend.service_client_or_none() or _client()
    return jsonify(surveys.map_points(client))


# ---------------------------
# Rewards
# ---------------------------

@bp.get("/rewards")
def rewards_list():
    try:
        client = backend.anon_client()
    except ConfigError as e:
        logger.warning("Rewards catalogue without backend: %s", e.message)
        client = None
    return jsonify(rewards.list_rewards(client))


@bp.post("/rewards/<reward_id>/claim")
def rewards_claim(reward_id):
    auth = _require_session()
    service = _service()
    try:
        claim = rewards.claim_reward(service, auth.user_id, reward_id)
    except NotFound:
        raise ApiError(404, "Reward not found")
    except rewards.InsufficientPoints as e:
        raise ApiError(400, str(e), needed=e.needed)
    except rewards.ClaimConflict as e:
        raise ApiError(409, str(e))
    return jsonify(claim), 201


@bp.get("/rewards/history")
def rewards_history():
    auth = _require_session()
    return jsonify(rewards.claim_history(_client(), auth.user_id))

