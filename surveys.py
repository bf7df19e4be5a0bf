# surveys.py - Donkey Mapping Initiative
# Survey definitions, answer validation, wizard draft editing and public map markers.

from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Any, Dict, List, Optional

from backend import BackendClient, BackendError, ForeignKeyViolation


logger = logging.getLogger(__name__)

QUESTION_TYPES = ("text", "number", "select", "multiselect", "date", "location")
QUESTION_TYPE_LABELS = {
    "text": "Text",
    "number": "Number",
    "select": "Single choice",
    "multiselect": "Multiple choice",
    "date": "Date",
    "location": "Location",
}
CHOICE_TYPES = ("select", "multiselect")
SURVEY_STATUSES = ("pending", "approved", "rejected")

MISSING_USER_MESSAGE = "User record not found. Please contact your administrator."


class ValidationError(ValueError):
    def __init__(self, message: str, field: Optional[str] = None, errors: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.errors = errors or {}


class ProvisioningRequired(Exception):
    """The creator has no `users` row, so the surveys FK refused the insert."""


class NotOwner(PermissionError):
    pass


# ---------------------------
# Question definitions
# ---------------------------

def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def new_question(qid: Optional[str] = None) -> dict:
    return {
        "id": qid or uuid.uuid4().hex[:12],
        "title": "",
        "type": "text",
        "required": False,
        "isPublic": False,
        "description": "",
        "captureCurrentLocation": True,
        "allowMapSelection": False,
    }


def _clean_options(raw) -> List[str]:
    if isinstance(raw, str):
        raw = raw.splitlines()
    if not isinstance(raw, (list, tuple)):
        return []
    out = []
    for opt in raw:
        text = str(opt).strip() if opt is not None else ""
        if text and text not in out:
            out.append(text)
    return out


def normalize_question(raw: dict, index: int = 0) -> dict:
    if not isinstance(raw, dict):
        raise ValidationError(f"Question {index + 1} must be an object", field=f"questions[{index}]")
    qtype = (str(raw.get("type") or "text")).strip().lower()
    if qtype not in QUESTION_TYPES:
        raise ValidationError(
            f"Question {index + 1} has unknown type '{qtype}'",
            field=f"questions[{index}].type",
        )
    q = {
        "id": str(raw.get("id") or "").strip() or uuid.uuid4().hex[:12],
        "title": str(raw.get("title") or "").strip(),
        "type": qtype,
        "required": _as_bool(raw.get("required")),
        "isPublic": _as_bool(raw.get("isPublic")),
        "description": str(raw.get("description") or "").strip(),
    }
    if qtype in CHOICE_TYPES:
        q["options"] = _clean_options(raw.get("options"))
    if qtype == "location":
        q["captureCurrentLocation"] = _as_bool(raw.get("captureCurrentLocation"), True)
        q["allowMapSelection"] = _as_bool(raw.get("allowMapSelection"), False)
    return q


def validate_survey_payload(body: Any) -> dict:
    if not isinstance(body, dict):
        raise ValidationError("Invalid survey data. Title and questions are required.")
    title = body.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("Invalid survey data. Title is required.", field="title")
    questions = body.get("questions")
    if not isinstance(questions, list):
        raise ValidationError("Invalid survey data. Questions must be a list.", field="questions")
    description = body.get("description")
    if description is not None and not isinstance(description, str):
        raise ValidationError("Description must be text.", field="description")

    normalized = [normalize_question(q, i) for i, q in enumerate(questions)]
    seen = set()
    for i, q in enumerate(normalized):
        if q["id"] in seen:
            raise ValidationError(f"Question {i + 1} reuses id '{q['id']}'", field=f"questions[{i}].id")
        seen.add(q["id"])

    return {
        "title": title.strip(),
        "description": (description or "").strip(),
        "questions": normalized,
        "is_public": _as_bool(body.get("is_public"), True),
    }


def draft_problems(draft: dict) -> List[str]:
    """Wizard-level checks before the draft becomes one insert."""
    problems = []
    if not (draft.get("title") or "").strip():
        problems.append("Please provide a survey title")
    questions = draft.get("questions") or []
    if not questions:
        problems.append("Please add at least one question")
    for i, q in enumerate(questions):
        if not (q.get("title") or "").strip():
            problems.append(f"Question {i + 1} needs a title")
        if q.get("type") in CHOICE_TYPES and not q.get("options"):
            problems.append(f"Question {i + 1} needs at least one option")
    return problems


# ---------------------------
# Wizard draft editing (pure list operations)
# ---------------------------

def move_question(questions: List[dict], old_index: int, new_index: int) -> List[dict]:
    items = list(questions)
    n = len(items)
    if not (0 <= old_index < n) or not (0 <= new_index < n) or old_index == new_index:
        return items
    item = items.pop(old_index)
    items.insert(new_index, item)
    return items


def reorder_questions(questions: List[dict], ordered_ids: List[str]) -> List[dict]:
    by_id = {q.get("id"): q for q in questions}
    out = []
    for qid in ordered_ids:
        q = by_id.pop(qid, None)
        if q is not None:
            out.append(q)
    # ids the client did not send keep their relative order at the end
    out.extend(q for q in questions if q.get("id") in by_id)
    return out


def add_question(questions: List[dict]) -> List[dict]:
    return list(questions) + [new_question()]


def remove_question(questions: List[dict], qid: str) -> List[dict]:
    return [q for q in questions if q.get("id") != qid]


def update_question(questions: List[dict], qid: str, updates: dict) -> List[dict]:
    return [({**q, **updates} if q.get("id") == qid else q) for q in questions]


def question_index(questions: List[dict], qid: str) -> int:
    for i, q in enumerate(questions):
        if q.get("id") == qid:
            return i
    return -1


# ---------------------------
# Storage
# ---------------------------

def create_survey(client: BackendClient, user_id: str, body: Any) -> dict:
    data = validate_survey_payload(body)
    row = {
        "title": data["title"],
        "description": data["description"],
        "questions": data["questions"],
        "created_by": user_id,
        "status": "pending",
        "is_public": data["is_public"],
    }
    try:
        rows = client.insert("surveys", row)
    except ForeignKeyViolation as e:
        logger.error("Survey insert refused, no users row for %s: %s", user_id, e.message)
        raise ProvisioningRequired(MISSING_USER_MESSAGE)
    return rows[0] if rows else row


def list_public_surveys(client: BackendClient) -> List[dict]:
    return client.select(
        "surveys",
        filters={"status": "approved", "is_public": True},
        order="created_at.desc",
    )


def list_user_surveys(client: BackendClient, user_id: str) -> List[dict]:
    return client.select("surveys", filters={"created_by": user_id}, order="created_at.desc")


def get_survey(client: BackendClient, survey_id: str) -> dict:
    return client.select_one("surveys", filters={"id": survey_id})


def stored_questions(survey: dict) -> List[dict]:
    """Questions as saved on the survey row, with positional ids filled in where missing."""
    out = []
    for i, q in enumerate(survey.get("questions") or []):
        if not isinstance(q, dict):
            continue
        if not q.get("id"):
            q = {**q, "id": f"q{i + 1}"}
        out.append(q)
    return out


def update_survey(client: BackendClient, survey: dict, user_id: str, body: Any) -> dict:
    if survey.get("created_by") != user_id:
        raise NotOwner("Only the creator can edit this survey")
    if survey.get("status") != "pending":
        raise ValidationError("Only pending surveys can be edited", field="status")
    data = validate_survey_payload(body)
    rows = client.update(
        "surveys",
        {
            "title": data["title"],
            "description": data["description"],
            "questions": data["questions"],
            "is_public": data["is_public"],
        },
        {"id": survey.get("id"), "created_by": user_id},
    )
    return rows[0] if rows else {**survey, **data}


# ---------------------------
# Answers
# ---------------------------

def coerce_location(value: Any) -> Optional[dict]:
    """{"latitude", "longitude"} from a dict (lat/lng aliases accepted) or a "lat,lng" string."""
    lat = lng = None
    if isinstance(value, dict):
        lat = value.get("latitude", value.get("lat"))
        lng = value.get("longitude", value.get("lng"))
    elif isinstance(value, (list, tuple)) and len(value) == 2:
        lat, lng = value
    elif isinstance(value, str) and "," in value:
        lat, lng = value.split(",", 1)
    try:
        lat = float(lat)
        lng = float(lng)
    except (TypeError, ValueError):
        return None
    if not (-90.0 <= lat <= 90.0) or not (-180.0 <= lng <= 180.0):
        return None
    return {"latitude": lat, "longitude": lng}


def is_answered(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    return True


def validate_answer(question: dict, value: Any) -> Optional[str]:
    if not is_answered(value):
        return "Please answer this question before proceeding." if question.get("required") else None

    qtype = question.get("type")
    options = question.get("options") or []
    if qtype == "number":
        try:
            float(value)
        except (TypeError, ValueError):
            return "Please enter a number."
    elif qtype == "select":
        if options and value not in options:
            return "Please choose one of the listed options."
    elif qtype == "multiselect":
        if not isinstance(value, (list, tuple)):
            return "Please choose from the listed options."
        if options and any(v not in options for v in value):
            return "Please choose from the listed options."
    elif qtype == "date":
        try:
            date.fromisoformat(str(value))
        except ValueError:
            return "Please enter a valid date."
    elif qtype == "location":
        if coerce_location(value) is None:
            return "Please capture a valid location."
    return None


def validate_answers(questions: List[dict], answers: Dict[str, Any]) -> Dict[str, str]:
    errors = {}
    for q in questions or []:
        msg = validate_answer(q, (answers or {}).get(q.get("id")))
        if msg:
            errors[q.get("id")] = msg
    return errors


def submit_response(
    client: BackendClient,
    survey: dict,
    user_id: str,
    answers: Any,
    location: Any = None,
) -> dict:
    if survey.get("status") != "approved":
        raise ValidationError("This survey is not accepting responses.", field="status")
    if not isinstance(answers, dict):
        raise ValidationError("Responses must be an object keyed by question id.", field="responses")

    questions = survey.get("questions") or []
    errors = validate_answers(questions, answers)
    if errors:
        missing = sum(1 for q in questions if q.get("required") and not is_answered(answers.get(q.get("id"))))
        if missing:
            msg = f"Please answer all required questions ({missing} remaining)."
        else:
            msg = next(iter(errors.values()))
        raise ValidationError(msg, field=next(iter(errors)), errors=errors)

    point = coerce_location(location)
    if point is None:
        for q in questions:
            if q.get("type") == "location":
                point = coerce_location(answers.get(q.get("id")))
                if point:
                    break

    known = {q.get("id") for q in questions}
    row = {
        "survey_id": survey.get("id"),
        "responses": {k: v for k, v in answers.items() if k in known},
        "location": point,
        "submitted_by": user_id,
    }
    rows = client.insert("survey_responses", row)
    return rows[0] if rows else row


# ---------------------------
# Public map
# ---------------------------

def _answer_text(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    if isinstance(value, dict):
        loc = coerce_location(value)
        if loc:
            return f"{loc['latitude']:.5f}, {loc['longitude']:.5f}"
    return str(value)


def public_answers(questions: List[dict], answers: Dict[str, Any]) -> List[dict]:
    out = []
    for q in questions or []:
        if not q.get("isPublic") or q.get("type") == "location":
            continue
        value = (answers or {}).get(q.get("id"))
        if is_answered(value):
            out.append({"question": q.get("title") or "", "answer": _answer_text(value)})
    return out


def map_points(client: BackendClient) -> List[dict]:
    """
    Markers for the public map.
    Only approved + public surveys, only responses with a usable location,
    and only answers to questions flagged isPublic.
    """
    surveys = list_public_surveys(client)
    visible = {
        s.get("id"): s
        for s in surveys
        if s.get("status") == "approved" and s.get("is_public") is True
    }
    if not visible:
        return []

    responses = client.select(
        "survey_responses",
        filters={"survey_id": ("in", list(visible.keys()))},
        order="created_at.desc",
    )
    points = []
    for r in responses:
        survey = visible.get(r.get("survey_id"))
        if not survey:
            continue
        loc = coerce_location(r.get("location"))
        if loc is None:
            continue
        points.append({
            "id": r.get("id"),
            "survey_id": survey.get("id"),
            "survey_title": survey.get("title") or "",
            "latitude": loc["latitude"],
            "longitude": loc["longitude"],
            "submitted_at": r.get("created_at"),
            "answers": public_answers(survey.get("questions") or [], r.get("responses") or {}),
        })
    return points


def safe_map_points(client: BackendClient) -> List[dict]:
    try:
        return map_points(client)
    except BackendError as e:
        logger.error("Map points query failed: %s", e.message)
        return []
