# app.py - Donkey Mapping Initiative
# Flask app: route guard, page views, and blueprint wiring.

from __future__ import annotations

import json
import logging
import re
import secrets
from datetime import timedelta
from typing import Optional
from urllib.parse import urlencode

from flask import Flask, flash, g, jsonify, redirect, request, session

import api
import auth as auth_mod
import backend
import config
import moderation
import provisioning
import rewards
import surveys
from backend import BackendError, ConfigError, NotFound
from ui import UI_BRAND, error_card, esc, status_badge, ui_shell


logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = config.SECRET_KEY or secrets.token_urlsafe(32)
app.permanent_session_lifetime = timedelta(days=30)
app.config.update(
    APP_ENV=config.APP_ENV,
    SUPABASE_URL=config.SUPABASE_URL,
    SUPABASE_ANON_KEY=config.SUPABASE_ANON_KEY,
    SUPABASE_SERVICE_KEY=config.SUPABASE_SERVICE_KEY,
    SITE_URL=config.SITE_URL,
    HTTP_TIMEOUT=config.HTTP_TIMEOUT,
    OTP_COOLDOWN_SECONDS=config.OTP_COOLDOWN_SECONDS,
    MIN_PASSWORD_LENGTH=config.MIN_PASSWORD_LENGTH,
    MAP_CENTER=config.MAP_CENTER,
    MAP_ZOOM=config.MAP_ZOOM,
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SAMESITE="Lax",
)

backend.init_app(app)
app.register_blueprint(auth_mod.bp)
app.register_blueprint(api.bp)

if not config.SUPABASE_URL or not config.SUPABASE_ANON_KEY:
    logger.warning("SUPABASE_URL / SUPABASE_ANON_KEY not set; backend calls will fail")

DRAFT_KEY = "survey_draft"
ANSWERS_KEY = "survey_answers"
CELEBRATION_KEY = "celebration"
WELCOME_KEY = "welcome_dismissed"
PROVISIONED_KEY = "provisioned_user"

PROTECTED_PREFIXES = ("/dashboard", "/admin", "/surveys/create")
_edit_path_re = re.compile(r"^/surveys/[^/]+/edit/?$")

LEAFLET_HEAD = """
  <link rel="stylesheet" href="https://unpkg.com/leaflet@1.9.4/dist/leaflet.css" />
  <script src="https://unpkg.com/leaflet@1.9.4/dist/leaflet.js"></script>
"""


# ---------------------------
# Request context
# ---------------------------

def is_protected(path: str) -> bool:
    if any(path.startswith(p) for p in PROTECTED_PREFIXES):
        return True
    return bool(_edit_path_re.match(path))


def _anon_or_none():
    try:
        return backend.anon_client()
    except ConfigError as e:
        logger.error("Backend not configured: %s", e.message)
        return None


@app.before_request
def _before_request_load_auth():
    g.auth = auth_mod.load_auth()
    g.is_admin = bool(g.auth and g.auth.role == "admin")


@app.before_request
def _before_request_guard():
    """session -> login redirect -> best-effort provisioning -> admin role check."""
    path = request.path
    if not is_protected(path):
        return None
    auth = g.get("auth")
    if auth is None:
        return redirect("/login?" + urlencode({"redirectedFrom": path}))

    client = _anon_or_none()
    if client is not None and session.get(PROVISIONED_KEY) != auth.user_id:
        result = provisioning.reconcile_user(auth.identity(), client, backend.service_client_or_none())
        if result.success:
            session[PROVISIONED_KEY] = auth.user_id
        else:
            logger.warning("Provisioning incomplete for %s at step %s: %s", auth.user_id, result.step, result.error)

    if path.startswith("/admin"):
        role = moderation.user_role(client, auth.user_id) if client is not None else None
        auth_mod.remember_role(role)
        g.is_admin = role == "admin"
        if not g.is_admin:
            return redirect("/dashboard")
    return None


@app.errorhandler(404)
def _404(e):
    if request.path.startswith("/api/"):
        return jsonify({"error": "Not found", "path": request.path}), 404
    page = """
    <div class="card" style="max-width:560px;margin:40px auto;">
      <h2>Page not found</h2>
      <div class="muted">The page you are looking for does not exist.</div>
      <div class="row" style="margin-top:12px"><a class="btn btn-primary" href="/">Go home</a></div>
    </div>
    """
    return ui_shell("Not found", page), 404


@app.errorhandler(405)
def _405(e):
    if request.path.startswith("/api/"):
        return jsonify({"error": "Method not allowed", "path": request.path}), 405
    return e


# ---------------------------
# Landing
# ---------------------------

@app.route("/")
def landing():
    cta = (
        "<a class='btn btn-primary' href='/dashboard'>Go to dashboard</a>"
        if g.get("auth")
        else "<a class='btn btn-primary' href='/signup'>Join the initiative</a>"
    )
    page = f"""
    <div class="card" style="padding:40px">
      <h1 style="font-size:2.4rem;color:var(--primary)">{esc(UI_BRAND['name'])}</h1>
      <p class="muted" style="font-size:1.1rem;max-width:640px">
        Help us map working donkeys across Taita Taveta County. Fill in short surveys,
        pin what you see on the map, and earn points you can trade for rewards.
      </p>
      <div class="row" style="margin-top:16px">
        {cta}
        <a class="btn" href="/surveys">Browse surveys</a>
        <a class="btn" href="/map">Open the map</a>
      </div>
    </div>
    <div class="grid">
      <div class="card"><h3>Collect</h3><div class="muted">Answer questions about donkey health, work and welfare. Your location is captured with each response.</div></div>
      <div class="card"><h3>Review</h3><div class="muted">Administrators check every new survey before it goes live.</div></div>
      <div class="card"><h3>Reward</h3><div class="muted">Every submission earns points. Claim data bundles and merchandise.</div></div>
    </div>
    """
    return ui_shell("Home", page)


# ---------------------------
# Dashboard
# ---------------------------

def _survey_actions(s: dict) -> str:
    sid = esc(s.get("id"))
    if s.get("status") == "pending":
        return f"<a class='btn' href='/surveys/{sid}/edit'>Edit</a>"
    if s.get("status") == "approved":
        return f"<a class='btn' href='/surveys/{sid}'>Open</a>"
    return ""


@app.route("/dashboard")
def dashboard():
    auth = g.auth
    client = _anon_or_none()
    stats = rewards.get_user_stats(backend.service_client_or_none(), auth.user_id)
    mine = []
    err = ""
    if client is not None:
        try:
            mine = surveys.list_user_surveys(client, auth.user_id)
        except BackendError as e:
            logger.error("Dashboard surveys query failed for %s: %s", auth.user_id, e.message)
            err = "Could not load your surveys."
        if auth.role is None:
            auth_mod.remember_role(moderation.user_role(client, auth.user_id))
            g.is_admin = auth.role == "admin"

    welcome = ""
    if not session.get(WELCOME_KEY):
        welcome = f"""
        <div class="card card-ok">
          <div class="row" style="justify-content:space-between">
            <div>
              <h3>Welcome, {esc(auth.display_name)}!</h3>
              <div class="muted">Start by filling an approved survey or create your own. Each submission earns 50 to 100 points.</div>
            </div>
            <form method="POST" action="/dashboard/welcome"><button class="btn" type="submit">Dismiss</button></form>
          </div>
        </div>
        """

    rows = "".join(
        f"""
        <tr>
          <td>{esc(s.get('title'))}</td>
          <td>{status_badge(s.get('status'))}</td>
          <td class="muted">{esc((s.get('created_at') or '')[:10])}</td>
          <td>{_survey_actions(s)}</td>
        </tr>
        """
        for s in mine
    )
    table = (
        f"<table><thead><tr><th>Title</th><th>Status</th><th>Created</th><th></th></tr></thead><tbody>{rows}</tbody></table>"
        if mine
        else "<div class='muted'>You have not created any surveys yet.</div>"
    )
    pending = sum(1 for s in mine if s.get("status") == "pending")

    page = f"""
    {welcome}
    <div class="row" style="justify-content:space-between;margin-bottom:12px">
      <h2>Dashboard</h2>
      <a class="btn btn-primary" href="/surveys/create">Create survey</a>
    </div>
    <div class="grid">
      <div class="card"><div class="muted">Points</div><div class="stat">{stats['points']}</div><div class="muted">Reward points earned</div></div>
      <div class="card"><div class="muted">Surveys completed</div><div class="stat">{stats['surveys_completed']}</div></div>
      <div class="card"><div class="muted">Awaiting approval</div><div class="stat">{pending}</div><div class="muted">of {len(mine)} created</div></div>
    </div>
    <div class="card">
      <h3>My surveys</h3>
      {error_card(err)}
      {table}
    </div>
    """
    return ui_shell("Dashboard", page)


@app.post("/dashboard/welcome")
def dismiss_welcome():
    session[WELCOME_KEY] = True
    return redirect("/dashboard")


# ---------------------------
# Survey wizard (create / edit)
# ---------------------------

def _blank_draft(key: str) -> dict:
    return {"key": key, "title": "", "description": "", "is_public": True, "questions": []}


def _load_draft(key: str, survey: Optional[dict] = None) -> dict:
    draft = session.get(DRAFT_KEY)
    if isinstance(draft, dict) and draft.get("key") == key:
        return draft
    if survey is not None:
        return {
            "key": key,
            "title": survey.get("title") or "",
            "description": survey.get("description") or "",
            "is_public": survey.get("is_public") is not False,
            "questions": list(survey.get("questions") or []),
        }
    return _blank_draft(key)


def _draft_from_form(draft: dict, form) -> dict:
    questions = list(draft.get("questions") or [])
    order = [x for x in (form.get("order") or "").split(",") if x]
    if order:
        questions = surveys.reorder_questions(questions, order)

    updated = []
    for i, q in enumerate(questions):
        p = f"q-{q.get('id')}-"
        if p + "title" not in form:
            updated.append(q)
            continue
        qtype = form.get(p + "type") or q.get("type") or "text"
        raw = {
            "id": q.get("id"),
            "title": form.get(p + "title"),
            "type": qtype if qtype in surveys.QUESTION_TYPES else "text",
            "required": form.get(p + "required") == "on",
            "isPublic": form.get(p + "public") == "on",
            "description": form.get(p + "description"),
            "options": form.get(p + "options") or q.get("options") or [],
            "captureCurrentLocation": form.get(p + "capture") == "on",
            "allowMapSelection": form.get(p + "mapsel") == "on",
        }
        updated.append(surveys.normalize_question(raw, i))

    return {
        "key": draft.get("key"),
        "title": (form.get("title") or "").strip(),
        "description": (form.get("description") or "").strip(),
        "is_public": form.get("is_public") == "on",
        "questions": updated,
    }


def _apply_action(draft: dict, action: str) -> dict:
    questions = draft["questions"]
    verb, _, qid = action.partition(":")
    if verb == "add":
        questions = surveys.add_question(questions)
    elif verb == "remove":
        questions = surveys.remove_question(questions, qid)
    elif verb in ("up", "down"):
        idx = surveys.question_index(questions, qid)
        if idx >= 0:
            questions = surveys.move_question(questions, idx, idx - 1 if verb == "up" else idx + 1)
    return {**draft, "questions": questions}


def _question_editor(q: dict, index: int, total: int) -> str:
    qid = esc(q.get("id"))
    p = f"q-{qid}-"
    qtype = q.get("type") or "text"
    type_opts = "".join(
        f"<option value='{t}' {'selected' if t == qtype else ''}>{esc(label)}</option>"
        for t, label in surveys.QUESTION_TYPE_LABELS.items()
    )
    extra = ""
    if qtype in surveys.CHOICE_TYPES:
        extra = f"""
        <label>Options (one per line)</label>
        <textarea name="{p}options" rows="4" placeholder="Enter options here, one per line">{esc(chr(10).join(q.get('options') or []))}</textarea>
        """
    elif qtype == "location":
        extra = f"""
        <label class="row"><input type="checkbox" name="{p}capture" {'checked' if q.get('captureCurrentLocation', True) else ''} /> Capture current location</label>
        <label class="row"><input type="checkbox" name="{p}mapsel" {'checked' if q.get('allowMapSelection') else ''} /> Allow picking a point on the map</label>
        """
    return f"""
    <div class="card q-card" draggable="true" data-qid="{qid}">
      <div class="row" style="justify-content:space-between">
        <div class="row"><span class="drag-handle" title="Drag to reorder">&#9776;</span><b>Question {index + 1}</b></div>
        <div class="row">
          <button class="btn" type="submit" name="action" value="up:{qid}" {'disabled' if index == 0 else ''}>&uarr;</button>
          <button class="btn" type="submit" name="action" value="down:{qid}" {'disabled' if index == total - 1 else ''}>&darr;</button>
          <button class="btn btn-danger" type="submit" name="action" value="remove:{qid}">Remove</button>
        </div>
      </div>
      <div class="stack" style="margin-top:10px">
        <label>Question</label>
        <input name="{p}title" value="{esc(q.get('title'))}" placeholder="Enter your question" />
        <label>Type</label>
        <select name="{p}type" data-autosave>{type_opts}</select>
        <label>Help text</label>
        <input name="{p}description" value="{esc(q.get('description'))}" placeholder="Optional description" />
        {extra}
        <div class="row">
          <label class="row"><input type="checkbox" name="{p}required" {'checked' if q.get('required') else ''} /> Required</label>
          <label class="row"><input type="checkbox" name="{p}public" {'checked' if q.get('isPublic') else ''} /> Show answers on public map</label>
        </div>
      </div>
    </div>
    """


WIZARD_JS = """
<script>
  (function(){
    var list = document.getElementById("questionList");
    var order = document.getElementById("questionOrder");
    var form = document.getElementById("surveyForm");
    if (!list || !order || !form) return;
    function sync(){
      order.value = Array.prototype.map.call(list.querySelectorAll("[data-qid]"), function(el){ return el.dataset.qid; }).join(",");
    }
    var dragging = null;
    list.addEventListener("dragstart", function(e){ dragging = e.target.closest("[data-qid]"); });
    list.addEventListener("dragover", function(e){
      e.preventDefault();
      var over = e.target.closest("[data-qid]");
      if (!dragging || !over || over === dragging) return;
      var rect = over.getBoundingClientRect();
      var after = (e.clientY - rect.top) > rect.height / 2;
      list.insertBefore(dragging, after ? over.nextSibling : over);
    });
    list.addEventListener("drop", function(e){ e.preventDefault(); dragging = null; sync(); });
    document.querySelectorAll("[data-autosave]").forEach(function(sel){
      sel.addEventListener("change", function(){
        sync();
        var a = document.createElement("input");
        a.type = "hidden"; a.name = "action"; a.value = "save";
        form.appendChild(a);
        form.submit();
      });
    });
    sync();
  })();
</script>
"""


def _wizard_page(draft: dict, heading: str, err: str = "") -> str:
    questions = draft.get("questions") or []
    editors = "".join(_question_editor(q, i, len(questions)) for i, q in enumerate(questions))
    if not editors:
        editors = "<div class='muted card'>No questions yet. Add your first question below.</div>"
    order = ",".join(esc(q.get("id")) for q in questions)
    page = f"""
    <h2>{esc(heading)}</h2>
    {error_card(err)}
    <form method="POST" id="surveyForm" class="stack">
      <input type="hidden" name="order" id="questionOrder" value="{order}" />
      <div class="card stack">
        <label>Survey title</label>
        <input name="title" value="{esc(draft.get('title'))}" placeholder="e.g. Donkey Health Assessment" />
        <label>Description</label>
        <textarea name="description" rows="3">{esc(draft.get('description'))}</textarea>
        <label class="row"><input type="checkbox" name="is_public" {'checked' if draft.get('is_public', True) else ''} /> Show results on the public map once approved</label>
      </div>
      <div id="questionList">{editors}</div>
      <div class="row">
        <button class="btn" type="submit" name="action" value="add">+ Add question</button>
        <button class="btn" type="submit" name="action" value="save">Save draft</button>
        <button class="btn btn-ghost" type="submit" name="action" value="reset" formnovalidate>Discard draft</button>
        <button class="btn btn-primary" type="submit" name="action" value="submit">Submit for approval</button>
      </div>
    </form>
    """
    return ui_shell(heading, page, scripts=WIZARD_JS)


def _run_wizard(key: str, heading: str, survey: Optional[dict] = None):
    draft = _load_draft(key, survey)
    err = ""
    if request.method == "POST":
        action = request.form.get("action") or "save"
        if action == "reset":
            session.pop(DRAFT_KEY, None)
            return redirect(request.path)
        try:
            draft = _apply_action(_draft_from_form(draft, request.form), action)
        except surveys.ValidationError as e:
            err = e.message
        if not err and action == "submit":
            problems = surveys.draft_problems(draft)
            if problems:
                err = problems[0]
            else:
                err = _submit_draft(draft, survey)
                if not err:
                    session.pop(DRAFT_KEY, None)
                    return redirect("/dashboard")
        session[DRAFT_KEY] = draft
    return _wizard_page(draft, heading, err)


def _submit_draft(draft: dict, survey: Optional[dict]) -> str:
    """Returns an error message, or "" on success."""
    client = _anon_or_none()
    if client is None:
        return "Backend environment variables are not configured correctly"
    body = {
        "title": draft.get("title"),
        "description": draft.get("description"),
        "questions": draft.get("questions"),
        "is_public": draft.get("is_public", True),
    }
    try:
        if survey is None:
            surveys.create_survey(client, g.auth.user_id, body)
            flash("Survey Created. Your survey has been submitted for approval.", "success")
        else:
            surveys.update_survey(client, survey, g.auth.user_id, body)
            flash("Survey Updated. It is still awaiting approval.", "success")
    except surveys.ProvisioningRequired as e:
        session.pop(PROVISIONED_KEY, None)
        return str(e)
    except surveys.ValidationError as e:
        return e.message
    except surveys.NotOwner as e:
        return str(e)
    except BackendError as e:
        logger.error("Survey save failed for %s: %s", g.auth.user_id, e.message)
        return e.message
    return ""


@app.route("/surveys/create", methods=["GET", "POST"])
def survey_create():
    return _run_wizard("new", "Create survey")


@app.route("/surveys/<survey_id>/edit", methods=["GET", "POST"])
def survey_edit(survey_id):
    client = _anon_or_none()
    try:
        survey = surveys.get_survey(client, survey_id) if client is not None else None
    except NotFound:
        survey = None
    except BackendError as e:
        logger.error("Survey %s lookup failed: %s", survey_id, e.message)
        survey = None
    if survey is None:
        flash("Survey not found.", "error")
        return redirect("/dashboard")
    if survey.get("created_by") != g.auth.user_id or survey.get("status") != "pending":
        flash("Only your own pending surveys can be edited.", "error")
        return redirect("/dashboard")
    return _run_wizard(str(survey_id), "Edit survey", survey)


# ---------------------------
# Survey list / fill
# ---------------------------

@app.route("/surveys")
def survey_list():
    client = _anon_or_none()
    items = []
    err = ""
    if client is None:
        err = "Surveys are unavailable right now."
    else:
        try:
            items = surveys.list_public_surveys(client)
        except BackendError as e:
            logger.error("Survey list query failed: %s", e.message)
            err = "Surveys are unavailable right now."
    cards = "".join(
        f"""
        <div class="card">
          <h3>{esc(s.get('title'))}</h3>
          <div class="muted">{esc(s.get('description'))}</div>
          <div class="muted" style="margin-top:8px">{len(s.get('questions') or [])} questions</div>
          <div class="row" style="margin-top:12px"><a class="btn btn-primary" href="/surveys/{esc(s.get('id'))}">Take survey</a></div>
        </div>
        """
        for s in items
    )
    page = f"""
    <h2>Available surveys</h2>
    {error_card(err)}
    <div class="grid">{cards or "<div class='muted'>No surveys are available yet. Check back soon.</div>"}</div>
    """
    return ui_shell("Surveys", page)


def _answer_from_form(q: dict, form):
    qtype = q.get("type")
    if qtype == "multiselect":
        return form.getlist("answer")
    if qtype == "location":
        return surveys.coerce_location({"latitude": form.get("latitude"), "longitude": form.get("longitude")})
    return (form.get("answer") or "").strip()


def _answer_input(q: dict, value) -> str:
    qtype = q.get("type")
    options = q.get("options") or []
    if qtype == "text":
        return f"<textarea name='answer' rows='4' placeholder='Enter your answer'>{esc(value or '')}</textarea>"
    if qtype == "number":
        return f"<input name='answer' type='number' step='any' value='{esc(value or '')}' placeholder='Enter a number' />"
    if qtype == "date":
        return f"<input name='answer' type='date' value='{esc(value or '')}' />"
    if qtype == "select":
        return "".join(
            f"<label class='row'><input type='radio' name='answer' value='{esc(o)}' {'checked' if value == o else ''} /> {esc(o)}</label>"
            for o in options
        )
    if qtype == "multiselect":
        chosen = value if isinstance(value, list) else []
        return "".join(
            f"<label class='row'><input type='checkbox' name='answer' value='{esc(o)}' {'checked' if o in chosen else ''} /> {esc(o)}</label>"
            for o in options
        )
    if qtype == "location":
        loc = surveys.coerce_location(value) or {}
        lat = loc.get("latitude", "")
        lng = loc.get("longitude", "")
        capture = (
            "<button class='btn' type='button' id='useLocation'>Use my current location</button>"
            if q.get("captureCurrentLocation", True)
            else ""
        )
        pick = "<div id='map' style='height:300px;margin-top:10px'></div>" if q.get("allowMapSelection") else ""
        return f"""
        <div class="row">{capture}<span class="muted" id="locationText">{esc(f'Latitude: {lat:.6f}, Longitude: {lng:.6f}' if loc else 'No location captured yet.')}</span></div>
        <input type="hidden" name="latitude" id="latInput" value="{esc(lat)}" />
        <input type="hidden" name="longitude" id="lngInput" value="{esc(lng)}" />
        {pick}
        """
    return ""


LOCATION_JS = """
<script>
  (function(){
    var lat = document.getElementById("latInput");
    var lng = document.getElementById("lngInput");
    var text = document.getElementById("locationText");
    if (!lat || !lng) return;
    var marker = null, map = null;
    function setPoint(a, b){
      lat.value = a; lng.value = b;
      text.textContent = "Latitude: " + a.toFixed(6) + ", Longitude: " + b.toFixed(6);
      if (map){ if (marker) marker.setLatLng([a, b]); else marker = L.marker([a, b]).addTo(map); }
    }
    var btn = document.getElementById("useLocation");
    if (btn) btn.addEventListener("click", function(){
      if (!navigator.geolocation){ text.textContent = "Geolocation is not supported by this browser."; return; }
      navigator.geolocation.getCurrentPosition(
        function(pos){ setPoint(pos.coords.latitude, pos.coords.longitude); },
        function(err){ text.textContent = "Failed to get location: " + err.message; }
      );
    });
    var el = document.getElementById("map");
    if (el && window.L){
      map = L.map(el).setView(__CENTER__, __ZOOM__);
      L.tileLayer("https://{s}.tile.openstreetmap.org/{z}/{x}/{y}.png", {attribution: "&copy; OpenStreetMap contributors"}).addTo(map);
      if (lat.value && lng.value) setPoint(parseFloat(lat.value), parseFloat(lng.value));
      map.on("click", function(e){ setPoint(e.latlng.lat, e.latlng.lng); });
    }
  })();
</script>
"""


def _map_js(template: str) -> str:
    center = app.config.get("MAP_CENTER") or config.MAP_CENTER
    return template.replace("__CENTER__", json.dumps(list(center))).replace(
        "__ZOOM__", str(int(app.config.get("MAP_ZOOM") or config.MAP_ZOOM))
    )


def _unavailable(message: str = "This survey is not available.") -> str:
    page = f"""
    <div class="card" style="max-width:640px;margin:40px auto;">
      <h2>Survey Not Available</h2>
      <div class="muted">{esc(message)}</div>
      <p>Please check back later or contact the administrator.</p>
      <a class="btn btn-primary" href="/surveys">Return to Surveys</a>
    </div>
    """
    return ui_shell("Survey not available", page)


@app.route("/surveys/<survey_id>", methods=["GET", "POST"])
def survey_fill(survey_id):
    client = _anon_or_none()
    if client is None:
        return _unavailable(), 503
    try:
        survey = surveys.get_survey(client, survey_id)
    except NotFound:
        return _unavailable(), 404
    except BackendError as e:
        logger.error("Survey %s lookup failed: %s", survey_id, e.message)
        return _unavailable(), 502
    if survey.get("status") != "approved":
        return _unavailable("This survey is waiting for approval."), 404

    questions = surveys.stored_questions(survey)
    if not questions:
        return _unavailable("This survey has no questions yet.")
    survey = {**survey, "questions": questions}

    all_answers = session.get(ANSWERS_KEY) or {}
    answers = dict(all_answers.get(str(survey_id)) or {})
    try:
        step = int(request.values.get("step") or 0)
    except ValueError:
        step = 0
    step = max(0, min(step, len(questions) - 1))
    err = ""

    if request.method == "POST":
        q = questions[step]
        answers[q["id"]] = _answer_from_form(q, request.form)
        all_answers[str(survey_id)] = answers
        session[ANSWERS_KEY] = all_answers
        action = request.form.get("action") or "next"
        if action == "prev":
            return redirect(f"/surveys/{survey_id}?step={max(step - 1, 0)}")
        err = surveys.validate_answer(q, answers[q["id"]]) or ""
        if not err and step < len(questions) - 1:
            return redirect(f"/surveys/{survey_id}?step={step + 1}")
        if not err:
            if g.get("auth") is None:
                flash("Please log in to submit your answers. They are saved for you.", "warning")
                return redirect("/login?" + urlencode({"redirectedFrom": f"/surveys/{survey_id}?step={step}"}))
            try:
                surveys.submit_response(client, survey, g.auth.user_id, answers)
            except surveys.ValidationError as e:
                err = e.message
                if e.field in [x.get("id") for x in questions]:
                    step = surveys.question_index(questions, e.field)
            except BackendError as e:
                logger.error("Response insert failed for survey %s: %s", survey_id, e.message)
                err = e.message
            else:
                points = rewards.points_for_submission(questions, answers)
                awarded = rewards.award_points(client, g.auth.user_id, points)
                all_answers.pop(str(survey_id), None)
                session[ANSWERS_KEY] = all_answers
                session[CELEBRATION_KEY] = {
                    "survey_id": str(survey_id),
                    "title": survey.get("title") or "",
                    "points": points if awarded else 0,
                }
                return redirect(f"/surveys/{survey_id}/done")

    q = questions[step]
    progress = int(round((step + 1) * 100 / len(questions)))
    last = step == len(questions) - 1
    page = f"""
    <div style="max-width:720px;margin:0 auto">
      <a class="btn btn-ghost" href="/surveys">&larr; Back to Surveys</a>
      <h2 style="margin-top:12px">{esc(survey.get('title'))}</h2>
      <div class="muted">{esc(survey.get('description'))}</div>
      <div class="row" style="justify-content:space-between;margin-top:16px">
        <span class="muted">Question {step + 1} of {len(questions)}</span>
        <span class="muted">{progress}% complete</span>
      </div>
      <div class="progress"><div style="width:{progress}%"></div></div>
      {error_card(err)}
      <form method="POST" class="card stack" style="margin-top:16px">
        <input type="hidden" name="step" value="{step}" />
        <h3>{esc(q.get('title'))}{" <span style='color:var(--danger)'>*</span>" if q.get('required') else ""}</h3>
        {f"<div class='muted'>{esc(q.get('description'))}</div>" if q.get('description') else ""}
        {"<div class='muted' style='font-size:.85rem'>This answer will be shown on the public map.</div>" if q.get('isPublic') else ""}
        {_answer_input(q, answers.get(q.get('id')))}
        <div class="row" style="justify-content:space-between;margin-top:12px">
          <button class="btn" type="submit" name="action" value="prev" formnovalidate {'disabled' if step == 0 else ''}>Previous</button>
          <button class="btn btn-primary" type="submit" name="action" value="next">{'Submit' if last else 'Next'}</button>
        </div>
      </form>
    </div>
    """
    is_location = q.get("type") == "location"
    return ui_shell(
        survey.get("title") or "Survey",
        page,
        head_extra=LEAFLET_HEAD if is_location and q.get("allowMapSelection") else "",
        scripts=_map_js(LOCATION_JS) if is_location else "",
    )


@app.route("/surveys/<survey_id>/done")
def survey_done(survey_id):
    data = session.pop(CELEBRATION_KEY, None)
    if not data or data.get("survey_id") != str(survey_id):
        return redirect("/surveys")
    points = int(data.get("points") or 0)
    earned = (
        f"<div class='stat' style='color:var(--primary)'>+{points} points</div>"
        if points
        else "<div class='muted'>Points could not be added right now. They will be reconciled later.</div>"
    )
    page = f"""
    <div class="card" style="max-width:560px;margin:40px auto;text-align:center">
      <div style="font-size:3rem">&#127881;</div>
      <h2>Thank you!</h2>
      <div class="muted">Your response to <b>{esc(data.get('title'))}</b> has been recorded.</div>
      {earned}
      <div class="row" style="justify-content:center;margin-top:16px">
        <a class="btn btn-primary" href="/dashboard">Go to dashboard</a>
        <a class="btn" href="/rewards">See rewards</a>
        <a class="btn" href="/map">View map</a>
      </div>
    </div>
    """
    return ui_shell("Survey submitted", page)


# ---------------------------
# Map
# ---------------------------

MAP_JS = """
<script>
  (function(){
    var map = L.map("map").setView(__CENTER__, __ZOOM__);
    L.tileLayer("https://{s}.tile.openstreetmap.org/{z}/{x}/{y}.png", {
      attribution: "&copy; <a href='https://www.openstreetmap.org/copyright'>OpenStreetMap</a> contributors"
    }).addTo(map);
    var status = document.getElementById("mapStatus");
    fetch("/api/map/points").then(function(r){ return r.json(); }).then(function(points){
      if (!Array.isArray(points)) points = [];
      points.forEach(function(p){
        var box = document.createElement("div");
        var h = document.createElement("b");
        h.textContent = p.survey_title || "Survey response";
        box.appendChild(h);
        if (p.submitted_at){
          var d = document.createElement("div");
          d.textContent = "Recorded on " + new Date(p.submitted_at).toLocaleDateString();
          box.appendChild(d);
        }
        (p.answers || []).forEach(function(a){
          var row = document.createElement("div");
          row.textContent = a.question + ": " + a.answer;
          box.appendChild(row);
        });
        L.marker([p.latitude, p.longitude]).addTo(map).bindPopup(box);
      });
      status.textContent = points.length ? points.length + " mapped responses" : "No mapped responses yet.";
    }).catch(function(){ status.textContent = "Map data is unavailable right now."; });
  })();
</script>
"""


@app.route("/map")
def map_page():
    page = """
    <div class="row" style="justify-content:space-between">
      <h2>Donkey map</h2>
      <span class="muted" id="mapStatus">Loading map data...</span>
    </div>
    <div class="card" style="padding:0"><div id="map"></div></div>
    """
    return ui_shell("Map", page, head_extra=LEAFLET_HEAD, scripts=_map_js(MAP_JS))


# ---------------------------
# Rewards
# ---------------------------

@app.route("/rewards")
def rewards_page():
    auth = g.get("auth")
    client = _anon_or_none()
    catalogue = rewards.list_rewards(client)
    balance = None
    history = []
    if auth:
        balance = rewards.get_user_stats(backend.service_client_or_none(), auth.user_id)["points"]
        if client is not None:
            try:
                history = rewards.claim_history(client, auth.user_id)
            except BackendError as e:
                logger.warning("Claim history query failed for %s: %s", auth.user_id, e.message)

    def claim_button(r: dict) -> str:
        cost = int(r.get("points") or 0)
        if balance is None:
            return "<a class='btn' href='/login?redirectedFrom=/rewards'>Log in to claim</a>"
        if balance < cost:
            return f"<button class='btn' disabled>Need {cost - balance} more points</button>"
        return f"""
        <form method="POST" action="/rewards/{esc(r.get('id'))}/claim">
          <button class="btn btn-primary" type="submit">Claim Reward</button>
        </form>
        """

    cards = "".join(
        f"""
        <div class="card">
          <h3>{esc(r.get('name'))}</h3>
          <div class="muted">{esc(r.get('description'))}</div>
          <p><b>{int(r.get('points') or 0)} points</b></p>
          {claim_button(r)}
        </div>
        """
        for r in catalogue
    )
    history_rows = "".join(
        f"""
        <tr>
          <td>{esc(h.get('reward_name'))}</td>
          <td>{h.get('points')} points</td>
          <td class="muted">{esc((h.get('claimed_at') or '')[:10])}</td>
          <td>{status_badge(h.get('status'))}</td>
        </tr>
        """
        for h in history
    )
    history_html = ""
    if auth:
        history_html = f"""
        <div class="card">
          <h3>Reward history</h3>
          {f"<table><tbody>{history_rows}</tbody></table>" if history_rows else "<div class='muted'>No rewards claimed yet.</div>"}
        </div>
        """
    page = f"""
    <div class="card" style="background:var(--primary);color:#fff">
      <h2>Rewards</h2>
      <div>Complete surveys to earn points and claim rewards</div>
      {f"<div class='stat'>{balance} points</div>" if balance is not None else ""}
    </div>
    <div class="grid">{cards}</div>
    {history_html}
    """
    return ui_shell("Rewards", page)


@app.post("/rewards/<reward_id>/claim")
def rewards_claim(reward_id):
    auth = g.get("auth")
    if auth is None:
        return redirect("/login?" + urlencode({"redirectedFrom": "/rewards"}))
    try:
        claim = rewards.claim_reward(backend.service_client(), auth.user_id, reward_id)
    except rewards.InsufficientPoints as e:
        flash(f"Not enough points. {e}", "error")
    except rewards.ClaimConflict as e:
        flash(str(e), "error")
    except NotFound:
        flash("That reward is no longer available.", "error")
    except BackendError as e:
        logger.error("Reward claim failed for %s: %s", auth.user_id, e.message)
        flash(e.message, "error")
    else:
        flash(f"Reward claimed: {claim.get('reward_name') or 'reward'}. We will be in touch about delivery.", "success")
    return redirect("/rewards")


# ---------------------------
# Admin console
# ---------------------------

@app.route("/admin")
def admin_page():
    client = backend.anon_client()
    err = ""
    pending = []
    users = []
    try:
        pending = moderation.list_pending_surveys(client)
        users = moderation.list_users(client)
    except BackendError as e:
        logger.error("Admin queries failed: %s", e.message)
        err = e.message
    query = request.args.get("q") or ""
    shown = moderation.search_users(users, query)
    pending_users = [u for u in users if u.get("status") == "pending"]

    def survey_row(s: dict) -> str:
        creator = s.get("users") or {}
        sid = esc(s.get("id"))
        return f"""
        <tr>
          <td><b>{esc(s.get('title'))}</b><div class="muted">{esc(s.get('description'))}</div></td>
          <td>{esc(creator.get('name'))}<div class="muted">{esc(creator.get('email'))}</div></td>
          <td>{len(s.get('questions') or [])}</td>
          <td>
            <form method="POST" action="/admin/surveys/{sid}" class="row">
              <label class="row"><input type="checkbox" name="is_public" {'checked' if s.get('is_public') is not False else ''} /> Public</label>
              <button class="btn btn-primary" type="submit" name="status" value="approved">Approve</button>
              <button class="btn btn-danger" type="submit" name="status" value="rejected">Reject</button>
            </form>
          </td>
        </tr>
        """

    def user_row(u: dict, actions: bool) -> str:
        uid = esc(u.get("id"))
        buttons = ""
        if actions:
            buttons = f"""
            <form method="POST" action="/admin/users/{uid}" class="row">
              <button class="btn btn-primary" type="submit" name="status" value="approved">Approve</button>
              <button class="btn btn-danger" type="submit" name="status" value="rejected">Reject</button>
            </form>
            """
        return f"""
        <tr>
          <td>{esc(u.get('name'))}<div class="muted">{esc(u.get('email'))}</div></td>
          <td>{esc(u.get('role'))}</td>
          <td>{status_badge(u.get('status'))}</td>
          <td>{int(u.get('points') or 0)}</td>
          <td>{buttons}</td>
        </tr>
        """

    survey_rows = "".join(survey_row(s) for s in pending)
    pending_rows = "".join(user_row(u, True) for u in pending_users)
    user_rows = "".join(user_row(u, u.get("status") != "approved") for u in shown)
    page = f"""
    <h2>Admin console</h2>
    {error_card(err)}
    <div class="card">
      <h3>Pending surveys ({len(pending)})</h3>
      {f"<table><thead><tr><th>Survey</th><th>Creator</th><th>Questions</th><th></th></tr></thead><tbody>{survey_rows}</tbody></table>" if pending else "<div class='muted'>Nothing waiting for review.</div>"}
    </div>
    <div class="card">
      <h3>Pending users ({len(pending_users)})</h3>
      {f"<table><tbody>{pending_rows}</tbody></table>" if pending_users else "<div class='muted'>No pending users.</div>"}
    </div>
    <div class="card">
      <div class="row" style="justify-content:space-between">
        <h3>All users</h3>
        <form method="GET" class="row"><input name="q" value="{esc(query)}" placeholder="Search name or email" /><button class="btn" type="submit">Search</button></form>
      </div>
      <table><thead><tr><th>User</th><th>Role</th><th>Status</th><th>Points</th><th></th></tr></thead><tbody>{user_rows}</tbody></table>
    </div>
    """
    return ui_shell("Admin", page)


@app.post("/admin/surveys/<survey_id>")
def admin_review_survey(survey_id):
    try:
        moderation.set_survey_status(
            backend.anon_client(),
            survey_id,
            request.form.get("status") or "",
            g.auth.user_id,
            is_public=request.form.get("is_public") == "on",
        )
    except ValueError as e:
        flash(str(e), "error")
    except BackendError as e:
        logger.error("Survey review failed for %s: %s", survey_id, e.message)
        flash(e.message, "error")
    else:
        flash(f"Survey {request.form.get('status')}.", "success")
    return redirect("/admin")


@app.post("/admin/users/<user_id>")
def admin_review_user(user_id):
    try:
        moderation.set_user_status(backend.anon_client(), user_id, request.form.get("status") or "", g.auth.user_id)
    except ValueError as e:
        flash(str(e), "error")
    except BackendError as e:
        logger.error("User review failed for %s: %s", user_id, e.message)
        flash(e.message, "error")
    else:
        flash(f"User {request.form.get('status')}.", "success")
    return redirect("/admin")


if __name__ == "__main__":
    app.run(host=config.HOST, port=config.PORT, debug=config.DEBUG)
