import copy
import itertools
import time
from datetime import datetime, timedelta, timezone

import pytest

import app as app_module
import backend
from backend import (
    AuthFailure,
    ForeignKeyViolation,
    NotFound,
    RateLimited,
    UniqueViolation,
)


ANON_KEY = "anon-key"
SERVICE_KEY = "service-key"


class FakeStore:
    """In-memory stand-in for the hosted backend, shared by every client handle."""

    def __init__(self):
        self.tables = {
            "users": [],
            "surveys": [],
            "survey_responses": [],
            "rewards": [],
            "claimed_rewards": [],
        }
        self.calls = []
        self.failures = {}
        self.auth_users = {}
        self.tokens = {}
        self.refresh_tokens = {}
        self.otp_codes = {}
        self.pkce_codes = {}
        self.clients = []
        self._ids = itertools.count(1)
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.rpcs = {
            "increment_user_points": self._rpc_increment_points,
            "create_user_if_not_exists": self._rpc_create_user,
        }

    # --- plumbing ---

    def factory(self, url, api_key, access_token=None, timeout=15):
        c = FakeClient(self, api_key, access_token)
        self.clients.append(c)
        return c

    def fail(self, op, exc, table=None):
        self.failures[(op, table)] = exc

    def next_id(self, prefix):
        return f"{prefix}-{next(self._ids)}"

    def stamp(self):
        self._clock += timedelta(seconds=1)
        return self._clock.isoformat()

    def called(self, op):
        return [c for c in self.calls if c[0] == op]

    # --- seeding ---

    def add_user_row(self, user_id, role="data_collector", status="approved", points=0, **extra):
        row = {
            "id": user_id,
            "email": extra.pop("email", f"{user_id}@example.org"),
            "name": extra.pop("name", "Test User"),
            "role": role,
            "status": status,
            "points": points,
            "surveys_completed": extra.pop("surveys_completed", 0),
            "created_at": self.stamp(),
        }
        row.update(extra)
        self.tables["users"].append(row)
        return row

    def add_survey(self, created_by="u1", status="approved", is_public=True, questions=None, **extra):
        row = {
            "id": extra.pop("id", self.next_id("s")),
            "title": extra.pop("title", "Donkey Health Assessment"),
            "description": extra.pop("description", ""),
            "questions": questions if questions is not None else [],
            "created_by": created_by,
            "status": status,
            "is_public": is_public,
            "created_at": self.stamp(),
        }
        row.update(extra)
        self.tables["surveys"].append(row)
        return row

    def add_auth_user(self, user_id, email, password="secret123", metadata=None, confirmed=True):
        user = {
            "id": user_id,
            "email": email,
            "password": password,
            "user_metadata": metadata or {},
            "confirmed": confirmed,
        }
        self.auth_users[email] = user
        return user

    def issue_session(self, user, expires_in=3600):
        token = f"tok-{user['id']}-{next(self._ids)}"
        refresh = f"ref-{user['id']}-{next(self._ids)}"
        public = {"id": user["id"], "email": user["email"], "user_metadata": user.get("user_metadata") or {}}
        self.tokens[token] = public
        self.refresh_tokens[refresh] = user
        return {
            "access_token": token,
            "refresh_token": refresh,
            "expires_in": expires_in,
            "expires_at": int(time.time()) + expires_in,
            "user": public,
        }

    # --- rpc bodies ---

    def _rpc_increment_points(self, params):
        for row in self.tables["users"]:
            if row["id"] == params["user_id"]:
                row["points"] = int(row.get("points") or 0) + int(params["points_to_add"])
                row["surveys_completed"] = int(row.get("surveys_completed") or 0) + 1
                return None
        return None

    def _rpc_create_user(self, params):
        if not any(r["id"] == params["user_id"] for r in self.tables["users"]):
            self.tables["users"].append({
                "id": params["user_id"],
                "email": params["user_email"],
                "name": params["user_name"],
                "role": params["user_role"],
                "status": "approved",
                "points": 0,
                "surveys_completed": 0,
            })
        return None


def _matches(row, filters):
    for col, value in (filters or {}).items():
        have = row.get(col)
        if value is None:
            if have is not None:
                return False
        elif isinstance(value, tuple):
            op, arg = value
            if op == "in" and have not in arg:
                return False
            if op == "neq" and have == arg:
                return False
            if op == "gte" and not (have is not None and have >= arg):
                return False
        elif have != value:
            return False
    return True


class FakeClient:
    def __init__(self, store, api_key, access_token=None):
        self.store = store
        self.api_key = api_key
        self.access_token = access_token

    @property
    def is_service(self):
        return self.api_key == SERVICE_KEY

    def _record(self, op, *args):
        self.store.calls.append((op,) + args)
        table = args[0] if args and isinstance(args[0], str) else None
        for key in ((op, table), (op, None)):
            exc = self.store.failures.get(key)
            if exc is not None:
                raise exc

    # --- tables ---

    def select(self, table, columns="*", filters=None, order=None, limit=None):
        self._record("select", table, filters)
        rows = [copy.deepcopy(r) for r in self.store.tables.get(table, []) if _matches(r, filters)]
        if "users:created_by" in columns:
            for r in rows:
                creator = next((u for u in self.store.tables["users"] if u["id"] == r.get("created_by")), None)
                r["users"] = {"name": creator["name"], "email": creator["email"]} if creator else None
        if "rewards(" in columns:
            for r in rows:
                reward = next((x for x in self.store.tables["rewards"] if x["id"] == r.get("reward_id")), None)
                r["rewards"] = {"name": reward["name"]} if reward else None
        if order:
            col, _, direction = order.partition(".")
            rows.sort(key=lambda r: (r.get(col) is None, r.get(col)), reverse=(direction == "desc"))
        if limit:
            rows = rows[:limit]
        return rows

    def select_one(self, table, columns="*", filters=None):
        rows = self.select(table, columns, filters)
        if not rows:
            raise NotFound("JSON object requested, multiple (or no) rows returned", status=404, code="PGRST116")
        return rows[0]

    def count(self, table, filters=None):
        return len(self.select(table, filters=filters))

    def insert(self, table, row):
        self._record("insert", table, row)
        row = copy.deepcopy(row)
        if table == "surveys":
            if not any(u["id"] == row.get("created_by") for u in self.store.tables["users"]):
                raise ForeignKeyViolation(
                    'insert or update on table "surveys" violates foreign key constraint',
                    status=409,
                    code="23503",
                )
        if table == "users" and any(u["id"] == row.get("id") for u in self.store.tables["users"]):
            raise UniqueViolation("duplicate key value violates unique constraint", status=409, code="23505")
        row.setdefault("id", self.store.next_id(table[:2]))
        row.setdefault("created_at", self.store.stamp())
        if table == "claimed_rewards":
            row.setdefault("claimed_at", row["created_at"])
        self.store.tables.setdefault(table, []).append(row)
        return [copy.deepcopy(row)]

    def update(self, table, values, filters):
        self._record("update", table, values, filters)
        out = []
        for r in self.store.tables.get(table, []):
            if _matches(r, filters):
                r.update(copy.deepcopy(values))
                out.append(copy.deepcopy(r))
        return out

    def rpc(self, fn, params=None):
        self._record("rpc", fn, params)
        return self.store.rpcs[fn](params or {})

    # --- auth ---

    def sign_up(self, email, password, data=None, redirect_to=None):
        self._record("sign_up", email)
        existing = self.store.auth_users.get(email)
        if existing and existing.get("confirmed"):
            raise AuthFailure("User already registered", status=422, code="user_already_exists")
        user = self.store.add_auth_user(self.store.next_id("u"), email, password, data or {}, confirmed=False)
        return {"id": user["id"], "email": email, "user_metadata": user["user_metadata"]}

    def sign_in_with_password(self, email, password):
        self._record("sign_in_with_password", email)
        user = self.store.auth_users.get(email)
        if not user or user["password"] != password:
            raise AuthFailure("Invalid login credentials", status=400, code="invalid_credentials")
        return self.store.issue_session(user)

    def sign_in_with_otp(self, email, create_user=True, data=None):
        self._record("sign_in_with_otp", email, create_user)
        if email not in self.store.auth_users:
            if not create_user:
                raise AuthFailure("Signups not allowed for otp", status=422, code="otp_disabled")
            self.store.add_auth_user(self.store.next_id("u"), email, confirmed=False)
        self.store.otp_codes[email] = "123456"
        return {}

    def verify_otp(self, email, token, otp_type="email"):
        self._record("verify_otp", email, token)
        if self.store.otp_codes.get(email) != token:
            raise AuthFailure("Token has expired or is invalid", status=403, code="otp_expired")
        user = self.store.auth_users[email]
        user["confirmed"] = True
        return self.store.issue_session(user)

    def reset_password_for_email(self, email, redirect_to=None, code_challenge=None):
        self._record("reset_password_for_email", email, redirect_to, code_challenge)
        return {}

    def exchange_code_for_session(self, auth_code, code_verifier):
        self._record("exchange_code_for_session", auth_code, code_verifier)
        email = self.store.pkce_codes.get(auth_code)
        if not email:
            raise AuthFailure("invalid flow state", status=404, code="flow_state_not_found")
        return self.store.issue_session(self.store.auth_users[email])

    def refresh_session(self, refresh_token):
        self._record("refresh_session", refresh_token)
        user = self.store.refresh_tokens.pop(refresh_token, None)
        if not user:
            raise AuthFailure("Invalid Refresh Token", status=400, code="refresh_token_not_found")
        return self.store.issue_session(user)

    def get_user(self, access_token=None):
        self._record("get_user", access_token)
        user = self.store.tokens.get(access_token or self.access_token)
        if not user:
            raise AuthFailure("invalid JWT", status=401, code="bad_jwt")
        return dict(user)

    def update_user(self, attributes, access_token=None):
        self._record("update_user", attributes)
        user = self.store.tokens.get(access_token or self.access_token)
        if not user:
            raise AuthFailure("invalid JWT", status=401, code="bad_jwt")
        if "password" in attributes:
            self.store.auth_users[user["email"]]["password"] = attributes["password"]
        return dict(user)

    def sign_out(self, access_token=None):
        self._record("sign_out", access_token)
        self.store.tokens.pop(access_token or self.access_token, None)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def flask_app(store):
    flask_app = app_module.app
    saved = dict(flask_app.config)
    flask_app.config.update(
        TESTING=True,
        SUPABASE_URL="https://backend.test",
        SUPABASE_ANON_KEY=ANON_KEY,
        SUPABASE_SERVICE_KEY=SERVICE_KEY,
        SITE_URL="http://localhost",
    )
    backend.init_app(flask_app, store.factory)
    yield flask_app
    backend.init_app(flask_app)
    flask_app.config.clear()
    flask_app.config.update(saved)


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture
def login(client, store):
    """Put a signed-in session for user_id into the test client's cookie."""

    def _login(user_id="u1", email=None, name="Test User", role=None, expires_in=3600, refresh_token=None):
        email = email or f"{user_id}@example.org"
        user = store.auth_users.get(email) or store.add_auth_user(user_id, email, metadata={"name": name})
        payload = store.issue_session(user, expires_in=expires_in)
        with client.session_transaction() as sess:
            sess["auth"] = {
                "user_id": user_id,
                "email": email,
                "access_token": payload["access_token"],
                "refresh_token": refresh_token if refresh_token is not None else payload["refresh_token"],
                "expires_at": payload["expires_at"],
                "metadata": {"name": name},
                "role": role,
            }
        return payload

    return _login


def rate_limit_error(seconds=42):
    return RateLimited(
        f"For security purposes, you can only request this after {seconds} seconds.",
        retry_after=seconds,
        code="over_email_send_rate_limit",
    )
