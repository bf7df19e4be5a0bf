# backend.py - Donkey Mapping Initiative
# Client handle for the hosted backend: auth service (/auth/v1) and tables (/rest/v1).

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

import requests
from flask import current_app, g


logger = logging.getLogger(__name__)

NOT_FOUND_CODE = "PGRST116"
FK_VIOLATION_CODE = "23503"
UNIQUE_VIOLATION_CODE = "23505"
RATE_LIMIT_CODES = (
    "over_email_send_rate_limit",
    "over_request_rate_limit",
    "over_sms_send_rate_limit",
)
DEFAULT_RETRY_AFTER = 60
EXTENSION_KEY = "donkeymap.backend"

_retry_re = re.compile(r"after (\d+) seconds")


class BackendError(Exception):
    def __init__(self, message: str, status: int = 500, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.details = details


class NotFound(BackendError):
    pass


class ForeignKeyViolation(BackendError):
    pass


class UniqueViolation(BackendError):
    pass


class AuthFailure(BackendError):
    pass


class RateLimited(BackendError):
    def __init__(self, message: str, retry_after: int = DEFAULT_RETRY_AFTER, **kwargs):
        kwargs.setdefault("status", 429)
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ConfigError(BackendError):
    pass


class ServiceKeyMissing(ConfigError):
    pass


def retry_after_from(message: str | None, header: str | None = None, default: int = DEFAULT_RETRY_AFTER) -> int:
    """
    Cooldown length for a rate-limited request.
    Prefers the Retry-After header; the message pattern is the fallback for
    auth servers that only say "...only request this after 42 seconds".
    """
    header = (header or "").strip()
    if header.isdigit() and int(header) > 0:
        return int(header)
    m = _retry_re.search(message or "")
    if m:
        return int(m.group(1))
    return default


def _payload(resp: requests.Response) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def error_from_response(resp: requests.Response, auth: bool = False) -> BackendError:
    data = _payload(resp)
    status = resp.status_code
    message = (
        data.get("message")
        or data.get("msg")
        or data.get("error_description")
        or (data.get("error") if isinstance(data.get("error"), str) else None)
        or (resp.text or "").strip()
        or f"Backend request failed ({status})"
    )
    raw_code = data.get("error_code") or data.get("code")
    code = str(raw_code) if raw_code is not None else None
    details = data.get("details")

    if status == 429 or code in RATE_LIMIT_CODES:
        return RateLimited(
            message,
            retry_after=retry_after_from(message, resp.headers.get("Retry-After")),
            code=code,
            details=details,
        )
    if code == NOT_FOUND_CODE:
        return NotFound(message, status=404, code=code, details=details)
    if code == FK_VIOLATION_CODE:
        return ForeignKeyViolation(message, status=409, code=code, details=details)
    if code == UNIQUE_VIOLATION_CODE:
        return UniqueViolation(message, status=409, code=code, details=details)
    if auth and status in (400, 401, 403, 404, 422):
        return AuthFailure(message, status=status, code=code, details=details)
    return BackendError(message, status=status, code=code, details=details)


def _fmt(value: Any) -> str:
    if value is True:
        return "true"
    if value is False:
        return "false"
    return str(value)


def filter_params(filters: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """
    {"status": "approved"}            -> status=eq.approved
    {"id": ("in", [1, 2])}            -> id=in.(1,2)
    {"points": ("gte", 500)}          -> points=gte.500
    {"approved_at": None}             -> approved_at=is.null
    """
    out: Dict[str, str] = {}
    for col, value in (filters or {}).items():
        if value is None:
            out[col] = "is.null"
        elif isinstance(value, tuple) and len(value) == 2:
            op, arg = value
            if op == "in":
                out[col] = "in.(" + ",".join(_fmt(v) for v in arg) + ")"
            else:
                out[col] = f"{op}.{_fmt(arg)}"
        else:
            out[col] = f"eq.{_fmt(value)}"
    return out


class BackendClient:
    def __init__(
        self,
        url: str,
        api_key: str,
        access_token: Optional[str] = None,
        timeout: int = 15,
        session: Optional[requests.Session] = None,
    ):
        if not url or not api_key:
            raise ConfigError("Backend environment variables are not configured correctly")
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self.timeout = timeout
        self.http = session or requests.Session()

    def _headers(self, token: Optional[str] = None, extra: Optional[dict] = None) -> dict:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {token or self.access_token or self.api_key}",
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    def _send(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json: Any = None,
        headers: Optional[dict] = None,
        token: Optional[str] = None,
        auth: bool = False,
    ) -> requests.Response:
        try:
            resp = self.http.request(
                method,
                f"{self.url}{path}",
                params=params,
                json=json,
                headers=self._headers(token, headers),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise BackendError(f"Backend unreachable: {e}", status=502)
        if resp.status_code >= 400:
            raise error_from_response(resp, auth=auth)
        return resp

    def _json(self, resp: requests.Response):
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return None

    # -------------------------
    # Auth
    # -------------------------

    def _auth(self, method: str, path: str, token: Optional[str] = None, **kwargs):
        return self._json(self._send(method, f"/auth/v1{path}", token=token, auth=True, **kwargs)) or {}

    def sign_up(self, email: str, password: str, data: Optional[dict] = None, redirect_to: Optional[str] = None) -> dict:
        params = {"redirect_to": redirect_to} if redirect_to else None
        return self._auth("POST", "/signup", json={"email": email, "password": password, "data": data or {}}, params=params)

    def sign_in_with_password(self, email: str, password: str) -> dict:
        return self._auth("POST", "/token", params={"grant_type": "password"}, json={"email": email, "password": password})

    def sign_in_with_otp(self, email: str, create_user: bool = True, data: Optional[dict] = None) -> dict:
        # No redirect_to: the auth service sends a numeric code instead of a magic link.
        body = {"email": email, "create_user": bool(create_user)}
        if data:
            body["data"] = data
        return self._auth("POST", "/otp", json=body)

    def verify_otp(self, email: str, token: str, otp_type: str = "email") -> dict:
        return self._auth("POST", "/verify", json={"type": otp_type, "email": email, "token": token})

    def reset_password_for_email(self, email: str, redirect_to: Optional[str] = None, code_challenge: Optional[str] = None) -> dict:
        body: Dict[str, Any] = {"email": email}
        if code_challenge:
            body["code_challenge"] = code_challenge
            body["code_challenge_method"] = "s256"
        params = {"redirect_to": redirect_to} if redirect_to else None
        return self._auth("POST", "/recover", json=body, params=params)

    def exchange_code_for_session(self, auth_code: str, code_verifier: str) -> dict:
        return self._auth(
            "POST",
            "/token",
            params={"grant_type": "pkce"},
            json={"auth_code": auth_code, "code_verifier": code_verifier},
        )

    def refresh_session(self, refresh_token: str) -> dict:
        return self._auth("POST", "/token", params={"grant_type": "refresh_token"}, json={"refresh_token": refresh_token})

    def get_user(self, access_token: Optional[str] = None) -> dict:
        return self._auth("GET", "/user", token=access_token)

    def update_user(self, attributes: dict, access_token: Optional[str] = None) -> dict:
        return self._auth("PUT", "/user", token=access_token, json=attributes)

    def sign_out(self, access_token: Optional[str] = None) -> None:
        self._send("POST", "/auth/v1/logout", token=access_token, auth=True)

    # -------------------------
    # Tables / RPC
    # -------------------------

    def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Dict[str, Any]] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[dict]:
        params = {"select": columns, **filter_params(filters)}
        if order:
            params["order"] = order
        if limit:
            params["limit"] = str(int(limit))
        return self._json(self._send("GET", f"/rest/v1/{table}", params=params)) or []

    def select_one(self, table: str, columns: str = "*", filters: Optional[Dict[str, Any]] = None) -> dict:
        params = {"select": columns, **filter_params(filters)}
        resp = self._send(
            "GET",
            f"/rest/v1/{table}",
            params=params,
            headers={"Accept": "application/vnd.pgrst.object+json"},
        )
        row = self._json(resp)
        if not row:
            raise NotFound(f"No {table} row matched", status=404, code=NOT_FOUND_CODE)
        return row

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        params = {"select": "*", **filter_params(filters)}
        resp = self._send("HEAD", f"/rest/v1/{table}", params=params, headers={"Prefer": "count=exact"})
        total = (resp.headers.get("Content-Range") or "").rsplit("/", 1)[-1]
        return int(total) if total.isdigit() else 0

    def insert(self, table: str, rows) -> List[dict]:
        resp = self._send("POST", f"/rest/v1/{table}", json=rows, headers={"Prefer": "return=representation"})
        data = self._json(resp)
        if isinstance(data, dict):
            return [data]
        return data or []

    def update(self, table: str, values: dict, filters: Dict[str, Any]) -> List[dict]:
        resp = self._send(
            "PATCH",
            f"/rest/v1/{table}",
            params=filter_params(filters),
            json=values,
            headers={"Prefer": "return=representation"},
        )
        return self._json(resp) or []

    def rpc(self, fn: str, params: Optional[dict] = None):
        return self._json(self._send("POST", f"/rest/v1/rpc/{fn}", json=params or {}))


# ---------------------------
# Flask wiring
# ---------------------------

def init_app(app, factory=None) -> None:
    """Register the client factory; tests pass a fake with the same call signature."""
    app.extensions[EXTENSION_KEY] = factory or BackendClient


def _factory():
    return current_app.extensions.get(EXTENSION_KEY, BackendClient)


def anon_client(access_token: Optional[str] = None) -> BackendClient:
    url = current_app.config.get("SUPABASE_URL") or ""
    key = current_app.config.get("SUPABASE_ANON_KEY") or ""
    if not url or not key:
        raise ConfigError("Backend environment variables are not configured correctly")
    if access_token is None:
        auth = g.get("auth")
        access_token = auth.access_token if auth else None
    return _factory()(url, key, access_token=access_token, timeout=current_app.config.get("HTTP_TIMEOUT", 15))


def service_client() -> BackendClient:
    url = current_app.config.get("SUPABASE_URL") or ""
    key = current_app.config.get("SUPABASE_SERVICE_KEY") or ""
    if not url:
        raise ConfigError("Backend environment variables are not configured correctly")
    if not key:
        raise ServiceKeyMissing("Service role key not available. Cannot bypass RLS policies.")
    return _factory()(url, key, timeout=current_app.config.get("HTTP_TIMEOUT", 15))


def service_client_or_none() -> Optional[BackendClient]:
    try:
        return service_client()
    except ConfigError as e:
        logger.warning("Service client unavailable: %s", e.message)
        return None
