# auth.py - Donkey Mapping Initiative
# Session handling plus the sign-in, signup, OTP and password-reset pages.

from __future__ import annotations

import logging
import re
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlencode

from authlib.common.security import generate_token
from authlib.oauth2.rfc7636 import create_s256_code_challenge
from flask import Blueprint, current_app, flash, g, redirect, request, session

import backend
import cooldown
from backend import BackendError, ConfigError, RateLimited
from ui import esc, error_card, notice_card, ui_shell


logger = logging.getLogger(__name__)

bp = Blueprint("auth", __name__)

SESSION_KEY = "auth"
OTP_PENDING_KEY = "otp_pending"
PKCE_VERIFIER_KEY = "pkce_verifier"
REFRESH_MARGIN = 30
ALREADY_REGISTERED_CODES = ("user_already_exists", "email_exists")

_otp_re = re.compile(r"^\d{6}$")


@dataclass
class AuthSession:
    user_id: str
    email: str = ""
    access_token: str = ""
    refresh_token: str = ""
    expires_at: int = 0
    metadata: dict = field(default_factory=dict)
    role: Optional[str] = None

    @property
    def display_name(self) -> str:
        for key in ("name", "full_name"):
            val = self.metadata.get(key)
            if isinstance(val, str) and val.strip():
                return val.strip()
        return self.email or "User"

    def identity(self) -> dict:
        return {"id": self.user_id, "email": self.email, "user_metadata": dict(self.metadata)}

    def expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return bool(self.expires_at) and self.expires_at <= now + REFRESH_MARGIN

    @classmethod
    def from_session(cls, data) -> Optional["AuthSession"]:
        if not isinstance(data, dict) or not data.get("user_id") or not data.get("access_token"):
            return None
        return cls(
            user_id=str(data["user_id"]),
            email=data.get("email") or "",
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or "",
            expires_at=int(data.get("expires_at") or 0),
            metadata=data.get("metadata") or {},
            role=data.get("role"),
        )

    @classmethod
    def from_tokens(cls, payload: dict) -> Optional["AuthSession"]:
        """Build from an auth-service session response ({access_token, refresh_token, expires_*, user})."""
        if not isinstance(payload, dict):
            return None
        user = payload.get("user") or {}
        token = payload.get("access_token")
        if not token or not user.get("id"):
            return None
        expires_at = payload.get("expires_at")
        if not expires_at and payload.get("expires_in"):
            expires_at = int(time.time()) + int(payload["expires_in"])
        return cls(
            user_id=str(user["id"]),
            email=user.get("email") or "",
            access_token=token,
            refresh_token=payload.get("refresh_token") or "",
            expires_at=int(expires_at or 0),
            metadata=user.get("user_metadata") or {},
        )


def store_session(payload: dict) -> Optional[AuthSession]:
    auth = AuthSession.from_tokens(payload)
    if auth is None:
        return None
    session[SESSION_KEY] = asdict(auth)
    session.permanent = True
    g.auth = auth
    return auth


def touch_last_login(auth: AuthSession) -> None:
    """Best effort; a missing users row or RLS refusal is only logged."""
    try:
        backend.anon_client(access_token=auth.access_token).update(
            "users",
            {"last_login": datetime.now(timezone.utc).isoformat()},
            {"id": auth.user_id},
        )
    except BackendError as e:
        logger.info("last_login not recorded for %s: %s", auth.user_id, e.message)


def remember_role(role: Optional[str]) -> None:
    data = session.get(SESSION_KEY)
    if isinstance(data, dict) and data.get("role") != role:
        data["role"] = role
        session[SESSION_KEY] = data
    auth = g.get("auth")
    if auth:
        auth.role = role


def clear_session() -> None:
    session.pop(SESSION_KEY, None)
    session.pop(OTP_PENDING_KEY, None)
    session.pop(PKCE_VERIFIER_KEY, None)
    g.auth = None


def _auth_from_bearer(token: str) -> Optional[AuthSession]:
    if not token:
        return None
    try:
        user = backend.anon_client(access_token=token).get_user(access_token=token)
    except BackendError as e:
        logger.info("Bearer token rejected: %s", e.message)
        return None
    if not user.get("id"):
        return None
    return AuthSession(
        user_id=str(user["id"]),
        email=user.get("email") or "",
        access_token=token,
        metadata=user.get("user_metadata") or {},
    )


def load_auth() -> Optional[AuthSession]:
    """Resolve the caller once per request: bearer header first, then the cookie session."""
    header = request.headers.get("Authorization") or ""
    if header.lower().startswith("bearer "):
        return _auth_from_bearer(header[7:].strip())

    auth = AuthSession.from_session(session.get(SESSION_KEY))
    if auth is None:
        return None
    if not auth.expired():
        return auth
    if not auth.refresh_token:
        clear_session()
        return None
    try:
        payload = backend.anon_client(access_token="").refresh_session(auth.refresh_token)
    except ConfigError as e:
        logger.error("Cannot refresh session: %s", e.message)
        return None
    except BackendError as e:
        logger.info("Session refresh failed for %s: %s", auth.user_id, e.message)
        clear_session()
        return None
    refreshed = store_session(payload)
    if refreshed is None:
        clear_session()
        return None
    refreshed.role = auth.role
    remember_role(auth.role)
    return refreshed


def safe_redirect_path(value: Optional[str], default: str = "/dashboard") -> str:
    """Same-origin paths only."""
    v = (value or "").strip()
    if not v.startswith("/") or v.startswith("//") or v.startswith("/\\"):
        return default
    return v


def normalize_email(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def site_url() -> str:
    return (current_app.config.get("SITE_URL") or request.host_url).rstrip("/")


# ---------------------------
# Page helpers
# ---------------------------

def _wait_text(seconds: int) -> str:
    return f"You can request another code in {seconds} seconds."


def _auth_card(title: str, subtitle: str, body: str) -> str:
    return f"""
    <div class="card" style="max-width:520px;margin:40px auto;">
      <h2 style="margin-top:0">{esc(title)}</h2>
      <div class="muted">{esc(subtitle)}</div>
      {body}
    </div>
    """


def cooldown_script(seconds: int) -> str:
    """Disable [data-cooldown-btn] buttons and count down once per second."""
    if seconds <= 0:
        return ""
    return f"""
    <script>
      (function(){{
        var left = {int(seconds)};
        var btns = document.querySelectorAll("[data-cooldown-btn]");
        var label = document.getElementById("cooldownLabel");
        function paint(){{
          btns.forEach(function(b){{
            if (!b.dataset.text) b.dataset.text = b.textContent;
            b.disabled = left > 0;
            b.textContent = left > 0 ? b.dataset.text + " (" + left + "s)" : b.dataset.text;
          }});
          if (label) label.textContent = left > 0 ? "You can request another code in " + left + " seconds." : "";
        }}
        paint();
        var timer = setInterval(function(){{
          left -= 1;
          paint();
          if (left <= 0) clearInterval(timer);
        }}, 1000);
      }})();
    </script>
    """


def _rate_limited(err: RateLimited) -> str:
    fallback = int(current_app.config.get("OTP_COOLDOWN_SECONDS") or cooldown.DEFAULT_RETRY_AFTER)
    secs = cooldown.start(session, cooldown.seconds_from_error(err, fallback), default=fallback)
    logger.info("Email rate limit hit, cooldown %ss", secs)
    return cooldown.wait_message(secs)


def _send_code(email: str, create_user: bool) -> None:
    backend.anon_client(access_token="").sign_in_with_otp(email, create_user=create_user)


# ---------------------------
# Routes
# ---------------------------

@bp.route("/login", methods=["GET", "POST"])
def login():
    next_path = safe_redirect_path(request.values.get("redirectedFrom"))
    if g.get("auth"):
        return redirect(next_path)
    err = ""
    email = ""
    if request.method == "POST":
        email = normalize_email(request.form.get("email"))
        password = request.form.get("password") or ""
        if not email or not password:
            err = "Email and password are required."
        else:
            try:
                payload = backend.anon_client(access_token="").sign_in_with_password(email, password)
            except BackendError as e:
                logger.info("Login failed for %s: %s", email, e.message)
                err = e.message
            else:
                if store_session(payload) is None:
                    err = "Sign-in did not return a session."
                else:
                    touch_last_login(g.auth)
                    flash("Login Successful. Welcome back to the Donkey Mapping Initiative.", "success")
                    return redirect(next_path)

    body = f"""
      {error_card(err)}
      <form method="POST" class="stack" style="margin-top:16px">
        <input type="hidden" name="redirectedFrom" value="{esc(next_path)}" />
        <label>Email</label>
        <input name="email" type="email" value="{esc(email)}" required />
        <label>Password</label>
        <input name="password" type="password" required />
        <button class="btn btn-primary" type="submit">Log in</button>
      </form>
      <div class="row muted" style="margin-top:12px">
        <a href="/forgot-password">Forgot password?</a>
        <a href="/login-otp">Email me a code instead</a>
        <a href="/signup">Create an account</a>
      </div>
    """
    return ui_shell("Log in", _auth_card("Log in", "Sign in to continue mapping.", body))


@bp.route("/signup", methods=["GET", "POST"])
def signup():
    if g.get("auth"):
        return redirect("/dashboard")
    err = ""
    already = False
    name = ""
    email = ""
    min_len = int(current_app.config.get("MIN_PASSWORD_LENGTH", 6))
    if request.method == "POST":
        name = (request.form.get("name") or "").strip()
        email = normalize_email(request.form.get("email"))
        password = request.form.get("password") or ""
        wait = cooldown.remaining(session)
        if not name or not email or not password:
            err = "Name, email and password are required."
        elif len(password) < min_len:
            err = f"Password must be at least {min_len} characters long"
        elif wait:
            err = _wait_text(wait)
        else:
            try:
                client = backend.anon_client(access_token="")
                client.sign_up(email, password, data={"name": name})
                client.sign_in_with_otp(email, create_user=False)
            except RateLimited as e:
                err = _rate_limited(e)
            except BackendError as e:
                logger.info("Signup failed for %s: %s", email, e.message)
                if e.code in ALREADY_REGISTERED_CODES:
                    already = True
                    err = "This email is already registered."
                else:
                    err = e.message
            else:
                session[OTP_PENDING_KEY] = {"email": email, "purpose": "signup"}
                flash("Verification Code Sent. Please check your email for the 6-digit verification code. Also check your spam folder.", "success")
                return redirect("/verify")

    wait = cooldown.remaining(session)
    body = f"""
      {error_card(err)}
      {"<div class='row' style='margin-top:8px'><a class='btn' href='/login'>Go to login</a></div>" if already else ""}
      <form method="POST" class="stack" style="margin-top:16px">
        <label>Full name</label>
        <input name="name" value="{esc(name)}" required />
        <label>Email</label>
        <input name="email" type="email" value="{esc(email)}" required />
        <label>Password</label>
        <input name="password" type="password" minlength="{min_len}" required />
        <div class="muted" id="cooldownLabel"></div>
        <button class="btn btn-primary" type="submit" data-cooldown-btn>Create account</button>
      </form>
      <div class="muted" style="margin-top:12px">Already have an account? <a href="/login">Log in</a></div>
    """
    return ui_shell(
        "Sign up",
        _auth_card("Create your account", "Join the community mapping donkeys across the county.", body),
        scripts=cooldown_script(wait),
    )


@bp.route("/login-otp", methods=["GET", "POST"])
def login_otp():
    if g.get("auth"):
        return redirect("/dashboard")
    err = ""
    email = normalize_email(request.values.get("email"))
    if request.method == "POST":
        wait = cooldown.remaining(session)
        if not email:
            err = "Email is required."
        elif wait:
            err = _wait_text(wait)
        else:
            try:
                _send_code(email, create_user=True)
            except RateLimited as e:
                err = _rate_limited(e)
            except BackendError as e:
                logger.info("OTP send failed for %s: %s", email, e.message)
                err = e.message
            else:
                session[OTP_PENDING_KEY] = {"email": email, "purpose": "login"}
                flash("Verification Code Sent. Please check your email for the verification code. Also check your spam folder.", "success")
                return redirect("/verify")

    wait = cooldown.remaining(session)
    body = f"""
      {error_card(err)}
      <form method="POST" class="stack" style="margin-top:16px">
        <label>Email</label>
        <input name="email" type="email" value="{esc(email)}" required />
        <div class="muted" id="cooldownLabel"></div>
        <button class="btn btn-primary" type="submit" data-cooldown-btn>Send code</button>
      </form>
      <div class="muted" style="margin-top:12px"><a href="/login">Use a password instead</a></div>
    """
    return ui_shell(
        "Email code sign-in",
        _auth_card("Sign in with a code", "We will email you a 6-digit code.", body),
        scripts=cooldown_script(wait),
    )


@bp.route("/verify", methods=["GET", "POST"])
def verify():
    pending = session.get(OTP_PENDING_KEY) or {}
    email = pending.get("email") or ""
    if not email:
        return redirect("/login-otp")
    purpose = pending.get("purpose") or "login"
    err = ""
    msg = ""

    if request.method == "POST":
        action = request.form.get("action") or "verify"
        if action == "resend":
            wait = cooldown.remaining(session)
            if wait:
                err = _wait_text(wait)
            else:
                try:
                    _send_code(email, create_user=(purpose == "login"))
                    msg = "Verification Code Resent. Please check your inbox (and spam folder) for the new verification code."
                except RateLimited as e:
                    err = _rate_limited(e)
                except BackendError as e:
                    logger.info("OTP resend failed for %s: %s", email, e.message)
                    err = e.message or "Failed to resend verification code"
        else:
            code = re.sub(r"\s+", "", request.form.get("code") or "")
            if not _otp_re.match(code):
                err = "Please enter the 6-digit code from your email."
            else:
                try:
                    payload = backend.anon_client(access_token="").verify_otp(email, code)
                except BackendError as e:
                    logger.info("OTP verification failed for %s: %s", email, e.message)
                    err = e.message or "Invalid verification code. Please try again."
                else:
                    if store_session(payload) is None:
                        err = "Verification did not return a session."
                    else:
                        touch_last_login(g.auth)
                        cooldown.clear(session)
                        session.pop(OTP_PENDING_KEY, None)
                        if purpose == "signup":
                            flash("Verification Successful. Your account has been created.", "success")
                        else:
                            flash("Success. You have successfully signed in.", "success")
                        return redirect("/dashboard")

    wait = cooldown.remaining(session)
    body = f"""
      {error_card(err)}
      {notice_card(msg)}
      <form method="POST" class="stack" style="margin-top:16px">
        <input type="hidden" name="action" value="verify" />
        <label>Verification code</label>
        <input name="code" inputmode="numeric" autocomplete="one-time-code" maxlength="6" pattern="[0-9]{{6}}" placeholder="123456" required />
        <button class="btn btn-primary" type="submit">Verify</button>
      </form>
      <form method="POST" class="row" style="margin-top:12px">
        <input type="hidden" name="action" value="resend" />
        <button class="btn" type="submit" data-cooldown-btn>Resend code</button>
        <span class="muted" id="cooldownLabel"></span>
      </form>
      <div class="muted" style="margin-top:12px">
        Wrong address? <a href="{'/signup' if purpose == 'signup' else '/login-otp'}">Change email</a>
      </div>
    """
    return ui_shell(
        "Verify email",
        _auth_card("Check your email", f"We sent a 6-digit code to {email}.", body),
        scripts=cooldown_script(wait),
    )


@bp.route("/forgot-password", methods=["GET", "POST"])
def forgot_password():
    err = ""
    msg = ""
    email = normalize_email(request.values.get("email"))
    if request.method == "POST":
        wait = cooldown.remaining(session)
        if not email:
            err = "Email is required."
        elif wait:
            err = f"Please wait {wait} seconds before trying again."
        else:
            verifier = generate_token(48)
            session[PKCE_VERIFIER_KEY] = verifier
            redirect_to = f"{site_url()}/auth/callback?" + urlencode({"redirectTo": "/reset-password"})
            try:
                backend.anon_client(access_token="").reset_password_for_email(
                    email,
                    redirect_to=redirect_to,
                    code_challenge=create_s256_code_challenge(verifier),
                )
                msg = "Password Reset Email Sent. Please check your email for the password reset link."
            except RateLimited as e:
                err = _rate_limited(e)
            except BackendError as e:
                logger.info("Reset request failed for %s: %s", email, e.message)
                err = e.message

    wait = cooldown.remaining(session)
    body = f"""
      {error_card(err)}
      {notice_card(msg)}
      <form method="POST" class="stack" style="margin-top:16px">
        <label>Email</label>
        <input name="email" type="email" value="{esc(email)}" required />
        <div class="muted" id="cooldownLabel"></div>
        <button class="btn btn-primary" type="submit" data-cooldown-btn>Send reset link</button>
      </form>
      <div class="muted" style="margin-top:8px"><a href="/login">Back to login</a></div>
    """
    return ui_shell(
        "Forgot Password",
        _auth_card("Reset password", "Enter your email to receive a reset link.", body),
        scripts=cooldown_script(wait),
    )


@bp.route("/reset-password", methods=["GET", "POST"])
def reset_password():
    error_code = request.args.get("error_code") or ""
    error_desc = request.args.get("error_description") or request.args.get("error") or ""
    err = ""
    if error_code == "otp_expired":
        err = "Your password reset link has expired. Please request a new one."
    elif error_desc:
        err = error_desc.replace("+", " ")

    auth = g.get("auth")
    if request.method == "POST":
        password = request.form.get("password") or ""
        confirm = request.form.get("confirm") or ""
        min_len = int(current_app.config.get("MIN_PASSWORD_LENGTH", 6))
        if auth is None:
            err = "Your reset link is invalid or has expired. Please request a new one."
        elif not password or not confirm:
            err = "Password and confirmation are required."
        elif password != confirm:
            err = "Passwords do not match."
        elif len(password) < min_len:
            err = f"Password must be at least {min_len} characters long"
        else:
            try:
                backend.anon_client().update_user({"password": password}, access_token=auth.access_token)
            except BackendError as e:
                logger.info("Password update failed for %s: %s", auth.user_id, e.message)
                err = e.message
            else:
                flash("Password updated. You can now sign in with your new password.", "success")
                clear_session()
                return redirect("/login")

    if auth is None:
        body = f"""
          {error_card(err or "Your reset link is invalid or has expired.")}
          <form method="POST" action="/forgot-password" class="stack" style="margin-top:16px">
            <label>Email</label>
            <input name="email" type="email" required />
            <button class="btn btn-primary" type="submit">Request a new link</button>
          </form>
        """
        return ui_shell("Reset Password", _auth_card("Reset password", "Request a fresh reset link.", body))

    body = f"""
      {error_card(err)}
      <form method="POST" class="stack" style="margin-top:16px">
        <label>New password</label>
        <input name="password" type="password" required />
        <label>Confirm password</label>
        <input name="confirm" type="password" required />
        <button class="btn btn-primary" type="submit">Update password</button>
      </form>
    """
    return ui_shell("Reset Password", _auth_card("Choose a new password", auth.email, body))


@bp.route("/auth/callback")
def auth_callback():
    error = request.args.get("error")
    if error:
        params = {"error": error}
        for key in ("error_code", "error_description"):
            if request.args.get(key):
                params[key] = request.args.get(key)
        return redirect("/reset-password?" + urlencode(params))

    target = safe_redirect_path(request.args.get("redirectTo"))
    code = request.args.get("code")
    if code:
        verifier = session.pop(PKCE_VERIFIER_KEY, "") or ""
        try:
            payload = backend.anon_client(access_token="").exchange_code_for_session(code, verifier)
        except BackendError as e:
            logger.warning("Code exchange failed: %s", e.message)
            flash("That sign-in link could not be verified. Please try again.", "error")
            return redirect("/login")
        store_session(payload)
    return redirect(target)


@bp.route("/logout")
def logout():
    auth = g.get("auth")
    if auth:
        try:
            backend.anon_client().sign_out(access_token=auth.access_token)
        except BackendError as e:
            logger.info("Backend sign-out failed for %s: %s", auth.user_id, e.message)
    clear_session()
    flash("You have been signed out.", "info")
    return redirect("/login")
