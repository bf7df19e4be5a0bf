# ui.py - Donkey Mapping Initiative
# Page chrome shared by every server-rendered view.

from __future__ import annotations

import html

from flask import current_app, g, get_flashed_messages


UI_BRAND = {
    "name": "Donkey Mapping Initiative",
    "short": "DMI",
    "primary": "#1A4314",
    "accent": "#F6A623",
}

TOAST_CLASSES = {
    "error": "toast-error",
    "success": "toast-success",
    "warning": "toast-warning",
    "message": "toast-info",
    "info": "toast-info",
}

STATUS_CLASSES = {
    "approved": "badge-ok",
    "pending": "badge-wait",
    "rejected": "badge-bad",
    "processing": "badge-wait",
    "delivered": "badge-ok",
    "cancelled": "badge-bad",
}


def esc(value) -> str:
    return html.escape("" if value is None else str(value))


def status_badge(status: str | None) -> str:
    s = (status or "").lower()
    return f"<span class='badge {STATUS_CLASSES.get(s, '')}'>{esc(s.capitalize() or 'Unknown')}</span>"


def error_card(message: str) -> str:
    if not message:
        return ""
    return f"<div class='card card-error'><b>Error:</b> {esc(message)}</div>"


def notice_card(message: str) -> str:
    if not message:
        return ""
    return f"<div class='card card-ok'>{esc(message)}</div>"


def _toasts() -> str:
    items = []
    for category, message in get_flashed_messages(with_categories=True):
        cls = TOAST_CLASSES.get(category, "toast-info")
        items.append(f"<div class='toast {cls}' role='status'>{esc(message)}</div>")
    if not items:
        return ""
    return f"<div class='toasts' id='toasts'>{''.join(items)}</div>"


def ui_shell(title: str, inner_html: str, show_nav: bool = True, head_extra: str = "", scripts: str = "") -> str:
    """
    Wrap a page body with the site chrome (nav, toasts, theme toggle).
    Every dynamic value inside inner_html must already be escaped.
    """
    auth = g.get("auth")
    is_admin = bool(g.get("is_admin"))
    env = (current_app.config.get("APP_ENV") or "development").lower()

    if auth:
        who = esc(auth.display_name)
        account_html = f"""
          <a class="btn" href="/dashboard">Dashboard</a>
          {"<a class='btn' href='/admin'>Admin</a>" if is_admin else ""}
          <span class="who" title="{esc(auth.email)}">{who}</span>
          <a class="btn btn-ghost" href="/logout">Log out</a>
        """
    else:
        account_html = """
          <a class="btn" href="/login">Log in</a>
          <a class="btn btn-primary" href="/signup">Sign up</a>
        """

    nav_html = ""
    if show_nav:
        nav_html = f"""
      <div class="nav">
        <div class="container nav-inner">
          <a href="/" class="brand" aria-label="{esc(UI_BRAND['name'])} home">{esc(UI_BRAND['name'])}</a>
          <div class="nav-actions">
            <a class="btn" href="/surveys">Surveys</a>
            <a class="btn" href="/map">Map</a>
            <a class="btn" href="/rewards">Rewards</a>
            {account_html}
            {"" if env in ("production", "live") else f"<span class='env-badge'>{esc(env.upper())}</span>"}
            <button class="toggle" id="themeToggle" type="button" title="Toggle dark mode">&#9680;</button>
          </div>
        </div>
      </div>
    """

    return f"""<!doctype html>
<html lang="en" data-theme="light">
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width,initial-scale=1" />
  <title>{esc(title)} - {esc(UI_BRAND["name"])}</title>
  <link rel="preconnect" href="https://fonts.googleapis.com">
  <link href="https://fonts.googleapis.com/css2?family=Inter:wght@400;500;600&family=Poppins:wght@500;600;700&display=swap" rel="stylesheet">
  <style>
    :root{{
      --primary:{UI_BRAND["primary"]};
      --accent:{UI_BRAND["accent"]};
      --bg:#F7F8F5;
      --surface:#ffffff;
      --text:#0F172A;
      --muted:#6B7280;
      --border:#E5E7EB;
      --danger:#DC2626;
      --success:#16A34A;
      --radius:16px;
      --shadow:0 12px 32px rgba(15,18,34,.08);
    }}
    html[data-theme="dark"]{{
      --bg:#0B1209;
      --surface:#131C11;
      --text:#E5E7EB;
      --muted:#9CA3AF;
      --border:#253022;
      --shadow:0 16px 40px rgba(0,0,0,.45);
    }}
    *{{box-sizing:border-box}}
    body{{margin:0;font-family:Inter,system-ui,sans-serif;background:var(--bg);color:var(--text)}}
    h1,h2,h3{{font-family:Poppins,system-ui,sans-serif;margin:0 0 8px}}
    a{{color:var(--primary)}}
    .container{{max-width:1120px;margin:0 auto;padding:0 20px}}
    .nav{{background:var(--surface);border-bottom:1px solid var(--border);position:sticky;top:0;z-index:50}}
    .nav-inner{{display:flex;align-items:center;justify-content:space-between;min-height:64px;gap:12px;flex-wrap:wrap}}
    .brand{{font-family:Poppins;font-weight:700;text-decoration:none;color:var(--primary)}}
    .nav-actions{{display:flex;gap:8px;align-items:center;flex-wrap:wrap}}
    .btn{{display:inline-block;padding:8px 14px;border-radius:10px;border:1px solid var(--border);background:var(--surface);color:var(--text);text-decoration:none;cursor:pointer;font:inherit}}
    .btn-primary{{background:var(--primary);border-color:var(--primary);color:#fff}}
    .btn-ghost{{background:transparent}}
    .btn-danger{{border-color:var(--danger);color:var(--danger)}}
    .btn[disabled]{{opacity:.5;cursor:not-allowed}}
    .who{{color:var(--muted);font-size:.9rem}}
    .env-badge{{font-size:.7rem;padding:3px 8px;border-radius:999px;background:#FEF3C7;color:#92400E}}
    .toggle{{border:1px solid var(--border);background:var(--surface);color:var(--text);border-radius:10px;padding:6px 10px;cursor:pointer}}
    main{{padding:28px 0 60px}}
    .card{{background:var(--surface);border:1px solid var(--border);border-radius:var(--radius);box-shadow:var(--shadow);padding:20px;margin-bottom:16px}}
    .card-error{{border-color:rgba(220,38,38,.4)}}
    .card-ok{{border-color:rgba(22,163,74,.4)}}
    .grid{{display:grid;gap:16px;grid-template-columns:repeat(auto-fit,minmax(240px,1fr))}}
    .stack{{display:flex;flex-direction:column;gap:10px}}
    .row{{display:flex;gap:10px;align-items:center;flex-wrap:wrap}}
    .muted{{color:var(--muted)}}
    .stat{{font-size:2rem;font-weight:700;font-family:Poppins}}
    label{{font-weight:600}}
    input,select,textarea{{width:100%;padding:10px 12px;border-radius:10px;border:1px solid var(--border);background:var(--surface);color:var(--text);font:inherit}}
    input[type=checkbox],input[type=radio]{{width:auto}}
    table{{width:100%;border-collapse:collapse}}
    th,td{{text-align:left;padding:10px;border-bottom:1px solid var(--border);vertical-align:top}}
    .badge{{display:inline-block;padding:2px 10px;border-radius:999px;font-size:.8rem;background:#E5E7EB;color:#374151}}
    .badge-ok{{background:#DCFCE7;color:#166534}}
    .badge-wait{{background:#FEF3C7;color:#92400E}}
    .badge-bad{{background:#FEE2E2;color:#991B1B}}
    .progress{{height:8px;border-radius:999px;background:var(--border);overflow:hidden}}
    .progress > div{{height:100%;background:var(--primary)}}
    .toasts{{position:fixed;right:16px;bottom:16px;display:flex;flex-direction:column;gap:8px;z-index:100}}
    .toast{{padding:12px 16px;border-radius:12px;background:var(--surface);border:1px solid var(--border);box-shadow:var(--shadow);max-width:360px}}
    .toast-error{{border-color:var(--danger)}}
    .toast-success{{border-color:var(--success)}}
    .toast-warning{{border-color:var(--accent)}}
    .q-card{{border-left:4px solid var(--primary)}}
    .drag-handle{{cursor:grab;user-select:none;color:var(--muted)}}
    #map{{height:70vh;border-radius:var(--radius)}}
  </style>
  {head_extra}
</head>
<body>
  {nav_html}
  <main>
    <div class="container">
      {inner_html}
    </div>
  </main>
  {_toasts()}
  <script>
    (function(){{
      var root = document.documentElement;
      var saved = localStorage.getItem("dmi-theme");
      if (saved) root.setAttribute("data-theme", saved);
      var t = document.getElementById("themeToggle");
      if (t) t.addEventListener("click", function(){{
        var next = root.getAttribute("data-theme") === "dark" ? "light" : "dark";
        root.setAttribute("data-theme", next);
        localStorage.setItem("dmi-theme", next);
      }});
      var toasts = document.getElementById("toasts");
      if (toasts) setTimeout(function(){{ toasts.remove(); }}, 6000);
    }})();
  </script>
  {scripts}
</body>
</html>"""
