import os
from config import HOST, HTTP_TIMEOUT, LOG_LEVEL, PORT

proc_name = "donkeymap"
bind = os.getenv("DONKEYMAP_GUNICORN_BIND", f"{HOST}:{PORT}")
workers = int(os.getenv("DONKEYMAP_GUNICORN_WORKERS", "2"))
threads = int(os.getenv("DONKEYMAP_GUNICORN_THREADS", "4"))

# A guarded page can make a refresh, the provisioning fallbacks and its own
# queries back to back, each bounded by HTTP_TIMEOUT.
timeout = int(os.getenv("DONKEYMAP_GUNICORN_TIMEOUT", str(max(60, HTTP_TIMEOUT * 5))))
graceful_timeout = HTTP_TIMEOUT + 5

# Reset-link callback URLs fall back to the request host when no site URL is
# set, so the proxy's scheme has to be trusted.
forwarded_allow_ips = os.getenv("DONKEYMAP_FORWARDED_ALLOW_IPS", "127.0.0.1")

loglevel = LOG_LEVEL.lower()
accesslog = "-"
errorlog = "-"
