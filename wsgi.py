import logging

import config
from app import app


# Gunicorn entry point: `gunicorn -c gunicorn.conf.py wsgi:app`
if not config.SECRET_KEY:
    logging.getLogger(__name__).warning(
        "DONKEYMAP_SECRET_KEY is not set; sessions will not survive a restart or be shared across workers"
    )
