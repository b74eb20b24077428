import os

# gunicorn -c gunicorn.config.py wsgi:app
worker_class = "gthread"
workers = int(os.getenv("WEB_CONCURRENCY", "4"))
threads = 2
timeout = 120
bind = "0.0.0.0:{}".format(os.getenv("PORT", "10000"))

loglevel = "info"
accesslog = "-"
errorlog = "-"
