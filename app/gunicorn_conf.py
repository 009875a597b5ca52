import os

# Gunicorn config variables
bind = os.getenv("BIND", "127.0.0.1:8000")
# Rooms live in process memory: one worker only.
workers = 1
worker_class = "uvicorn.workers.UvicornWorker"
timeout = 120
keepalive = 5
accesslog = os.getenv("ACCESS_LOG", "-")
errorlog = os.getenv("ERROR_LOG", "-")
loglevel = "debug" if os.getenv("DEBUG", "false").lower() == "true" else "info"
daemon = False
