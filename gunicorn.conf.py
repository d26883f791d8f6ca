import os

bind = f"""[::]:{os.getenv("GUNICORN_PORT", "8000")}"""
workers = int(os.getenv("GUNICORN_NUM_WORKERS", "2"))
worker_class = "uvicorn.workers.UvicornWorker"
timeout = int(os.getenv("GUNICORN_TIMEOUT", "90"))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "30"))
worker_tmp_dir = os.getenv("GUNICORN_WORKER_DIR")
loglevel = os.getenv("GUNICORN_LOGLEVEL", "INFO").lower()
