import os

def cpu():
    return max(1, (os.cpu_count() or 1))

wsgi_app = "bookstore.wsgi:application"
bind = f"0.0.0.0:{os.getenv('PORT', '8000')}"

# worker processes
workers = min(max(2, cpu() * 2), 8)

# threads per worker; gateway and inventory calls block on I/O
worker_class = "gthread"
threads = int(os.getenv("GTHREADS", "4"))

# timeouts; keep above the inventory retry budget
timeout = int(os.getenv("GUNI_TIMEOUT", "60"))
graceful_timeout = int(os.getenv("GUNI_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNI_KEEPALIVE", "5"))

preload_app = True
max_requests = int(os.getenv("GUNI_MAX_REQUESTS", "2000"))
max_requests_jitter = int(os.getenv("GUNI_MAX_REQUESTS_JITTER", "200"))

# application logs are JSON via Django LOGGING; gunicorn's own go to stdout
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNI_LOGLEVEL", "info")
