import os

host = os.getenv("INVENTORY_HOST", "0.0.0.0")
port = int(os.getenv("PORT", "9001"))
workers = int(os.getenv("UVICORN_WORKERS", str(max(2, (os.cpu_count() or 1)))))
app = "main:app"
loop = "uvloop"  # needs uvicorn[standard]
http = "h11"
log_level = os.getenv("LOG_LEVEL", "info")
# reservations must not be cut mid-transaction on reload
timeout_graceful_shutdown = int(os.getenv("UVICORN_GRACEFUL_TIMEOUT", "20"))
