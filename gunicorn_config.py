import os

# Bind to PORT provided by the host
bind = f"0.0.0.0:{os.environ.get('PORT', '10000')}"

wsgi_app = "clinic_crm.app:app"

# Worker configuration
workers = int(os.environ.get('WEB_CONCURRENCY', '1'))
worker_class = "sync"
worker_connections = 1000
timeout = 120  # MongoDB cold starts and cascade deletes
keepalive = 5

# Logging
accesslog = "-"
errorlog = "-"
loglevel = "info"

graceful_timeout = 30

preload_app = True

# Recycle workers periodically
max_requests = 1000
max_requests_jitter = 100
