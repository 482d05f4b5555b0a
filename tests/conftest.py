import os

# settings are read at import time; point everything at local fakes first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("GATEWAY_MODE", "mock")
os.environ.setdefault("MOCK_GATEWAY_LATENCY_SECONDS", "0")
os.environ.setdefault("WORKER_ENABLED", "false")
os.environ.setdefault("EVENTS_ENABLED", "false")
os.environ.setdefault("WEBHOOK_RETRY_DELAY_SECONDS", "0")
