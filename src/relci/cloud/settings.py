from __future__ import annotations
import os

DATABASE_URL = os.environ.get("RELCI_DATABASE_URL", "sqlite+aiosqlite:///./relci-runs.db")
PIPELINES = os.environ.get("RELCI_PIPELINES", "relci_pipelines.py")
CACHE_DIR = os.environ.get("RELCI_CACHE_DIR", ".relci/cache")
REDIS_URL = os.environ.get("RELCI_REDIS_URL") or None
CACHE_TTL = int(os.environ["RELCI_CACHE_TTL"]) if os.environ.get("RELCI_CACHE_TTL") else None
WORK_DIR = os.environ.get("RELCI_WORK_DIR", ".relci/work")
SECRETS_FILE = os.environ.get("RELCI_SECRETS_FILE") or None
MAX_WORKERS = int(os.environ["RELCI_WORKERS"]) if os.environ.get("RELCI_WORKERS") else None
