from __future__ import annotations

import os
import sys
from pathlib import Path

# Add backend folder to sys.path so `import invoicebox...` works in tests when running from backend root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

# Must be set before invoicebox.core.config is imported
os.environ.setdefault("TASK_BROKER", "stub")
os.environ.setdefault("CACHE_ENABLED", "false")
os.environ.setdefault("STORAGE_BACKEND", "filesystem")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SENTRY_DSN", "")
