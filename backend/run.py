#!/usr/bin/env python3
# backend/run.py
"""
Development server runner.

Uses a local SQLite ledger and the in-memory payment gateway unless the
environment already points somewhere else.
"""
import os
from pathlib import Path
import sys

backend_dir = Path(__file__).parent
sys.path.insert(0, str(backend_dir))
os.chdir(backend_dir)

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///./slotpay_dev.db")
os.environ.setdefault("GATEWAY_FAKE", "true")

import uvicorn

if __name__ == "__main__":
    print("Starting SlotPay API on http://localhost:8000 (docs at /docs)")
    print(f"Ledger: {os.environ['DATABASE_URL']}  fake gateway: {os.environ['GATEWAY_FAKE']}")

    uvicorn.run("slotpay.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
