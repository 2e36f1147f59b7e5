from __future__ import annotations

import os
import random
import time

from fastapi import FastAPI, HTTPException


SERVICE = os.getenv("SERVICE_NAME", "example")
FAIL_RATE = float(os.getenv("FAIL_RATE", "0"))  # 0..1
SLOW_HEALTH_S = float(os.getenv("SLOW_HEALTH_S", "0"))

app = FastAPI(title=f"Example Service {SERVICE}")


@app.get("/health")
def health() -> dict[str, str]:
    # Fault injection to exercise probe thresholds and restarts.
    if SLOW_HEALTH_S:
        time.sleep(SLOW_HEALTH_S)
    if FAIL_RATE > 0 and random.random() < FAIL_RATE:
        raise HTTPException(status_code=503, detail="injected failure")
    return {"status": "healthy"}


@app.get("/")
def root() -> dict[str, str]:
    return {"service": SERVICE, "upstream": os.getenv("UPSTREAM_URL", "")}
