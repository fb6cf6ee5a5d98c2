from __future__ import annotations

import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from abjudge.api.routes_reports import router as reports_router
from abjudge.api.routes_tests import passes_router
from abjudge.api.routes_tests import router as tests_router
from abjudge.db.engine import build_engine, ping_db

app = FastAPI(title="abjudge")

cors_env = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000")
cors_origins = [o.strip() for o in cors_env.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes under /api
app.include_router(tests_router, prefix="/api")
app.include_router(passes_router, prefix="/api")
app.include_router(reports_router, prefix="/api")


@app.get("/api/health")
def health() -> dict:
    engine = build_engine()
    db = ping_db(engine)
    return {
        "status": "ok" if db.ok else "degraded",
        "db": {"ok": db.ok, "detail": db.detail},
    }


@app.get("/health")
def health_root() -> dict:
    return health()
