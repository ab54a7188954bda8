"""
FastAPI application entry-point.
"""
from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.routers import dashboards, query

app = FastAPI(
    title="Dashboard Query Engine",
    version="0.1.0",
    description="Templated, audited and cost-estimated BigQuery access for web analytics dashboards",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(query.router, prefix="/query", tags=["Query"])
app.include_router(dashboards.router, prefix="/dashboards", tags=["Dashboards"])


@app.get("/health")
def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    from src.core.config import get_settings

    uvicorn.run("src.api.main:app", host="0.0.0.0", port=get_settings().api_port)
