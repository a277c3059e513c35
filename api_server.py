"""
FastAPI server exposing the Fund Facts lookup.
Run: .venv/bin/uvicorn api_server:app --host 0.0.0.0 --port 8000
"""

import hmac
import os
from dataclasses import asdict
from datetime import datetime, timezone
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()

from fastapi import Depends, FastAPI, Header
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from budget import check_daily_budget
from config import FundFactsConfig, get_config
from datastore import DataStore, create_store
from fund_facts import DETERMINISTIC, INVALID_INPUT, MERGED, NOT_FOUND, RATE_LIMITED, lookup_fund_facts
from request_logging import FundFactsLogEntry, generate_request_id, log_fund_facts_request

app = FastAPI(title="Fund Facts API")

# CORS: allow localhost for dev + production frontend URL from env
_cors_origins = ["http://localhost:3000"]
_frontend_url = os.environ.get("FRONTEND_URL", "")
if _frontend_url:
    url = _frontend_url.rstrip("/")
    if not url.startswith("http"):
        url = "https://" + url
    _cors_origins.append(url)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_methods=["GET"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "Retry-After"],
)

_STATUS_BY_STATE = {
    MERGED: 200,
    DETERMINISTIC: 200,
    INVALID_INPUT: 400,
    NOT_FOUND: 404,
    RATE_LIMITED: 429,
}


def get_settings() -> FundFactsConfig:
    return get_config()


@lru_cache(maxsize=1)
def get_store() -> DataStore:
    return create_store(get_config())


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _metadata() -> dict:
    return {
        "currency": "INR",
        "units": "Indian Rupees",
        "timestamp": _timestamp(),
        "dataFreshness": "real-time",
    }


def _authorized(provided: str | None, config: FundFactsConfig) -> bool:
    if not provided or not config.api_key:
        return False
    return hmac.compare_digest(provided.encode(), config.api_key.encode())


def success_response(data: dict, summary: str | None, request_id: str, source: str | None = None) -> JSONResponse:
    body = {
        "success": True,
        "data": data,
        "source": source,
        "timestamp": _timestamp(),
        "_metadata": _metadata(),
        "_summary": summary,
    }
    return JSONResponse(status_code=200, content=body, headers={"X-Request-ID": request_id})


def error_response(message: str, status: int, request_id: str | None = None,
                   rate_limit: dict | None = None) -> JSONResponse:
    body = {"success": False, "error": message, "timestamp": _timestamp()}
    headers = {}
    if request_id:
        headers["X-Request-ID"] = request_id
    if rate_limit:
        body["rate_limit"] = rate_limit
        headers["Retry-After"] = str(rate_limit["retry_after"])
    return JSONResponse(status_code=status, content=body, headers=headers)


@app.get("/api/ai-coach/funds/budget")
async def budget_status(
    x_ai_coach_api_key: str | None = Header(default=None),
    config: FundFactsConfig = Depends(get_settings),
    store: DataStore = Depends(get_store),
):
    """Today's fact-retrieval budget usage."""
    if not _authorized(x_ai_coach_api_key, config):
        return error_response("Unauthorized: Invalid or missing API key", 401)
    check = await check_daily_budget(store, config.max_daily_calls)
    return asdict(check)


@app.get("/api/ai-coach/funds/{fund_id}/facts")
async def get_fund_facts(
    fund_id: str,
    x_ai_coach_api_key: str | None = Header(default=None),
    config: FundFactsConfig = Depends(get_settings),
    store: DataStore = Depends(get_store),
):
    """Fund facts with optional LLM augmentation."""
    request_id = generate_request_id()
    if not _authorized(x_ai_coach_api_key, config):
        log_fund_facts_request(FundFactsLogEntry(
            request_id=request_id, adapter_status="error", error_message="Authentication failed",
        ))
        return error_response("Unauthorized: Invalid or missing API key", 401, request_id)

    outcome = await lookup_fund_facts(fund_id, store=store, config=config, request_id=request_id)
    status = _STATUS_BY_STATE.get(outcome.state, 200)
    if status != 200:
        return error_response(outcome.error or "Request failed", status, request_id, outcome.rate_limit)
    return success_response(outcome.data, outcome.summary, request_id, outcome.source)


@app.get("/health")
def health():
    return {"status": "ok"}
