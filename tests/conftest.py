"""Shared fixtures for the Fund Facts test suite."""

import copy
import json

import httpx
import pytest
from openai import AsyncOpenAI

import fact_fetch
from config import FundFactsConfig
from datastore import NAV_TABLE, MemoryStore

FUND_ID = "122639"

BASE_RECORD = {
    "fund_ident": {
        "query_name": "Parag Parikh Flexi Cap Fund",
        "amfi_code": FUND_ID,
        "isin": "INF879O01027",
        "scheme_name_official": "Parag Parikh Flexi Cap Fund - Direct Plan - Growth",
        "plan": "Direct",
        "option": "Growth",
    },
    "facts": {
        "category": "Flexi Cap",
        "benchmark": "NIFTY 500 TRI",
        "expense_ratio_pct": 0.63,
        "aum_cr": 89000,
    },
    "performance": {
        "as_of": "2025-10-31",
        "cagr_1y": 18.2,
        "cagr_3y": 21.4,
        "cagr_5y": 24.9,
        "ret_ytd": 9.8,
        "ret_1m": 1.2,
        "ret_3m": 3.4,
        "ret_6m": 7.5,
    },
    "risk_metrics": {
        "period": "3Y",
        "as_of": "2025-09-30",
        "alpha": 5.1,
        "beta": 0.68,
        "sharpe_ratio": 1.4,
        "sortino_ratio": 2.1,
        "stddev_pct": 11.2,
        "r_squared": 0.71,
        "information_ratio": 0.9,
        "source": "Value Research",
    },
    "sources": [
        {"field": "expense_ratio_pct", "url": "https://amc.ppfas.com/downloads/factsheet/", "as_of": "2025-10-31"},
    ],
    "confidence": "high",
    "notes": "Expense ratio taken from the October factsheet.",
}

NAV_ROW = {
    "scheme_code": FUND_ID,
    "scheme_name": "Parag Parikh Flexi Cap Fund - Direct Plan - Growth",
    "isin_div_payout": "INF879O01027",
    "isin_div_reinvestment": None,
    "nav_value": "84.5123",
}


@pytest.fixture
def make_record():
    """Build a raw fact-record dict, overriding top-level keys."""

    def _make(**overrides) -> dict:
        record = copy.deepcopy(BASE_RECORD)
        record.update(overrides)
        return record

    return _make


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore({NAV_TABLE: [NAV_ROW]})


@pytest.fixture
def llm_config() -> FundFactsConfig:
    return FundFactsConfig(
        use_llm=True,
        min_confidence="medium",
        ttl_days=30,
        max_daily_calls=5,
        perplexity_api_key="pplx-test-key",
    )


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(fact_fetch, "RETRY_BACKOFF_SECONDS", 0)


def completion_response(content: str, status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code,
        json={
            "id": "cmpl-test",
            "object": "chat.completion",
            "created": 0,
            "model": fact_fetch.MODEL,
            "choices": [
                {"index": 0, "finish_reason": "stop", "message": {"role": "assistant", "content": content}},
            ],
        },
    )


class FakeFactApi:
    """Scripted stand-in for the fact-retrieval endpoint."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def calls(self) -> int:
        return len(self.requests)

    def sent_json(self, index: int = 0) -> dict:
        return json.loads(self.requests[index].content)


@pytest.fixture
def fact_api():
    """Factory: fact_api(responses) -> (AsyncOpenAI client, FakeFactApi)."""

    def _build(responses):
        fake = FakeFactApi(responses)
        client = AsyncOpenAI(
            api_key="pplx-test-key",
            base_url="https://api.test",
            max_retries=0,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(fake)),
        )
        return client, fake

    return _build
