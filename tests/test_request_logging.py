import json
import logging
import re

from request_logging import (
    REDACTED,
    FundFactsLogEntry,
    generate_request_id,
    hash_prompt,
    log_fund_facts_request,
    redact_api_key,
    redact_sensitive_data,
)


def test_request_id_format():
    assert re.fullmatch(r"\d+-[0-9a-f]{9}", generate_request_id())
    assert generate_request_id() != generate_request_id()


def test_hash_prompt_is_short_and_stable():
    digest = hash_prompt("system\n\nuser")
    assert len(digest) == 16
    assert digest == hash_prompt("system\n\nuser")
    assert digest != hash_prompt("system\n\nother user")
    assert hash_prompt("") == ""


def test_redacts_vendor_keys_and_bearer_tokens():
    text = "auth failed for pplx-abcdefghijklmnopqrstuvwxyz with Bearer abc.def-ghi"
    redacted = redact_api_key(text)
    assert "abcdefghijklmnopqrstuvwxyz" not in redacted
    assert "abc.def-ghi" not in redacted
    assert REDACTED in redacted


def test_redacts_key_assignments():
    redacted = redact_api_key('config: {"api_key": "0123456789abcdef"}')
    assert "0123456789abcdef" not in redacted
    assert f'"api_key": "{REDACTED}"' in redacted


def test_redacts_sensitive_dict_keys_recursively():
    data = {"fund_id": "1", "headers": {"Authorization": "Bearer x", "accept": "json"},
            "items": [{"secret_value": "s"}]}
    assert redact_sensitive_data(data) == {
        "fund_id": "1",
        "headers": {"Authorization": REDACTED, "accept": "json"},
        "items": [{"secret_value": REDACTED}],
    }


def test_log_entry_emitted_once_without_nulls(caplog):
    caplog.set_level(logging.INFO, logger="fund_facts.requests")
    logged = log_fund_facts_request(FundFactsLogEntry(
        request_id="1-abc", fund_id="122639", cache_status="miss", adapter_status="error",
        latency_ms=12, error_message="request failed for sk-abcdefghijklmnopqrstuvwxyz",
    ))
    records = [r for r in caplog.records if r.name == "fund_facts.requests"]
    assert len(records) == 1
    assert records[0].getMessage().startswith("[fund-facts] ")
    emitted = json.loads(records[0].getMessage()[len("[fund-facts] "):])
    assert emitted == logged
    assert "confidence" not in emitted
    assert "abcdefghijklmnopqrstuvwxyz" not in emitted["error_message"]
