import pytest

import prompt_loader
from fact_schema import FundIdentity
from prompt_loader import (
    PromptRenderError,
    build_messages,
    load_system_prompt,
    normalize_fund_mappings,
    render_template,
)


def test_conditional_block_removed_when_variable_missing():
    template = "Goal: {{goal_name}}{{#if goal_description}} – {{goal_description}}{{/if}}"
    assert render_template(template, {"goal_name": "Retirement"}) == "Goal: Retirement"


def test_conditional_block_kept_when_variable_present():
    template = "Goal: {{goal_name}}{{#if goal_description}} – {{goal_description}}{{/if}}"
    rendered = render_template(template, {"goal_name": "Retirement", "goal_description": "Corpus by 60"})
    assert rendered == "Goal: Retirement – Corpus by 60"


def test_conditional_treats_na_and_blank_as_missing():
    template = "A{{#if x}}-{{x}}{{/if}}B"
    assert render_template(template, {"x": "N/A"}) == "AB"
    assert render_template(template, {"x": "   "}) == "AB"


def test_nested_conditionals():
    template = "{{#if a}}[{{a}}{{#if b}}/{{b}}{{/if}}]{{/if}}"
    assert render_template(template, {"a": "1"}) == "[1]"
    assert render_template(template, {"a": "1", "b": "2"}) == "[1/2]"
    assert render_template(template, {"b": "2"}) == ""


def test_unresolved_tokens_become_na():
    assert render_template("{{fund_name}} / {{unknown}} / {{empty}}", {"fund_name": "X", "empty": ""}) == "X / N/A / N/A"


def test_each_block_repeats_per_fund_with_index():
    template = "Funds:\n{{#each funds}}{{index}}. {{name}} ({{amfi_code}})\n{{/each}}Done"
    funds = [
        FundIdentity(display_name="Alpha Fund", registry_code="100"),
        FundIdentity(display_name="Beta Fund", isin="INF000"),
    ]
    rendered = render_template(template, {}, funds)
    assert rendered == "Funds:\n1. Alpha Fund (100)\n2. Beta Fund (N/A)\nDone"


def test_legacy_loop_syntax():
    funds = [FundIdentity(display_name="Alpha"), FundIdentity(display_name="Beta")]
    assert render_template("{{#funds}}{{index}}:{{name}};{{/funds}}", {}, funds) == "1:Alpha;2:Beta;"


def test_build_messages_rejects_empty_fund_list():
    with pytest.raises(PromptRenderError):
        build_messages([])


def test_build_messages_single_fund():
    fund = FundIdentity(display_name="Alpha Fund", registry_code="100", isin="INF123", latest_nav=12.5)
    messages = build_messages([fund])
    assert "Alpha Fund" in messages.user
    assert "100" in messages.user
    assert "INF123" in messages.user
    assert "{{" not in messages.user
    assert "Context:" not in messages.user
    assert messages.system == load_system_prompt()


def test_build_messages_batch_uses_loop_template():
    funds = [FundIdentity(display_name="Alpha Fund", registry_code="100"),
             FundIdentity(display_name="Beta Fund", registry_code="200")]
    messages = build_messages(funds, goal_name="Retirement")
    assert "1. Alpha Fund" in messages.user
    assert "2. Beta Fund" in messages.user
    assert 'goal "Retirement".' in messages.user
    assert "{{" not in messages.user


def test_system_prompt_loaded_once(monkeypatch):
    monkeypatch.setattr(prompt_loader, "_system_prompt", None)
    reads = []
    original = prompt_loader._read_prompt_file

    def counting_read(name):
        reads.append(name)
        return original(name)

    monkeypatch.setattr(prompt_loader, "_read_prompt_file", counting_read)
    first = load_system_prompt()
    second = load_system_prompt()
    assert first is second
    assert reads == [prompt_loader.SYSTEM_PROMPT_FILE]


def test_normalize_fund_mappings_dedupes_and_fills_gaps():
    funds = normalize_fund_mappings([
        FundIdentity(display_name="  Alpha Fund ", registry_code="100"),
        FundIdentity(display_name="Alpha Fund", registry_code="100", isin="INF111", latest_nav=10.0),
        FundIdentity(display_name="", registry_code=""),
        FundIdentity(display_name="Gamma Fund"),
    ])
    assert [f.display_name for f in funds] == ["Alpha Fund", "Gamma Fund"]
    assert funds[0].isin == "INF111"
    assert funds[0].latest_nav == 10.0


def test_batch_values_sent_as_written():
    funds = [FundIdentity(display_name="Alpha {{goal_name}} Fund", registry_code="100"),
             FundIdentity(display_name="Beta {{#if isin}}X{{/if}} Fund", registry_code="200")]
    user = build_messages(funds, goal_name="Retirement").user
    assert "1. Alpha {{goal_name}} Fund (AMFI code: 100" in user
    assert "2. Beta {{#if isin}}X{{/if}} Fund (AMFI code: 200" in user
    assert 'goal "Retirement".' in user


def test_single_and_batch_keep_names_alike():
    name = "Alpha {{goal_name}} Fund"
    single = build_messages([FundIdentity(display_name=name, registry_code="100")], goal_name="Retirement")
    batch = build_messages([FundIdentity(display_name=name, registry_code="100"),
                            FundIdentity(display_name="Beta Fund", registry_code="200")], goal_name="Retirement")
    assert f"Fund name: {name}" in single.user
    assert f"1. {name} (" in batch.user


@pytest.mark.parametrize("goal_name", [None, "Retirement"])
@pytest.mark.parametrize("fund_count", [1, 2])
def test_rendered_prompt_has_no_blank_line_runs(goal_name, fund_count):
    funds = [FundIdentity(display_name=f"Fund {i}", registry_code=str(i)) for i in range(fund_count)]
    user = build_messages(funds, goal_name=goal_name, goal_description="Corpus by 60").user
    assert "\n\n\n" not in user
    assert ("Context:" in user) is (goal_name is not None)
    assert user.endswith("output schema.")
