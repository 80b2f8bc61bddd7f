from __future__ import annotations

import asyncio

import pytest

from locator_synthesis.core.exceptions import GenerationError
from locator_synthesis.core.metadata import GroupStatus
from locator_synthesis.core.models import SENTINEL_XPATH, Element, MatchOutcome
from locator_synthesis.core.synthesis import LocatorSynthesisOrchestrator, element_placements, group_elements
from locator_synthesis.llm.tasks import GenerationTask
from tests.helpers import FakeGenerativeClient

LOGIN_BTN = Element.model_validate(
    {"devName": "loginBtn", "name": "Login", "state_ids": {"ios": "login", "android": "login"}}
)
EMAIL_FIELD = Element.model_validate({"devName": "emailField", "name": "Email", "state_ids": {"ios": "login"}})

IOS_LOCATORS = [
    {"devName": "loginBtn", "xpathLocator": "//XCUIElementTypeButton[@name='loginBtn']"},
    {"devName": "emailField", "xpathLocator": "//XCUIElementTypeTextField"},
]
ANDROID_LOCATORS = [
    {"devName": "loginBtn", "xpathLocator": "//android.widget.Button[@text='Log in']"},
]


def by_platform(context):
    return IOS_LOCATORS if context["platform"] == "ios" else ANDROID_LOCATORS


def test_placements_prefer_state_ids_and_lowercase_platforms():
    element = Element.model_validate(
        {
            "devName": "loginBtn",
            "stateId": "flat",
            "platform": "Web",
            "state_ids": {"IOS": "login"},
            "state_Ids": {"ios": "legacy", "android": "legacy"},
        }
    )
    assert element_placements(element) == [("ios", "login"), ("android", "legacy"), ("web", "flat")]


def test_groups_follow_first_seen_order_and_record_missing_context(login_page):
    elements = [
        LOGIN_BTN,
        EMAIL_FIELD,
        Element.model_validate({"devName": "ghost", "state_ids": {"ios": "nowhere"}}),
        Element.model_validate({"devName": "errorLabel", "state_ids": {"android": "error", "ios": "error"}}),
    ]
    groups = group_elements(elements, login_page, {"ios", "android"})

    assert [group.key for group in groups] == [
        "login_ios",
        "login_android",
        "nowhere_ios",
        "error_android",
        "error_ios",
    ]
    statuses = {group.key: group.status for group in groups}
    assert statuses["nowhere_ios"] is GroupStatus.MISSING_STATE_DATA
    assert statuses["error_android"] is GroupStatus.MISSING_PLATFORM_VERSION
    assert statuses["error_ios"] is GroupStatus.READY
    assert [element.dev_name for element in groups[0].elements] == ["loginBtn", "emailField"]


def test_locators_are_evaluated_against_each_group_xml(pipeline_config, login_page, sink, sleep):
    client = FakeGenerativeClient({GenerationTask.GENERATE_XPATHS: by_platform})
    orchestrator = LocatorSynthesisOrchestrator(client, pipeline_config, sink, sleep)

    locators = asyncio.run(orchestrator.synthesize_locators([LOGIN_BTN, EMAIL_FIELD], login_page))

    assert [(item.dev_name, item.state_id, item.platform) for item in locators] == [
        ("loginBtn", "login", "ios"),
        ("emailField", "login", "ios"),
        ("loginBtn", "login", "android"),
    ]
    assert locators[0].xpath.is_unique
    assert locators[1].xpath.is_unique
    assert locators[2].xpath.success is MatchOutcome.SUCCESS
    assert locators[2].xpath.number_of_matches == 2
    assert locators[0].state_ids == {"ios": "login", "android": "login"}

    contexts = client.calls_for(GenerationTask.GENERATE_XPATHS)
    assert [context["stateId"] for context in contexts] == ["login", "login"]
    assert "XCUIElementTypeButton" in contexts[0]["xml"]
    assert contexts[1]["screenshot"] == "YW5kcm9pZA=="
    assert "synthesis_final_locators" in sink.labels()


def test_best_run_per_group_wins(pipeline_config, login_page, sleep):
    weak = [
        {"devName": "loginBtn", "xpathLocator": "//XCUIElementTypeButton"},
        {"devName": "emailField", "xpathLocator": "//XCUIElementTypeTextField"},
    ]
    client = FakeGenerativeClient({GenerationTask.GENERATE_XPATHS: [weak, IOS_LOCATORS, weak]})
    orchestrator = LocatorSynthesisOrchestrator(client, pipeline_config, sleep=sleep)

    groups = asyncio.run(orchestrator.synthesize_groups([LOGIN_BTN, EMAIL_FIELD], login_page, ["ios"], runs=3))

    assert len(groups) == 1
    group = groups[0]
    assert group.status is GroupStatus.COMPLETE
    assert group.best_run.index == 1
    assert group.best_run.score == 1.0
    assert (group.best_run.valid_count, group.best_run.total_count) == (2, 2)


def test_uncovered_elements_get_the_sentinel_locator(pipeline_config, login_page, sleep):
    client = FakeGenerativeClient({GenerationTask.GENERATE_XPATHS: [IOS_LOCATORS[:1]]})
    orchestrator = LocatorSynthesisOrchestrator(client, pipeline_config, sleep=sleep)

    locators = asyncio.run(orchestrator.synthesize_locators([LOGIN_BTN, EMAIL_FIELD], login_page, ["ios"]))

    email = locators[1]
    assert email.dev_name == "emailField"
    assert email.xpath.xpath_expression == SENTINEL_XPATH
    assert email.xpath.success is MatchOutcome.UNKNOWN


def test_groups_without_context_are_skipped_without_calls(pipeline_config, login_page, sleep):
    client = FakeGenerativeClient({GenerationTask.GENERATE_XPATHS: [IOS_LOCATORS]})
    orchestrator = LocatorSynthesisOrchestrator(client, pipeline_config, sleep=sleep)
    ghost = Element.model_validate({"devName": "ghost", "state_ids": {"ios": "nowhere"}})

    locators = asyncio.run(orchestrator.synthesize_locators([ghost], login_page))

    assert locators == []
    assert client.calls == []


def test_generation_errors_propagate_after_retries(pipeline_config, login_page, sleep):
    client = FakeGenerativeClient({GenerationTask.GENERATE_XPATHS: [GenerationError("timeout")]})
    orchestrator = LocatorSynthesisOrchestrator(client, pipeline_config, sleep=sleep)

    with pytest.raises(GenerationError):
        asyncio.run(orchestrator.synthesize_locators([EMAIL_FIELD], login_page, ["ios"]))
    assert sleep.delays == [0.5]
