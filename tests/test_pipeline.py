from __future__ import annotations

import asyncio

import pytest

from locator_synthesis.config.loader import ConfigLoader
from locator_synthesis.config.schema import PipelineConfig
from locator_synthesis.core.models import SENTINEL_XPATH, Page
from locator_synthesis.core.pipeline import LocatorPipeline
from locator_synthesis.llm.client import create_generative_client
from locator_synthesis.llm.tasks import GenerationTask
from locator_synthesis.logging.audit import JsonlDiagnosticSink
from tests.helpers import FakeGenerativeClient, RecordingSleep, require_llm_credentials

IDENTIFIED = [
    {"devName": "loginBtn", "name": "Login", "description": "Submits the form", "state_ids": {"ios": "login"}},
    {"devName": "emailField", "name": "Email", "description": "Email input", "state_ids": {"ios": "login"}},
]

GENERATED = {
    "ios": [{"devName": "loginBtn", "xpathLocator": "//XCUIElementTypeButton[@name='loginBtn']"}],
    "android": [{"devName": "loginBtn", "xpathLocator": "//android.widget.Button[@text='Log in']"}],
}

REPAIRED = {
    "ios": [
        {
            "devName": "emailField",
            "xpathFix": [{"priority": 0, "xpath": "//XCUIElementTypeTextField[@name='emailField']", "confidence": "High"}],
        }
    ],
    "android": [
        {
            "devName": "loginBtn",
            "xpathFix": [
                {"priority": 0, "xpath": "//android.widget.Button[@resource-id='com.demo:id/login']", "confidence": "High"},
                {"priority": 1, "xpath": "//*[@resource-id='com.demo:id/login']", "confidence": "Medium"},
            ],
        }
    ],
}


def scripted_client() -> FakeGenerativeClient:
    return FakeGenerativeClient(
        {
            GenerationTask.IDENTIFY_ELEMENTS: [IDENTIFIED],
            GenerationTask.MAP_STATE_ID: [[{"devName": "loginBtn", "stateId": "login"}]],
            GenerationTask.GENERATE_XPATHS: lambda context: GENERATED[context["platform"]],
            GenerationTask.REPAIR_XPATHS: lambda context: REPAIRED[context["platform"]],
        }
    )


def test_login_button_is_located_on_both_platforms(pipeline_config, login_page, sink, sleep):
    pipeline = LocatorPipeline(scripted_client(), pipeline_config, sink, sleep)

    result = asyncio.run(pipeline.run(login_page))

    located = {(element.dev_name, element.platform): element for element in result.repaired}
    assert list(located) == [("loginBtn", "ios"), ("emailField", "ios"), ("loginBtn", "android")]
    assert all(element.xpath.is_unique for element in result.repaired)

    android_login = located[("loginBtn", "android")]
    assert android_login.xpath.xpath_expression == "//android.widget.Button[@resource-id='com.demo:id/login']"
    assert android_login.xpath.original_xpath_expression == "//android.widget.Button[@text='Log in']"
    assert [item.xpath_expression for item in android_login.alternative_xpaths] == [
        "//*[@resource-id='com.demo:id/login']"
    ]
    assert located[("emailField", "ios")].xpath.original_xpath_expression == SENTINEL_XPATH
    assert located[("loginBtn", "ios")].xpath.original_xpath_expression is None

    assert [element.dev_name for element in result.elements] == ["loginBtn", "emailField"]
    assert not result.synthesized[1].xpath.is_unique
    labels = sink.labels()
    assert labels.index("pipeline_identified") < labels.index("pipeline_synthesized") < labels.index("pipeline_repaired")


def test_pipeline_diagnostics_are_written_as_json_lines(pipeline_config, login_page, tmp_path, sleep):
    sink = JsonlDiagnosticSink(tmp_path / "artifacts")
    pipeline = LocatorPipeline(scripted_client(), pipeline_config, sink, sleep)

    asyncio.run(pipeline.run(login_page, platforms=["ios"]))

    records = sink.read()
    by_label = {record["label"]: record for record in records}
    assert "visual_run_0" in by_label
    repaired = by_label["pipeline_repaired"]["data"]
    assert [item["devName"] for item in repaired] == ["loginBtn", "emailField"]
    assert repaired[1]["xpath"]["success"] is True
    assert repaired[1]["xpath"]["originalXpathExpression"] == SENTINEL_XPATH


@pytest.mark.integration
def test_live_provider_locates_login_button(login_page, tmp_path):
    require_llm_credentials()
    config = ConfigLoader.from_env()
    pipeline = LocatorPipeline(create_generative_client(config.generation), config, JsonlDiagnosticSink(tmp_path))

    result = asyncio.run(pipeline.run(login_page, platforms=[config.default_platform]))

    assert any(element.dev_name for element in result.repaired)


def test_duplicate_buttons_are_repaired_with_a_positional_locator():
    config = PipelineConfig(default_platform="android", platforms=["android"])
    page = Page.model_validate(
        {
            "id": "home",
            "states": [
                {
                    "id": "home",
                    "versions": {
                        "android": {
                            "pageSource": '<hierarchy><Button name="Login"/><Button name="Login"/></hierarchy>'
                        }
                    },
                }
            ],
        }
    )
    client = FakeGenerativeClient(
        {
            GenerationTask.IDENTIFY_ELEMENTS: [[{"devName": "loginBtn", "name": "Login", "stateId": "home"}]],
            GenerationTask.GENERATE_XPATHS: [[{"devName": "loginBtn", "xpathLocator": "//Button[@name='Login']"}]],
            GenerationTask.REPAIR_XPATHS: [
                [
                    {
                        "devName": "loginBtn",
                        "xpathFix": [{"priority": 0, "xpath": "(//Button[@name='Login'])[1]", "confidence": "High"}],
                    }
                ]
            ],
        }
    )
    pipeline = LocatorPipeline(client, config, sleep=RecordingSleep())

    result = asyncio.run(pipeline.run(page))

    assert result.synthesized[0].xpath.number_of_matches == 2
    login_btn = result.repaired[0]
    assert login_btn.xpath.xpath_expression == "(//Button[@name='Login'])[1]"
    assert login_btn.xpath.number_of_matches == 1
    assert login_btn.xpath.original_xpath_expression == "//Button[@name='Login']"
    assert login_btn.to_payload()["xpath"]["originalXpathExpression"] == "//Button[@name='Login']"
