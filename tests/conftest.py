from __future__ import annotations

import pytest

from locator_synthesis.config.schema import PipelineConfig
from locator_synthesis.core.models import Page
from tests.helpers import RecordingSink, RecordingSleep

IOS_LOGIN_XML = """<AppiumAUT>
  <XCUIElementTypeApplication name="Demo">
    <XCUIElementTypeWindow>
      <XCUIElementTypeTextField name="emailField" label="Email"/>
      <XCUIElementTypeSecureTextField name="passwordField" label="Password"/>
      <XCUIElementTypeButton name="loginBtn" label="Log in"/>
      <XCUIElementTypeButton name="forgotBtn" label="Forgot password"/>
    </XCUIElementTypeWindow>
  </XCUIElementTypeApplication>
</AppiumAUT>"""

ANDROID_LOGIN_XML = """<hierarchy>
  <android.widget.FrameLayout>
    <android.widget.EditText resource-id="com.demo:id/email" text="Email"/>
    <android.widget.EditText resource-id="com.demo:id/password" text="Password"/>
    <android.widget.Button resource-id="com.demo:id/login" text="Log in"/>
    <android.widget.Button resource-id="com.demo:id/login_secondary" text="Log in"/>
  </android.widget.FrameLayout>
</hierarchy>"""

IOS_ERROR_XML = """<AppiumAUT>
  <XCUIElementTypeApplication name="Demo">
    <XCUIElementTypeStaticText name="errorLabel" label="Wrong password"/>
    <XCUIElementTypeButton name="retryBtn" label="Retry"/>
  </XCUIElementTypeApplication>
</AppiumAUT>"""


@pytest.fixture()
def pipeline_config():
    return PipelineConfig.model_validate(
        {
            "retry": {"max_retries": 1, "initial_delay_seconds": 0.5},
            "repair": {"batch_size": 5, "max_attempts": 3, "initial_delay_seconds": 1.0},
        }
    )


@pytest.fixture()
def login_page():
    return Page.model_validate(
        {
            "id": "login-page",
            "name": "Login",
            "description": "Email and password sign in",
            "states": [
                {
                    "id": "login",
                    "title": "Login form",
                    "description": "Empty login form",
                    "versions": {
                        "ios": {"screenShot": "data:image/png;base64,aW9z", "pageSource": IOS_LOGIN_XML},
                        "android": {"screenShot": "YW5kcm9pZA==", "pageSource": ANDROID_LOGIN_XML},
                    },
                },
                {
                    "id": "error",
                    "title": "Login error",
                    "description": "Wrong password message",
                    "versions": {
                        "iOS": {"screenShot": "ZXJyb3I=", "pageSource": IOS_ERROR_XML},
                    },
                },
            ],
        }
    )


@pytest.fixture()
def sink():
    return RecordingSink()


@pytest.fixture()
def sleep():
    return RecordingSleep()
