"""
Step definitions for the startup configuration feature.

The process environment is isolated with monkeypatch so nothing leaks
between scenarios.
"""

import pytest
from pytest_bdd import given, parsers, scenarios, then, when

from codeloom.config import REQUIRED_VARIABLES, load_settings, settings_from_mapping
from codeloom.errors import ConfigError

# Load scenarios from feature file
scenarios("../features/config.feature")


COMPLETE_ENVIRONMENT = {
    "BOT_TOKEN": "secret-token",
    "CODE_CHANNEL_ID": "111, 222",
    "LOG_CHANNEL_ID": "333",
    "PROGRAMMER_IDS": "alice,bob",
}


@pytest.fixture
def test_context(monkeypatch, tmp_path):
    """Shared context for passing data between steps."""
    # setenv first so teardown also removes anything load_dotenv writes.
    for name in REQUIRED_VARIABLES + ("MAX_CODE_MESSAGES", "FRAGMENT_TIMEOUT"):
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    return {
        "env": {},
        "env_file": None,
        "settings": None,
        "error": None,
    }


# =============================================================================
# Given Steps
# =============================================================================


@given("an environment with all required variables")
def complete_environment(test_context):
    test_context["env"] = dict(COMPLETE_ENVIRONMENT)


@given(parsers.parse('"{name}" is set to "{value}"'))
def variable_set(test_context, name: str, value: str):
    test_context["env"][name] = value


@given(parsers.parse('"{name}" is unset'))
def variable_unset(test_context, name: str):
    test_context["env"].pop(name, None)


@given("an env file with all required variables")
def env_file(test_context, tmp_path):
    path = tmp_path / "codeloom.env"
    path.write_text(
        "".join(f"{name}={value}\n" for name, value in COMPLETE_ENVIRONMENT.items()),
        encoding="utf-8",
    )
    test_context["env_file"] = str(path)


# =============================================================================
# When Steps
# =============================================================================


@when("settings are loaded from the environment")
def load_from_environment(test_context):
    test_context["settings"] = settings_from_mapping(test_context["env"])


@when("settings are loaded expecting an error")
def load_expecting_error(test_context):
    with pytest.raises(ConfigError) as excinfo:
        settings_from_mapping(test_context["env"])
    test_context["error"] = excinfo.value


@when(parsers.parse('settings are loaded from the env file "{path}"'))
def load_named_file(test_context, path: str):
    with pytest.raises(ConfigError) as excinfo:
        load_settings(path)
    test_context["error"] = excinfo.value


@when("settings are loaded from that env file")
def load_from_file(test_context):
    test_context["settings"] = load_settings(test_context["env_file"])


# =============================================================================
# Then Steps
# =============================================================================


@then(parsers.parse('the code channels are "{channels}"'))
def code_channels(test_context, channels: str):
    assert test_context["settings"].code_channel_ids == channels.split(",")


@then(parsers.parse('the trusted programmers are "{programmers}"'))
def trusted_programmers(test_context, programmers: str):
    assert test_context["settings"].programmer_ids == programmers.split(",")


@then(parsers.parse("the fragment limit is {limit:d}"))
def fragment_limit(test_context, limit: int):
    assert test_context["settings"].max_code_messages == limit


@then("no fragment timeout is set")
def no_timeout(test_context):
    assert test_context["settings"].fragment_timeout is None


@then(parsers.parse("the fragment timeout is {seconds:f} seconds"))
def timeout_is(test_context, seconds: float):
    assert test_context["settings"].fragment_timeout == seconds


@then(parsers.parse('the problems mention "{text}"'))
def problems_mention(test_context, text: str):
    assert any(text in problem for problem in test_context["error"].problems)
