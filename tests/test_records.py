from pathlib import Path

import pytest

from multicoder.errors import MalformedCredentialFileError
from multicoder.records import ApiKeyPayload, EnvVarPayload, OAuthPayload, classify_record, strip_bookkeeping

P = Path("/tmp/x.json")


def test_classify_api_key_keeps_mode_fields() -> None:
    payload = classify_record(
        {
            "providerId": "gemini",
            "profileName": "work",
            "apiKey": "AIza123",
            "apiKeyType": "vertex",
            "projectId": "p",
            "createdAt": 1,
        },
        provider_id="gemini",
        path=P,
    )
    assert isinstance(payload, ApiKeyPayload)
    assert payload.api_key == "AIza123"
    assert payload.base_url is None
    assert payload.extra == {"apiKeyType": "vertex", "projectId": "p"}
    assert payload.get("projectId") == "p"


def test_classify_api_key_base_url() -> None:
    payload = classify_record({"apiKey": "k", "baseUrl": "https://proxy"}, provider_id="claude", path=P)
    assert isinstance(payload, ApiKeyPayload)
    assert payload.base_url == "https://proxy"


def test_classify_oauth_shapes() -> None:
    for data in (
        {"tokens": {"access_token": "a"}},
        {"claudeAiOauth": {"accessToken": "a"}},
        {"oauth": {"accessToken": "a"}},
        {"access_token": "ya29", "refresh_token": "r"},
        {"accessToken": "x"},
    ):
        assert isinstance(classify_record(data, provider_id="claude", path=P), OAuthPayload)


def test_codex_tokens_win_over_api_key() -> None:
    data = {"tokens": {"id_token": "i"}, "apiKey": "sk-1"}
    assert isinstance(classify_record(data, provider_id="codex", path=P), OAuthPayload)


def test_classify_env_var() -> None:
    payload = classify_record({"envVarName": "OPENAI_API_KEY", "envVarValue": "sk-1"}, provider_id="codex", path=P)
    assert payload == EnvVarPayload(env_var_name="OPENAI_API_KEY", env_var_value="sk-1")


@pytest.mark.parametrize("data", [{}, {"foo": 1}, {"apiKey": ""}, [], "text"])
def test_classify_malformed(data) -> None:
    with pytest.raises(MalformedCredentialFileError) as ei:
        classify_record(data, provider_id="codex", path=P)
    assert ei.value.path == P
    assert ei.value.provider_id == "codex"


def test_strip_bookkeeping() -> None:
    data = {"providerId": "g", "profileName": "p", "createdAt": 1, "metadata": {}, "access_token": "a"}
    assert strip_bookkeeping(data) == {"access_token": "a"}
