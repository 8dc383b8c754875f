import pytest
from graph_media_client.errors import (
    RATE_LIMIT_ERROR,
    REAUTH_MESSAGE,
    ApiError,
    CopyrightViolation,
    PollTerminalFailure,
    UnexpectedShape,
    rate_limit_document,
    user_message,
)


def api_error(**error):
    return ApiError({"error": {"message": "boom", **error}})


@pytest.mark.parametrize(
    "error",
    [
        api_error(code=190),
        api_error(code=102, error_subcode=458),
        api_error(code=102, error_subcode=492),
    ],
)
def test_credential_errors_ask_for_reauth(error):
    assert user_message(error) == REAUTH_MESSAGE


@pytest.mark.parametrize(
    "error",
    [
        api_error(code=100),
        api_error(code=102, error_subcode=33),
        ApiError({"error": "not an object"}),
        UnexpectedShape({"id": None}),
        ValueError("unrelated"),
    ],
)
def test_other_errors_stay_hidden(error):
    assert user_message(error) == ""


def test_api_error_fields():
    error = api_error(code=4, error_subcode=2446079)

    assert error.code == 4
    assert error.error_subcode == 2446079
    assert error.message == "boom"


def test_copyright_violation_is_a_terminal_failure():
    error = CopyrightViolation({"status": {}})

    assert isinstance(error, PollTerminalFailure)
    assert error.phase == "copyright_check_status"


def test_rate_limit_constant_is_immutable():
    document = rate_limit_document()
    document["error"]["code"] = 0

    assert RATE_LIMIT_ERROR["error"]["code"] == 32
    assert rate_limit_document()["error"]["code"] == 32
    with pytest.raises(TypeError):
        RATE_LIMIT_ERROR["error"]["code"] = 1
