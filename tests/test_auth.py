import pytest

from auth import BearerAuthGate, ServerMisconfiguredError
from errors import AuthenticationError, ErrorCode


def test_valid_token_passes() -> None:
    gate = BearerAuthGate("s3cret-token")
    assert gate.configured
    gate.check("Bearer s3cret-token")


@pytest.mark.parametrize(
    "header, message",
    [
        (None, "Unauthorized: Bearer token required"),
        ("", "Unauthorized: Bearer token required"),
        ("Basic czNjcmV0", "Unauthorized: Bearer token required"),
        ("bearer s3cret-token", "Unauthorized: Bearer token required"),
        ("Bearer wrong", "Unauthorized: Invalid token"),
        ("Bearer s3cret-token ", "Unauthorized: Invalid token"),
        ("Bearer ", "Unauthorized: Invalid token"),
    ],
)
def test_rejections(header, message) -> None:
    with pytest.raises(AuthenticationError) as excinfo:
        BearerAuthGate("s3cret-token").check(header)
    assert excinfo.value.message == message
    assert excinfo.value.code == ErrorCode.UNAUTHORIZED


@pytest.mark.parametrize("secret", [None, ""])
def test_missing_secret_rejects_everything(secret) -> None:
    gate = BearerAuthGate(secret)
    assert not gate.configured
    with pytest.raises(ServerMisconfiguredError) as excinfo:
        gate.check("Bearer anything")
    assert excinfo.value.code == ErrorCode.INTERNAL_ERROR
