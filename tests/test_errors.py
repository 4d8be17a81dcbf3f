import pytest

from lvmcsi.errors import (
    Code,
    ConflictError,
    DeviceClassNotFoundError,
    NodeNotFoundError,
    NotFoundError,
    StatusError,
    VolumeNotFoundError,
    status_from_error,
)


@pytest.mark.parametrize(
    "code, number",
    [(Code.OK, 0), (Code.NOT_FOUND, 5), (Code.INTERNAL, 13)],
)
def test_codes_match_wire_numbers(code, number):
    found, message = status_from_error(StatusError(code, "msg"))
    assert found == number
    assert message == "msg"


def test_status_error_keeps_code_and_message():
    err = StatusError(Code.NOT_FOUND, "missing volume")
    assert err.code is Code.NOT_FOUND
    assert err.message == "missing volume"
    assert "missing volume" in str(err)


def test_status_from_status_error():
    err = StatusError(Code.ALREADY_EXISTS, "Incompatible LogicalVolume already exists")
    assert status_from_error(err) == (
        Code.ALREADY_EXISTS,
        "Incompatible LogicalVolume already exists",
    )


def test_status_from_plain_error_is_internal():
    assert status_from_error(ValueError("boom")) == (Code.INTERNAL, "boom")


def test_sentinel_messages():
    assert str(VolumeNotFoundError()) == "VolumeID is not found"
    assert str(NodeNotFoundError()) == "node not found"
    assert str(DeviceClassNotFoundError()) == "device class not found"


def test_api_errors_are_distinct():
    assert not issubclass(ConflictError, NotFoundError)
    assert not issubclass(VolumeNotFoundError, NotFoundError)
    assert status_from_error(VolumeNotFoundError()) == (
        Code.INTERNAL,
        "VolumeID is not found",
    )