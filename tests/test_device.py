import pytest

from gpunode.mps.device import (
    InvalidDeviceError,
    MpsDevice,
    canonical_version,
    compare_versions,
)

CASES = [
    ("leading v ignored", "v7.5", 0, True, 48, False),
    ("no-leading v supported", "7.5", 0, True, 48, False),
    ("pre-volta clients", "7.0", 0, False, 16, False),
    ("post-volta clients", "9.0", 0, True, 48, False),
    ("pre-volta clients exceeded", "7.0", 29, False, 16, True),
    ("post-volta clients exceeded", "9.0", 49, True, 48, True),
    ("pre-volta clients max", "7.0", 16, False, 16, False),
    ("post-volta clients max", "9.0", 48, True, 48, False),
]


@pytest.mark.parametrize(
    "description, compute_capability, replicas, at_least_volta, max_clients, invalid",
    CASES,
    ids=[case[0] for case in CASES],
)
def test_device(
    description, compute_capability, replicas, at_least_volta, max_clients, invalid
):
    device = MpsDevice(compute_capability=compute_capability, replicas=replicas)
    assert device.is_at_least_volta() is at_least_volta
    assert device.max_clients() == max_clients
    if invalid:
        with pytest.raises(InvalidDeviceError):
            device.assert_replicas()
    else:
        assert device.assert_replicas() is None


def test_invalid_device_error_message():
    with pytest.raises(InvalidDeviceError, match="29 > 16"):
        MpsDevice(compute_capability="7.0", replicas=29).assert_replicas()


def test_empty_compute_capability_is_not_volta():
    device = MpsDevice()
    assert device.is_at_least_volta() is False
    assert device.max_clients() == 16


@pytest.mark.parametrize(
    "version, expected",
    [
        ("v7.5", "v7.5.0"),
        ("v7", "v7.0.0"),
        ("v1.2.3", "v1.2.3"),
        ("v1.2.3-pre", "v1.2.3-pre"),
        ("v1.2.3+build", "v1.2.3"),
        ("7.5", ""),
        ("v01.2", ""),
        ("v1.2-pre", ""),
        ("", ""),
    ],
)
def test_canonical_version(version, expected):
    assert canonical_version(version) == expected


@pytest.mark.parametrize(
    "a, b, expected",
    [
        ("v7.5.0", "v7.5.0", 0),
        ("v7.0.0", "v7.5.0", -1),
        ("v9.0.0", "v7.5.0", 1),
        ("v10.0.0", "v9.0.0", 1),
        ("v1.0.0-alpha", "v1.0.0", -1),
        ("v1.0.0-alpha", "v1.0.0-beta", -1),
        ("v1.0.0-2", "v1.0.0-10", -1),
        ("v1.0.0-alpha", "v1.0.0-alpha.1", -1),
        ("v1.0.0-1", "v1.0.0-alpha", -1),
        ("", "v7.5.0", -1),
        ("v7.5.0", "bogus", 1),
        ("", "bogus", 0),
    ],
)
def test_compare_versions(a, b, expected):
    assert compare_versions(a, b) == expected
    assert compare_versions(b, a) == -expected