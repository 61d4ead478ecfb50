"""Unit tests for the address resolver.

Covers network lookup, next-available allocation with exclusions, and
the strict decoding of the backend's next_available_ip response.
"""

from typing import Any

import pytest

from infoblox_ipam.cli import (
    AllocationError,
    BackendError,
    NextAvailableIPResponse,
    NotFoundError,
    SerializationError,
    ValidationError,
    resolve_addresses,
)

# =============================================================================
# Happy Path
# =============================================================================


def test_resolve_single_address(backend) -> None:
    """count=1 returns exactly one address from the matching network."""
    assert resolve_addresses(backend, "10.0.0.0/24", set(), count=1) == ["10.0.0.6"]
    assert backend.call_names() == ["find_network", "next_available_ips"]


def test_resolve_queries_network_field_with_cidr(backend) -> None:
    resolve_addresses(backend, "10.0.1.0/24", set())

    assert backend.calls[0] == ("find_network", "network", "10.0.1.0/24")
    assert backend.calls[1][1] == backend.networks["10.0.1.0/24"]


def test_resolve_passes_exclusions_sorted(backend) -> None:
    resolve_addresses(backend, "10.0.0.0/24", {"10.0.0.9", "10.0.0.5"}, count=1)

    assert backend.calls[1] == (
        "next_available_ips",
        backend.networks["10.0.0.0/24"],
        1,
        ["10.0.0.5", "10.0.0.9"],
    )


def test_resolve_multiple_addresses_preserves_backend_order(backend) -> None:
    backend.ip_response = {"ips": ["10.0.0.20", "10.0.0.8", "10.0.0.11"]}

    assert resolve_addresses(backend, "10.0.0.0/24", set(), count=3) == [
        "10.0.0.20",
        "10.0.0.8",
        "10.0.0.11",
    ]


@pytest.mark.parametrize(
    "exclude",
    [
        set(),
        {"10.0.0.6"},
        {"10.0.0.6", "10.0.0.7", "10.0.0.8"},
        {"10.0.0.7", "10.0.0.9"},
    ],
)
def test_resolved_addresses_never_include_exclusions(backend, exclude) -> None:
    """Against a sequential pool, no excluded address is ever handed out."""
    addresses = resolve_addresses(backend, "10.0.0.0/24", exclude, count=4)

    assert len(addresses) == 4
    assert not set(addresses) & exclude


# =============================================================================
# Failure Modes
# =============================================================================


def test_resolve_unknown_network_is_not_found(backend) -> None:
    with pytest.raises(NotFoundError, match="valid network"):
        resolve_addresses(backend, "192.168.0.0/24", set())

    assert backend.call_names() == ["find_network"]


@pytest.mark.parametrize("count", [0, -1])
def test_resolve_rejects_non_positive_count(backend, count: int) -> None:
    with pytest.raises(ValidationError):
        resolve_addresses(backend, "10.0.0.0/24", set(), count=count)

    assert backend.calls == []


@pytest.mark.parametrize("ips", [[], ["10.0.0.6", "10.0.0.7"]])
def test_resolve_single_fails_unless_exactly_one(backend, ips) -> None:
    backend.ip_response = {"ips": ips}

    with pytest.raises(AllocationError, match="unable to get an IP address"):
        resolve_addresses(backend, "10.0.0.0/24", set(), count=1)


def test_resolve_many_fails_on_short_pool(backend) -> None:
    backend.ip_response = {"ips": ["10.0.0.6", "10.0.0.7"]}

    with pytest.raises(AllocationError, match="wanted 3, got 2"):
        resolve_addresses(backend, "10.0.0.0/24", set(), count=3)


def test_resolve_rejects_excluded_address_from_backend(backend) -> None:
    backend.ip_response = {"ips": ["10.0.0.5"]}

    with pytest.raises(AllocationError, match="10.0.0.5"):
        resolve_addresses(backend, "10.0.0.0/24", {"10.0.0.5"}, count=1)


@pytest.mark.parametrize(
    "payload",
    [
        "garbage",
        ["10.0.0.6"],
        {"addresses": ["10.0.0.6"]},
        {"ips": "10.0.0.6"},
        {"ips": [6]},
    ],
)
def test_resolve_malformed_response_is_serialization_error(backend, payload: Any) -> None:
    backend.ip_response = payload

    with pytest.raises(SerializationError, match="unable to determine address"):
        resolve_addresses(backend, "10.0.0.0/24", set())


def test_resolve_network_without_reference(backend, monkeypatch) -> None:
    monkeypatch.setattr(
        backend, "find_network", lambda field, value: [{"network": value}]
    )

    with pytest.raises(SerializationError):
        resolve_addresses(backend, "10.0.0.0/24", set())


def test_resolve_propagates_backend_errors(backend, monkeypatch) -> None:
    def failing_find(field: str, value: str):
        raise BackendError("GET network failed: 503", status_code=503)

    monkeypatch.setattr(backend, "find_network", failing_find)

    with pytest.raises(BackendError) as excinfo:
        resolve_addresses(backend, "10.0.0.0/24", set())

    assert excinfo.value.status_code == 503


# =============================================================================
# Response Decoding
# =============================================================================


def test_next_available_ip_response_decodes_ips() -> None:
    response = NextAvailableIPResponse.from_payload({"ips": ["10.0.0.6"], "extra": 1})

    assert response.ips == ["10.0.0.6"]


def test_next_available_ip_response_rejects_missing_ips() -> None:
    with pytest.raises(SerializationError):
        NextAvailableIPResponse.from_payload({})
