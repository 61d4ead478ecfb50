"""Shared fixtures: an in-memory IPAM backend with call tracking."""

from typing import Any, Dict, Iterable, List, Optional, Set

import pytest

from infoblox_ipam.cli import IPAMBackend, InfobloxError, NotFoundError


class MockIPAMBackend(IPAMBackend):
    """In-memory Infoblox stand-in.

    Networks hand out addresses sequentially starting at host number
    ``first_host``, skipping excluded and already leased addresses. Record
    references embed the record name, like real WAPI references, so a
    rename produces a new ID.
    """

    def __init__(self, networks: Iterable[str] = (), first_host: int = 6):
        self.networks: Dict[str, str] = {
            cidr: f"network/ZG5z{i}:{cidr}/default" for i, cidr in enumerate(networks)
        }
        self.first_host = first_host
        self.records: Dict[str, Dict[str, Any]] = {}
        self.leased: Set[str] = set()
        self.calls: List[tuple] = []
        self.ip_response: Any = None
        self.create_error: Optional[InfobloxError] = None
        self.get_error: Optional[InfobloxError] = None
        self.update_error: Optional[InfobloxError] = None
        self.delete_error: Optional[InfobloxError] = None
        self._counter = 0

    def call_names(self) -> List[str]:
        return [c[0] for c in self.calls]

    def _new_ref(self, name: str) -> str:
        self._counter += 1
        return f"record:a/ZG5zLmJpbmRfYSQ{self._counter}:{name}/default"

    def find_network(self, field: str, value: str) -> List[Dict[str, Any]]:
        self.calls.append(("find_network", field, value))
        ref = self.networks.get(value)
        return [{"_ref": ref, "network": value}] if ref else []

    def next_available_ips(self, network_ref: str, count: int, exclude: List[str]) -> Any:
        self.calls.append(("next_available_ips", network_ref, count, list(exclude)))
        if self.ip_response is not None:
            return self.ip_response

        cidr = network_ref.split(":", 1)[1].rsplit("/", 1)[0]
        prefix = cidr.split("/")[0].rsplit(".", 1)[0]
        ips: List[str] = []
        host = self.first_host
        while len(ips) < count and host < 255:
            candidate = f"{prefix}.{host}"
            if candidate not in exclude and candidate not in self.leased:
                ips.append(candidate)
            host += 1
        self.leased.update(ips)
        return {"ips": ips}

    def create_record(self, fields: Dict[str, Any], return_fields: List[str]) -> str:
        self.calls.append(("create_record", dict(fields), list(return_fields)))
        if self.create_error is not None:
            raise self.create_error
        ref = self._new_ref(fields["name"])
        self.records[ref] = {
            "name": fields["name"],
            "ipv4addr": fields["ipv4addr"],
            "ttl": int(fields.get("ttl", 28800)),
        }
        return ref

    def get_record(self, record_id: str, return_fields: List[str]) -> Dict[str, Any]:
        self.calls.append(("get_record", record_id, list(return_fields)))
        if self.get_error is not None:
            raise self.get_error
        if record_id not in self.records:
            raise NotFoundError(f"Reference {record_id} not found", status_code=404)
        return dict(self.records[record_id], _ref=record_id)

    def update_record(
        self, record_id: str, fields: Dict[str, Any], return_fields: List[str]
    ) -> str:
        self.calls.append(("update_record", record_id, dict(fields), list(return_fields)))
        if self.update_error is not None:
            raise self.update_error
        record = self.records.pop(record_id)
        old_name = record["name"]
        record.update(fields)
        record["ttl"] = int(record["ttl"])
        ref = self._new_ref(record["name"]) if record["name"] != old_name else record_id
        self.records[ref] = record
        return ref

    def delete_record(self, record_id: str) -> None:
        self.calls.append(("delete_record", record_id))
        if self.delete_error is not None:
            raise self.delete_error
        if record_id not in self.records:
            raise NotFoundError(f"Reference {record_id} not found", status_code=404)
        del self.records[record_id]


@pytest.fixture
def backend() -> MockIPAMBackend:
    """Backend knowing 10.0.0.0/24 and 10.0.1.0/24, allocating from .6 upwards."""
    return MockIPAMBackend(networks=["10.0.0.0/24", "10.0.1.0/24"])
