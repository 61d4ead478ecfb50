#!/usr/bin/env python3
"""infoblox-ipam - Declarative IP Allocation and DNS Records for Infoblox

Allocates addresses from Infoblox networks and binds them to DNS A records,
keeping the backend converged with a declared set of resources across
create/read/update/delete passes.

Supported resource types:
    - infoblox_record: A record "name.domain" bound to the next free address
                       of a network (full create/read/update/delete)
    - infoblox_ip:     Bare allocation of one or more free addresses. Only
                       create talks to Infoblox; read, update and delete are
                       no-ops because an unbound address is not an object

Environment variables:

    Infoblox Provider:
        INFOBLOX_HOST          WAPI host or base URL (e.g. https://infoblox.example.com)
        INFOBLOX_USERNAME      WAPI username
        INFOBLOX_PASSWORD      WAPI password
        INFOBLOX_SSLVERIFY     Verify TLS certificates (default: true)
        INFOBLOX_USECOOKIES    Reuse the WAPI session cookie (default: false)
        INFOBLOX_WAPI_VERSION  WAPI version path segment (default: v2.7)

    Resources:
        RESOURCES_PATH         YAML file, or directory of *.yaml files, declaring
                               resources (default: /config/resources.yaml)
                               Example:
                                 provider:
                                   host: https://infoblox.example.com
                                   sslverify: false
                                 resources:
                                   web1:
                                     type: infoblox_record
                                     name: web1
                                     domain: example.com
                                     cidr: 10.0.0.0/24
                                     exclude: [10.0.0.5]
                                   pool:
                                     type: infoblox_ip
                                     cidr: 10.0.1.0/24
                                     ip_count: 2

        The optional "provider" block overrides the INFOBLOX_* variables.

    Runtime:
        SYNC_MODE              "once" or "watch" (polling loop) (default: once)
        POLL_INTERVAL_SECONDS  Poll interval in watch mode (default: 60)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
        STATE_PATH             JSON state file path (default: /data/state.json)
"""

from __future__ import annotations

import http.cookiejar
import json
import logging
import os
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests
import yaml
from requests.auth import HTTPBasicAuth

# =============================================================================
# Resource File Utilities
# =============================================================================


def find_config_files(config_path: str) -> List[str]:
    """Find all .yaml resource files in directory or return single file.

    Args:
        config_path: Path to resource file or directory

    Returns:
        List of resource file paths (excluding .template files)
    """
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        yaml_files = sorted(path.glob("*.yaml"))
        return [str(f) for f in yaml_files if not f.name.endswith(".template")]

    return []


# =============================================================================
# Configuration
# =============================================================================

# Infoblox provider configuration
INFOBLOX_HOST = os.getenv("INFOBLOX_HOST", "")
INFOBLOX_USERNAME = os.getenv("INFOBLOX_USERNAME", "")
INFOBLOX_PASSWORD = os.getenv("INFOBLOX_PASSWORD", "")
INFOBLOX_SSLVERIFY = os.getenv("INFOBLOX_SSLVERIFY", "true")
INFOBLOX_USECOOKIES = os.getenv("INFOBLOX_USECOOKIES", "false")
INFOBLOX_WAPI_VERSION = os.getenv("INFOBLOX_WAPI_VERSION", "v2.7")

# Resource declarations
RESOURCES_PATH = os.getenv("RESOURCES_PATH", "/config/resources.yaml")

# Runtime configuration
SYNC_MODE = os.getenv("SYNC_MODE", "once")
POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", "60"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
STATE_PATH = os.getenv("STATE_PATH", "/data/state.json")

DEFAULT_TTL = "3600"

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class InfobloxError(Exception):
    """Base class for every error raised while reconciling resources."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ValidationError(InfobloxError):
    """A declared attribute is missing or invalid. Raised before any backend call."""


class NotFoundError(InfobloxError):
    """A lookup by ID or by field returned nothing."""


class AllocationError(InfobloxError):
    """The backend did not hand out exactly the requested number of addresses."""


class SerializationError(InfobloxError):
    """A backend response did not have the expected shape."""


class BackendError(InfobloxError):
    """Transport or remote failure talking to Infoblox."""


def _with_context(error: InfobloxError, message: str) -> InfobloxError:
    """Return a copy of ``error`` (same kind) prefixed with ``message``."""
    return type(error)(f"{message}: {error}", status_code=error.status_code)


# =============================================================================
# Schema Declarations
# =============================================================================


class AttributeType(Enum):
    STRING = "string"
    INT = "int"
    BOOL = "bool"
    SET = "set"


@dataclass(frozen=True)
class Attribute:
    """Contract for one resource attribute."""

    type: AttributeType
    required: bool = False
    optional: bool = False
    computed: bool = False
    force_new: bool = False
    default: Any = None
    description: str = ""


HOST_SCHEMA: Dict[str, Attribute] = {
    "domain": Attribute(AttributeType.STRING, required=True, force_new=True),
    "name": Attribute(AttributeType.STRING, required=True),
    "ttl": Attribute(AttributeType.STRING, optional=True, default=DEFAULT_TTL),
    "cidr": Attribute(AttributeType.STRING, required=True),
    "address": Attribute(AttributeType.SET, computed=True),
    "exclude": Attribute(AttributeType.SET, optional=True),
}

IP_SCHEMA: Dict[str, Attribute] = {
    "cidr": Attribute(AttributeType.STRING, required=True),
    "addresses": Attribute(AttributeType.SET, computed=True),
    "exclude": Attribute(AttributeType.SET, optional=True),
    "ip_count": Attribute(AttributeType.INT, optional=True, default=1),
}

PROVIDER_SCHEMA: Dict[str, Attribute] = {
    "username": Attribute(AttributeType.STRING, required=True, description="Infoblox Username"),
    "password": Attribute(
        AttributeType.STRING, required=True, description="Infoblox User Password"
    ),
    "host": Attribute(AttributeType.STRING, required=True, description="Infoblox Base Url"),
    "sslverify": Attribute(
        AttributeType.BOOL, optional=True, default=True, description="Enable ssl"
    ),
    "usecookies": Attribute(
        AttributeType.BOOL, optional=True, default=False, description="Use cookies"
    ),
    "wapi_version": Attribute(
        AttributeType.STRING, optional=True, default="v2.7", description="WAPI version"
    ),
}


def _zero_value(attr_type: AttributeType) -> Any:
    if attr_type is AttributeType.SET:
        return set()
    if attr_type is AttributeType.INT:
        return 0
    if attr_type is AttributeType.BOOL:
        return False
    return ""


def _coerce(key: str, attr_type: AttributeType, value: Any) -> Any:
    if value is None:
        return None
    if attr_type is AttributeType.SET:
        if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
            raise ValidationError(f"Attribute '{key}' must be a list, got {value!r}")
        return {str(v) for v in value}
    if attr_type is AttributeType.INT:
        if isinstance(value, bool):
            raise ValidationError(f"Attribute '{key}' must be an integer, got {value!r}")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"Attribute '{key}' must be an integer, got {value!r}")
    if attr_type is AttributeType.BOOL:
        return _parse_bool(value, default=False)
    return str(value)


class ResourceData:
    """Attribute values and identity of one resource instance.

    Declared values are coerced to their schema type on the way in, and
    schema defaults fill anything left unset. Reconcilers read declared
    values with ``get``/``get_ok`` and publish computed values with ``set``.
    """

    def __init__(
        self,
        schema: Dict[str, Attribute],
        config: Optional[Dict[str, Any]] = None,
        resource_id: str = "",
    ):
        self.schema = schema
        self._id = resource_id or ""
        self._values: Dict[str, Any] = {}
        for key, attr in schema.items():
            if attr.default is not None:
                self._values[key] = _coerce(key, attr.type, attr.default)
        for key, value in (config or {}).items():
            self.set(key, value)

    @property
    def id(self) -> str:
        return self._id

    def set_id(self, resource_id: str) -> None:
        self._id = resource_id or ""

    def _attribute(self, key: str) -> Attribute:
        try:
            return self.schema[key]
        except KeyError:
            raise ValidationError(f"Unsupported attribute '{key}'")

    def get(self, key: str) -> Any:
        attr = self._attribute(key)
        value = self._values.get(key)
        if value is None:
            return _zero_value(attr.type)
        if attr.type is AttributeType.SET:
            return set(value)
        return value

    def get_ok(self, key: str) -> Tuple[Any, bool]:
        """Return the value and whether it is set to something non-zero."""
        attr = self._attribute(key)
        value = self.get(key)
        return value, value != _zero_value(attr.type)

    def set(self, key: str, value: Any) -> None:
        """Store ``value``; ``None`` resets the attribute to its schema default."""
        attr = self._attribute(key)
        if value is None:
            value = attr.default
        self._values[key] = _coerce(key, attr.type, value)

    def to_state(self) -> Dict[str, Any]:
        state: Dict[str, Any] = {}
        for key, value in self._values.items():
            if value is None:
                continue
            state[key] = sorted(value) if isinstance(value, set) else value
        return state

    @classmethod
    def from_state(
        cls, schema: Dict[str, Attribute], resource_id: str, attributes: Dict[str, Any]
    ) -> "ResourceData":
        data = cls(schema, resource_id=resource_id)
        for key, value in (attributes or {}).items():
            if key in schema:
                data.set(key, value)
        return data


def validate_config(schema: Dict[str, Attribute], attrs: Dict[str, Any]) -> None:
    """Check declared attributes against a schema.

    Raises:
        ValidationError: unknown attribute, computed-only attribute supplied,
            or a required attribute missing.
    """
    errors = []
    for key in sorted(attrs):
        attr = schema.get(key)
        if attr is None:
            errors.append(f"unsupported attribute '{key}'")
        elif attr.computed and not attr.optional:
            errors.append(f"attribute '{key}' is computed and cannot be set")
    for key, attr in schema.items():
        if attr.required and attrs.get(key) is None:
            errors.append(f"missing required attribute '{key}'")
    if errors:
        raise ValidationError("; ".join(errors))


# =============================================================================
# Backend Client Interface and Implementation
# =============================================================================


class IPAMBackend(ABC):
    """Abstract interface to the IPAM/DNS backend."""

    @abstractmethod
    def find_network(self, field: str, value: str) -> List[Dict[str, Any]]:
        """Return network objects whose ``field`` equals ``value``."""
        pass

    @abstractmethod
    def next_available_ips(self, network_ref: str, count: int, exclude: List[str]) -> Any:
        """Ask a network for ``count`` free addresses, skipping ``exclude``."""
        pass

    @abstractmethod
    def create_record(self, fields: Dict[str, Any], return_fields: List[str]) -> str:
        """Create an A record and return its ID."""
        pass

    @abstractmethod
    def get_record(self, record_id: str, return_fields: List[str]) -> Dict[str, Any]:
        """Fetch a record by ID. Raises NotFoundError when it does not exist."""
        pass

    @abstractmethod
    def update_record(
        self, record_id: str, fields: Dict[str, Any], return_fields: List[str]
    ) -> str:
        """Update a record in place and return its (possibly new) ID."""
        pass

    @abstractmethod
    def delete_record(self, record_id: str) -> None:
        """Delete a record by ID."""
        pass


class InfobloxClient(IPAMBackend):
    """Infoblox WAPI client."""

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        ssl_verify: bool = True,
        use_cookies: bool = False,
        wapi_version: str = "v2.7",
        timeout_seconds: float = 30.0,
    ):
        base = host.strip().rstrip("/")
        if "://" not in base:
            base = f"https://{base}"
        self._url = f"{base}/wapi/{wapi_version}"
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.auth = HTTPBasicAuth(username, password)
        self._session.verify = ssl_verify
        if not use_cookies:
            # An empty allow-list refuses every cookie, so each call re-authenticates.
            self._session.cookies.set_policy(http.cookiejar.DefaultCookiePolicy(allowed_domains=[]))

    @property
    def name(self) -> str:
        return "Infoblox"

    @property
    def url(self) -> str:
        return self._url

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f"{self._url}/{path.lstrip('/')}"
        try:
            response = self._session.request(
                method, url, params=params, json=payload, timeout=self._timeout
            )
        except requests.exceptions.RequestException as e:
            raise BackendError(f"{method} {path} failed: {e}") from e

        body = response.text.strip()
        if response.status_code == 404 or (
            response.status_code == 400 and "not found" in body.lower()
        ):
            raise NotFoundError(
                f"{method} {path}: {body or 'not found'}", status_code=response.status_code
            )
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise BackendError(
                f"{method} {path} failed: {e}: {body}", status_code=response.status_code
            ) from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise SerializationError(f"{method} {path} returned invalid JSON: {e}") from e

    def test_connection(self) -> bool:
        try:
            self._request("GET", "grid")
            logger.info(f"{self.name} connection successful")
            return True
        except InfobloxError as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def find_network(self, field: str, value: str) -> List[Dict[str, Any]]:
        result = self._request("GET", "network", params={field: value})
        if not isinstance(result, list):
            raise SerializationError(
                f"Expected a list from network find, got {type(result).__name__}"
            )
        return result

    def next_available_ips(self, network_ref: str, count: int, exclude: List[str]) -> Any:
        payload: Dict[str, Any] = {"num": count}
        if exclude:
            payload["exclude"] = list(exclude)
        return self._request(
            "POST", network_ref, params={"_function": "next_available_ip"}, payload=payload
        )

    def create_record(self, fields: Dict[str, Any], return_fields: List[str]) -> str:
        result = self._request(
            "POST", "record:a", params=_return_fields_param(return_fields), payload=fields
        )
        return _extract_ref(result)

    def get_record(self, record_id: str, return_fields: List[str]) -> Dict[str, Any]:
        result = self._request("GET", record_id, params=_return_fields_param(return_fields))
        if not isinstance(result, dict):
            raise SerializationError(
                f"Expected an object for {record_id}, got {type(result).__name__}"
            )
        return result

    def update_record(
        self, record_id: str, fields: Dict[str, Any], return_fields: List[str]
    ) -> str:
        result = self._request(
            "PUT", record_id, params=_return_fields_param(return_fields), payload=fields
        )
        return _extract_ref(result)

    def delete_record(self, record_id: str) -> None:
        self._request("DELETE", record_id)


def _return_fields_param(return_fields: List[str]) -> Dict[str, str]:
    return {"_return_fields": ",".join(return_fields)} if return_fields else {}


def _extract_ref(result: Any) -> str:
    """Pull the object reference out of a WAPI create/update response.

    WAPI answers with the bare reference, or with the object itself when
    ``_return_fields`` was requested.
    """
    ref = result.get("_ref") if isinstance(result, dict) else result
    if not isinstance(ref, str) or not ref:
        raise SerializationError(f"Unable to determine record reference from response: {result!r}")
    return ref


# =============================================================================
# Address Resolver
# =============================================================================


@dataclass(frozen=True)
class NextAvailableIPResponse:
    """Decoded ``next_available_ip`` response."""

    ips: List[str]

    @classmethod
    def from_payload(cls, payload: Any) -> "NextAvailableIPResponse":
        ips = payload.get("ips") if isinstance(payload, dict) else None
        if not isinstance(ips, list) or not all(isinstance(ip, str) for ip in ips):
            raise SerializationError(
                f"unable to determine address from response: {payload!r}"
            )
        return cls(ips=list(ips))


def resolve_addresses(
    client: IPAMBackend, cidr: str, exclude: Iterable[str], count: int = 1
) -> List[str]:
    """Reserve ``count`` free addresses in the network identified by ``cidr``.

    Args:
        client: Backend to query
        cidr: Network in CIDR notation; must exist in the backend
        exclude: Addresses that must never be returned
        count: Exact number of addresses wanted

    Returns:
        Addresses in the order the backend handed them out

    Raises:
        ValidationError: count is below one
        NotFoundError: no network matches ``cidr``
        SerializationError: the backend response has an unexpected shape
        AllocationError: the backend returned the wrong number of addresses
            or an excluded one
    """
    if count < 1:
        raise ValidationError(f"Invalid ip_count: {count}")

    try:
        networks = client.find_network("network", cidr)
    except InfobloxError as e:
        logger.error(f"Unable to invoke find on cidr: {cidr}, {e}")
        raise

    if not networks:
        raise NotFoundError(f"Empty response from network find. Is {cidr} a valid network?")

    network_ref = networks[0].get("_ref") if isinstance(networks[0], dict) else None
    if not isinstance(network_ref, str) or not network_ref:
        raise SerializationError(f"Network lookup for {cidr} returned no reference")

    excluded = sorted(set(exclude))
    logger.debug(f"Requesting {count} address(es) from {network_ref}, excluding {excluded}")

    try:
        raw = client.next_available_ips(network_ref, count, excluded)
    except InfobloxError as e:
        logger.error(f"Unable to allocate next available IP in {cidr}: {e}")
        raise

    logger.debug(f"next_available_ip returned {raw!r}")
    response = NextAvailableIPResponse.from_payload(raw)

    if len(response.ips) != count:
        raise AllocationError(
            f"unable to get an IP address from {cidr}: "
            f"wanted {count}, got {len(response.ips)}"
        )

    leaked = sorted(set(response.ips) & set(excluded))
    if leaked:
        raise AllocationError(
            f"unable to get an IP address from {cidr}: "
            f"backend returned excluded address(es) {', '.join(leaked)}"
        )

    return response.ips


# =============================================================================
# Resource Interface and Implementations
# =============================================================================


class Resource(ABC):
    """Create/read/update/delete contract shared by every resource type."""

    schema: Dict[str, Attribute] = {}

    @abstractmethod
    def create(self, data: ResourceData, client: IPAMBackend) -> None:
        pass

    @abstractmethod
    def read(self, data: ResourceData, client: IPAMBackend) -> None:
        pass

    @abstractmethod
    def update(self, data: ResourceData, client: IPAMBackend) -> None:
        pass

    @abstractmethod
    def delete(self, data: ResourceData, client: IPAMBackend) -> None:
        pass


class HostRecordResource(Resource):
    """A record bound to a freshly allocated address (``infoblox_record``)."""

    schema = HOST_SCHEMA
    RETURN_FIELDS = ["ttl", "ipv4addr", "name"]

    def create(self, data: ResourceData, client: IPAMBackend) -> None:
        exclude = data.get("exclude")
        cidr, name, domain = self._validated(data, check_cidr=True)
        ttl, has_ttl = data.get_ok("ttl")
        if has_ttl:
            _check_ttl(ttl)

        address = resolve_addresses(client, cidr, exclude, count=1)[0]

        record: Dict[str, Any] = {"name": _join_fqdn(name, domain)}
        if has_ttl:
            record["ttl"] = int(ttl)
        record["ipv4addr"] = address

        logger.debug(f"Infoblox record create configuration: {record}")

        try:
            record_id = client.create_record(record, self.RETURN_FIELDS)
        except InfobloxError as e:
            logger.warning(
                f"Address {address} from {cidr} was resolved but never bound to {record['name']}"
            )
            raise _with_context(e, f"Failed to create Infoblox record {record['name']}")

        data.set_id(record_id)
        logger.info(f"Record ID: {data.id}")

        self.read(data, client)

    def read(self, data: ResourceData, client: IPAMBackend) -> None:
        try:
            record = client.get_record(data.id, self.RETURN_FIELDS)
        except InfobloxError as e:
            raise _with_context(e, f"Couldn't find Infoblox A record {data.id}")

        fqdn = record.get("name")
        if not isinstance(fqdn, str) or not fqdn:
            raise SerializationError(f"Record {data.id} has no name: {record!r}")

        address = record.get("ipv4addr")
        data.set("address", [address] if address else [])
        name, domain = _split_fqdn(fqdn)
        data.set("name", name)
        data.set("domain", domain)
        if record.get("ttl") is not None:
            data.set("ttl", str(record["ttl"]))

    def update(self, data: ResourceData, client: IPAMBackend) -> None:
        _, name, domain = self._validated(data, check_cidr=False)
        ttl, has_ttl = data.get_ok("ttl")
        if has_ttl:
            _check_ttl(ttl)

        try:
            client.get_record(data.id, self.RETURN_FIELDS)
        except InfobloxError as e:
            raise _with_context(e, f"Couldn't find Infoblox record {data.id}")

        record: Dict[str, Any] = {"name": _join_fqdn(name, domain)}
        if has_ttl:
            record["ttl"] = int(ttl)

        logger.debug(f"Infoblox record update configuration: {record}")

        try:
            record_id = client.update_record(data.id, record, self.RETURN_FIELDS)
        except InfobloxError as e:
            raise _with_context(e, f"Failed to update Infoblox record {data.id}")

        # Infoblox references embed the record name, so a rename yields a new ID.
        if record_id != data.id:
            logger.info(f"Record ID changed on update: {data.id} -> {record_id}")
        data.set_id(record_id)

        self.read(data, client)

    def delete(self, data: ResourceData, client: IPAMBackend) -> None:
        logger.info(f"Deleting Infoblox record: {data.get('name')}, {data.id}")

        try:
            client.get_record(data.id, self.RETURN_FIELDS)
        except InfobloxError as e:
            raise _with_context(e, f"Couldn't find Infoblox A record {data.id}")

        try:
            client.delete_record(data.id)
        except InfobloxError as e:
            raise _with_context(e, f"Error deleting Infoblox A record {data.id}")

        data.set_id("")

    @staticmethod
    def _validated(data: ResourceData, *, check_cidr: bool) -> Tuple[str, str, str]:
        cidr = data.get("cidr")
        if check_cidr and not cidr:
            raise ValidationError("Invalid cidr block")
        name = data.get("name")
        if not name:
            raise ValidationError("Invalid name")
        domain = data.get("domain")
        if not domain:
            raise ValidationError("Invalid domain")
        return cidr, name, domain


class AllocationResource(Resource):
    """Bare address allocation (``infoblox_ip``).

    Infoblox has no object for an address that is reserved but not yet used
    by a record, so the resource only exists at the moment of allocation.
    Its ID is the allocated addresses joined by spaces. Read, update and
    delete therefore do nothing and never touch the client.
    """

    schema = IP_SCHEMA

    def create(self, data: ResourceData, client: IPAMBackend) -> None:
        cidr = data.get("cidr")
        logger.debug(f"CIDR from resource declaration: {cidr}")
        if not cidr:
            raise ValidationError("Invalid cidr block")

        exclude = data.get("exclude")
        logger.debug(f"Excluding addresses = {sorted(exclude)}")

        addresses = resolve_addresses(client, cidr, exclude, count=data.get("ip_count"))

        data.set_id(" ".join(addresses))
        data.set("addresses", addresses)
        logger.info(f"Allocated {', '.join(addresses)} from {cidr}")

    def read(self, data: ResourceData, client: IPAMBackend) -> None:
        return None

    def update(self, data: ResourceData, client: IPAMBackend) -> None:
        return None

    def delete(self, data: ResourceData, client: IPAMBackend) -> None:
        return None


RESOURCES: Dict[str, Resource] = {
    "infoblox_record": HostRecordResource(),
    "infoblox_ip": AllocationResource(),
}

# =============================================================================
# Provider Configuration
# =============================================================================


@dataclass(frozen=True)
class ProviderConfig:
    """Connection settings for the Infoblox provider."""

    host: str
    username: str
    password: str
    sslverify: bool = PROVIDER_SCHEMA["sslverify"].default
    usecookies: bool = PROVIDER_SCHEMA["usecookies"].default
    wapi_version: str = PROVIDER_SCHEMA["wapi_version"].default

    @classmethod
    def from_sources(cls, overrides: Optional[Dict[str, Any]] = None) -> "ProviderConfig":
        """Build the config from INFOBLOX_* settings, with ``overrides`` winning.

        Values are coerced through ``PROVIDER_SCHEMA``; blank settings fall
        back to the schema defaults.
        """
        overrides = dict(overrides or {})
        unknown = sorted(set(overrides) - set(PROVIDER_SCHEMA))
        if unknown:
            raise ValidationError(f"Unsupported provider setting(s): {', '.join(unknown)}")

        settings: Dict[str, Any] = {
            "host": INFOBLOX_HOST,
            "username": INFOBLOX_USERNAME,
            "password": INFOBLOX_PASSWORD,
            "sslverify": INFOBLOX_SSLVERIFY,
            "usecookies": INFOBLOX_USECOOKIES,
            "wapi_version": INFOBLOX_WAPI_VERSION,
        }
        settings.update({k: v for k, v in overrides.items() if v is not None and v != ""})
        data = ResourceData(
            PROVIDER_SCHEMA, {k: (None if v == "" else v) for k, v in settings.items()}
        )

        return cls(
            host=data.get("host").strip(),
            username=data.get("username"),
            password=data.get("password"),
            sslverify=data.get("sslverify"),
            usecookies=data.get("usecookies"),
            wapi_version=data.get("wapi_version").strip() or cls.wapi_version,
        )

    def missing_settings(self) -> List[str]:
        """Names of required provider settings that are blank."""
        return [
            key for key, attr in PROVIDER_SCHEMA.items() if attr.required and not getattr(self, key)
        ]


def create_client(config: ProviderConfig) -> InfobloxClient:
    """Factory function to create the configured Infoblox client."""
    client = InfobloxClient(
        config.host,
        config.username,
        config.password,
        ssl_verify=config.sslverify,
        use_cookies=config.usecookies,
        wapi_version=config.wapi_version,
    )
    logger.info(f"Infoblox client configured for user: {config.username}")
    return client


# =============================================================================
# Utility Functions
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _join_fqdn(name: str, domain: str) -> str:
    return ".".join([name, domain])


def _split_fqdn(fqdn: str) -> Tuple[str, str]:
    """Split ``fqdn`` into its first label and the remaining domain."""
    labels = fqdn.split(".")
    return labels[0], ".".join(labels[1:])


def _check_ttl(ttl: str) -> None:
    try:
        int(ttl)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid ttl: {ttl!r}")


def load_resources(config_path: str) -> Tuple[Dict[str, Any], Dict[str, Dict[str, Any]]]:
    """Load the provider block and resource declarations.

    Later files override earlier ones key by key when ``config_path`` is a
    directory.

    Returns:
        Tuple of (provider overrides, resources keyed by resource name)
    """
    config_files = find_config_files(config_path)
    if not config_files:
        raise ValidationError(f"No resource files found at {config_path}")

    provider: Dict[str, Any] = {}
    resources: Dict[str, Dict[str, Any]] = {}

    for config_file in config_files:
        with open(config_file, "r") as f:
            config_data = yaml.safe_load(f) or {}

        if not isinstance(config_data, dict):
            raise ValidationError(f"Resource file {config_file} must contain a mapping")

        provider_block = config_data.get("provider") or {}
        if not isinstance(provider_block, dict):
            raise ValidationError(f"'provider' in {config_file} must be a mapping")
        provider.update(provider_block)

        declared = config_data.get("resources") or {}
        if not isinstance(declared, dict):
            raise ValidationError(f"'resources' in {config_file} must be a mapping")

        for key, item in declared.items():
            if not isinstance(item, dict) or not item.get("type"):
                raise ValidationError(f"Resource '{key}' in {config_file} needs a 'type'")
            resources[str(key)] = dict(item)

    logger.debug(f"Loaded {len(resources)} resource(s) from {len(config_files)} file(s)")
    return provider, resources


# =============================================================================
# State Management
# =============================================================================


class StateStore:
    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"version": 1, "resources": {}}
        try:
            return json.loads(self.path.read_text("utf-8"))
        except Exception as e:
            logger.warning(f"Failed to load state file {self.path}: {e}")
            return {"version": 1, "resources": {}}

    def save(self, state: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(state, indent=2, sort_keys=True), "utf-8")
        tmp_path.replace(self.path)


# =============================================================================
# Resource Applier
# =============================================================================


@dataclass
class ApplyResult:
    """Outcome of one apply pass, by resource key."""

    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    replaced: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class ResourceApplier:
    """Drives the resource reconcilers from declarations and a state file.

    Each declared resource is created when unknown, refreshed with read,
    then updated or replaced when the declaration differs from what the
    backend reports. Resources that disappear from the declarations are
    deleted.
    """

    def __init__(
        self,
        *,
        client: IPAMBackend,
        state_store: StateStore,
        resources: Optional[Dict[str, Resource]] = None,
    ):
        self.client = client
        self.state_store = state_store
        self.resources = resources if resources is not None else RESOURCES

    def _store(
        self, key: str, resource_type: str, data: ResourceData, entries: Dict[str, Any]
    ) -> None:
        entries[key] = {"type": resource_type, "id": data.id, "attributes": data.to_state()}

    def _create(
        self,
        key: str,
        resource_type: str,
        resource: Resource,
        attrs: Dict[str, Any],
        entries: Dict[str, Any],
    ) -> None:
        data = ResourceData(resource.schema, attrs)
        logger.info(f"Creating {resource_type} '{key}'")
        try:
            resource.create(data, self.client)
        finally:
            # Keep whatever identity the backend issued, even if the follow-up read failed.
            if data.id:
                self._store(key, resource_type, data, entries)

    def _destroy(self, key: str, entries: Dict[str, Any]) -> None:
        entry = entries[key]
        resource_type = entry.get("type", "")
        resource = self.resources.get(resource_type)
        if resource is None:
            logger.warning(f"Dropping '{key}' of unknown type '{resource_type}' from state")
            entries.pop(key, None)
            return

        data = ResourceData.from_state(
            resource.schema, entry.get("id", ""), entry.get("attributes", {})
        )
        logger.info(f"Deleting {resource_type} '{key}'")
        resource.delete(data, self.client)
        entries.pop(key, None)

    @staticmethod
    def _changed_attributes(
        schema: Dict[str, Attribute], current: ResourceData, desired: ResourceData
    ) -> List[str]:
        return sorted(
            key
            for key, attr in schema.items()
            if not attr.computed and current.get(key) != desired.get(key)
        )

    def _apply_resource(
        self,
        key: str,
        resource_type: str,
        attrs: Dict[str, Any],
        entries: Dict[str, Any],
        result: ApplyResult,
    ) -> None:
        resource = self.resources.get(resource_type)
        if resource is None:
            raise ValidationError(f"Unsupported resource type '{resource_type}'")
        validate_config(resource.schema, attrs)

        entry = entries.get(key)
        if entry is not None and entry.get("type") != resource_type:
            logger.info(
                f"Resource '{key}' changed type {entry.get('type')} -> {resource_type}, replacing"
            )
            self._destroy(key, entries)
            self._create(key, resource_type, resource, attrs, entries)
            result.replaced.append(key)
            return

        if entry is None:
            self._create(key, resource_type, resource, attrs, entries)
            result.created.append(key)
            return

        data = ResourceData.from_state(
            resource.schema, entry.get("id", ""), entry.get("attributes", {})
        )
        try:
            resource.read(data, self.client)
        except NotFoundError as e:
            logger.warning(f"Resource '{key}' is gone from {resource_type}, re-creating: {e}")
            entries.pop(key, None)
            self._create(key, resource_type, resource, attrs, entries)
            result.created.append(key)
            return
        self._store(key, resource_type, data, entries)

        desired = ResourceData(resource.schema, attrs)
        changed = self._changed_attributes(resource.schema, data, desired)
        if not changed:
            result.unchanged.append(key)
            return

        force_new = [k for k in changed if resource.schema[k].force_new]
        if force_new:
            logger.info(f"Resource '{key}' must be replaced ({', '.join(force_new)} changed)")
            self._destroy(key, entries)
            self._create(key, resource_type, resource, attrs, entries)
            result.replaced.append(key)
            return

        logger.info(f"Updating {resource_type} '{key}' ({', '.join(changed)} changed)")
        for attr_key in changed:
            data.set(attr_key, desired.get(attr_key))
        resource.update(data, self.client)
        self._store(key, resource_type, data, entries)
        result.updated.append(key)

    def apply_once(self, declared: Dict[str, Dict[str, Any]]) -> ApplyResult:
        state = self.state_store.load()
        state.setdefault("version", 1)
        entries: Dict[str, Any] = state.setdefault("resources", {})
        result = ApplyResult()

        for key in sorted(declared):
            attrs = dict(declared[key])
            resource_type = str(attrs.pop("type", "") or "")
            try:
                self._apply_resource(key, resource_type, attrs, entries, result)
            except InfobloxError as e:
                logger.error(f"Resource '{key}' failed: {e}")
                result.failed[key] = str(e)

        for key in sorted(set(entries) - set(declared)):
            try:
                self._destroy(key, entries)
                result.deleted.append(key)
            except InfobloxError as e:
                logger.error(f"Failed to delete '{key}': {e}")
                result.failed[key] = str(e)

        self.state_store.save(state)

        logger.info(
            f"Apply complete: {len(result.created)} created, {len(result.updated)} updated, "
            f"{len(result.replaced)} replaced, {len(result.deleted)} deleted, "
            f"{len(result.unchanged)} unchanged, {len(result.failed)} failed"
        )
        return result


# =============================================================================
# Main
# =============================================================================


def validate_provider_config(config: ProviderConfig) -> bool:
    """Validate provider configuration."""
    errors = [
        f"INFOBLOX_{key.upper()} (or provider.{key}) is required: "
        f"{PROVIDER_SCHEMA[key].description}"
        for key in config.missing_settings()
    ]

    if not config.sslverify:
        logger.warning("⚠️  TLS verification is disabled for Infoblox.")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def main():
    """Main entry point."""
    logger.info(f"infoblox-ipam: {RESOURCES_PATH}")

    try:
        provider_overrides, declared = load_resources(RESOURCES_PATH)
        config = ProviderConfig.from_sources(provider_overrides)
    except (InfobloxError, OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load configuration: {e}")
        sys.exit(1)

    if not validate_provider_config(config):
        logger.error("Configuration validation failed")
        sys.exit(1)

    client = create_client(config)

    logger.info(f"Infoblox WAPI: {client.url}")
    logger.info(f"Declared resources: {', '.join(sorted(declared)) or '(none)'}")
    logger.info(f"Sync mode: {SYNC_MODE}")
    if SYNC_MODE == "watch":
        logger.info(f"Poll interval: {POLL_INTERVAL_SECONDS}s")

    if not client.test_connection():
        logger.error(f"Cannot connect to {client.name}. Exiting.")
        sys.exit(1)

    applier = ResourceApplier(client=client, state_store=StateStore(STATE_PATH))

    try:
        if SYNC_MODE == "once":
            result = applier.apply_once(declared)
            if not result.ok:
                sys.exit(1)
            return

        if SYNC_MODE != "watch":
            logger.error(f"Invalid SYNC_MODE: {SYNC_MODE}. Use 'once' or 'watch'")
            sys.exit(1)

        while True:
            applier.apply_once(declared)
            time.sleep(max(5, POLL_INTERVAL_SECONDS))

            try:
                _, declared = load_resources(RESOURCES_PATH)
            except (InfobloxError, OSError, yaml.YAMLError) as e:
                logger.error(f"Failed to reload resources: {e}")
                logger.warning("Continuing with previous resources")

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
