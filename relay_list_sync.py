#!/usr/bin/env python3
"""
Relay List Sync

Keeps a Cloudflare account-level IP list in step with the published
iCloud Private Relay egress ranges. Meant to be triggered by an external
scheduler (cron, systemd timer, Kubernetes CronJob) every 14 days.

Features:
- Single-family (IP_LIST_SOURCE_URL) or dual-stack (IPV4/IPV6) feeds
- Lexical validation of every IPv4/IPv6 address and CIDR literal
- Find-or-create of the target list by name
- Full-replace update of the list items (never a merge)
- Empty-feed guard so a degraded upstream never wipes the list
- Optional Prometheus Pushgateway metrics and webhook notifications
- Informational /info endpoint (FastAPI)

License: MIT
"""

from __future__ import annotations

import argparse
import enum
import ipaddress
import json
import logging
import os
import re
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import requests
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CollectorRegistry, Gauge, Histogram, delete_from_gateway, push_to_gateway
from starlette.exceptions import HTTPException as StarletteHTTPException

__version__ = "1.2.0"

USER_AGENT = f"relay-list-sync/{__version__}"

WORKER_NAME = "iCloud Private Relay IP List Manager"
CRON_SCHEDULE = "0 0 */14 * *"  # Every 14th day at midnight UTC
CRON_TIME_ZONE = "UTC"

CLOUDFLARE_API_BASE = "https://api.cloudflare.com/client/v4"
DEFAULT_LIST_DESCRIPTION = "Managed List of iCloud Private Relay egress IP addresses"


# =============================================================================
# Errors
# =============================================================================

class ConfigError(Exception):
    """Raised when the environment cannot be turned into a Config."""
    pass


class SyncError(Exception):
    """
    Base class for every failure raised inside a sync run.

    `detail` holds the structured error payload returned by the remote API
    (parsed JSON when possible, truncated text otherwise).
    """

    stage = "sync"

    def __init__(self, message: str, detail: Any = None):
        super().__init__(message)
        self.detail = detail

    def __str__(self) -> str:
        message = super().__str__()
        if self.detail is None:
            return message
        if isinstance(self.detail, (dict, list)):
            return f"{message}: {json.dumps(self.detail)}"
        return f"{message}: {self.detail}"


class FetchError(SyncError):
    """Upstream feed unreachable, non-2xx, or not a JSON array."""
    stage = "fetch"


class EmptyValidatedSetError(SyncError):
    """No entry survived validation; the run is a no-op."""
    stage = "empty"


class ListLookupError(SyncError):
    stage = "lookup"


class ListCreateError(SyncError):
    stage = "create"


class ListUpdateError(SyncError):
    stage = "update"


# =============================================================================
# Environment Variable Validation
# =============================================================================

# Boolean variables read by Config.from_env
BOOL_ENV_VARS: set[str] = {
    "ALLOW_IPV6",
    "DEDUPLICATE",
    "DRY_RUN",
    "LOG_TIMESTAMPS",
    "METRICS_ENABLED",
}

# Feed URL variables (used for typo detection)
SOURCE_URL_ENV_VARS: set[str] = {
    "IP_LIST_SOURCE_URL",
    "IPV4_LIST_SOURCE_URL",
    "IPV6_LIST_SOURCE_URL",
}

# Valid boolean string values (case-insensitive)
VALID_BOOL_VALUES: set[str] = {"true", "false", "1", "0", "yes", "no", "on", "off"}
TRUE_BOOL_VALUES: set[str] = {"true", "1", "yes", "on"}


def find_similar_vars(unknown_var: str, valid_vars: set[str]) -> list[str]:
    """
    Find similar variable names for typo suggestions.

    Uses substring matching, underscore-insensitive comparison and a rough
    character-overlap ratio.
    """
    suggestions = []
    unknown_lower = unknown_var.lower()

    for valid in sorted(valid_vars):
        valid_lower = valid.lower()

        if unknown_lower in valid_lower or valid_lower in unknown_lower:
            suggestions.append(valid)
            continue

        unknown_compact = unknown_lower.replace("_", "")
        valid_compact = valid_lower.replace("_", "")
        if unknown_compact == valid_compact:
            suggestions.append(valid)
            continue

        common = sum(1 for c in unknown_compact if c in valid_compact)
        if common >= len(valid_compact) * 0.9 and abs(len(unknown_compact) - len(valid_compact)) <= 2:
            suggestions.append(valid)

    return suggestions


def validate_bool_env_vars(
    environ: Optional[Mapping[str, str]] = None,
    logger: Optional[logging.Logger] = None,
) -> tuple[bool, list[str]]:
    """
    Validate boolean environment variables and look for misspelled feed URLs.

    Checks:
    1. Every known boolean variable that is set holds a valid boolean string
    2. Warns about unknown *_SOURCE_URL variables (possible typos)

    Returns (is_valid, list_of_errors).
    """
    environ = os.environ if environ is None else environ
    errors: list[str] = []

    for var_name, value in environ.items():
        if var_name in BOOL_ENV_VARS:
            if value.lower() not in VALID_BOOL_VALUES:
                errors.append(
                    f"Invalid value for {var_name}: '{value}'\n"
                    f"  Expected one of: true, false, 1, 0, yes, no, on, off (case-insensitive)"
                )
            continue

        if var_name.endswith(("_SOURCE_URL", "_SOURCE_URI", "_SOURCE")) and var_name not in SOURCE_URL_ENV_VARS:
            if logger is None:
                continue
            suggestions = find_similar_vars(var_name, SOURCE_URL_ENV_VARS)
            if suggestions:
                logger.warning(
                    f"Unknown environment variable: {var_name}\n"
                    f"  Did you mean: {', '.join(suggestions[:3])}?"
                )
            else:
                logger.warning(f"Unknown environment variable: {var_name} (ignored)")

    return len(errors) == 0, errors


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class FeedSource:
    """One upstream feed publishing a JSON array of address literals."""
    name: str
    url: str
    family: str  # "any", "ipv4" or "ipv6"


def read_secret_file(file_path: str) -> str:
    """Read a secret from a file (Docker secrets style: the whole file is the value)."""
    with open(file_path, "r", encoding="utf-8") as f:
        return f.read().strip()


@dataclass
class Config:
    """Configuration for one invocation, loaded from environment variables."""

    # Cloudflare account and credentials
    account_id: str = ""
    api_token: str = ""
    api_base_url: str = CLOUDFLARE_API_BASE

    # Target list
    list_name: str = ""
    list_description: str = DEFAULT_LIST_DESCRIPTION

    # Upstream feeds
    ip_list_source_url: str = ""
    ipv4_list_source_url: str = ""
    ipv6_list_source_url: str = ""

    # Validation
    allow_ipv6: bool = False
    deduplicate: bool = False

    # HTTP
    fetch_timeout: int = 60
    api_timeout: int = 30

    # Logging
    log_level: str = "INFO"
    log_timestamps: bool = True

    # Dry run mode
    dry_run: bool = False

    # Prometheus metrics
    metrics_enabled: bool = False
    pushgateway_url: str = "localhost:9091"

    # Webhook notifications
    webhook_url: str = ""
    webhook_type: str = "generic"  # generic, discord, slack

    # Same-host run lock
    lock_file: str = ""

    # /info endpoint
    info_host: str = "127.0.0.1"
    info_port: int = 8787

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """Load configuration from environment variables (and a .env file, if any)."""
        if environ is None:
            load_dotenv()
            environ = os.environ

        def get(key: str, default: str = "") -> str:
            return environ.get(key, default).strip()

        def get_bool(key: str, default: bool) -> bool:
            return get(key, str(default)).lower() in TRUE_BOOL_VALUES

        def get_int(key: str, default: int) -> int:
            raw = get(key, str(default))
            try:
                return int(raw)
            except ValueError:
                raise ConfigError(f"{key} must be an integer, got '{raw}'") from None

        api_token = get("API_TOKEN")
        token_file = get("API_TOKEN_FILE")
        if token_file:
            try:
                api_token = read_secret_file(token_file)
            except OSError as e:
                raise ConfigError(f"Cannot read API_TOKEN_FILE {token_file}: {e}") from e

        return cls(
            account_id=get("ACCOUNT_ID"),
            api_token=api_token,
            api_base_url=get("CLOUDFLARE_API_BASE", CLOUDFLARE_API_BASE).rstrip("/"),
            list_name=get("LIST_NAME"),
            list_description=get("LIST_DESCRIPTION", DEFAULT_LIST_DESCRIPTION),
            ip_list_source_url=get("IP_LIST_SOURCE_URL"),
            ipv4_list_source_url=get("IPV4_LIST_SOURCE_URL"),
            ipv6_list_source_url=get("IPV6_LIST_SOURCE_URL"),
            allow_ipv6=get_bool("ALLOW_IPV6", False),
            deduplicate=get_bool("DEDUPLICATE", False),
            fetch_timeout=get_int("FETCH_TIMEOUT", 60),
            api_timeout=get_int("API_TIMEOUT", 30),
            log_level=get("LOG_LEVEL", "INFO").upper(),
            log_timestamps=get_bool("LOG_TIMESTAMPS", True),
            dry_run=get_bool("DRY_RUN", False),
            metrics_enabled=get_bool("METRICS_ENABLED", False),
            pushgateway_url=get("METRICS_PUSHGATEWAY_URL", "localhost:9091"),
            webhook_url=get("WEBHOOK_URL"),
            webhook_type=get("WEBHOOK_TYPE", "generic").lower(),
            lock_file=get("LOCK_FILE"),
            info_host=get("INFO_HOST", "127.0.0.1"),
            info_port=get_int("INFO_PORT", 8787),
        )

    @property
    def dual_stack(self) -> bool:
        return bool(self.ipv4_list_source_url and self.ipv6_list_source_url)

    @property
    def ipv6_enabled(self) -> bool:
        return self.dual_stack or self.allow_ipv6

    @property
    def sources(self) -> list[FeedSource]:
        """Feeds to fetch, in concatenation order (IPv4 before IPv6)."""
        if self.dual_stack:
            return [
                FeedSource("ipv4", self.ipv4_list_source_url, "ipv4"),
                FeedSource("ipv6", self.ipv6_list_source_url, "ipv6"),
            ]
        if self.ip_list_source_url:
            return [FeedSource("ip", self.ip_list_source_url, "any")]
        return []


def validate_config(config: Config) -> list[str]:
    """
    Check that a Config is complete enough to start a run.

    Returns a list of human-readable problems (empty when valid).
    """
    problems: list[str] = []

    if not config.account_id:
        problems.append("ACCOUNT_ID is not set")
    if not config.api_token:
        problems.append("API_TOKEN (or API_TOKEN_FILE) is not set")
    if not config.list_name:
        problems.append("LIST_NAME is not set")

    if bool(config.ipv4_list_source_url) != bool(config.ipv6_list_source_url):
        problems.append("IPV4_LIST_SOURCE_URL and IPV6_LIST_SOURCE_URL must be set together")
    elif not config.sources:
        problems.append("Set IP_LIST_SOURCE_URL, or IPV4_LIST_SOURCE_URL + IPV6_LIST_SOURCE_URL")

    for source in config.sources:
        if not source.url.startswith(("http://", "https://")):
            problems.append(f"Source URL for {source.name} is not http(s): {source.url}")

    if config.fetch_timeout <= 0:
        problems.append("FETCH_TIMEOUT must be positive")
    if config.api_timeout <= 0:
        problems.append("API_TIMEOUT must be positive")
    if config.webhook_type not in ("generic", "discord", "slack"):
        problems.append(f"WEBHOOK_TYPE must be generic, discord or slack (got '{config.webhook_type}')")

    return problems


# =============================================================================
# Address Validation
# =============================================================================

# Dotted-quad, each octet 0-255 in plain decimal (no leading zeros)
_OCTET = r"(25[0-5]|2[0-4][0-9]|1[0-9]{2}|[1-9]?[0-9])"
IPV4_PATTERN = re.compile(rf"{_OCTET}(\.{_OCTET}){{3}}")

# Prefix lengths accepted on CIDR blocks
IPV4_PREFIX_RANGE = (8, 32)
IPV6_PREFIX_RANGE = (0, 128)

_PREFIX_PATTERN = re.compile(r"0|[1-9][0-9]{0,2}")


@dataclass(frozen=True)
class AddressEntry:
    """A validated address literal, tagged by family and form."""
    literal: str
    version: int  # 4 or 6
    is_network: bool


def _valid_prefix(prefix: str, bounds: tuple[int, int]) -> bool:
    if not _PREFIX_PATTERN.fullmatch(prefix):
        return False
    low, high = bounds
    return low <= int(prefix) <= high


def _is_ipv6_literal(value: str) -> bool:
    # Zone ids ("%eth0") are a host-local concept, never valid in a list
    if not value or "%" in value or value.strip() != value:
        return False
    try:
        ipaddress.IPv6Address(value)
    except ValueError:
        return False
    return True


def parse_address(value: Any, allow_ipv6: bool = True) -> Optional[AddressEntry]:
    """
    Lexically parse an IPv4/IPv6 address or CIDR literal.

    Accepts:
    - IPv4 hosts: 1.2.3.4
    - IPv4 blocks with a /8 to /32 prefix: 1.2.3.0/24
    - IPv6 hosts and blocks with a /0 to /128 prefix (only when allow_ipv6)

    No DNS lookups and no private/reserved range checks. Host bits set on a
    block (1.2.3.4/24) are not an error.

    Returns an AddressEntry, or None when the literal is rejected.
    """
    if not isinstance(value, str) or not value:
        return None

    address, slash, prefix = value.partition("/")
    if slash and not prefix:
        return None

    if IPV4_PATTERN.fullmatch(address):
        if slash and not _valid_prefix(prefix, IPV4_PREFIX_RANGE):
            return None
        return AddressEntry(literal=value, version=4, is_network=bool(slash))

    if allow_ipv6 and ":" in address and _is_ipv6_literal(address):
        if slash and not _valid_prefix(prefix, IPV6_PREFIX_RANGE):
            return None
        return AddressEntry(literal=value, version=6, is_network=bool(slash))

    return None


def is_valid_address(value: Any, allow_ipv6: bool = True) -> bool:
    """Return True if value is a well-formed address or CIDR literal."""
    return parse_address(value, allow_ipv6=allow_ipv6) is not None


def filter_valid_entries(
    candidates: list[Any],
    allow_ipv6: bool = True,
    deduplicate: bool = False,
) -> tuple[list[AddressEntry], dict[str, int]]:
    """
    Filter raw feed values down to the validated set.

    Input order is preserved. Exact duplicates are kept unless deduplicate is
    set, in which case the first occurrence wins.

    Returns (validated_entries, rejected_counts) where rejected_counts maps each
    rejected value (repr for non-strings) to the number of times it was seen.
    """
    validated: list[AddressEntry] = []
    rejected: dict[str, int] = {}
    seen: set[str] = set()

    for candidate in candidates:
        entry = parse_address(candidate, allow_ipv6=allow_ipv6)
        if entry is None:
            key = candidate if isinstance(candidate, str) else repr(candidate)
            rejected[key] = rejected.get(key, 0) + 1
            continue
        if deduplicate:
            if entry.literal in seen:
                continue
            seen.add(entry.literal)
        validated.append(entry)

    return validated, rejected


# =============================================================================
# Prometheus Metrics: error message sanitization
# =============================================================================

# Fixed-category error labels. Raw exception strings carry hostnames, list
# ids and payloads and must never become label values.
_ERROR_PATTERNS: list[tuple[str, str]] = [
    ("ConnectionError",         "connection_error"),
    ("ConnectTimeout",          "connect_timeout"),
    ("ReadTimeout",             "read_timeout"),
    ("Timeout",                 "timeout"),
    ("SSLError",                "ssl_error"),
    ("TooManyRedirects",        "too_many_redirects"),
    ("EmptyValidatedSetError",  "empty_validated_set"),
    ("400",                     "http_400"),
    ("401",                     "http_401"),
    ("403",                     "http_403"),
    ("404",                     "http_404"),
    ("409",                     "http_409"),
    ("429",                     "http_429"),
    ("500",                     "http_500"),
    ("502",                     "http_502"),
    ("503",                     "http_503"),
    ("504",                     "http_504"),
    ("JSONDecodeError",         "json_decode_error"),
    ("not a JSON array",        "malformed_feed"),
]


def sanitize_error_message(exc: BaseException) -> str:
    """
    Convert an exception into a fixed-category string safe for use as a
    Prometheus label value.

    Patterns are tried in priority order against the class name and message
    of the exception and of its direct cause. Falls back to the class name.
    """
    chain = [exc]
    if exc.__cause__ is not None:
        chain.append(exc.__cause__)

    for pattern, category in _ERROR_PATTERNS:
        for item in chain:
            if pattern in type(item).__name__ or pattern in BaseException.__str__(item):
                return category

    return type(exc).__name__[:64]


# =============================================================================
# Prometheus Metrics
# =============================================================================

METRICS_JOB = "relay-list-sync"


class MetricsCollector:
    """
    Prometheus metrics for one sync run, pushed to a Pushgateway.

    Per-source:
      - relay_list_sync_source_status{source}            1 = fetched, 0 = failed
      - relay_list_sync_source_entries{source}           raw entries fetched
      - relay_list_sync_source_duration_seconds{source}

    Per-run:
      - relay_list_sync_validated_entries / _rejected_entries
      - relay_list_sync_list_items                       items written (0 unless reconciled)
      - relay_list_sync_run_success                      1 = list replaced or dry run
      - relay_list_sync_last_run_timestamp
      - relay_list_sync_duration_seconds (histogram)
      - relay_list_sync_errors_total{error_type, message}

    The registry is created per run and delete_from_gateway() runs before the
    push so label sets from earlier runs do not linger.
    """

    def __init__(self, pushgateway_url: Optional[str] = None, logger: Optional[logging.Logger] = None):
        self.pushgateway_url = pushgateway_url
        self.logger = logger or logging.getLogger("relay-list-sync")
        self.registry = CollectorRegistry()

        self.source_status = Gauge(
            "relay_list_sync_source_status",
            "Per-source fetch status: 1=success, 0=failed",
            ["source"],
            registry=self.registry,
        )
        self.source_entries = Gauge(
            "relay_list_sync_source_entries",
            "Number of raw entries fetched from each source",
            ["source"],
            registry=self.registry,
        )
        self.source_duration_seconds = Gauge(
            "relay_list_sync_source_duration_seconds",
            "Time taken to fetch each source (seconds)",
            ["source"],
            registry=self.registry,
        )
        self.validated_entries = Gauge(
            "relay_list_sync_validated_entries",
            "Entries that passed validation in the last run",
            registry=self.registry,
        )
        self.rejected_entries = Gauge(
            "relay_list_sync_rejected_entries",
            "Entries rejected by validation in the last run",
            registry=self.registry,
        )
        self.list_items = Gauge(
            "relay_list_sync_list_items",
            "Number of items written to the remote list in the last run",
            registry=self.registry,
        )
        self.run_success = Gauge(
            "relay_list_sync_run_success",
            "1 if the last run replaced the list (or completed a dry run), 0 otherwise",
            registry=self.registry,
        )
        self.last_run_timestamp = Gauge(
            "relay_list_sync_last_run_timestamp",
            "Unix timestamp of the last run",
            registry=self.registry,
        )
        self.errors_total = Gauge(
            "relay_list_sync_errors_total",
            "Run errors labelled by stage and sanitized message category",
            ["error_type", "message"],
            registry=self.registry,
        )
        self.duration_seconds = Histogram(
            "relay_list_sync_duration_seconds",
            "Duration of a full sync run in seconds",
            buckets=[1, 5, 10, 30, 60, 120, 300],
            registry=self.registry,
        )

    def record_source_success(self, source_name: str, entry_count: int, duration: float) -> None:
        self.source_status.labels(source=source_name).set(1)
        self.source_entries.labels(source=source_name).set(entry_count)
        self.source_duration_seconds.labels(source=source_name).set(duration)

    def record_source_failure(self, source_name: str, duration: float) -> None:
        self.source_status.labels(source=source_name).set(0)
        self.source_entries.labels(source=source_name).set(0)
        self.source_duration_seconds.labels(source=source_name).set(duration)

    def record_outcome(self, outcome: "SyncOutcome") -> None:
        """Update the per-run gauges at the end of a run."""
        self.validated_entries.set(outcome.validated_count)
        self.rejected_entries.set(outcome.rejected_count)
        self.list_items.set(outcome.item_count)
        self.run_success.set(1 if outcome.succeeded else 0)
        self.last_run_timestamp.set(time.time())
        self.duration_seconds.observe(outcome.duration_seconds)
        if outcome.error is not None:
            stage = getattr(outcome.error, "stage", "unexpected")
            self.errors_total.labels(
                error_type=stage,
                message=sanitize_error_message(outcome.error),
            ).set(1)

    def push(self) -> bool:
        """
        Push all metrics to the Pushgateway.

        Stale series are deleted first; a failed delete is only a warning.
        """
        if not self.pushgateway_url:
            return False
        try:
            try:
                delete_from_gateway(self.pushgateway_url, job=METRICS_JOB)
            except Exception as del_exc:
                self.logger.warning(
                    f"Could not delete stale metrics from Pushgateway "
                    f"({self.pushgateway_url}): {del_exc}"
                )

            push_to_gateway(self.pushgateway_url, job=METRICS_JOB, registry=self.registry)
            self.logger.info(f"Metrics pushed to Pushgateway at {self.pushgateway_url}")
            return True
        except Exception as e:
            self.logger.error(f"Failed to push metrics to {self.pushgateway_url}: {e}")
            return False


# =============================================================================
# HTTP Session
# =============================================================================

def create_http_session() -> requests.Session:
    """
    Create the HTTP session shared by the fetcher and the API client.

    No retry adapter is mounted: every request is a single attempt and
    recovery is left to the next scheduled run.
    """
    session = requests.Session()
    session.headers.update({"User-Agent": USER_AGENT})
    return session


def _error_payload(response: requests.Response) -> Any:
    """Structured error body of a failed API response, or truncated text."""
    try:
        return response.json()
    except ValueError:
        return response.text[:200]


# =============================================================================
# Source Fetcher
# =============================================================================

def fetch_source(
    session: requests.Session,
    source: FeedSource,
    timeout: int,
    logger: logging.Logger,
) -> list[Any]:
    """
    Fetch one upstream feed and return its entries as a list.

    The feed must answer with a 2xx status and a JSON array body. Elements
    are returned untouched; validation happens later.

    Raises FetchError on transport errors, non-2xx statuses or a body that
    is not a JSON array.
    """
    logger.debug(f"Fetching {source.name} feed from {source.url}")

    try:
        response = session.get(source.url, timeout=timeout)
    except requests.RequestException as e:
        raise FetchError(f"Failed to fetch {source.name} feed ({type(e).__name__})") from e

    if not response.ok:
        raise FetchError(f"Failed to fetch {source.name} feed ({response.status_code})")

    try:
        data = response.json()
    except ValueError as e:
        raise FetchError(f"{source.name} feed is not valid JSON") from e

    if not isinstance(data, list):
        raise FetchError(f"{source.name} feed is not a JSON array (got {type(data).__name__})")

    logger.debug(f"{source.name}: {len(data)} entries")
    return data


def fetch_all_sources(
    session: requests.Session,
    sources: list[FeedSource],
    timeout: int,
    logger: logging.Logger,
    metrics: Optional[MetricsCollector] = None,
) -> list[Any]:
    """
    Fetch every configured feed in order and concatenate the results.

    Sources are fetched one after the other; the first failure aborts the
    whole fetch so a partial set can never reach the remote list.
    """
    combined: list[Any] = []
    for source in sources:
        t0 = time.time()
        try:
            entries = fetch_source(session, source, timeout, logger)
        except FetchError:
            if metrics:
                metrics.record_source_failure(source.name, time.time() - t0)
            raise
        if metrics:
            metrics.record_source_success(source.name, len(entries), time.time() - t0)
        combined.extend(entries)
    return combined


# =============================================================================
# Cloudflare Lists API Client
# =============================================================================

class CloudflareListsAPI:
    """
    Minimal client for the account-level Lists API.

    All requests carry the bearer token. Methods raise the matching SyncError
    subclass on any non-2xx answer.
    """

    def __init__(
        self,
        base_url: str,
        account_id: str,
        api_token: str,
        session: requests.Session,
        logger: logging.Logger,
        timeout: int = 30,
    ):
        self.base_url = base_url.rstrip("/")
        self.account_id = account_id
        self.session = session
        self.logger = logger
        self.timeout = timeout
        self.headers = {
            "Authorization": f"Bearer {api_token}",
            "Content-Type": "application/json",
        }

    @property
    def lists_url(self) -> str:
        return f"{self.base_url}/accounts/{self.account_id}/rules/lists"

    def items_url(self, list_id: str) -> str:
        return f"{self.lists_url}/{list_id}/items"

    def get_lists(self) -> list[dict]:
        """Return every list in the account."""
        try:
            response = self.session.get(self.lists_url, headers=self.headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise ListLookupError(f"Failed to fetch lists ({type(e).__name__})") from e

        if not response.ok:
            raise ListLookupError(f"Failed to fetch lists ({response.status_code})", _error_payload(response))

        try:
            result = response.json().get("result")
        except (ValueError, AttributeError) as e:
            raise ListLookupError("Failed to parse lists response") from e

        if not isinstance(result, list):
            raise ListLookupError("Lists response has no result array")
        return result

    def create_list(self, name: str, description: str) -> str:
        """Create an IP list and return its id."""
        payload = {"name": name, "kind": "ip", "description": description}
        try:
            response = self.session.post(self.lists_url, headers=self.headers, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise ListCreateError(f"Failed to create list ({type(e).__name__})") from e

        if not response.ok:
            raise ListCreateError(f"Failed to create list ({response.status_code})", _error_payload(response))

        try:
            return response.json()["result"]["id"]
        except (ValueError, KeyError, TypeError) as e:
            raise ListCreateError("Create response carries no list id") from e

    def replace_items(self, list_id: str, literals: list[str]) -> Any:
        """
        Replace every item of a list with the given literals.

        Returns the `result` of the response (Cloudflare answers with the
        bulk operation id).
        """
        items = [{"ip": literal} for literal in literals]
        try:
            response = self.session.put(
                self.items_url(list_id),
                headers=self.headers,
                json=items,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ListUpdateError(f"Failed to update list items ({type(e).__name__})") from e

        if not response.ok:
            raise ListUpdateError(f"Failed to update list items ({response.status_code})", _error_payload(response))

        try:
            return response.json().get("result")
        except (ValueError, AttributeError):
            return None


# =============================================================================
# Remote List Resolver / Reconciler
# =============================================================================

def resolve_list_id(api: CloudflareListsAPI, name: str, description: str, logger: logging.Logger) -> str:
    """
    Find the list named `name`, creating it if absent.

    Names are compared exactly; the first match wins. No create request is
    issued when a match exists.

    Not safe against concurrent runs: two runs that both see the list
    missing will both create one.
    """
    for remote_list in api.get_lists():
        if remote_list.get("name") == name:
            logger.info(f"Using existing list '{name}' ({remote_list.get('id')})")
            return remote_list["id"]

    logger.info(f"List '{name}' not found, creating it")
    list_id = api.create_list(name, description)
    logger.info(f"Created list '{name}' ({list_id})")
    return list_id


def reconcile(
    api: CloudflareListsAPI,
    list_id: str,
    validated: list[AddressEntry],
    logger: logging.Logger,
) -> int:
    """
    Replace the list's content with exactly the validated set.

    Addresses missing from the set are removed remotely; nothing is diffed.
    Refuses an empty set, which would wipe the list.

    Returns the number of items written.
    """
    if not validated:
        raise EmptyValidatedSetError("Refusing to replace list items with an empty set")

    result = api.replace_items(list_id, [entry.literal for entry in validated])
    logger.info(f"List {list_id} replaced with {len(validated)} items (result: {result})")
    return len(validated)


# =============================================================================
# Run Lock
# =============================================================================

class LockHeldError(Exception):
    """Another run holds the lock file."""
    pass


class RunLock:
    """
    Same-host exclusive lock backed by a file holding the owner's pid.

    Created with O_EXCL so two processes cannot both acquire it. A lock file
    older than `stale_after` seconds is assumed abandoned and replaced.

    Stale-lock removal is check-then-remove: staleness is re-read right before
    the delete, but two processes that both find the same stale file can still
    race, and the slower one may remove the lock the faster one just created.
    Only abandoned locks open this window.
    """

    def __init__(self, path: str, stale_after: float = 6 * 3600, logger: Optional[logging.Logger] = None):
        self.path = path
        self.stale_after = stale_after
        self.logger = logger or logging.getLogger("relay-list-sync")
        self._held = False

    def _is_stale(self) -> bool:
        try:
            return time.time() - os.path.getmtime(self.path) > self.stale_after
        except OSError:
            return False

    def acquire(self) -> None:
        if os.path.exists(self.path) and self._is_stale():
            self.logger.warning(f"Removing stale lock file {self.path}")
            # A fresh lock may have replaced the stale one since the first check
            if self._is_stale():
                try:
                    os.remove(self.path)
                except FileNotFoundError:
                    pass

        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise LockHeldError(f"Lock file {self.path} exists, another run is in progress") from None

        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        self._held = True

    def release(self) -> None:
        if not self._held:
            return
        try:
            os.remove(self.path)
        except FileNotFoundError:
            self.logger.warning(f"Lock file {self.path} vanished before release")
        self._held = False

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


# =============================================================================
# Run Orchestrator
# =============================================================================

class RunState(str, enum.Enum):
    START = "start"
    FETCHED = "fetched"
    VALIDATED = "validated"
    ABORTED_EMPTY = "aborted_empty"
    RESOLVED = "resolved"
    RECONCILED = "reconciled"
    DONE = "done"
    FAILED = "failed"
    SKIPPED_DRY_RUN = "skipped_dry_run"
    SKIPPED_LOCKED = "skipped_locked"


@dataclass
class SyncOutcome:
    """Terminal result of one run."""
    state: RunState = RunState.START
    item_count: int = 0
    list_id: Optional[str] = None
    fetched_count: int = 0
    validated_count: int = 0
    rejected_count: int = 0
    duration_seconds: float = 0.0
    error: Optional[BaseException] = None
    rejected: dict[str, int] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.state in (RunState.DONE, RunState.SKIPPED_DRY_RUN)

    def summary(self) -> str:
        if self.state == RunState.DONE:
            return f"List {self.list_id} now holds {self.item_count} items"
        if self.state == RunState.SKIPPED_DRY_RUN:
            return f"Dry run: would write {self.validated_count} items"
        if self.state == RunState.ABORTED_EMPTY:
            return f"No valid entries among {self.fetched_count} fetched, list left untouched"
        if self.state == RunState.SKIPPED_LOCKED:
            return "Skipped, another run holds the lock"
        return f"Failed: {self.error}"


def log_separator(logger):
    logger.debug("-" * 10)


def _log_rejected(rejected: dict[str, int], logger: logging.Logger) -> None:
    max_cnt = 20
    for value, count in rejected.items():
        logger.debug(f'Rejected entry "{value}" (×{count})')
        max_cnt -= 1
        if max_cnt == 0:
            break


def _sync_steps(
    config: Config,
    session: requests.Session,
    logger: logging.Logger,
    outcome: SyncOutcome,
    metrics: Optional[MetricsCollector],
) -> None:
    """Run fetch, validate, resolve and reconcile, advancing outcome.state."""
    logger.info(f"Fetching {len(config.sources)} source(s): {', '.join(s.name for s in config.sources)}")
    raw = fetch_all_sources(session, config.sources, config.fetch_timeout, logger, metrics)
    outcome.fetched_count = len(raw)
    outcome.state = RunState.FETCHED

    logger.info(f"Fetched {len(raw)} entries. Validating addresses and CIDR ranges...")
    validated, rejected = filter_valid_entries(
        raw,
        allow_ipv6=config.ipv6_enabled,
        deduplicate=config.deduplicate,
    )
    outcome.validated_count = len(validated)
    outcome.rejected = rejected
    outcome.rejected_count = sum(rejected.values())
    outcome.state = RunState.VALIDATED
    if rejected:
        _log_rejected(rejected, logger)
        logger.warning(f"{outcome.rejected_count} entries rejected by validation")

    if not validated:
        raise EmptyValidatedSetError(f"No valid IPs or CIDR ranges among {len(raw)} fetched entries")

    if config.dry_run:
        logger.info(f"DRY RUN: would replace list '{config.list_name}' with {len(validated)} items")
        outcome.state = RunState.SKIPPED_DRY_RUN
        return

    api = CloudflareListsAPI(
        base_url=config.api_base_url,
        account_id=config.account_id,
        api_token=config.api_token,
        session=session,
        logger=logger,
        timeout=config.api_timeout,
    )

    logger.info(f"Found {len(validated)} valid entries. Resolving list '{config.list_name}'...")
    outcome.list_id = resolve_list_id(api, config.list_name, config.list_description, logger)
    outcome.state = RunState.RESOLVED

    logger.info(f"Updating the list with {len(validated)} items...")
    outcome.item_count = reconcile(api, outcome.list_id, validated, logger)
    outcome.state = RunState.RECONCILED

    logger.info("Scheduled sync processed successfully")
    outcome.state = RunState.DONE


def run_sync(
    config: Config,
    logger: logging.Logger,
    session: Optional[requests.Session] = None,
    metrics: Optional[MetricsCollector] = None,
) -> SyncOutcome:
    """
    Run one synchronization and return its outcome.

    Never raises: every failure is logged with its traceback and reported
    through the returned SyncOutcome.
    """
    outcome = SyncOutcome()
    start_time = time.time()
    session = session or create_http_session()

    logger.info(f"Relay List Sync v{__version__}")
    if config.dry_run:
        logger.info("DRY RUN MODE - the remote list will not be touched")

    lock = RunLock(config.lock_file, logger=logger) if config.lock_file else None
    try:
        if lock:
            lock.acquire()
        _sync_steps(config, session, logger, outcome, metrics)
    except LockHeldError as e:
        outcome.state = RunState.SKIPPED_LOCKED
        logger.warning(str(e))
    except EmptyValidatedSetError as e:
        outcome.state = RunState.ABORTED_EMPTY
        outcome.error = e
        logger.error(f"{e}. The remote list was left untouched.")
    except SyncError as e:
        outcome.state = RunState.FAILED
        outcome.error = e
        logger.exception(f"Sync failed during {e.stage}: {e}")
    except Exception as e:
        outcome.state = RunState.FAILED
        outcome.error = e
        logger.exception(f"Unexpected error during sync: {e}")
    finally:
        if lock:
            lock.release()

    outcome.duration_seconds = time.time() - start_time

    if config.webhook_url and outcome.state != RunState.SKIPPED_LOCKED:
        send_webhook(config, outcome, logger, session=session)

    if metrics:
        metrics.record_outcome(outcome)
        metrics.push()

    log_separator(logger)
    if outcome.succeeded:
        logger.info(outcome.summary())
    else:
        logger.warning(outcome.summary())
    logger.info(f"Completed in {outcome.duration_seconds:.1f}s")

    return outcome


# =============================================================================
# Webhook Notifications
# =============================================================================

def send_webhook(
    config: Config,
    outcome: SyncOutcome,
    logger: logging.Logger,
    session: Optional[requests.Session] = None,
) -> None:
    """Send the run outcome to a webhook (Discord, Slack, or generic)."""
    if not config.webhook_url:
        return

    if config.webhook_type == "discord":
        payload = _format_discord_webhook(config, outcome)
    elif config.webhook_type == "slack":
        payload = _format_slack_webhook(config, outcome)
    else:
        payload = _format_generic_webhook(config, outcome)

    poster = session or requests
    try:
        response = poster.post(config.webhook_url, json=payload, timeout=10)
    except requests.RequestException as e:
        logger.warning(f"Webhook failed: {e}")
        return

    if response.status_code < 300:
        logger.debug(f"Webhook sent ({config.webhook_type})")
    else:
        logger.warning(f"Webhook returned {response.status_code}: {response.text[:200]}")


def _format_discord_webhook(config: Config, outcome: SyncOutcome) -> dict:
    """Format the outcome as a Discord embed."""
    color = 0x2ECC71 if outcome.succeeded else 0xE74C3C
    fields = [
        {"name": "List", "value": config.list_name, "inline": True},
        {"name": "State", "value": outcome.state.value, "inline": True},
        {"name": "Items", "value": str(outcome.item_count), "inline": True},
        {"name": "Rejected", "value": str(outcome.rejected_count), "inline": True},
        {"name": "Duration", "value": f"{outcome.duration_seconds:.1f}s", "inline": True},
    ]
    if outcome.error is not None:
        fields.append({"name": "Error", "value": str(outcome.error)[:1000], "inline": False})

    return {
        "embeds": [{
            "title": WORKER_NAME,
            "color": color,
            "fields": fields,
            "footer": {"text": f"v{__version__}"},
        }]
    }


def _format_slack_webhook(config: Config, outcome: SyncOutcome) -> dict:
    """Format the outcome as a Slack message."""
    emoji = ":white_check_mark:" if outcome.succeeded else ":warning:"
    text = (
        f"{emoji} *{WORKER_NAME}*\n"
        f"List: {config.list_name} | State: {outcome.state.value}\n"
        f"{outcome.summary()}\n"
        f"Duration: {outcome.duration_seconds:.1f}s"
    )
    return {"text": text}


def _format_generic_webhook(config: Config, outcome: SyncOutcome) -> dict:
    """Format the outcome as a generic JSON payload."""
    return {
        "event": "relay_list_sync_complete",
        "version": __version__,
        "list_name": config.list_name,
        "list_id": outcome.list_id,
        "state": outcome.state.value,
        "succeeded": outcome.succeeded,
        "item_count": outcome.item_count,
        "fetched_count": outcome.fetched_count,
        "rejected_count": outcome.rejected_count,
        "error": str(outcome.error) if outcome.error is not None else None,
        "duration_seconds": round(outcome.duration_seconds, 1),
    }


# =============================================================================
# Info Endpoint
# =============================================================================

def build_info(config: Config) -> dict:
    """Body served by GET /info."""
    family = "IPv4 and IPv6 lists" if config.dual_stack else "an IPv4 list"
    return {
        "worker_name": WORKER_NAME,
        "cron_trigger_info": {
            "description": f"This job is scheduled to run every 14 days to fetch and update {family}.",
            "cron_schedule": CRON_SCHEDULE,
            "time_zone": CRON_TIME_ZONE,
        },
        "status": "Worker is running",
    }


def create_info_app(config: Config) -> FastAPI:
    """
    Create the informational HTTP app.

    GET /info answers 200 with the schedule description, other paths 404,
    and every non-GET method 405 (whatever the path).
    """
    app = FastAPI(
        title=WORKER_NAME,
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        redirect_slashes=False,
    )
    info = build_info(config)

    @app.middleware("http")
    async def only_get(request: Request, call_next):
        if request.method != "GET":
            return PlainTextResponse("Method Not Allowed", status_code=405)
        return await call_next(request)

    @app.exception_handler(StarletteHTTPException)
    async def plain_errors(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return PlainTextResponse("Not Found", status_code=404)
        return PlainTextResponse(str(exc.detail), status_code=exc.status_code)

    @app.get("/info")
    def get_info() -> JSONResponse:
        return JSONResponse(info)

    return app


# =============================================================================
# CLI
# =============================================================================

def setup_logging(config: Config) -> logging.Logger:
    """Configure logging with structured output."""
    logger = logging.getLogger("relay-list-sync")
    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logger.level)

    format = "[%(asctime)s] [%(levelname)s] %(message)s" if config.log_timestamps else "[%(levelname)s] %(message)s"
    handler.setFormatter(logging.Formatter(format, datefmt="%Y-%m-%d %H:%M:%S"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def list_sources(config: Config, logger: logging.Logger) -> None:
    """Print the configured feeds and the target list."""
    mode = "dual-stack" if config.dual_stack else "single-family"
    logger.info(f"Target list: {config.list_name or '(unset)'} ({mode})")
    for source in config.sources:
        logger.info(f"  - {source.name}: {source.url}")
    logger.info(f"IPv6 literals: {'accepted' if config.ipv6_enabled else 'rejected'}")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Synchronize a Cloudflare IP list with the iCloud Private Relay egress ranges",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Environment Variables:
  ACCOUNT_ID               Cloudflare account id (required)
  API_TOKEN[_FILE]         Cloudflare API token / token file (required)
  LIST_NAME                Name of the managed IP list (required)
  IP_LIST_SOURCE_URL       Single-family feed (JSON array of literals)
  IPV4_LIST_SOURCE_URL     Dual-stack IPv4 feed (set together with IPv6)
  IPV6_LIST_SOURCE_URL     Dual-stack IPv6 feed
  ALLOW_IPV6               Accept IPv6 literals in single-family mode (default: false)
  DEDUPLICATE              Drop repeated literals (default: false)
  FETCH_TIMEOUT            Feed request timeout in seconds (default: 60)
  API_TIMEOUT              API request timeout in seconds (default: 30)
  LOG_LEVEL                DEBUG, INFO, WARNING, ERROR (default: INFO)
  DRY_RUN                  Fetch and validate only
  METRICS_ENABLED          Push Prometheus metrics (default: false)
  METRICS_PUSHGATEWAY_URL  Pushgateway address (default: localhost:9091)
  WEBHOOK_URL              Webhook URL for notifications (Discord/Slack/generic)
  WEBHOOK_TYPE             Webhook format: generic, discord, slack (default: generic)
  LOCK_FILE                Skip the run if this lock file is held

Schedule: the job is meant to run on "{CRON_SCHEDULE}" ({CRON_TIME_ZONE}).
""",
    )

    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-n", "--dry-run", action="store_true", help="Fetch and validate, but do not touch the list")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--list-name", help="Target list name (overrides LIST_NAME)")
    parser.add_argument("--validate", action="store_true", help="Validate configuration and exit")
    parser.add_argument("--serve", action="store_true", help="Serve the /info endpoint instead of syncing")
    parser.add_argument("--host", help="Bind address for --serve (overrides INFO_HOST)")
    parser.add_argument("--port", type=int, help="Port for --serve (overrides INFO_PORT)")
    parser.add_argument("--no-metrics", action="store_true", help="Disable Prometheus metrics")
    parser.add_argument("--pushgateway-url", help="Pushgateway address (overrides METRICS_PUSHGATEWAY_URL)")
    parser.add_argument("--webhook-url", help="Webhook URL (overrides WEBHOOK_URL)")
    parser.add_argument("--webhook-type", choices=["generic", "discord", "slack"], help="Webhook format")

    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = Config.from_env()
    except ConfigError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1

    if args.dry_run:
        config.dry_run = True
    if args.debug:
        config.log_level = "DEBUG"
    if args.list_name:
        config.list_name = args.list_name
    if args.host:
        config.info_host = args.host
    if args.port:
        config.info_port = args.port
    if args.no_metrics:
        config.metrics_enabled = False
    if args.pushgateway_url:
        config.pushgateway_url = args.pushgateway_url
    if args.webhook_url:
        config.webhook_url = args.webhook_url
    if args.webhook_type:
        config.webhook_type = args.webhook_type

    logger = setup_logging(config)

    if args.serve:
        logger.info(f"Serving /info on {config.info_host}:{config.info_port}")
        uvicorn.run(create_info_app(config), host=config.info_host, port=config.info_port, log_level="warning")
        return 0

    is_valid, errors = validate_bool_env_vars(logger=logger)
    errors.extend(validate_config(config))
    if errors:
        logger.error("Configuration validation failed:")
        for error in errors:
            for line in error.split("\n"):
                logger.error(f"  {line}")
        return 1

    if args.validate:
        logger.info(f"Relay List Sync v{__version__}")
        logger.info("Configuration validation passed!")
        list_sources(config, logger)
        return 0

    return _run_once(config, logger)


def _new_metrics(config: Config, logger: logging.Logger) -> Optional[MetricsCollector]:
    if not config.metrics_enabled:
        return None
    return MetricsCollector(pushgateway_url=config.pushgateway_url, logger=logger)


def _run_once(config: Config, logger: logging.Logger) -> int:
    """Execute a single run. The exit code does not reflect the run's outcome."""
    try:
        run_sync(config, logger, metrics=_new_metrics(config, logger))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
