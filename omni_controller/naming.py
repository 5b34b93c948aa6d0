"""Resource ID prefixes and name derivation."""

from __future__ import annotations

import hashlib
import secrets
import string
import uuid

THREAD_PREFIX = "t1"
THREAD_SHARE_PREFIX = "ts1"
PROJECT_PREFIX = "p1"
WORKFLOW_PREFIX = "w1"
WORKSPACE_PREFIX = "wksp1"
KNOWLEDGE_SET_PREFIX = "kst1"
MCP_SERVER_PREFIX = "ms1"
MCP_SERVER_INSTANCE_PREFIX = "msi1"
PROJECT_MCP_SERVER_PREFIX = "pms1"

# Store keys are limited to DNS-label length
MAX_NAME_LENGTH = 63

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def is_thread_id(value: str) -> bool:
    return value.startswith(THREAD_PREFIX) and not value.startswith(THREAD_SHARE_PREFIX)


def is_project_id(value: str) -> bool:
    return value.startswith(PROJECT_PREFIX)


def is_mcp_server_instance_id(value: str) -> bool:
    return value.startswith(MCP_SERVER_INSTANCE_PREFIX)


def is_mcp_server_id(value: str) -> bool:
    return value.startswith(MCP_SERVER_PREFIX) and not is_mcp_server_instance_id(value)


def project_id_to_thread_name(project_id: str) -> str:
    """'p1abc' -> 't1abc'. Thread names pass through unchanged."""
    if is_project_id(project_id):
        return THREAD_PREFIX + project_id[len(PROJECT_PREFIX):]
    return project_id


def thread_name_to_project_id(thread_name: str) -> str:
    if is_thread_id(thread_name):
        return PROJECT_PREFIX + thread_name[len(THREAD_PREFIX):]
    return thread_name


def generate_name(prefix: str, length: int = 5) -> str:
    """Prefix plus a random lowercase suffix, used for store-side generateName."""
    return prefix + "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(length))


def safe_hash_concat_name(*parts: str) -> str:
    """Join ``parts`` with '-' and append a stable digest of the full join.

    The digest makes the result unique per input tuple even when the joined
    text has to be truncated, so callers can use it as an idempotency key.
    """
    joined = "-".join(p for p in parts if p)
    digest = hashlib.sha256(joined.encode("utf-8")).hexdigest()[:12]
    head = joined[: MAX_NAME_LENGTH - len(digest) - 1].rstrip("-")
    return f"{head}-{digest}"


def random_token() -> str:
    """Unguessable token (aliases)."""
    return secrets.token_hex(16)


def public_id() -> str:
    """Random unreadable public identifier for shares."""
    return uuid.uuid4().hex
