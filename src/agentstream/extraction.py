"""Pure helpers that pull structured details out of stream payloads.

Tool results arrive in a few shapes depending on the tool, e.g.::

    {"content": [{"type": "json", "json": {"sql": "SELECT 1", ...}}]}
    {"tool_results": {"content": [...]}}
    {"result": {"sql": "SELECT 1"}}

Both extractors walk the same candidate objects in the same order and
return the first match.
"""

from collections.abc import Iterator
from typing import Any

from agentstream.constants import PROCESSING
from agentstream.message import Verification

_WRAPPER_KEYS = ("tool_results", "tool_result", "result", "json", "content")
_VERIFICATION_KEYS = (
    "verified_query_used",
    "query_verified",
    "validated",
    "verification",
)
_MAX_DEPTH = 6


def status_label(code: str | None) -> str:
    """Return the service's status message unchanged."""
    return code or PROCESSING


def _candidates(payload: Any, depth: int = 0) -> Iterator[dict]:
    if depth > _MAX_DEPTH:
        return
    if isinstance(payload, dict):
        yield payload
        for key in _WRAPPER_KEYS:
            if key in payload:
                yield from _candidates(payload[key], depth + 1)
    elif isinstance(payload, list):
        for item in payload:
            yield from _candidates(item, depth + 1)


def extract_sql_query(payload: Any) -> str | None:
    """Return the first non-blank ``sql`` string in a tool result."""
    for candidate in _candidates(payload):
        sql = candidate.get("sql")
        if isinstance(sql, str) and sql.strip():
            return sql.strip()
    return None


def extract_verification_info(payload: Any) -> Verification | None:
    """Return verification metadata from a tool result, if it has any."""
    for candidate in _candidates(payload):
        found = {k: candidate[k] for k in _VERIFICATION_KEYS if k in candidate}
        if not found:
            continue
        flags = {
            k: v for k, v in found.items()
            if k != "verification" and isinstance(v, bool)
        }
        return Verification(verification=found.get("verification"), **flags)
    return None
