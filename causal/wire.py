"""
Transaction wire contract.

HTTP-backed nodes accept a transaction as an ordered list of micro-ops and
answer with the outcome and the resolved micro-ops:

    request:  {"type": "invoke", "value": [{"f": "r", "k": 1, "v": null},
                                           {"f": "append", "k": 1, "v": 5}]}
    response: {"type": "ok", "value": [{"f": "r", "k": 1, "v": "3 4"},
                                       {"f": "append", "k": 1, "v": 5}]}

A read of an absent key resolves to null. A read of an append log resolves to
the accumulated value, either as a space-separated string (what SQL string
concatenation produces) or as a JSON list.

This module is the single place where that contract is encoded and checked;
the decoder validates the echo so that a munged response can never be
mistaken for an authoritative result.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from causal.history import Mop

# Micro-op functions on the wire
READ = "r"
APPEND = "append"
WRITE = "w"

RESPONSE_TYPES = ("ok", "fail", "info")


class WireError(ValueError):
    """Raised when a response does not match the request it answers."""


def encode_mop(mop: Mop) -> dict[str, Any]:
    """Encode a single micro-op; reads never carry a value."""
    if mop.f == READ:
        return {"f": READ, "k": mop.k, "v": None}
    if mop.f in (APPEND, WRITE):
        return {"f": mop.f, "k": mop.k, "v": int(mop.v)}
    raise WireError(f"Unknown micro-op function {mop.f!r}")


def encode_request(txn: Sequence[Mop]) -> dict[str, Any]:
    """Encode a transaction invocation."""
    return {"type": "invoke", "value": [encode_mop(Mop(*m)) for m in txn]}


def parse_list_value(v: Any) -> tuple[int, ...] | None:
    """Parse an accumulated append-log value.

    Args:
        v: None, a space-separated string of integers, or a list of integers.

    Returns:
        The values in order, or None for an absent key.

    Raises:
        WireError: If the value is neither form or holds non-integers.
    """
    if v is None:
        return None
    try:
        if isinstance(v, str):
            return tuple(int(x) for x in v.split())
        if isinstance(v, list | tuple):
            return tuple(int(x) for x in v)
    except (TypeError, ValueError) as e:
        raise WireError(f"Malformed list value {v!r}") from e
    raise WireError(f"Malformed list value {v!r}")


def parse_register_value(v: Any) -> int | None:
    """Parse a single register value; strings are accepted for SQL text columns."""
    if v is None:
        return None
    try:
        return int(v)
    except (TypeError, ValueError) as e:
        raise WireError(f"Malformed register value {v!r}") from e


def decode_response(
    txn: Sequence[Mop],
    body: dict[str, Any],
    *,
    semantics: str = "list",
) -> tuple[str, tuple[Mop, ...] | None, Any]:
    """Decode a node's response against the transaction that was sent.

    Args:
        txn: The invoked micro-ops.
        body: Parsed JSON response body.
        semantics: "list" or "set" for append logs, "register" for single values.

    Returns:
        (type, mops, error); mops is None unless type is "ok".

    Raises:
        WireError: If the type is unknown, the micro-op count differs, a
            function/key echo differs, or an append echoes another value.
    """
    rtype = body.get("type")
    if rtype not in RESPONSE_TYPES:
        raise WireError(f"Unknown response type {rtype!r}")
    error = body.get("error")
    if rtype != "ok":
        return rtype, None, error

    value = body.get("value")
    if not isinstance(value, list) or len(value) != len(txn):
        raise WireError(
            f"Response has {len(value) if isinstance(value, list) else 'no'} micro-ops, "
            f"expected {len(txn)}"
        )

    mops = []
    for sent, got in zip(txn, value):
        sent = Mop(*sent)
        f, k, v = got.get("f"), got.get("k"), got.get("v")
        if f != sent.f or k != sent.k:
            raise WireError(f"Response micro-op [{f} {k}] does not match sent [{sent.f} {sent.k}]")
        if f == READ:
            if semantics == "register":
                mops.append(Mop(READ, k, parse_register_value(v)))
            else:
                mops.append(Mop(READ, k, parse_list_value(v)))
        else:
            if parse_register_value(v) != sent.v:
                raise WireError(f"Munged write value in result, expected {sent.v}, actual {v!r}")
            mops.append(sent)
    return rtype, tuple(mops), None
