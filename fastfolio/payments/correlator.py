"""
Transaction reference: `{userId}_{plan}_{creationEpochMillis}`.

The reference is what every gateway echoes back (vnp_TxnRef, orderId,
client_reference_id), so it is the only correlation key the callbacks carry.
"""
import threading
import time
from dataclasses import dataclass

from fastfolio.payments.errors import MalformedReference

DELIMITER = "_"

_clock_lock = threading.Lock()
_last_millis = 0


@dataclass(frozen=True)
class DecodedReference:
    user_id: str
    plan: str
    timestamp: int


def _next_millis() -> int:
    """Wall clock in ms, bumped by one when two checkouts land on the same millisecond."""
    global _last_millis
    with _clock_lock:
        now = int(time.time() * 1000)
        _last_millis = now if now > _last_millis else _last_millis + 1
        return _last_millis


def encode_reference(user_id: str, plan: str) -> str:
    user_id, plan = str(user_id), str(plan)
    if not user_id or not plan:
        raise MalformedReference("user id and plan are required")
    if DELIMITER in user_id or DELIMITER in plan:
        # No escaping: a delimiter inside a field would decode to the wrong user
        raise MalformedReference(f"user id and plan must not contain {DELIMITER!r}")
    return DELIMITER.join((user_id, plan, str(_next_millis())))


def decode_reference(ref: str) -> DecodedReference:
    parts = (ref or "").split(DELIMITER)
    if len(parts) < 3:
        raise MalformedReference(f"malformed transaction reference: {ref!r}", ref=ref)
    user_id, plan, timestamp = parts[0], parts[1], parts[2]
    if not user_id or not plan or not timestamp.isdigit():
        raise MalformedReference(f"malformed transaction reference: {ref!r}", ref=ref)
    return DecodedReference(user_id=user_id, plan=plan, timestamp=int(timestamp))
