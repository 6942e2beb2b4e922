"""Transaction reference encoding: `{userId}_{plan}_{epochMillis}`."""
import pytest

from fastfolio.payments.correlator import decode_reference, encode_reference
from fastfolio.payments.errors import MalformedReference


@pytest.mark.parametrize("user_id,plan", [("u1", "PRO"), ("clx9abc0001", "LIFETIME"), ("42", "PRO")])
def test_decode_recovers_user_and_plan(user_id, plan):
    decoded = decode_reference(encode_reference(user_id, plan))
    assert decoded.user_id == user_id
    assert decoded.plan == plan
    assert decoded.timestamp > 0


def test_references_are_unique_within_the_same_millisecond():
    refs = {encode_reference("u1", "PRO") for _ in range(500)}
    assert len(refs) == 500


def test_decode_known_reference():
    decoded = decode_reference("u1_PRO_1000")
    assert (decoded.user_id, decoded.plan, decoded.timestamp) == ("u1", "PRO", 1000)


@pytest.mark.parametrize("ref", ["", "u1", "u1_PRO", "_PRO_1000", "u1__1000", "u1_PRO_abc", "u1_PRO_"])
def test_decode_rejects_malformed(ref):
    with pytest.raises(MalformedReference) as exc:
        decode_reference(ref)
    assert exc.value.code == "invalid_order"


@pytest.mark.parametrize("user_id,plan", [("user_1", "PRO"), ("u1", "PRO_X"), ("", "PRO"), ("u1", "")])
def test_encode_rejects_delimiter_and_empty_fields(user_id, plan):
    with pytest.raises(MalformedReference):
        encode_reference(user_id, plan)
