"""
Request Validator Test Suite

Covers structural validation of raw facilitation bodies: address and
checksum rules, hex payloads, tiers, integer parsing, signature length and
the deadline check.
"""

import pytest

from conftest import COUNTER_TARGET, REQUESTER, signed_body
from metarelay.engine.exceptions import MalformedRequest, RequestExpired
from metarelay.facilitator.validator import parse_facilitation_request, parse_uint
from metarelay.schemas.bases import PriorityTier

NOW = 1_700_000_000
MAX_PAYLOAD = 1024


def _body(chain, **overrides):
    body = signed_body(chain, deadline=NOW + 600)
    body.update(overrides)
    return body


def _parse(body):
    return parse_facilitation_request(body, now=NOW, max_payload_bytes=MAX_PAYLOAD)


class TestParseFacilitationRequest:

    def test_valid_body_is_normalized(self, chain):
        body = _body(chain, requester=REQUESTER.lower(), nonce="3", deadline=str(NOW + 600))

        request = _parse(body)

        assert request.requester == REQUESTER
        assert request.target == COUNTER_TARGET
        assert request.tier == PriorityTier.STANDARD
        assert request.nonce == 3
        assert request.deadline == NOW + 600
        assert len(request.signature) == 65

    @pytest.mark.parametrize("requester", [
        "0x1234",
        "1234567890123456789012345678901234567890",
        "0xZZ34567890123456789012345678901234567890",
        None,
        42,
    ])
    def test_bad_requester_rejected(self, chain, requester):
        with pytest.raises(MalformedRequest) as exc:
            _parse(_body(chain, requester=requester))
        assert exc.value.details["field"] == "requester"

    def test_bad_mixed_case_checksum_rejected(self, chain):
        # flip the case of one letter in an otherwise valid checksummed address
        idx = next(i for i, c in enumerate(COUNTER_TARGET) if i > 1 and c.isalpha())
        flipped = COUNTER_TARGET[:idx] + COUNTER_TARGET[idx].swapcase() + COUNTER_TARGET[idx + 1:]
        with pytest.raises(MalformedRequest) as exc:
            _parse(_body(chain, target=flipped))
        assert exc.value.details["field"] == "target"

    @pytest.mark.parametrize("case", [str.lower, str.upper])
    def test_single_case_address_needs_no_checksum(self, chain, case):
        request = _parse(_body(chain, target="0x" + case(COUNTER_TARGET[2:])))

        assert request.target == COUNTER_TARGET

    @pytest.mark.parametrize("payload", ["d09de08a", "0xabc", "0xzz", 7])
    def test_bad_payload_rejected(self, chain, payload):
        with pytest.raises(MalformedRequest) as exc:
            _parse(_body(chain, payload=payload))
        assert exc.value.details["field"] == "payload"

    def test_oversized_payload_rejected(self, chain):
        with pytest.raises(MalformedRequest) as exc:
            _parse(_body(chain, payload="0x" + "00" * (MAX_PAYLOAD + 1)))
        assert exc.value.details["maximum"] == MAX_PAYLOAD

    @pytest.mark.parametrize("tier", ["urgent", "", None, 1])
    def test_unknown_tier_rejected(self, chain, tier):
        with pytest.raises(MalformedRequest) as exc:
            _parse(_body(chain, tier=tier))
        assert exc.value.details["field"] == "tier"

    @pytest.mark.parametrize("nonce", [-1, 1.5, True, "0x10", "ten", None, 2**256])
    def test_bad_nonce_rejected(self, chain, nonce):
        with pytest.raises(MalformedRequest) as exc:
            _parse(_body(chain, nonce=nonce))
        assert exc.value.details["field"] == "nonce"

    def test_short_signature_rejected(self, chain):
        with pytest.raises(MalformedRequest) as exc:
            _parse(_body(chain, signature="0x" + "11" * 64))
        assert exc.value.details["field"] == "signature"

    def test_past_deadline_is_expired(self, chain):
        with pytest.raises(RequestExpired):
            _parse(_body(chain, deadline=NOW - 1))

    def test_deadline_equal_to_now_accepted(self, chain):
        assert _parse(_body(chain, deadline=NOW)).deadline == NOW

    def test_structural_errors_win_over_expiry(self, chain):
        with pytest.raises(MalformedRequest) as exc:
            _parse(_body(chain, deadline=NOW - 1, signature="0x00"))
        assert not isinstance(exc.value, RequestExpired)

    def test_non_object_body_rejected(self):
        with pytest.raises(MalformedRequest):
            _parse(["not", "an", "object"])


class TestParseUint:

    def test_accepts_decimal_string(self):
        assert parse_uint("12345", "nonce") == 12345

    def test_upper_bound_is_inclusive(self):
        assert parse_uint(str(2**256 - 1), "nonce") == 2**256 - 1
