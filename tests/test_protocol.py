"""Tests for the signaling wire format."""

import json

import pytest
from aiortc import RTCSessionDescription

from duo_rtc.exceptions import ProtocolError
from duo_rtc.protocol import (
    MSG_CANDIDATE,
    MSG_OFFER,
    MSG_READY,
    MSG_READY_COUNT,
    NegotiationMessage,
    candidate_from_payload,
    candidate_to_payload,
    description_to_payload,
    format_message,
    parse_message,
)

from conftest import make_candidate


class TestFormatAndParse:
    def test_format_message(self):
        assert format_message(MSG_READY_COUNT, count=2) == '{"type": "ready-count", "count": 2}'
        assert format_message(MSG_READY) == '{"type": "ready"}'

    def test_from_field_is_renamed(self):
        data = json.loads(format_message(MSG_OFFER, payload={}, from_="a1"))
        assert data == {"type": "offer", "payload": {}, "from": "a1"}

    def test_parse_accepts_bytes(self):
        assert parse_message(b'{"type": "ready"}') == {"type": "ready"}

    @pytest.mark.parametrize(
        "raw",
        ["not json", "[1, 2]", '{"payload": {}}', '{"type": 5}', '{"type": ""}', b"\xff\xfe"],
    )
    def test_parse_rejects_malformed_frames(self, raw):
        with pytest.raises(ProtocolError):
            parse_message(raw)


class TestNegotiationMessage:
    def test_from_dict_stamps_sender(self):
        message = NegotiationMessage.from_dict(
            {"type": "answer", "payload": {"sdp": "x"}, "from": "spoofed"}, sender="b1"
        )
        assert message.sender == "b1"
        assert json.loads(message.to_wire()) == {
            "type": "answer",
            "payload": {"sdp": "x"},
            "from": "b1",
        }

    def test_missing_payload_is_rejected(self):
        with pytest.raises(ProtocolError, match="payload"):
            NegotiationMessage.from_dict({"type": "offer"}, sender="a1")

    def test_non_negotiation_kind_is_rejected(self):
        with pytest.raises(ProtocolError):
            NegotiationMessage(kind="ready")


class TestPayloadConversion:
    def test_description_payload(self):
        desc = RTCSessionDescription(sdp="v=0", type="offer")
        assert description_to_payload(desc) == {"sdp": "v=0", "type": "offer"}

    def test_candidate_from_browser_payload(self):
        candidate = candidate_from_payload(make_candidate(5000))

        assert candidate.ip == "192.168.1.2"
        assert candidate.port == 5000
        assert candidate.protocol == "udp"
        assert candidate.type == "host"
        assert candidate.sdpMid == "0"
        assert candidate.sdpMLineIndex == 0

    def test_candidate_payload_inverse(self):
        candidate = candidate_from_payload(make_candidate(5001))
        payload = candidate_to_payload(candidate)

        assert payload["candidate"].startswith("candidate:")
        assert "5001" in payload["candidate"]
        assert payload["sdpMid"] == "0"
        assert candidate_from_payload(payload).port == 5001

    def test_end_of_candidates(self):
        assert candidate_from_payload({"candidate": "", "sdpMid": "0"}) is None

    @pytest.mark.parametrize("payload", ["candidate:1", {"candidate": "candidate:1 1 udp"}])
    def test_malformed_candidate(self, payload):
        with pytest.raises(ProtocolError):
            candidate_from_payload(payload)

    def test_candidate_kind_constant(self):
        assert NegotiationMessage(kind=MSG_CANDIDATE).kind == "candidate"
