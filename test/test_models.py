#!/usr/bin/env python3
"""Tests for the shared data models."""

import pytest
from hexbytes import HexBytes

from bridge_relayer.models import (
    MAX_SAFE_INTEGER,
    BridgeStatus,
    DecodedEvent,
    DepositRecord,
    DepositStatus,
    SettlementDirection,
    SettlementRequest,
    decode_big_int,
    encode_big_int,
    normalize_nonce,
    to_hex_str,
)


class TestNormalizeNonce:
    """Tests for nonce normalization across chain representations."""

    @pytest.mark.parametrize("value", [
        42,
        "42",
        "0x2a",
        "0X2A",
        b"\x2a",
        (42).to_bytes(32, "big"),
        HexBytes((42).to_bytes(32, "big")),
        bytearray(b"\x00\x2a"),
    ])
    def test_all_representations_map_to_same_int(self, value):
        """Integers, padded topics and strings all normalize to 42."""
        assert normalize_nonce(value) == 42

    def test_zero_is_valid(self):
        assert normalize_nonce(0) == 0
        assert normalize_nonce(bytes(32)) == 0

    def test_large_uint256(self):
        """A full-width uint256 survives normalization."""
        value = 2**256 - 1
        assert normalize_nonce(value.to_bytes(32, "big")) == value

    @pytest.mark.parametrize("value", [-1, "", b"", True, 1.5, None, "not-a-number"])
    def test_invalid_values_rejected(self, value):
        with pytest.raises(ValueError):
            normalize_nonce(value)


class TestBigIntEncoding:
    """Tests for JSON-safe integer encoding."""

    def test_small_values_stay_numeric(self):
        assert encode_big_int(MAX_SAFE_INTEGER) == MAX_SAFE_INTEGER

    def test_large_values_become_strings(self):
        assert encode_big_int(MAX_SAFE_INTEGER + 1) == str(MAX_SAFE_INTEGER + 1)

    def test_decode_accepts_both(self):
        assert decode_big_int("123456789012345678901234567890") == 123456789012345678901234567890
        assert decode_big_int(7) == 7
        assert decode_big_int(None) == 0


class TestDepositRecord:
    """Tests for DepositRecord serialization."""

    def test_dict_round_trip_keeps_large_amount(self):
        record = DepositRecord(
            nonce=2**60,
            depositor="0xabc",
            amount=10**30,
            observed_at=1000.0,
            status=DepositStatus.EXPIRED,
            source_tx_hash="0xdead",
            attempts=3,
            last_error="reverted",
        )

        data = record.to_dict()
        assert data["amount"] == str(10**30)
        assert data["nonce"] == str(2**60)
        assert data["status"] == "EXPIRED"

        restored = DepositRecord.from_dict(data)
        assert restored == record

    def test_status_from_chain(self):
        assert DepositStatus.from_chain(0) is DepositStatus.PENDING
        assert DepositStatus.from_chain(1) is DepositStatus.PROCESSED
        assert DepositStatus.from_chain(2) is DepositStatus.EXPIRED


class TestBridgeStatus:
    def test_rank_is_total_order(self):
        assert (
            BridgeStatus.SENT.rank
            < BridgeStatus.PENDING_ATTESTATION.rank
            < BridgeStatus.COMPLETE.rank
        )


class TestEventsAndRequests:
    def test_decoded_event_ids_and_order(self):
        first = DecodedEvent("Burned", {}, 10, 3, "0xaa", "0x1")
        second = DecodedEvent("Burned", {}, 11, 0, "0xbb", "0x1")

        assert first.event_id == "0xaa:3"
        assert sorted([second, first], key=lambda e: e.sort_key) == [first, second]
        assert "Burned(block=10" in str(first)

    def test_mint_request_from_deposit(self):
        record = DepositRecord(nonce=42, depositor="0xabc", amount=10_000_000, source_tx_hash="0x01")

        request = SettlementRequest.mint_for(record)

        assert request.direction is SettlementDirection.MINT
        assert (request.recipient, request.amount, request.nonce) == ("0xabc", 10_000_000, 42)
        assert request.source_tx_hash == "0x01"

    def test_to_hex_str(self):
        assert to_hex_str(b"\xde\xad") == "0xdead"
        assert to_hex_str("DEAD") == "0xdead"
        assert to_hex_str("0xDEAD") == "0xdead"
