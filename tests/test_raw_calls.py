"""
生通話データ正規化のテスト
"""

import pytest

from call_pipeline.models import CallRecord
from call_pipeline.raw_calls import (
    SHAPE_FLAT,
    SHAPE_NESTED,
    SHAPE_SCALAR,
    derive_broker_id,
    detect_shape,
    extract_relevant_data,
    normalize_call,
)


class TestExtractRelevantData:
    """extract_relevant_data() のテスト"""

    def test_extracts_and_transforms_nested_call(self):
        raw = [{
            "call_id": "123",
            "from": {"number": "+1234567890", "username": "user1"},
            "to": {"number": "+0987654321"},
            "start_time": "2025-01-01T10:00:00Z",
            "duration": 180,
            "recording": {"url": "https://recording.url"},
            "extra_field": "ignored",
        }]

        result = extract_relevant_data(raw)

        assert result == [CallRecord(
            call_id="123",
            from_number="+1234567890",
            to_number="+0987654321",
            from_username="user1",
            from_name="user1",
            start_time="2025-01-01T10:00:00Z",
            duration=180,
            recording_url="https://recording.url",
            broker_id="use",
            date="2025-01-01",
        )]

    def test_handles_missing_fields(self):
        raw = [{
            "call_id": "456",
            "from": {"number": "+1111111111"},
            "to": {"number": "+2222222222"},
            "start_time": "2025-01-02T15:30:00Z",
            "duration": 90,
        }]

        result = extract_relevant_data(raw)[0]

        assert result.from_username == ""
        assert result.from_name == ""
        assert result.recording_url == ""
        assert result.broker_id == ""
        assert result.date == "2025-01-02"

    def test_preserves_provider_order(self):
        raw = [{"call_id": str(i), "from": {}, "to": {}} for i in range(5)]

        assert [c.call_id for c in extract_relevant_data(raw)] == ["0", "1", "2", "3", "4"]


class TestShapes:
    """ペイロードの形ごとの正規化のテスト"""

    def test_detects_shapes(self):
        assert detect_shape({"from": {"number": "1"}}) == SHAPE_NESTED
        assert detect_shape({"recordings": []}) == SHAPE_NESTED
        assert detect_shape({"from_number": "1"}) == SHAPE_FLAT
        assert detect_shape({"from": "+1", "to": "+2"}) == SHAPE_SCALAR

    def test_nested_recordings_array(self):
        call = normalize_call({
            "call_id": "1",
            "from": {"name": "Alice"},
            "recordings": [{"url": "https://rec/1"}],
        })

        assert call.recording_url == "https://rec/1"

    def test_flat_shape(self):
        call = normalize_call({
            "call_id": "2",
            "from_number": "+1",
            "from_name": "Bob Brown",
            "to_number": "+2",
            "recording_url": "https://rec/2",
            "start_time": "2025-02-01T00:00:00Z",
            "duration": "45",
        })

        assert call.from_number == "+1"
        assert call.to_number == "+2"
        assert call.broker_id == "bob"
        assert call.duration == 45
        assert call.recording_url == "https://rec/2"

    def test_scalar_shape(self):
        call = normalize_call({
            "call_id": "3",
            "from": "+15550001",
            "to": "+15550002",
            "recording": "https://rec/3",
            "duration": 30,
        })

        assert call.from_number == "+15550001"
        assert call.to_number == "+15550002"
        assert call.recording_url == "https://rec/3"
        assert call.broker_id == ""


class TestBrokerId:
    """ブローカーIDの推定のテスト"""

    def test_from_display_name(self):
        call = normalize_call({
            "call_id": "789",
            "from": {"number": "+3333333333", "name": "John Doe Smith"},
            "to": {"number": "+4444444444"},
        })

        assert call.from_name == "John Doe Smith"
        assert call.broker_id == "joh"

    def test_numeric_prefix_of_sip_username(self):
        call = normalize_call({
            "call_id": "790",
            "from": {"username": "12345@domain"},
            "to": {},
        })

        assert call.broker_id == "12345"

    def test_to_leg_identifier_takes_precedence(self):
        call = normalize_call({
            "call_id": "791",
            "from": {"name": "John Doe", "username": "12345@domain"},
            "to": {"number": "+1", "user_id": "777"},
        })

        assert call.broker_id == "777"

    @pytest.mark.parametrize("to_leg_id, username, name, expected", [
        (None, "", "", ""),
        (None, "abc@domain", "Zed", "zed"),
        ("routing-9", "12@x", "Name", "routing-9"),
    ])
    def test_derive_broker_id(self, to_leg_id, username, name, expected):
        assert derive_broker_id(to_leg_id, username, name) == expected
