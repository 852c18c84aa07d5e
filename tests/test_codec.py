"""Unit tests for the request envelope codec."""
import pytest

from nimiq_rpc.jsonrpc.codec import (
    MISSING,
    IdCounter,
    decode_handshake,
    decode_notification,
    decode_response,
    encode,
    parse_frame,
)
from nimiq_rpc.jsonrpc.models import ErrorCode
from nimiq_rpc.models import CallError, RequestContext, StreamEvent


@pytest.fixture
def context():
    """Create a request context for decoding."""
    return RequestContext(method="getBlockNumber", params=[], id=7, url="http://node.test/")


class TestEncode:
    """Test request envelope construction."""

    def test_envelope_fields(self):
        """Test that the envelope carries version, method, params and id."""
        request = encode("getBlockByNumber", [12, True], IdCounter())

        assert request.model_dump() == {
            "jsonrpc": "2.0",
            "method": "getBlockByNumber",
            "params": [12, True],
            "id": 0,
        }

    def test_missing_params_become_null(self):
        """Test that omitted positional params are sent as explicit nulls."""
        request = encode("getTransactionsByAddress", ["NQ07", MISSING, None], IdCounter())

        assert request.params == ["NQ07", None, None]
        assert request.model_dump()["params"] == ["NQ07", None, None]

    def test_no_params(self):
        """Test that missing params encode as an empty list."""
        assert encode("getBlockNumber", None, IdCounter()).params == []

    def test_ids_increase(self):
        """Test that ids come from the counter in increasing order."""
        counter = IdCounter(start=5)
        ids = [encode("getBlockNumber", [], counter).id for _ in range(4)]

        assert ids == [5, 6, 7, 8]
        assert counter.peek() == 9

    def test_counters_are_independent(self):
        """Test that two counters never interfere."""
        first, second = IdCounter(), IdCounter()
        encode("getBlockNumber", [], first)
        encode("getBlockNumber", [], first)

        assert encode("getBlockNumber", [], second).id == 0

    def test_invalid_method_name(self):
        """Test that an invalid method name is a programming error."""
        with pytest.raises(ValueError, match="Invalid method name"):
            encode("", [], IdCounter())
        with pytest.raises(ValueError):
            encode("get block", [], IdCounter())


class TestDecodeResponse:
    """Test three-way classification of request/response replies."""

    def test_data(self, context):
        """Test that a result with data is a success."""
        result = decode_response({"jsonrpc": "2.0", "id": 7, "result": {"data": 42}}, context)

        assert result.ok
        assert result.data == 42
        assert result.error is None
        assert result.context is context

    def test_metadata_only_when_requested(self, context):
        """Test that metadata is attached only on opt-in."""
        payload = {"result": {"data": 1, "metadata": {"blockNumber": 9, "blockHash": "ab"}}}

        assert decode_response(payload, context).metadata is None
        with_meta = decode_response(payload, context, with_metadata=True)
        assert with_meta.metadata == {"blockNumber": 9, "blockHash": "ab"}

    def test_metadata_absent_on_server(self, context):
        """Test that opting in without server metadata leaves it empty."""
        result = decode_response({"result": {"data": 1}}, context, with_metadata=True)

        assert result.ok
        assert result.metadata is None

    def test_error_without_data(self, context):
        """Test the error message format when the node sends no error data."""
        result = decode_response(
            {"error": {"code": -32601, "message": "method not found"}}, context
        )

        assert not result.ok
        assert result.data is None
        assert result.error.code == -32601
        assert result.error.message == "method not found: undefined"

    def test_error_with_string_data(self, context):
        """Test that string error data is appended verbatim."""
        result = decode_response(
            {"error": {"code": -32000, "message": "Invalid address", "data": "NQ00 bad checksum"}},
            context,
        )

        assert result.error.message == "Invalid address: NQ00 bad checksum"

    def test_error_with_structured_data(self, context):
        """Test that structured error data is appended as JSON."""
        result = decode_response(
            {"error": {"code": -32000, "message": "Failed", "data": {"reason": "nonce"}}},
            context,
        )

        assert result.error.message == 'Failed: {"reason": "nonce"}'

    @pytest.mark.parametrize("payload", [
        {"jsonrpc": "2.0", "id": 7},
        {"result": 42},
        {"result": {"value": 42}},
        {"error": "boom"},
        {"error": {"code": "x", "message": "y"}},
        [1, 2, 3],
        None,
    ])
    def test_unexpected_format(self, context, payload):
        """Test that anything else is a decoding error with the raw payload."""
        result = decode_response(payload, context)

        assert not result.ok
        assert result.error.code == ErrorCode.UNEXPECTED_FORMAT
        assert result.error.message.startswith("Unexpected format of data")

    def test_unexpected_format_includes_payload(self, context):
        """Test that the diagnostic message carries the raw payload."""
        result = decode_response({"foo": "bar"}, context)

        assert '{"foo": "bar"}' in result.error.message

    @pytest.mark.parametrize("data", [7, {"hash": "ab", "number": 3}, ["a", "b"], None])
    def test_round_trip(self, context, data):
        """Test that data a node wraps in a result is recovered unchanged."""
        result = decode_response({"jsonrpc": "2.0", "id": 7, "result": {"data": data}}, context)

        assert result.ok
        assert result.data == data


class TestDecodeHandshake:
    """Test decoding of subscribe replies."""

    def test_bare_result(self, context):
        """Test that the bare result becomes the data."""
        result = decode_handshake({"jsonrpc": "2.0", "id": 1, "result": 3}, context)

        assert result.ok
        assert result.data == 3

    def test_error(self, context):
        """Test that a handshake error is classified."""
        result = decode_handshake({"id": 1, "error": {"code": -32602, "message": "bad"}}, context)

        assert result.error.code == -32602

    def test_unexpected(self, context):
        """Test that a reply with neither key is malformed."""
        result = decode_handshake({"id": 1}, context)

        assert result.error.code == ErrorCode.UNEXPECTED_FORMAT


class TestDecodeNotification:
    """Test decoding of push notification payloads."""

    def test_event(self):
        """Test that data and opted-in metadata are extracted."""
        event = decode_notification({"data": "ab", "metadata": {"blockNumber": 1}}, True)

        assert event == StreamEvent(data="ab", metadata={"blockNumber": 1})

    def test_malformed(self):
        """Test that a result without data is an error."""
        error = decode_notification({"value": 1})

        assert isinstance(error, CallError)
        assert error.code == ErrorCode.UNEXPECTED_FORMAT


class TestParseFrame:
    """Test raw frame parsing."""

    def test_text_and_bytes(self):
        """Test that text and binary frames parse alike."""
        assert parse_frame('{"a": 1}') == {"a": 1}
        assert parse_frame(b'{"a": 1}') == {"a": 1}

    def test_invalid(self):
        """Test that invalid JSON raises ValueError."""
        with pytest.raises(ValueError):
            parse_frame("not json")
