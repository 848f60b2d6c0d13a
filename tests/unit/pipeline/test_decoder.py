"""
Tests for batch decoding.

A batch is a JSON array of user objects. Any defect rejects the whole batch.
"""

import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

import pytest

from userstream.core.channel import Channel
from userstream.core.decoder import BatchDecoder, decode_batch
from userstream.core.error_sink import ErrorKind, ErrorSink
from userstream.core.exceptions import DecodeError
from userstream.models.user import UserRecord


def _encode(items: List[Dict[str, Any]]) -> bytes:
    return json.dumps(items).encode("utf-8")


class TestDecodeBatch:
    """Test decode_batch parsing and validation."""

    def test_valid_batch(self, batch_factory: Callable[..., bytes]) -> None:
        """Test a well-formed batch decodes in order."""
        records = decode_batch(batch_factory(1, 2, 3))

        assert [r.id for r in records] == [1, 2, 3]
        assert records[0].email == "user1@doe.com"
        assert records[0].first_name == "John"

    def test_empty_array(self) -> None:
        """Test an empty array decodes to no records."""
        assert decode_batch(b"[]") == []

    def test_invalid_json(self) -> None:
        """Test malformed JSON is rejected."""
        with pytest.raises(DecodeError, match="not valid JSON"):
            decode_batch(b"[{not json")

    def test_not_utf8(self) -> None:
        """Test undecodable bytes are rejected as a decode failure."""
        with pytest.raises(DecodeError):
            decode_batch(b"\xff\xfe\x00")

    def test_top_level_object_rejected(self, user_factory: Callable[..., Dict[str, Any]]) -> None:
        """Test a single object instead of an array is rejected."""
        with pytest.raises(DecodeError, match="JSON array") as exc_info:
            decode_batch(json.dumps(user_factory(1)).encode())

        assert exc_info.value.details["type"] == "dict"

    def test_non_object_item(self) -> None:
        """Test array items must be objects."""
        with pytest.raises(DecodeError, match="not an object"):
            decode_batch(b"[1, 2]")

    def test_missing_field_rejects_batch(self, user_factory: Callable[..., Dict[str, Any]]) -> None:
        """Test one incomplete record rejects the whole batch."""
        incomplete = user_factory(2)
        del incomplete["merged_at"]

        with pytest.raises(DecodeError) as exc_info:
            decode_batch(_encode([user_factory(1), incomplete]))

        assert exc_info.value.details == {"index": 1, "missing": ["merged_at"]}

    def test_non_integer_id(self, user_factory: Callable[..., Dict[str, Any]]) -> None:
        """Test an id that is not an integer fails validation."""
        with pytest.raises(DecodeError, match="failed validation"):
            decode_batch(_encode([user_factory(1, id="abc")]))

    def test_boolean_id_rejected(self, user_factory: Callable[..., Dict[str, Any]]) -> None:
        """Test JSON booleans are not accepted as ids."""
        with pytest.raises(DecodeError):
            decode_batch(_encode([user_factory(1, id=True)]))

    def test_numeric_string_id(self, user_factory: Callable[..., Dict[str, Any]]) -> None:
        """Test ids given as numeric strings are accepted."""
        records = decode_batch(_encode([user_factory(1, id="42")]))

        assert records[0].id == 42

    def test_email_address_alias(self, user_factory: Callable[..., Dict[str, Any]]) -> None:
        """Test the email_address wire name maps to email."""
        item = user_factory(1)
        item["email_address"] = item.pop("email")

        records = decode_batch(_encode([item]))

        assert records[0].email == "user1@doe.com"

    def test_nullable_time_object(self, user_factory: Callable[..., Dict[str, Any]]) -> None:
        """Test {"Time", "Valid"} timestamps decode to an instant or None."""
        item = user_factory(
            1,
            created_at={"Time": "2023-01-02T03:04:05Z", "Valid": True},
            deleted_at={"Time": "0001-01-01T00:00:00Z", "Valid": False},
        )

        record = decode_batch(_encode([item]))[0]

        assert record.created_at == datetime(2023, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert record.deleted_at is None

    def test_epoch_millis_and_sentinel(self, user_factory: Callable[..., Dict[str, Any]]) -> None:
        """Test epoch milliseconds decode and -1 means absent."""
        item = user_factory(1, created_at=1672531200000, merged_at=-1)

        record = decode_batch(_encode([item]))[0]

        assert record.created_at == datetime(2023, 1, 1, tzinfo=timezone.utc)
        assert record.merged_at is None


class TestBatchDecoderStage:
    """Test the decoder as a pipeline stage."""

    def test_decode_empty_payload(self, metrics: Any) -> None:
        """Test empty payloads produce no records and no error."""
        decoder = BatchDecoder(ErrorSink(5), metrics=metrics)

        assert decoder.decode(b"") == []
        assert decoder.decode(None) == []

    @pytest.mark.asyncio
    async def test_invalid_payload_reports_one_error(self, batch_factory: Callable[..., bytes]) -> None:
        """Test a bad batch yields exactly one DECODE error and forwards nothing."""
        sink = ErrorSink(5)
        decoder = BatchDecoder(sink)
        inbox: Channel[bytes] = Channel(5)
        outbox: Channel[List[UserRecord]] = Channel(5)

        await inbox.put(b'{"not": "an array"}')
        await inbox.put(batch_factory(1, 2))
        await inbox.close()
        await decoder.run(inbox, outbox)

        forwarded = [batch async for batch in outbox]
        assert [[r.id for r in batch] for batch in forwarded] == [[1, 2]]

        await sink.close()
        await sink.run()
        assert sink.count(ErrorKind.DECODE) == 1
        assert sink.stats.total == 1
        error = sink.history[0]
        assert error.stage == "decoder"
        assert error.payload == b'{"not": "an array"}'
        assert isinstance(error.cause, DecodeError)

    @pytest.mark.asyncio
    async def test_empty_batches_not_forwarded(self) -> None:
        """Test empty payloads and empty arrays are skipped."""
        decoder = BatchDecoder(ErrorSink(5))
        inbox: Channel[bytes] = Channel(5)
        outbox: Channel[List[UserRecord]] = Channel(5)

        await inbox.put(b"")
        await inbox.put(b"[]")
        await inbox.close()
        await decoder.run(inbox, outbox)

        assert [batch async for batch in outbox] == []

    @pytest.mark.asyncio
    async def test_outbox_closed_when_inbox_closes(self) -> None:
        """Test the close signal cascades to the next stage."""
        decoder = BatchDecoder(ErrorSink(5))
        inbox: Channel[bytes] = Channel(1)
        outbox: Channel[List[UserRecord]] = Channel(1)

        await inbox.close()
        await decoder.run(inbox, outbox)

        assert outbox.closed


class TestMalformedBatchIsolation:
    """Test inputs that break the parser or the timestamp conversion."""

    @pytest.mark.parametrize("created_at", [1e300, 10**20, float("inf")])
    def test_timestamp_out_of_range(
        self, user_factory: Callable[..., Dict[str, Any]], created_at: float
    ) -> None:
        """Test an epoch value no datetime can hold is a decode failure."""
        payload = json.dumps([user_factory(1, created_at=created_at)]).encode()

        with pytest.raises(DecodeError, match="failed validation"):
            decode_batch(payload)

    def test_deeply_nested_json(self) -> None:
        """Test nesting beyond the parser's recursion limit is a decode failure."""
        depth = 100000

        with pytest.raises(DecodeError, match="nested too deeply"):
            decode_batch(b"[" * depth + b"]" * depth)

    @pytest.mark.asyncio
    async def test_unexpected_decode_failure_reported(self, batch_factory: Callable[..., bytes]) -> None:
        """Test any exception from decoding is reported and the stage keeps consuming."""

        class BrokenDecoder(BatchDecoder):
            def decode(self, payload: Any) -> List[UserRecord]:
                if payload == b"boom":
                    raise RuntimeError("decoder bug")
                return super().decode(payload)

        sink = ErrorSink(5)
        decoder = BrokenDecoder(sink)
        inbox: Channel[bytes] = Channel(5)
        outbox: Channel[List[UserRecord]] = Channel(5)

        await inbox.put(b"boom")
        await inbox.put(batch_factory(1))
        await inbox.close()
        await decoder.run(inbox, outbox)

        assert [[r.id for r in batch] async for batch in outbox] == [[1]]
        await sink.close()
        await sink.run()
        assert sink.count(ErrorKind.DECODE) == 1
        assert isinstance(sink.history[0].cause, RuntimeError)
