import asyncio
import io
import unittest

from ticketlinks.errors import CommitLogParseError
from ticketlinks.parsers.commit_log import (
    MAX_LINE_BYTES,
    ParsedCommitRecord,
    aiter_commit_records,
    extract_ticket,
    iter_commit_records,
    parse_commit_line,
)

SHA_A = "a" * 40
SHA_B = "b" * 40


def _records(data: bytes) -> list[ParsedCommitRecord]:
    return list(iter_commit_records(io.BytesIO(data)))


class CommitLogParserTests(unittest.TestCase):
    def test_ticket_at_message_start_yields_record(self) -> None:
        records = _records(f"{SHA_A} 1700000000 TICKET-123 fix bug\n".encode())

        self.assertEqual(records, [ParsedCommitRecord(sha=SHA_A, ticket="TICKET-123", created_unix=1700000000)])

    def test_message_without_ticket_is_dropped(self) -> None:
        records = _records(
            f"{SHA_A} 1700000000 no ticket here\n{SHA_B} 1700000001 ABC-9 real one\n".encode()
        )

        self.assertEqual([r.sha for r in records], [SHA_B])

    def test_zero_letter_prefix_is_accepted(self) -> None:
        records = _records(f"{SHA_A} 1700000000 -55 edge\n".encode())

        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].ticket, "-55")

    def test_ticket_must_be_anchored_at_start(self) -> None:
        self.assertEqual(extract_ticket("fix ABC-12 later"), "")
        self.assertEqual(extract_ticket("abc-12 lowercase"), "")
        self.assertEqual(extract_ticket("ABC-12: colon suffix"), "ABC-12")
        self.assertEqual(extract_ticket("ABC-12345678 long"), "ABC-12345678")

    def test_empty_line_terminates_stream(self) -> None:
        records = _records(b"abc 100 X-1 msg\n\nabc 200 X-2 msg\n")

        self.assertEqual(records, [ParsedCommitRecord(sha="abc", ticket="X-1", created_unix=100)])

    def test_last_line_without_newline_is_parsed(self) -> None:
        records = _records(b"abc 100 X-1 msg\ndef 200 Y-2 msg")

        self.assertEqual([r.ticket for r in records], ["X-1", "Y-2"])

    def test_message_spaces_are_not_split(self) -> None:
        record = parse_commit_line(f"{SHA_A} 42 PROJ-7 message  with   spaces")

        assert record is not None
        self.assertEqual(record.ticket, "PROJ-7")
        self.assertEqual(record.created_unix, 42)

    def test_line_with_fewer_than_three_fields_is_dropped(self) -> None:
        self.assertIsNone(parse_commit_line(f"{SHA_A} 42"))
        self.assertIsNone(parse_commit_line(SHA_A))

    def test_malformed_timestamp_aborts_with_sha(self) -> None:
        data = f"{SHA_B} 100 OK-1 fine\n{SHA_A} 12x3 BAD-1 broken\n{SHA_B} 300 OK-2 never\n".encode()

        with self.assertRaises(CommitLogParseError) as ctx:
            _records(data)

        self.assertIn(SHA_A, str(ctx.exception))

    def test_malformed_timestamp_ignored_when_line_has_no_ticket(self) -> None:
        records = _records(f"{SHA_A} notanumber no ticket\n{SHA_B} 5 T-1 ok\n".encode())

        self.assertEqual([r.ticket for r in records], ["T-1"])

    def test_signed_timestamps_are_accepted(self) -> None:
        self.assertEqual(parse_commit_line("abc -10 T-1 x").created_unix, -10)
        self.assertEqual(parse_commit_line("abc +10 T-1 x").created_unix, 10)

    def test_line_up_to_one_mebibyte_is_accepted(self) -> None:
        prefix = f"{SHA_A} 100 BIG-1 ".encode()
        line = prefix + b"x" * (MAX_LINE_BYTES - len(prefix))
        self.assertEqual(len(line), MAX_LINE_BYTES)

        records = _records(line + b"\n" + f"{SHA_B} 200 NEXT-2 y\n".encode())

        self.assertEqual([r.ticket for r in records], ["BIG-1", "NEXT-2"])

    def test_line_over_one_mebibyte_is_a_parse_error(self) -> None:
        prefix = f"{SHA_A} 100 BIG-1 ".encode()
        line = prefix + b"x" * (MAX_LINE_BYTES + 1 - len(prefix))

        with self.assertRaises(CommitLogParseError):
            _records(line + b"\n")

    def test_parser_is_lazy(self) -> None:
        iterator = iter_commit_records(io.BytesIO(b"abc 100 X-1 msg\ndef bad Y-2 msg\n"))

        self.assertEqual(next(iterator).ticket, "X-1")
        with self.assertRaises(CommitLogParseError):
            next(iterator)

    def test_invalid_utf8_subject_is_replaced(self) -> None:
        records = _records(b"abc 100 X-1 caf\xe9\n")

        self.assertEqual(records[0].ticket, "X-1")


class AsyncCommitLogParserTests(unittest.IsolatedAsyncioTestCase):
    async def _collect(self, data: bytes) -> list[ParsedCommitRecord]:
        reader = asyncio.StreamReader(limit=MAX_LINE_BYTES + 2)
        reader.feed_data(data)
        reader.feed_eof()
        return [record async for record in aiter_commit_records(reader)]

    async def test_async_reader_matches_sync_semantics(self) -> None:
        data = b"abc 100 X-1 msg\nabd 150 nothing\n\nabc 200 X-2 msg\n"

        records = await self._collect(data)

        self.assertEqual(records, _records(data))
        self.assertEqual([r.ticket for r in records], ["X-1"])

    async def test_async_reader_reports_overlong_line(self) -> None:
        data = b"abc 100 X-1 " + b"x" * (MAX_LINE_BYTES + 10) + b"\n"

        with self.assertRaises(CommitLogParseError):
            await self._collect(data)

    async def test_async_malformed_timestamp_names_sha(self) -> None:
        with self.assertRaises(CommitLogParseError) as ctx:
            await self._collect(f"{SHA_A} nope T-1 x\n".encode())

        self.assertIn(SHA_A, str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
