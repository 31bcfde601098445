import unittest

from ticketlinks.models import CommitTicketLink
from ticketlinks.parsers.commit_log import ParsedCommitRecord
from ticketlinks.reconcile import link_key, reconcile


def _record(ticket: str, sha: str, ts: int = 100) -> ParsedCommitRecord:
    return ParsedCommitRecord(sha=sha, ticket=ticket, created_unix=ts)


def _row(row_id: int, ticket: str, sha: str, ts: int = 100) -> CommitTicketLink:
    return CommitTicketLink(id=row_id, repoId=1, ticket=ticket, sha=sha, createdUnix=ts)


class ReconcileTests(unittest.TestCase):
    def test_matching_sets_produce_no_changes(self) -> None:
        authoritative = [_record("T1", "shaA"), _record("T2", "shaB")]
        persisted = [_row(1, "T1", "shaA"), _row(2, "T2", "shaB")]

        result = reconcile(authoritative, persisted)

        self.assertTrue(result.is_noop)
        self.assertEqual(result.to_insert, [])
        self.assertEqual(result.to_delete_ids, [])

    def test_symmetric_difference_by_key(self) -> None:
        authoritative = [_record("T1", "shaA"), _record("T2", "shaB")]
        persisted = [_row(10, "T1", "shaA"), _row(11, "T3", "shaC")]

        result = reconcile(authoritative, persisted)

        self.assertEqual([link_key(r) for r in result.to_insert], [("T2", "shaB")])
        self.assertEqual(result.to_delete_ids, [11])

    def test_empty_authoritative_set_tears_down_everything(self) -> None:
        persisted = [_row(1, "T1", "a"), _row(2, "T2", "b"), _row(3, "T3", "c")]

        result = reconcile([], persisted)

        self.assertEqual(result.to_insert, [])
        self.assertEqual(sorted(result.to_delete_ids), [1, 2, 3])

    def test_timestamp_differences_do_not_trigger_updates(self) -> None:
        result = reconcile([_record("T1", "shaA", ts=999)], [_row(1, "T1", "shaA", ts=100)])

        self.assertTrue(result.is_noop)

    def test_same_sha_under_different_tickets_is_distinct(self) -> None:
        result = reconcile([_record("T1", "shaA"), _record("T2", "shaA")], [_row(1, "T1", "shaA")])

        self.assertEqual([r.ticket for r in result.to_insert], ["T2"])
        self.assertEqual(result.to_delete_ids, [])

    def test_duplicate_authoritative_keys_insert_once(self) -> None:
        result = reconcile([_record("T1", "shaA", 1), _record("T1", "shaA", 2)], [])

        self.assertEqual(len(result.to_insert), 1)

    def test_duplicate_persisted_rows_for_vanished_key_are_all_deleted(self) -> None:
        result = reconcile([], [_row(1, "T1", "shaA"), _row(2, "T1", "shaA")])

        self.assertEqual(result.to_delete_ids, [1, 2])


if __name__ == "__main__":
    unittest.main()
