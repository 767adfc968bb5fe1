"""Unit tests for best-effort batch operations."""

import logging

from webmail_proxy.lib.errors import NotFoundError
from webmail_proxy.mail.batch import BatchResult, run_batch


class TestRunBatch:
    """Test run_batch outcome accounting."""

    def test_empty(self):
        result = run_batch([], lambda item: None)
        assert result.to_dict() == {"success": True, "succeeded": 0, "failed": 0, "errors": []}

    def test_failures_do_not_stop_others(self):
        def op(uid):
            if uid % 2:
                raise NotFoundError(f"Email {uid} not found")

        result = run_batch(range(6), op, max_workers=3, describe=lambda uid: {"uid": uid})

        assert result.succeeded == 3
        assert result.failed == 3
        assert not result.success
        assert sorted(e["uid"] for e in result.errors) == [1, 3, 5]
        assert result.errors[0]["error"] == "Not Found"

    def test_unexpected_errors_are_recorded(self, caplog):
        """
        Validates: a non-mail exception fails only its own item

        Expected outcome:
        - Other items still succeed
        - The item is reported as an internal error without the exception text
        - The traceback is logged
        """
        def op(item):
            if item == 2:
                raise KeyError("secret-internal-key")

        with caplog.at_level(logging.ERROR, logger="webmail_proxy.mail.batch"):
            result = run_batch([1, 2, 3], op, max_workers=2, describe=lambda uid: {"uid": uid})

        assert result.succeeded == 2
        assert result.failed == 1
        assert result.errors == [
            {"uid": 2, "error": "Internal Server Error", "message": "An unexpected error occurred"}
        ]
        assert "Batch item failed unexpectedly: KeyError" in caplog.text
        assert any(record.exc_info for record in caplog.records)

    def test_against_mail_server(self, mailbox_service, fake_imap_server):
        """
        Validates: each item runs as its own IMAP operation

        Expected outcome:
        - Moves to an existing folder succeed
        - Move to a missing folder fails without undoing the others
        """
        items = [(1, "Work"), (2, "Work"), (3, "Missing")]

        result = run_batch(
            items,
            lambda item: mailbox_service.move("INBOX", item[0], item[1]),
            max_workers=2,
            describe=lambda item: {"uid": item[0], "folder": "INBOX"},
        )

        assert result.succeeded == 2
        assert result.failed == 1
        assert result.errors[0]["uid"] == 3
        assert len(fake_imap_server.folders["Work"].messages) == 2
        assert list(fake_imap_server.folders["INBOX"].messages) == [3]

    def test_batch_delete_partial_failure(self, mailbox_service, fake_imap_server):
        """
        Validates: a batch delete reports per-item outcomes

        Expected outcome:
        - Four INBOX messages land in Trash
        - The item in a missing folder is the single failure
        """
        fake_imap_server.add_message("INBOX", subject="Fourth")
        items = [("INBOX", 1), ("INBOX", 2), ("INBOX", 3), ("INBOX", 4), ("Nowhere", 1)]

        result = run_batch(
            items,
            lambda item: mailbox_service.delete(*item),
            max_workers=4,
            describe=lambda item: {"folder": item[0], "uid": item[1]},
        )

        assert (result.succeeded, result.failed) == (4, 1)
        assert result.errors[0]["folder"] == "Nowhere"
        assert not fake_imap_server.folders["INBOX"].messages
        assert len(fake_imap_server.folders["Trash"].messages) == 4


class TestBatchResult:
    def test_success_means_no_failures(self):
        assert BatchResult(succeeded=2).success
        assert not BatchResult(succeeded=2, failed=1).success
