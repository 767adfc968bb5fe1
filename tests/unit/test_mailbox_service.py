"""Unit tests for MailboxService against the in-memory IMAP server.

Every call goes through the real IMAPConnector, so these tests also cover
folder resolution and error mapping on the way to the server.
"""

from datetime import timedelta

import pytest

from fakes import BASE_DATE, TEST_EMAIL, TEST_PASSWORD, FakeIMAPClient, FakeIMAPServer, build_raw_message, seed_default_mailbox

from webmail_proxy.lib.errors import MailServerError, NotFoundError, ValidationError
from webmail_proxy.mail.imap_session import IMAPConnector
from webmail_proxy.mail.mailbox_service import MailboxService


def _service_for(server, imap_settings, folder_resolver):
    connector = IMAPConnector(
        imap_settings,
        TEST_EMAIL,
        TEST_PASSWORD,
        verify_tls=False,
        client_factory=lambda *args, **kwargs: FakeIMAPClient(server),
    )
    return MailboxService(connector, folder_resolver, cache_key="legacy|imap.example.com")


class TestListing:
    """Test listing, reading and search."""

    def test_list_mailboxes(self, mailbox_service):
        paths = [m.path for m in mailbox_service.list_mailboxes()]
        assert paths == ["INBOX", "Sent", "Drafts", "Trash", "Spam", "Work"]

    def test_list_messages_newest_first(self, mailbox_service):
        """
        Validates: pages are ordered newest first with a hasMore marker

        Expected outcome:
        - First page of two holds the two newest messages by date
        - total counts every message, hasMore is set
        """
        page = mailbox_service.list_messages("inbox", limit=2)
        body = page.to_dict()

        assert [e.uid for e in page.emails] == [2, 3]
        assert body["total"] == 3
        assert body["hasMore"] is True
        assert body["folder"] == "INBOX"

    def test_list_messages_second_page(self, mailbox_service):
        page = mailbox_service.list_messages("INBOX", limit=2, offset=2)
        assert [e.uid for e in page.emails] == [1]
        assert page.to_dict()["hasMore"] is False

    def test_list_is_readonly(self, mailbox_service, fake_imap_server):
        mailbox_service.list_messages("INBOX")
        assert fake_imap_server.select_calls[-1] == ("INBOX", True)

    def test_list_empty_folder(self, mailbox_service):
        page = mailbox_service.list_messages("Work")
        assert page.emails == []
        assert page.total == 0

    def test_list_with_search(self, mailbox_service):
        page = mailbox_service.list_messages("INBOX", search="tacos")
        assert [e.uid for e in page.emails] == [3]

    def test_search(self, mailbox_service):
        results = mailbox_service.search("quarterly")
        assert [m.uid for m in results] == [2, 1]

    def test_search_by_sender(self, mailbox_service):
        assert [m.uid for m in mailbox_service.search("bob@example.com")] == [2]

    def test_search_requires_query(self, mailbox_service):
        with pytest.raises(ValidationError):
            mailbox_service.search("   ")

    def test_get_message_leaves_unread(self, mailbox_service, fake_imap_server):
        message = mailbox_service.get_message("INBOX", 2)

        assert message.subject == "Re: Quarterly report"
        assert "Looks good" in message.text_body
        assert message.references == ["<report-1@example.com>"]
        assert "\\Seen" not in fake_imap_server.message("INBOX", 2).flags

    def test_get_message_mark_read(self, mailbox_service, fake_imap_server):
        message = mailbox_service.get_message("INBOX", 2, mark_read=True)

        assert message.read
        assert "\\Seen" in fake_imap_server.message("INBOX", 2).flags

    def test_get_missing_message(self, mailbox_service):
        with pytest.raises(NotFoundError):
            mailbox_service.get_message("INBOX", 99)

    def test_attachment_download(self, mailbox_service, fake_imap_server):
        uid = fake_imap_server.add_message(
            "INBOX", subject="Invoice", attachments=(("invoice.pdf", "application/pdf", b"%PDF-1.4 data"),)
        )

        message = mailbox_service.get_message("INBOX", uid)
        assert [a.filename for a in message.attachments] == ["invoice.pdf"]

        attachment = mailbox_service.get_attachment("INBOX", uid, message.attachments[0].id)
        assert attachment.content == b"%PDF-1.4 data"
        assert attachment.content_type == "application/pdf"

    def test_unknown_attachment(self, mailbox_service):
        with pytest.raises(NotFoundError):
            mailbox_service.get_attachment("INBOX", 1, "nope")

    def test_get_raw(self, mailbox_service, fake_imap_server):
        raw = mailbox_service.get_raw("INBOX", 3)
        assert b"Subject: Lunch?" in raw
        assert "\\Seen" not in fake_imap_server.message("INBOX", 3).flags


class TestFlags:
    """Test flags and labels."""

    def test_read_and_starred(self, mailbox_service, fake_imap_server):
        assert mailbox_service.set_read("INBOX", 2, True)
        assert mailbox_service.set_starred("INBOX", 1, True)
        mailbox_service.set_starred("INBOX", 3, False)

        assert "\\Seen" in fake_imap_server.message("INBOX", 2).flags
        assert "\\Flagged" in fake_imap_server.message("INBOX", 1).flags
        assert "\\Flagged" not in fake_imap_server.message("INBOX", 3).flags

    def test_important(self, mailbox_service, fake_imap_server):
        assert mailbox_service.set_important("INBOX", 1, True)
        assert "$Important" in fake_imap_server.message("INBOX", 1).flags

    def test_important_rejected_returns_false(self, mailbox_service, fake_imap_server):
        """
        Validates: a server that rejects the keyword does not fail the request

        Expected outcome:
        - set_important returns False instead of raising
        """
        fake_imap_server.fail_commands.add("store")
        assert mailbox_service.set_important("INBOX", 1, True) is False

    def test_store_failure_raises_for_other_flags(self, mailbox_service, fake_imap_server):
        fake_imap_server.fail_commands.add("store")
        with pytest.raises(MailServerError):
            mailbox_service.set_read("INBOX", 1, True)

    def test_labels(self, mailbox_service, fake_imap_server):
        mailbox_service.add_label("INBOX", 1, "projects")
        assert "projects" in fake_imap_server.message("INBOX", 1).flags

        mailbox_service.remove_label("INBOX", 1, "projects")
        assert "projects" not in fake_imap_server.message("INBOX", 1).flags

    @pytest.mark.parametrize("label", ["", "two words", "bad(paren", "quote\"d", "\\Seen"])
    def test_invalid_labels(self, mailbox_service, label):
        with pytest.raises(ValidationError):
            mailbox_service.add_label("INBOX", 1, label)

    def test_bulk_flags(self, mailbox_service, fake_imap_server):
        assert mailbox_service.set_flags_bulk("INBOX", [1, 2, 3], "\\Seen", True) == 3
        assert all("\\Seen" in m.flags for m in fake_imap_server.folders["INBOX"].messages.values())


class TestMoveAndDelete:
    """Test moving, deleting, archiving and spam handling."""

    def test_move(self, mailbox_service, fake_imap_server):
        assert mailbox_service.move("INBOX", 3, "work") == "Work"

        assert 3 not in fake_imap_server.folders["INBOX"].messages
        assert len(fake_imap_server.folders["Work"].messages) == 1

    def test_move_without_move_capability(self, imap_settings, folder_resolver):
        """
        Validates: servers without MOVE get COPY + delete + expunge

        Expected outcome:
        - Message present in the target and gone from the source
        """
        server = seed_default_mailbox(FakeIMAPServer(supports_move=False))
        service = _service_for(server, imap_settings, folder_resolver)

        service.move("INBOX", 1, "Work")

        assert 1 not in server.folders["INBOX"].messages
        assert len(server.folders["Work"].messages) == 1

    def test_move_to_missing_folder(self, mailbox_service):
        with pytest.raises(MailServerError):
            mailbox_service.move("INBOX", 1, "Does Not Exist")

    def test_copy(self, mailbox_service, fake_imap_server):
        mailbox_service.copy("INBOX", 1, "Work")
        assert 1 in fake_imap_server.folders["INBOX"].messages
        assert len(fake_imap_server.folders["Work"].messages) == 1

    def test_delete_moves_to_trash(self, mailbox_service, fake_imap_server):
        result = mailbox_service.delete("INBOX", 1)

        assert result == {"permanent": False, "movedTo": "Trash"}
        assert 1 not in fake_imap_server.folders["INBOX"].messages
        assert len(fake_imap_server.folders["Trash"].messages) == 1

    def test_delete_in_trash_is_permanent(self, mailbox_service, fake_imap_server):
        mailbox_service.delete("INBOX", 1)
        trash_uid = next(iter(fake_imap_server.folders["Trash"].messages))

        result = mailbox_service.delete("Trash", trash_uid)

        assert result["permanent"] is True
        assert not fake_imap_server.folders["Trash"].messages

    def test_permanent_delete(self, mailbox_service, fake_imap_server):
        assert mailbox_service.delete("INBOX", 2, permanent=True)["permanent"]
        assert 2 not in fake_imap_server.folders["INBOX"].messages
        assert not fake_imap_server.folders["Trash"].messages

    def test_delete_creates_trash_when_missing(self, mailbox_service, fake_imap_server):
        del fake_imap_server.folders["Trash"]

        result = mailbox_service.delete("INBOX", 1)

        assert result["movedTo"] == "Trash"
        assert "Trash" in fake_imap_server.folders

    def test_archive_creates_folder(self, mailbox_service, fake_imap_server):
        assert mailbox_service.archive("INBOX", 1) == "Archive"
        assert len(fake_imap_server.folders["Archive"].messages) == 1

    def test_spam_round_trip(self, mailbox_service, fake_imap_server):
        assert mailbox_service.mark_spam("INBOX", 1) == "Spam"
        spam_uid = next(iter(fake_imap_server.folders["Spam"].messages))

        assert mailbox_service.mark_not_spam("Spam", spam_uid) == "INBOX"
        assert not fake_imap_server.folders["Spam"].messages
        assert len(fake_imap_server.folders["INBOX"].messages) == 3


class TestMailboxes:
    """Test folder management."""

    def test_create(self, mailbox_service, fake_imap_server):
        assert mailbox_service.create_mailbox("Projects") == "Projects"
        assert "Projects" in fake_imap_server.folders

    def test_create_nested(self, mailbox_service, fake_imap_server):
        assert mailbox_service.create_mailbox("2025", parent="work") == "Work/2025"
        assert "Work/2025" in fake_imap_server.folders

    def test_create_requires_name(self, mailbox_service):
        with pytest.raises(ValidationError):
            mailbox_service.create_mailbox("  ")

    def test_create_existing(self, mailbox_service):
        with pytest.raises(MailServerError):
            mailbox_service.create_mailbox("Work")

    def test_created_folder_visible_immediately(self, mailbox_service):
        mailbox_service.list_messages("INBOX")
        mailbox_service.create_mailbox("Receipts")
        assert mailbox_service.move("INBOX", 1, "receipts") == "Receipts"

    def test_rename(self, mailbox_service, fake_imap_server):
        assert mailbox_service.rename_mailbox("Work", "Jobs") == "Jobs"
        assert "Jobs" in fake_imap_server.folders
        assert "Work" not in fake_imap_server.folders

    def test_rename_nested_keeps_parent(self, mailbox_service, fake_imap_server):
        fake_imap_server.add_folder("Work/2024")
        assert mailbox_service.rename_mailbox("Work/2024", "Archive 2024") == "Work/Archive 2024"

    def test_rename_inbox_refused(self, mailbox_service):
        with pytest.raises(ValidationError):
            mailbox_service.rename_mailbox("INBOX", "Main")

    def test_delete(self, mailbox_service, fake_imap_server):
        mailbox_service.delete_mailbox("Work")
        assert "Work" not in fake_imap_server.folders

    @pytest.mark.parametrize("name", ["INBOX", "Trash", "sent", "Spam", "Drafts"])
    def test_delete_protected(self, mailbox_service, fake_imap_server, name):
        with pytest.raises(ValidationError):
            mailbox_service.delete_mailbox(name)

    def test_empty_trash(self, mailbox_service, fake_imap_server):
        mailbox_service.delete("INBOX", 1)
        mailbox_service.delete("INBOX", 2)

        assert mailbox_service.empty_mailbox("trash") == 2
        assert not fake_imap_server.folders["Trash"].messages

    def test_empty_refused_for_regular_folder(self, mailbox_service):
        with pytest.raises(ValidationError):
            mailbox_service.empty_mailbox("INBOX")

    def test_empty_spam_with_nothing_in_it(self, mailbox_service):
        assert mailbox_service.empty_mailbox("spam") == 0


class TestStatus:
    """Test folder status and unread counts."""

    def test_mailbox_status(self, mailbox_service):
        status = mailbox_service.mailbox_status("inbox").to_dict()
        assert status["messages"] == 3
        assert status["unseen"] == 2
        assert status["uidNext"] == 4

    def test_all_status(self, mailbox_service):
        entries = {e["path"]: e for e in mailbox_service.all_status()}

        assert entries["INBOX"]["type"] == "inbox"
        assert entries["INBOX"]["messages"] == 3
        assert entries["Spam"]["type"] == "spam"
        assert entries["Work"]["messages"] == 0

    def test_all_status_reports_errors(self, mailbox_service, fake_imap_server):
        fake_imap_server.fail_commands.add("status")
        entries = mailbox_service.all_status()
        assert all(e["messages"] == 0 and "error" in e for e in entries)

    def test_unread_counts_every_folder(self, mailbox_service):
        counts = mailbox_service.unread_counts()
        assert counts["INBOX"] == {"unseen": 2, "total": 3}
        assert set(counts) == {"INBOX", "Sent", "Drafts", "Trash", "Spam", "Work"}

    def test_unread_counts_selected(self, mailbox_service):
        assert list(mailbox_service.unread_counts(["inbox"])) == ["INBOX"]


class TestDraftsAndSent:
    """Test APPEND-based operations."""

    def test_save_draft(self, mailbox_service, fake_imap_server):
        result = mailbox_service.save_draft(build_raw_message(subject="Draft one"))

        assert result == {"folder": "Drafts", "uid": 1}
        assert fake_imap_server.message("Drafts", 1).flags == {"\\Draft", "\\Seen"}

    def test_save_draft_without_uidplus(self, imap_settings, folder_resolver):
        server = seed_default_mailbox(FakeIMAPServer(uidplus=False))
        service = _service_for(server, imap_settings, folder_resolver)

        assert service.save_draft(build_raw_message())["uid"] is None

    def test_save_draft_without_drafts_folder(self, mailbox_service, fake_imap_server):
        del fake_imap_server.folders["Drafts"]
        with pytest.raises(NotFoundError):
            mailbox_service.save_draft(build_raw_message())

    def test_update_draft_replaces_old_version(self, mailbox_service, fake_imap_server):
        mailbox_service.save_draft(build_raw_message(subject="v1"))

        result = mailbox_service.update_draft("Drafts", 1, build_raw_message(subject="v2"))

        assert result["uid"] == 2
        drafts = fake_imap_server.folders["Drafts"].messages
        assert list(drafts) == [2]
        assert drafts[2].header("Subject") == "v2"

    def test_delete_draft(self, mailbox_service, fake_imap_server):
        mailbox_service.save_draft(build_raw_message())
        mailbox_service.delete_draft("drafts", 1)
        assert not fake_imap_server.folders["Drafts"].messages

    def test_save_sent_copy(self, mailbox_service, fake_imap_server):
        assert mailbox_service.save_sent_copy(build_raw_message(subject="Sent one"))
        assert fake_imap_server.message("Sent", 1).flags == {"\\Seen"}

    def test_save_sent_copy_failure_is_not_raised(self, mailbox_service, fake_imap_server):
        fake_imap_server.fail_commands.add("append")
        assert mailbox_service.save_sent_copy(build_raw_message()) is False


class TestStarredThreadSync:
    """Test cross-folder starred, threading and sync polling."""

    def test_starred(self, mailbox_service, fake_imap_server):
        fake_imap_server.add_message("Work", subject="Flagged work item", flags={"\\Flagged"})

        starred = mailbox_service.starred()

        assert {(m.folder, m.subject) for m in starred} == {
            ("INBOX", "Lunch?"),
            ("Work", "Flagged work item"),
        }

    def test_starred_in_selected_folder(self, mailbox_service):
        assert [m.uid for m in mailbox_service.starred(["inbox"])] == [3]

    def test_thread_by_subject(self, mailbox_service):
        """
        Validates: a reply is grouped with its original by base subject

        Expected outcome:
        - Thread holds both messages, oldest first
        - Unrelated messages excluded
        """
        thread = mailbox_service.get_thread("INBOX", 2)

        assert thread["subject"] == "Quarterly report"
        assert thread["count"] == 2
        assert [m.uid for m in thread["thread"]] == [1, 2]

    @pytest.mark.parametrize("anchor", [0, 1, 2])
    def test_thread_from_any_member(self, mailbox_service, fake_imap_server, anchor):
        """
        Validates: the same thread comes back whichever member is opened

        Expected outcome:
        - All three "Status" messages, ordered by date rather than UID
        - "Other" is never included
        """
        reply = fake_imap_server.add_message("INBOX", subject="Re: Status", date=BASE_DATE + timedelta(days=2))
        original = fake_imap_server.add_message("INBOX", subject="Status", date=BASE_DATE + timedelta(days=1))
        fake_imap_server.add_message("INBOX", subject="Other", date=BASE_DATE + timedelta(days=1, hours=1))
        second_reply = fake_imap_server.add_message(
            "INBOX", subject="Re: Re: Status", date=BASE_DATE + timedelta(days=3)
        )
        expected = [original, reply, second_reply]

        thread = mailbox_service.get_thread("INBOX", expected[anchor])

        assert thread["subject"] == "Status"
        assert thread["count"] == 3
        assert [m.uid for m in thread["thread"]] == expected

    def test_thread_missing_anchor(self, mailbox_service):
        with pytest.raises(NotFoundError):
            mailbox_service.get_thread("INBOX", 42)

    def test_sync_without_watermark(self, mailbox_service):
        result = mailbox_service.sync("INBOX")
        assert result["uidNext"] == 4
        assert result["hasNew"] is False

    def test_sync_reports_new_messages(self, mailbox_service, fake_imap_server):
        fake_imap_server.add_message("INBOX", subject="Fresh")

        result = mailbox_service.sync("INBOX", uid_next=4)

        assert result["hasNew"] is True
        assert result["newCount"] == 1
        assert result["newEmails"][0].subject == "Fresh"
        assert result["uidNext"] == 5

    def test_sync_up_to_date(self, mailbox_service):
        result = mailbox_service.sync("INBOX", uid_next=4)
        assert result["hasNew"] is False
        assert result["newEmails"] == []
