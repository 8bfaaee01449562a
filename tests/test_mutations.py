"""
Tests for the mutation applier and operation constructors.
"""
from datetime import timedelta

import pytest

from clubsync.core.config import AttachmentLimits
from clubsync.engine import mutations, operations
from clubsync.engine.errors import MutationRejected
from clubsync.schemas.message import Attachment, Media, MediaKind, OperationKind

from conftest import BASE_TIME, make_message


class TestReactMutation:
    """Reactions are user-sets, not counters."""

    def test_adding_same_user_twice_counts_once(self):
        message = make_message("m1")
        payload = {"symbol": "👍", "user_id": "userA", "active": True}

        once = mutations.react(message, payload)
        twice = mutations.react(once, payload)

        assert once.reaction_count("👍") == 1
        assert twice == once

    def test_remove_drops_empty_reaction(self):
        message = make_message("m1", reactions={"👍": {"userA"}})

        updated = mutations.react(message, {"symbol": "👍", "user_id": "userA", "active": False})

        assert "👍" not in updated.reactions
        assert updated.model_dump(mode="json")["reactions"] == {}

    def test_concurrent_users_merge_in_any_order(self):
        message = make_message("m1")
        a = {"symbol": "👍", "user_id": "userA", "active": True}
        b = {"symbol": "👍", "user_id": "userB", "active": True}

        ab = mutations.react(mutations.react(message, a), b)
        ba = mutations.react(mutations.react(message, b), a)

        assert ab == ba
        assert ab.reactions["👍"] == {"userA", "userB"}

    def test_does_not_modify_input(self):
        message = make_message("m1")
        mutations.react(message, {"symbol": "🎉", "user_id": "userA"})
        assert message.reactions == {}


class TestMarkReadMutation:

    def test_mark_read_twice_keeps_size(self):
        message = make_message("m1")
        once = mutations.mark_read(message, {"user_id": "userA"})
        twice = mutations.mark_read(once, {"user_id": "userA"})

        assert len(once.read_by) == 1
        assert len(twice.read_by) == 1

    def test_read_and_reaction_commute(self):
        message = make_message("m1")
        read = {"user_id": "userB"}
        react = {"symbol": "👍", "user_id": "userA"}

        first = mutations.mark_read(mutations.react(message, react), read)
        second = mutations.react(mutations.mark_read(message, read), react)

        assert first == second


class TestEditMutation:

    def test_edit_appends_history(self):
        message = make_message("m1", body="hello")
        updated = mutations.edit(message, {"body": "hello world", "edited_at": BASE_TIME})

        assert updated.body == "hello world"
        assert updated.edited_at == BASE_TIME
        assert len(updated.edit_history) == 1
        assert updated.edit_history[0].previous_body == "hello"

    def test_edit_with_same_body_is_noop(self):
        message = make_message("m1", body="hello")
        updated = mutations.edit(message, {"body": "hello", "edited_at": BASE_TIME})

        assert updated is message
        assert updated.edit_history == []

    def test_retransmitted_edit_adds_no_history(self):
        message = make_message("m1", body="hello")
        payload = {"body": "bye", "edited_at": BASE_TIME}

        once = mutations.edit(message, payload)
        twice = mutations.edit(once, payload)

        assert len(twice.edit_history) == 1

    def test_concurrent_edits_converge_in_any_order(self):
        message = make_message("m1", body="hello")
        first = {"body": "first", "edited_at": BASE_TIME + timedelta(minutes=1)}
        second = {"body": "second", "edited_at": BASE_TIME + timedelta(minutes=2)}

        in_order = mutations.edit(mutations.edit(message, first), second)
        reversed_order = mutations.edit(mutations.edit(message, second), first)

        assert in_order == reversed_order
        assert in_order.body == "second"
        assert in_order.edited_at == BASE_TIME + timedelta(minutes=2)
        assert [record.previous_body for record in in_order.edit_history] == ["hello", "first"]

    def test_stale_edit_does_not_overwrite_newer_body(self):
        message = make_message("m1", body="hello")
        newer = mutations.edit(message, {"body": "newer", "edited_at": BASE_TIME + timedelta(minutes=5)})

        updated = mutations.edit(newer, {"body": "older", "edited_at": BASE_TIME + timedelta(minutes=1)})

        assert updated.body == "newer"
        assert len(updated.edit_history) == 2

    def test_redelivered_stale_edit_is_noop(self):
        message = make_message("m1", body="hello")
        older = {"body": "older", "edited_at": BASE_TIME + timedelta(minutes=1)}
        merged = mutations.edit(
            mutations.edit(message, {"body": "newer", "edited_at": BASE_TIME + timedelta(minutes=5)}),
            older,
        )

        assert mutations.edit(merged, older) is merged

    def test_same_timestamp_breaks_tie_on_body(self):
        message = make_message("m1", body="hello")
        a = {"body": "alpha", "edited_at": BASE_TIME}
        b = {"body": "beta", "edited_at": BASE_TIME}

        assert mutations.edit(mutations.edit(message, a), b) == mutations.edit(mutations.edit(message, b), a)

    def test_empty_body_rejected(self):
        with pytest.raises(MutationRejected):
            mutations.edit(make_message("m1"), {"body": "   ", "edited_at": BASE_TIME})


class TestDeleteAndPinMutations:

    def test_delete_keeps_body(self):
        message = make_message("m1", body="secret")
        updated = mutations.delete(message, {})

        assert updated.deleted is True
        assert updated.body == "secret"

    def test_pin_is_explicit_state(self):
        message = make_message("m1")
        pinned = mutations.pin(message, {"pinned": True})

        assert pinned.pinned is True
        assert mutations.pin(pinned, {"pinned": True}) is pinned


class TestAttachMutation:

    def test_attach_appends(self):
        message = make_message("m1")
        payload = {"attachment": {"id": "att-1", "name": "a.txt", "payload": "abc", "mime": "text/plain"}}

        updated = mutations.attach(message, payload, limits=AttachmentLimits())

        assert updated.attachments == [Attachment(id="att-1", name="a.txt", payload="abc", mime="text/plain")]
        assert mutations.attach(updated, payload, limits=AttachmentLimits()) is updated

    def test_same_file_attached_twice_is_kept_twice(self):
        message = make_message("m1")
        first = Attachment(name="a.txt", payload="abc", mime="text/plain")
        second = Attachment(name="a.txt", payload="abc", mime="text/plain")

        updated = mutations.attach(message, {"attachment": first.model_dump()}, limits=AttachmentLimits())
        updated = mutations.attach(updated, {"attachment": second.model_dump()}, limits=AttachmentLimits())

        assert first.id != second.id
        assert [a.id for a in updated.attachments] == [first.id, second.id]

    def test_attach_count_ceiling(self):
        limits = AttachmentLimits(max_count=1)
        message = make_message("m1", attachments=[Attachment(name="a", payload="x")])

        with pytest.raises(MutationRejected):
            mutations.attach(message, {"attachment": {"name": "b", "payload": "y"}}, limits=limits)

    def test_attach_size_ceiling(self):
        limits = AttachmentLimits(max_total_bytes=5)
        message = make_message("m1", attachments=[Attachment(name="a", payload="xxx")])

        with pytest.raises(MutationRejected):
            mutations.attach(message, {"attachment": {"name": "b", "payload": "yyy"}}, limits=limits)


class TestReplyMutation:

    def test_reply_appends_once(self):
        parent = make_message("m1")
        child = make_message("t1", sender_id="userA", reply_to_id="m1")
        payload = {"message": child.model_dump(mode="json")}

        once = mutations.reply(parent, payload, limits=AttachmentLimits())
        twice = mutations.reply(once, payload, limits=AttachmentLimits())

        assert [m.id for m in twice.thread] == ["t1"]

    def test_reply_from_other_room_rejected(self):
        parent = make_message("m1")
        child = make_message("t1", room_id="R2")

        with pytest.raises(MutationRejected):
            mutations.reply(parent, {"message": child.model_dump(mode="json")}, limits=AttachmentLimits())


class TestMutationFor:

    def test_tombstoned_target_accepts_mutation_as_noop(self):
        message = make_message("m1", deleted=True)
        op = operations.react("R1", "userA", "m1", "👍")

        assert mutations.mutation_for(op, AttachmentLimits())(message) is message

    def test_fills_acting_user(self):
        op = operations.mark_read("R1", "userC", "m1")
        updated = mutations.mutation_for(op, AttachmentLimits())(make_message("m1"))
        assert updated.read_by == {"userC"}

    def test_send_has_no_mutation(self):
        op = operations.send("R1", "userA", "Alice", body="hi")
        with pytest.raises(MutationRejected):
            mutations.mutation_for(op, AttachmentLimits())


class TestValidateNewMessage:

    def test_requires_body_or_media(self):
        with pytest.raises(MutationRejected):
            mutations.validate_new_message(make_message("m1", body=None), AttachmentLimits())

    def test_media_only_is_allowed(self):
        message = make_message("m1", body=None, media=Media(kind=MediaKind.IMAGE, payload="data:image/png;base64,AA"))
        mutations.validate_new_message(message, AttachmentLimits())

    def test_media_ceiling(self):
        message = make_message("m1", media=Media(kind=MediaKind.VIDEO, payload="x" * 20))
        with pytest.raises(MutationRejected):
            mutations.validate_new_message(message, AttachmentLimits(max_media_bytes=10))


class TestOperationConstructors:

    def test_send_carries_message_and_stable_ids(self):
        op = operations.send("R1", "userA", "Alice", body=" hello ")

        assert op.kind == OperationKind.SEND
        assert op.event_name == "message"
        assert op.payload["message"]["body"] == "hello"
        assert op.target_id == op.payload["message"]["id"]

    def test_op_ids_are_unique(self):
        ids = {operations.mark_read("R1", "userA", "m1").op_id for _ in range(50)}
        assert len(ids) == 50
