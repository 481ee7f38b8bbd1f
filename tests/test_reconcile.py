from __future__ import annotations

from typing import List

from chat_sync.models import Message, Sender
from chat_sync.reconcile import PendingSet, ReconciliationEngine, merge_messages


def _msg(mid: str, sender: Sender, ts: int, text: str = "x", cid: str = "c1", optimistic: bool = False) -> Message:
    return Message(id=mid, conversation_id=cid, sender=sender, text=text, timestamp=ts, is_optimistic=optimistic)


def _engine(window_ms: int = 30_000):
    emitted: List[List[Message]] = []
    engine = ReconciliationEngine(PendingSet(window_ms=window_ms), on_emit=emitted.append)
    return engine, emitted


def test_pending_set_rekey_and_move():
    pending = PendingSet()
    pending.add(_msg("tmp:a", Sender.USER, 1, optimistic=True))
    assert pending.rekey("c1", "tmp:a", "m1")
    assert not pending.rekey("c1", "tmp:a", "m2")
    assert pending.get("c1", "m1").text == "x"

    pending.add(_msg("tmp:b", Sender.ASSISTANT, 2, optimistic=True))
    # m1 is already stored in c1, so only the unsent entry follows
    assert pending.move("c1", "c9") == 1
    assert pending.size("c1") == 0
    moved = pending.for_conversation("c9")
    assert [(m.id, m.conversation_id) for m in moved] == [("tmp:b", "c9")]
    assert pending.size() == 1


def test_confirm_prefers_id_over_signature():
    pending = PendingSet()
    pending.add(_msg("m1", Sender.USER, 100, text="hi"))
    pending.add(_msg("tmp:b", Sender.USER, 101, text="hi"))
    # m1 must not be spent on the signature pass
    confirmed = pending.confirm("c1", [_msg("m1", Sender.USER, 100, text="hi")])
    assert [m.id for m in confirmed] == ["m1"]
    assert pending.size("c1") == 1


def test_confirm_respects_window():
    pending = PendingSet(window_ms=1_000)
    pending.add(_msg("tmp:a", Sender.USER, 10_000, text="hi"))
    assert pending.confirm("c1", [_msg("m1", Sender.USER, 5_000, text="hi")]) == []
    assert len(pending.confirm("c1", [_msg("m2", Sender.USER, 10_500, text="hi")])) == 1
    assert pending.size() == 0


def test_merge_orders_user_before_assistant_on_tie():
    remote = [_msg("m2", Sender.ASSISTANT, 50), _msg("m1", Sender.USER, 40)]
    pending = [_msg("tmp:u", Sender.USER, 50, text="later", optimistic=True)]
    merged = merge_messages(remote, pending, "c1")
    assert [m.id for m in merged] == ["m1", "tmp:u", "m2"]


def test_merge_ignores_pending_of_other_conversations_and_known_ids():
    remote = [_msg("m1", Sender.USER, 1)]
    pending = [_msg("m1", Sender.USER, 1), _msg("tmp:z", Sender.USER, 2, cid="c2")]
    assert [m.id for m in merge_messages(remote, pending, "c1")] == ["m1"]


def test_identical_snapshots_emit_once():
    engine, emitted = _engine()
    engine.bind("c1")
    snapshot = [_msg("m1", Sender.USER, 1), _msg("m2", Sender.ASSISTANT, 2)]
    engine.on_remote_snapshot("c1", snapshot)
    engine.on_remote_snapshot("c1", list(snapshot))
    # one forced emit from bind, one for the snapshot
    assert len(emitted) == 2
    assert [m.id for m in emitted[-1]] == ["m1", "m2"]


def test_remote_text_overwrite_is_emitted():
    engine, emitted = _engine()
    engine.bind("c1")
    engine.on_remote_snapshot("c1", [_msg("m1", Sender.ASSISTANT, 1, text="draft")])
    engine.on_remote_snapshot("c1", [_msg("m1", Sender.ASSISTANT, 1, text="final")])
    assert [m.text for m in emitted[-1]] == ["final"]


def test_snapshot_confirms_pending_by_signature():
    engine, emitted = _engine()
    engine.bind("c1")
    engine.pending.add(_msg("tmp:u", Sender.USER, 100, text="hi", optimistic=True))
    engine.reconcile()
    assert [m.id for m in engine.messages] == ["tmp:u"]

    engine.on_remote_snapshot("c1", [_msg("m1", Sender.USER, 102, text="hi")])
    assert engine.pending.size() == 0
    assert [m.id for m in engine.messages] == ["m1"]
    assert engine.is_confirmed("c1", "m1")
    assert not engine.is_confirmed("c2", "m1")


def test_confirmation_of_rekeyed_entry_clears_optimistic_flag():
    engine, emitted = _engine()
    engine.bind("c1")
    # already carries its store id, so the merged ids and texts do not change
    engine.pending.add(_msg("m1", Sender.USER, 100, text="hi", optimistic=True))
    engine.reconcile()
    assert engine.messages[0].is_optimistic

    engine.on_remote_snapshot("c1", [_msg("m1", Sender.USER, 100, text="hi")])
    assert engine.pending.size() == 0
    assert not engine.messages[0].is_optimistic
    assert not emitted[-1][0].is_optimistic
    assert engine.last_timestamp("c1") == 100
    assert engine.last_timestamp("c2") is None


def test_old_identical_message_does_not_confirm_new_send():
    engine, _ = _engine()
    engine.bind("c1")
    old = _msg("m1", Sender.USER, 100, text="hi")
    engine.on_remote_snapshot("c1", [old])

    engine.pending.add(_msg("tmp:u", Sender.USER, 200, text="hi", optimistic=True))
    engine.on_remote_snapshot("c1", [old])
    assert engine.pending.size("c1") == 1
    assert [m.id for m in engine.messages] == ["m1", "tmp:u"]

    engine.on_remote_snapshot("c1", [old, _msg("m2", Sender.USER, 201, text="hi")])
    assert engine.pending.size("c1") == 0
    assert [m.id for m in engine.messages] == ["m1", "m2"]


def test_snapshot_for_inactive_conversation_is_ignored():
    engine, emitted = _engine()
    engine.bind("c2")
    before = len(emitted)
    engine.on_remote_snapshot("c1", [_msg("m1", Sender.USER, 1)])
    assert len(emitted) == before
    assert engine.messages == []


def test_stream_error_keeps_last_list():
    engine, emitted = _engine()
    engine.bind("c1")
    engine.on_remote_snapshot("c1", [_msg("m1", Sender.USER, 1)])
    count = len(emitted)
    engine.on_remote_error(RuntimeError("permission denied"))
    assert [m.id for m in engine.messages] == ["m1"]
    assert len(emitted) == count


def test_clear_empties_list():
    engine, emitted = _engine()
    engine.bind("c1")
    engine.on_remote_snapshot("c1", [_msg("m1", Sender.USER, 1)])
    engine.clear()
    assert engine.conversation_id is None
    assert emitted[-1] == []
