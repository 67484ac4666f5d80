"""
Tests de la agregación de conversaciones (lógica pura)
"""
from tests.helpers import make_message as msg

from app.services.conversations import (
    Conversation,
    ViewerContext,
    build_conversations,
    coerce_messages,
    mark_read_locally,
    refresh_conversation,
    unread_total,
)

ME = "1"
ctx = ViewerContext(ME)

def ids(messages):
    return [m.id for m in messages]

def test_empty_inputs_produce_no_conversations():
    """Sin mensajes no hay conversaciones"""
    assert build_conversations([], [], ctx) == []

def test_single_partner_gets_all_and_only_its_messages():
    """Todos los mensajes entre A y B caen en una única conversación"""
    sent = [msg(1, ME, "2"), msg(3, ME, "2")]
    received = [msg(2, "2", ME), msg(4, "2", ME)]
    conversations = build_conversations(sent, received, ctx)

    assert len(conversations) == 1
    assert conversations[0].partner_id == "2"
    assert ids(conversations[0].messages) == [1, 2, 3, 4]

def test_messages_grouped_by_partner():
    sent = [msg(1, ME, "2"), msg(2, ME, "3")]
    received = [msg(3, "3", ME), msg(4, "4", ME)]
    conversations = build_conversations(sent, received, ctx)

    by_partner = {c.partner_id: ids(c.messages) for c in conversations}
    assert by_partner == {"2": [1], "3": [2, 3], "4": [4]}

def test_messages_ordered_by_created_at_then_id():
    """Orden ascendente por fecha; en empate decide el id"""
    received = [
        msg(5, "2", ME, minutes=10),
        msg(2, "2", ME, minutes=30),
        msg(4, "2", ME, minutes=10),
        msg(1, "2", ME, minutes=20),
    ]
    [conversation] = build_conversations([], received, ctx)
    assert ids(conversation.messages) == [4, 5, 1, 2]

    pairs = zip(conversation.messages, conversation.messages[1:])
    for a, b in pairs:
        assert a.created_at <= b.created_at
        if a.created_at == b.created_at:
            assert a.id < b.id

def test_conversations_sorted_by_last_message_desc():
    sent = [msg(1, ME, "2", minutes=5), msg(2, ME, "3", minutes=50)]
    received = [msg(3, "4", ME, minutes=20)]
    conversations = build_conversations(sent, received, ctx)

    assert [c.partner_id for c in conversations] == ["3", "4", "2"]
    assert conversations[0].last_message.id == 2
    assert conversations[0].last_message_time == conversations[0].messages[-1].created_at

def test_ties_keep_stable_order_across_calls():
    """Conversaciones con la misma última fecha no cambian de orden entre llamadas"""
    received = [msg(1, "2", ME, minutes=5), msg(2, "3", ME, minutes=5), msg(3, "4", ME, minutes=5)]
    first = [c.partner_id for c in build_conversations([], received, ctx)]
    for _ in range(5):
        assert [c.partner_id for c in build_conversations([], received, ctx)] == first

def test_unread_count_only_counts_messages_to_current_user():
    sent = [msg(1, ME, "2", is_read=False)]
    received = [msg(2, "2", ME, is_read=False), msg(3, "2", ME, is_read=True), msg(4, "2", ME)]
    [conversation] = build_conversations(sent, received, ctx)
    assert conversation.unread_count == 2

def test_unread_count_follows_mark_read():
    """El contador se recalcula siempre a partir de los mensajes"""
    received = [msg(i, "2", ME) for i in range(1, 5)]
    [conversation] = build_conversations([], received, ctx)
    assert conversation.unread_count == 4

    conversation.messages = mark_read_locally(conversation.messages, [1, 3])
    assert conversation.unread_count == 2
    conversation.messages = mark_read_locally(conversation.messages, [1])
    assert conversation.unread_count == 2
    conversation.messages = mark_read_locally(conversation.messages, [2, 4])
    assert conversation.unread_count == 0

def test_mark_read_locally_is_idempotent_and_one_way():
    messages = coerce_messages([msg(1, "2", ME), msg(2, "2", ME, is_read=True)])
    once = mark_read_locally(messages, [1])
    twice = mark_read_locally(once, [1])
    assert [m.is_read for m in once] == [m.is_read for m in twice] == [True, True]

def test_unread_total_sums_conversations():
    conversations = [
        {"partner_id": "1", "unread_count": 2},
        {"partner_id": "2", "unread_count": 0},
        {"partner_id": "3", "unread_count": 5},
    ]
    assert unread_total(conversations) == 7
    assert unread_total([]) == 0

def test_unread_total_on_built_conversations():
    received = [msg(1, "2", ME), msg(2, "2", ME), msg(3, "3", ME, is_read=True), msg(4, "4", ME)]
    assert unread_total(build_conversations([], received, ctx)) == 3

def test_duplicate_rows_counted_once():
    row = msg(1, "2", ME)
    [conversation] = build_conversations([], [row, dict(row)], ctx)
    assert ids(conversation.messages) == [1]

def test_malformed_rows_are_skipped_not_raised():
    """Filas incompletas no rompen la agregación"""
    received = [
        {"sender_id": "2", "receiver_id": ME, "content": "no id"},
        {"id": 7, "sender_id": "2", "receiver_id": ME, "content": "no read flag",
         "created_at": msg(7, "2", ME)["created_at"]},
        None,
    ]
    [conversation] = build_conversations([], received, ctx)
    assert ids(conversation.messages) == [7]
    # Sin is_read se considera no leído
    assert conversation.unread_count == 1

def test_missing_created_at_sorts_first():
    received = [msg(2, "2", ME), {"id": 1, "sender_id": "2", "receiver_id": ME}]
    [conversation] = build_conversations([], received, ctx)
    assert ids(conversation.messages) == [1, 2]

def test_object_id_strings_order_as_text():
    a = msg(1, "2", ME, minutes=0)
    b = msg(1, "2", ME, minutes=0)
    a["id"], b["id"] = "65a000000000000000000002", "65a000000000000000000001"
    [conversation] = build_conversations([], [a, b], ctx)
    assert ids(conversation.messages) == ["65a000000000000000000001", "65a000000000000000000002"]

def test_non_ascii_digit_ids_order_as_text():
    """Ids como "²" pasan isdigit() pero no son enteros: se comparan como texto"""
    a = msg(1, "2", ME, minutes=0)
    b = msg(2, "2", ME, minutes=0)
    a["id"], b["id"] = "²", "7"
    [conversation] = build_conversations([], [a, b], ctx)
    assert ids(conversation.messages) == ["7", "²"]

    result = refresh_conversation([a], [a, b], ctx)
    assert ids(result.merged) == ["7", "²"]

def test_to_out_exposes_derived_fields():
    [conversation] = build_conversations([msg(1, ME, "2")], [msg(2, "2", ME)], ctx)
    out = conversation.to_out()
    assert out.partner_id == "2"
    assert out.unread_count == 1
    assert out.last_message.id == 2
    assert isinstance(conversation, Conversation)

# ---------- refresh_conversation ----------

def _three_existing():
    return [
        msg(1, "2", ME, is_read=True),
        msg(2, ME, "2", is_read=True),
        msg(3, "2", ME, is_read=False),
    ]

def test_refresh_two_new_messages_arrive():
    """Llegan dos mensajes nuevos: se detectan y se marcan 3, 4 y 5"""
    existing = _three_existing()
    polled = _three_existing() + [msg(4, "2", ME), msg(5, "2", ME)]

    result = refresh_conversation(existing, list(reversed(polled)), ctx)
    assert result.is_new is True
    assert ids(result.merged) == [1, 2, 3, 4, 5]
    assert set(result.to_mark_read) == {3, 4, 5}

def test_refresh_skips_already_marked_ids():
    existing = _three_existing()
    polled = _three_existing() + [msg(4, "2", ME), msg(5, "2", ME)]

    result = refresh_conversation(existing, polled, ctx, already_marked={"3"})
    assert set(result.to_mark_read) == {4, 5}

def test_refresh_same_count_is_not_new():
    existing = _three_existing()
    result = refresh_conversation(existing, _three_existing(), ctx)
    assert result.is_new is False
    assert ids(result.merged) == [1, 2, 3]

def test_refresh_picks_up_read_state_from_poll():
    existing = _three_existing()
    polled = _three_existing()
    polled[2]["is_read"] = True
    result = refresh_conversation(existing, polled, ctx)
    assert result.to_mark_read == []
    assert all(m.is_read for m in result.merged)

def test_refresh_never_shrinks_on_shorter_poll():
    """Si el poll trae menos mensajes se conserva la unión por id"""
    existing = _three_existing()
    polled = _three_existing()[:2]
    result = refresh_conversation(existing, polled, ctx)
    assert result.is_new is False
    assert ids(result.merged) == [1, 2, 3]

def test_refresh_superset_never_shorter_than_existing():
    existing = _three_existing()
    for extra in range(0, 4):
        polled = _three_existing() + [msg(10 + i, "2", ME) for i in range(extra)]
        result = refresh_conversation(existing, polled, ctx)
        assert len(result.merged) >= len(existing)
        assert len(result.merged) == len(polled)

def test_refresh_does_not_mark_messages_sent_by_me():
    existing = []
    polled = [msg(1, ME, "2"), msg(2, ME, "2")]
    result = refresh_conversation(existing, polled, ctx)
    assert result.is_new is True
    assert result.to_mark_read == []
