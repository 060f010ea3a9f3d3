"""Tests for message encoding, filename grammar and addressing."""

from datetime import datetime

import pytest

from agent_mesh_bus.codec import (
    Address,
    FilenameInfo,
    Message,
    MessageParseError,
    Owner,
    build_message,
    decode,
    encode,
    format_filename,
    is_terminal_filename,
    mark_terminal,
    message_filename,
    new_msg_id,
    parse_address,
    parse_filename,
    read_message,
    timestamp_from_filename,
    write_message,
)


def test_encode_canonical_order():
    message = Message(
        sender="d/a",
        to="d/b",
        type="task",
        status="start",
        msg_id="abc123",
        timestamp="2025-11-02T08:30:00",
        extra={"zeta": "1", "lens": "skeptic"},
        body="Hello",
    )
    text = encode(message).decode()
    header = text.split("---")[1].strip().splitlines()
    assert [line.split(":")[0] for line in header] == [
        "from", "to", "type", "status", "msg-id", "timestamp", "lens", "zeta",
    ]
    assert text.endswith("---\n\nHello\n")


def test_decode_roundtrip_fields():
    original = build_message("d/a", "d/b", "ask", "Question?", status="open", lens="skeptic")
    decoded = decode(encode(original))
    assert decoded.sender == "d/a"
    assert decoded.to == "d/b"
    assert decoded.type == "ask"
    assert decoded.status == "open"
    assert decoded.msg_id == original.msg_id
    assert decoded.get("lens") == "skeptic"
    assert decoded.body == "Question?\n"
    assert decoded.warnings == []


def test_header_values_split_on_first_colon():
    message = decode("---\nfrom: d/a\nto: d/b\ntype: update\nnote: see http://x:80\n---\n\nbody")
    assert message.get("note") == "see http://x:80"


def test_decode_missing_separator_raises():
    with pytest.raises(MessageParseError):
        decode("from: d/a\nto: d/b\n")
    with pytest.raises(MessageParseError):
        decode("---\nfrom: d/a\nto: d/b\n")


def test_validation_warnings_do_not_block():
    message = decode("---\nfrom: d/a\ntype: gossip\n---\n\nbody")
    assert message.body == "body"
    assert any("Missing required field: to" in w for w in message.warnings)
    assert any("Unknown type: gossip" in w for w in message.warnings)


def test_missing_msg_id_warns_for_task():
    message = decode("---\nfrom: d/a\nto: d/b\ntype: task\n---\n\nbody")
    assert message.warnings == ["Missing msg-id for task message"]


@pytest.mark.parametrize(
    "name",
    [
        "1102083000-task-interviewer>writer-4f7a21.md",
        "1102083000-task-complete-writer>core-4f7a21.md",
        "0101000000-ask-response-a>b-abcdef-done.md",
        "1231235959-update-a>b-000000-orphan.md",
    ],
)
def test_filename_roundtrip(name):
    assert format_filename(parse_filename(name)) == name


def test_parse_hyphenated_type():
    info = parse_filename("1102083000-task-complete-writer>core-4f7a21.md")
    assert info == FilenameInfo("1102083000", "task-complete", "writer", "core", "4f7a21")
    assert not info.is_terminal


def test_parse_terminal_suffix():
    info = parse_filename("1102083000-task-a>b-4f7a21-failed.md")
    assert info.suffix == "-failed"
    assert info.msg_id == "4f7a21"
    assert is_terminal_filename("1102083000-task-a>b-4f7a21-failed.md")
    assert not is_terminal_filename("1102083000-task-a>b-4f7a21.md")


@pytest.mark.parametrize(
    "name", ["notes.md", "1102-task-a>b-1.md", "1102083000-task-ab-1.md", "x.txt"]
)
def test_parse_filename_rejects(name):
    with pytest.raises(ValueError):
        parse_filename(name)


def test_message_filename_uses_participant_names():
    message = build_message("research/interviewer", "core/core", "task-complete", "done")
    name = message_filename(message, when=datetime(2025, 11, 2, 8, 30, 0))
    assert name == f"1102083000-task-complete-interviewer>core-{message.msg_id}.md"


def test_lexical_order_is_chronological():
    earlier = "0102030405-task-a>b-aaaaaa.md"
    later = "1102030405-task-a>b-000000.md"
    assert sorted([later, earlier]) == [earlier, later]


def test_timestamp_current_year():
    now = datetime(2025, 11, 2, 12, 0, 0)
    assert timestamp_from_filename("1102083000-task-a>b-1.md", now) == datetime(2025, 11, 2, 8, 30)


def test_timestamp_year_rollover():
    now = datetime(2026, 1, 1, 0, 30, 0)
    stamp = timestamp_from_filename("1231235959-task-a>b-1.md", now)
    assert stamp == datetime(2025, 12, 31, 23, 59, 59)


def test_timestamp_less_than_a_day_ahead_stays_in_year():
    now = datetime(2025, 6, 1, 12, 0, 0)
    stamp = timestamp_from_filename("0601200000-task-a>b-1.md", now)
    assert stamp == datetime(2025, 6, 1, 20, 0, 0)


def test_timestamp_leap_day():
    now = datetime(2025, 3, 1, 0, 0, 0)
    assert timestamp_from_filename("0229120000-task-a>b-1.md", now) == datetime(2024, 2, 29, 12)


def test_timestamp_invalid_month():
    with pytest.raises(ValueError):
        timestamp_from_filename("1302083000-task-a>b-1.md", datetime(2025, 1, 1))


def test_parse_address():
    assert parse_address("research/interviewer") == Address("research", "interviewer")
    assert parse_address("writer", default_domain="research") == Address("research", "writer")
    assert str(Address(None, "writer")) == "writer"
    with pytest.raises(ValueError):
        parse_address("a/b/c")
    with pytest.raises(ValueError):
        parse_address("")


def test_owner_parse():
    assert Owner.parse("d") == Owner("d")
    assert Owner.parse("d/a") == Owner("d", "a")
    assert Owner.parse("d/a").key == "d/a"
    assert not Owner.parse("d").is_participant


def test_new_msg_id_is_short_hex():
    msg_id = new_msg_id()
    assert len(msg_id) == 6
    int(msg_id, 16)


def test_write_and_mark_terminal(tmp_path):
    message = build_message("d/a", "d/b", "update", "status report")
    path = write_message(tmp_path / "outbox", message)
    assert path.parent == tmp_path / "outbox"
    assert read_message(path).body == "status report\n"
    assert list(path.parent.glob(".tmp-*")) == []

    done = mark_terminal(path)
    assert done.name.endswith("-done.md")
    assert not path.exists()
    with pytest.raises(ValueError):
        mark_terminal(done, "-archived")
