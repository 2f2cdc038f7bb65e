from streamkoppler.events import ThinkingClosed, ThinkingDelta
from streamkoppler.thinking import InlineThinkingSplitter, ThinkingBuffer, new_thread_id


def _buffer(threshold: int = 5, **kwargs) -> ThinkingBuffer:
    return ThinkingBuffer(threshold, id_factory=lambda: "t1", **kwargs)


def test_thread_ids_have_expected_shape() -> None:
    first, second = new_thread_id(), new_thread_id()
    assert first.startswith("thinking_")
    assert len(first.split("_")[2]) == 6
    assert first != second


def test_text_is_held_until_threshold() -> None:
    buf = _buffer()
    assert buf.append("abc") == []
    assert buf.append("de") == [ThinkingDelta(text="abcde", thread_id="t1")]
    assert buf.content == ""


def test_close_emits_remainder_with_signature_then_closed() -> None:
    buf = _buffer()
    buf.append("ab")
    buf.add_signature("sig-")
    buf.add_signature("1")
    assert buf.close() == [
        ThinkingDelta(text="ab", thread_id="t1", signature="sig-1"),
        ThinkingClosed(thread_id="t1"),
    ]
    assert buf.thread_id is None
    assert buf.signature is None


def test_close_after_full_flush_only_emits_closed() -> None:
    buf = _buffer()
    buf.append("abcdef")
    assert buf.close() == [ThinkingClosed(thread_id="t1")]


def test_signature_only_thread_emits_empty_delta() -> None:
    buf = _buffer()
    buf.open()
    buf.add_signature("s")
    assert buf.close() == [ThinkingDelta(text="", thread_id="t1", signature="s"), ThinkingClosed(thread_id="t1")]


def test_close_of_empty_thread_emits_nothing() -> None:
    buf = _buffer()
    assert buf.close() == []
    buf.open()
    assert buf.close() == []


def test_disabled_buffer_swallows_reasoning() -> None:
    buf = _buffer(enabled=False)
    assert buf.append("abcdefgh") == []
    assert buf.close() == []
    assert buf.saw_reasoning is True


def test_new_thread_after_close_gets_fresh_id() -> None:
    ids = iter(["t1", "t2"])
    buf = ThinkingBuffer(1, id_factory=lambda: next(ids))
    assert buf.append("a")[0].thread_id == "t1"
    buf.close()
    assert buf.append("b")[0].thread_id == "t2"


def test_splitter_routes_leading_think_block() -> None:
    splitter = InlineThinkingSplitter()
    assert splitter.feed("<think>abc</think>Hello") == [("thinking", "abc"), ("text", "Hello")]


def test_splitter_handles_tags_split_across_chunks() -> None:
    splitter = InlineThinkingSplitter()
    assert splitter.feed("<thi") == []
    assert splitter.feed("nk>reason") == [("thinking", "reason")]
    assert splitter.feed("</thi") == []
    assert splitter.feed("nk> done") == [("text", " done")]


def test_splitter_treats_late_think_tag_as_text() -> None:
    splitter = InlineThinkingSplitter()
    assert splitter.feed("Hi <think>x</think>") == [("text", "Hi <think>x</think>")]


def test_splitter_accepts_thinking_tag_anywhere() -> None:
    splitter = InlineThinkingSplitter()
    parts = splitter.feed("Answer: <thinking>hmm</thinking>42")
    assert parts == [("text", "Answer: "), ("thinking", "hmm"), ("text", "42")]


def test_splitter_finish_releases_held_back_text() -> None:
    splitter = InlineThinkingSplitter()
    assert splitter.feed("a <thin") == [("text", "a ")]
    assert splitter.finish() == [("text", "<thin")]

    inside = InlineThinkingSplitter()
    inside.feed("<thinking>unfinished</thi")
    assert inside.finish() == [("thinking", "</thi")]
