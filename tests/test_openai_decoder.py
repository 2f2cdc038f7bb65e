import json

from streamkoppler.conformance import fix_line
from streamkoppler.events import TextDelta, ThinkingClosed, ThinkingDelta, ToolCallComplete, ToolCallStart, Usage, collect_text
from streamkoppler.openai_decoder import OpenAIChunkDecoder, parse_chat_chunk
from streamkoppler.sse import SSEFrameDecoder
from streamkoppler.thinking import ThinkingBuffer
from streamkoppler.tool_calls import DuplicateFragmentRepair


def _decoder(**kwargs) -> OpenAIChunkDecoder:
    return OpenAIChunkDecoder(ThinkingBuffer(10, id_factory=lambda: "thinking_1"), **kwargs)


def _chunk(delta: dict, finish_reason: str | None = None) -> dict:
    return {"id": "chatcmpl-1", "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}]}


def _stream(*objects, space: bool = True) -> str:
    sep = " " if space else ""
    lines = [f"data:{sep}{obj if isinstance(obj, str) else json.dumps(obj)}\n\n" for obj in objects]
    return "".join(lines) + f"data:{sep}[DONE]\n\n"


def _run(decoder: OpenAIChunkDecoder, stream: str) -> list:
    frames = SSEFrameDecoder(line_hook=fix_line, split_data_lines=True)
    events = []
    for record in frames.feed(stream) + frames.finish():
        if record.is_done:
            break
        events.extend(decoder.on_record(record))
    events.extend(decoder.on_stream_end())
    return events


def _completes(events: list) -> list[ToolCallComplete]:
    return [event for event in events if isinstance(event, ToolCallComplete)]


def test_tool_call_assembled_from_name_and_argument_chunks() -> None:
    stream = _stream(
        _chunk({"tool_calls": [{"index": 0, "function": {"name": "foo"}}]}),
        _chunk({"tool_calls": [{"index": 0, "function": {"arguments": '{"a":1}'}}]}),
        _chunk({}, "tool_calls"),
    )
    events = _run(_decoder(), stream)

    completes = _completes(events)
    assert len(completes) == 1
    assert completes[0].name == "foo"
    assert completes[0].arguments == {"a": 1}
    starts = [event for event in events if isinstance(event, ToolCallStart)]
    assert len(starts) == 1
    assert starts[0].call_id == completes[0].call_id
    assert starts[0].call_id.startswith("tool_call_0_")


def test_provider_call_id_is_kept() -> None:
    stream = _stream(
        _chunk({"tool_calls": [{"index": 0, "id": "call_9", "function": {"name": "foo", "arguments": "{}"}}]}),
        _chunk({}, "tool_calls"),
    )
    assert [(c.call_id, c.arguments) for c in _completes(_run(_decoder(), stream))] == [("call_9", {})]


def test_reasoning_is_closed_before_content() -> None:
    stream = _stream(_chunk({"role": "assistant", "reasoning_content": "Think"}), _chunk({"content": "Hello"}))
    events = _run(_decoder(), stream)
    assert events[:3] == [
        ThinkingDelta(text="Think", thread_id="thinking_1"),
        ThinkingClosed(thread_id="thinking_1"),
        TextDelta(text="Hello"),
    ]


def test_reasoning_alias_field_is_accepted() -> None:
    chunk = parse_chat_chunk(_chunk({"reasoning": "why"}))
    assert chunk.choices[0].reasoning == "why"


def test_inline_think_tags_are_routed_to_thinking() -> None:
    stream = _stream(_chunk({"content": "<think>abc</think>Answer"}))
    events = _run(_decoder(), stream)
    assert events[:3] == [
        ThinkingDelta(text="abc", thread_id="thinking_1"),
        ThinkingClosed(thread_id="thinking_1"),
        TextDelta(text="Answer"),
    ]


def test_cumulative_argument_resends_are_repaired() -> None:
    stream = _stream(
        _chunk({"tool_calls": [{"index": 0, "id": "call_1", "function": {"name": "get_weather"}}]}),
        _chunk({"tool_calls": [{"index": 0, "function": {"arguments": '{"city":'}}]}),
        _chunk({"tool_calls": [{"index": 0, "function": {"arguments": '{"city": "Ber'}}]}),
        _chunk({"tool_calls": [{"index": 0, "function": {"arguments": 'lin"}'}}]}),
        _chunk({}, "tool_calls"),
    )
    completes = _completes(_run(_decoder(repair=DuplicateFragmentRepair()), stream))
    assert [c.arguments for c in completes] == [{"city": "Berlin"}]


def test_glued_duplicate_arguments_are_repaired_after_parse_failure() -> None:
    stream = _stream(
        _chunk({"tool_calls": [{"index": 0, "id": "call_1", "function": {"name": "f", "arguments": '{"a": 1}'}}]}),
        _chunk({"tool_calls": [{"index": 0, "function": {"arguments": '{"a": 1}'}}]}),
        _chunk({}, "tool_calls"),
    )
    assert [c.arguments for c in _completes(_run(_decoder(), stream))] == [{"a": 1}]


def test_unparseable_arguments_are_dropped() -> None:
    stream = _stream(
        _chunk({"tool_calls": [{"index": 0, "id": "call_1", "function": {"name": "f", "arguments": '{"a": nope}'}}]}),
        _chunk({}, "tool_calls"),
    )
    assert _completes(_run(_decoder(), stream)) == []


def test_two_parallel_tool_calls_complete_in_index_order() -> None:
    stream = _stream(
        _chunk(
            {
                "tool_calls": [
                    {"index": 0, "id": "call_a", "function": {"name": "a", "arguments": '{"x":'}},
                    {"index": 1, "id": "call_b", "function": {"name": "b", "arguments": '{"y":'}},
                ]
            }
        ),
        _chunk({"tool_calls": [{"index": 0, "function": {"arguments": "1}"}}, {"index": 1, "function": {"arguments": "2}"}}]}),
        _chunk({}, "tool_calls"),
    )
    completes = _completes(_run(_decoder(), stream))
    assert [(c.name, c.arguments) for c in completes] == [("a", {"x": 1}), ("b", {"y": 2})]


def test_usage_chunk_is_reported_at_end() -> None:
    stream = _stream(
        _chunk({"content": "hi"}, "stop"),
        {"id": "chatcmpl-1", "choices": [], "usage": {"prompt_tokens": 9, "completion_tokens": 14}},
    )
    events = _run(_decoder(), stream)
    assert events[-1] == Usage(input_tokens=9, output_tokens=14, total_tokens=23)


def test_non_numeric_usage_values_are_ignored() -> None:
    stream = _stream(
        _chunk({"content": "hi"}, "stop"),
        {"id": "chatcmpl-1", "choices": [], "usage": {"prompt_tokens": {"cached": 3}, "completion_tokens": 14}},
        {"id": "chatcmpl-1", "choices": [], "usage": {"total_tokens": "many"}},
    )
    events = _run(_decoder(), stream)
    assert collect_text(events) == "hi"
    assert events[-1] == Usage(input_tokens=0, output_tokens=14, total_tokens=14)


def test_short_resent_argument_fragment_completes_once() -> None:
    stream = _stream(
        _chunk({"tool_calls": [{"index": 0, "id": "c1", "function": {"name": "foo"}}]}),
        _chunk({"tool_calls": [{"index": 0, "function": {"arguments": '{"a":'}}]}),
        _chunk({"tool_calls": [{"index": 0, "function": {"arguments": "1}"}}]}),
        _chunk({"tool_calls": [{"index": 0, "function": {"arguments": "1}"}}]}),
        _chunk({}, "tool_calls"),
    )
    completes = _completes(_run(_decoder(repair=DuplicateFragmentRepair()), stream))
    assert [(c.call_id, c.name, c.arguments) for c in completes] == [("c1", "foo", {"a": 1})]


def test_records_without_space_or_separator_are_repaired() -> None:
    stream = (
        'data:{"choices":[{"delta":{"content":"a"}}]}\n'
        'data:{"choices":[{"message":{"content":"b"}}]}\n'
        "data:[DONE]\n"
    )
    assert collect_text(_run(_decoder(), stream)) == "ab"


def test_malformed_record_does_not_abort_stream() -> None:
    stream = _stream(_chunk({"content": "a"}), "{broken", _chunk({"content": "b"}))
    decoder = _decoder()
    assert collect_text(_run(decoder, stream)) == "ab"
    assert decoder.skipped_records == 1


def test_cancel_drops_partial_tool_call_and_flushes_thinking() -> None:
    decoder = _decoder()
    frames = SSEFrameDecoder(line_hook=fix_line, split_data_lines=True)
    text = "".join(
        f"data: {json.dumps(obj)}\n"
        for obj in (
            _chunk({"reasoning_content": "abc"}),
            _chunk({"tool_calls": [{"index": 0, "id": "call_1", "function": {"name": "f", "arguments": '{"a":'}}]}),
        )
    )
    events = []
    for record in frames.feed(text):
        events.extend(decoder.on_record(record))
    events.extend(decoder.on_cancel())

    assert events[0] == ThinkingDelta(text="abc", thread_id="thinking_1")
    assert events[1] == ThinkingClosed(thread_id="thinking_1")
    assert _completes(events) == []
