import json

from streamkoppler.conformance import fix_chunk, fix_line, normalize_chunk_object


def _payload(line: str) -> dict:
    assert line.startswith("data: ")
    return json.loads(line[6:])


def test_missing_space_after_data_colon_is_added() -> None:
    line = fix_line('data:{"choices":[{"index":0,"delta":{"content":"x"}}]}')
    assert _payload(line) == {"choices": [{"index": 0, "delta": {"content": "x"}}]}


def test_done_marker_passes_through() -> None:
    assert fix_line("data:[DONE]") == "data: [DONE]"
    assert fix_line("data: [DONE]") == "data: [DONE]"


def test_non_data_lines_pass_through() -> None:
    assert fix_line("event: foo") == "event: foo"
    assert fix_line("") == ""


def test_unparseable_payload_is_left_alone() -> None:
    assert fix_line("data: {broken") == "data: {broken"


def test_message_shape_is_converted_to_delta() -> None:
    line = fix_line('data: {"choices":[{"index":0,"message":{"role":"assistant","content":"hi"}}]}')
    assert _payload(line)["choices"][0] == {"index": 0, "delta": {"role": "assistant", "content": "hi"}}


def test_finish_only_choice_gets_assistant_delta() -> None:
    obj = {"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]}
    assert normalize_chunk_object(obj) is True
    assert obj["choices"][0]["delta"] == {"role": "assistant", "content": ""}


def test_finish_choice_without_role_gets_role() -> None:
    obj = {"choices": [{"index": 0, "delta": {"content": "x"}, "finish_reason": "stop"}]}
    assert normalize_chunk_object(obj) is True
    assert obj["choices"][0]["delta"]["role"] == "assistant"


def test_empty_delta_choice_without_finish_is_dropped() -> None:
    obj = {"choices": [{"index": 0, "delta": {"content": "a"}}, {"index": 1, "delta": {}}]}
    assert normalize_chunk_object(obj) is True
    assert obj["choices"] == [{"index": 0, "delta": {"content": "a"}}]


def test_single_choice_index_is_forced_to_zero() -> None:
    obj = {"choices": [{"index": 3, "delta": {"content": "a"}}]}
    assert normalize_chunk_object(obj) is True
    assert obj["choices"][0]["index"] == 0


def test_conforming_chunk_is_unchanged() -> None:
    obj = {"choices": [{"index": 0, "delta": {"role": "assistant", "content": "a"}}]}
    assert normalize_chunk_object(obj) is False
    line = 'data: {"choices": [{"index": 0, "delta": {"content": "a"}}]}'
    assert fix_line(line) == line


def test_fix_chunk_repairs_every_record() -> None:
    text = 'data:{"choices":[{"delta":{"content":"a"}}]}\n\ndata:[DONE]\n\n'
    fixed = fix_chunk(text)
    lines = [line for line in fixed.split("\n") if line]
    assert _payload(lines[0])["choices"][0]["index"] == 0
    assert lines[1] == "data: [DONE]"
