from __future__ import annotations

import asyncio
import json
import time
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

app = FastAPI(title="mock-upstream")

# Point providers at http://127.0.0.1:8091 and send {"scenario": "..."} to pick a replay.


def _sse(data: Any, event: str | None = None, *, space: bool = True) -> str:
    body = data if isinstance(data, str) else json.dumps(data)
    prefix = f"event: {event}\n" if event else ""
    sep = " " if space else ""
    return f"{prefix}data:{sep}{body}\n\n"


def _split(text: str, size: int) -> list[str]:
    return [text[i : i + size] for i in range(0, len(text), size)]


def _anthropic_events(scenario: str) -> list[str]:
    out = [
        _sse({"type": "message_start", "message": {"usage": {"input_tokens": 12}}}, "message_start"),
        _sse({"type": "content_block_start", "index": 0, "content_block": {"type": "thinking"}}, "content_block_start"),
    ]
    for piece in _split("The user greets me, a short reply will do.", 4):
        out.append(
            _sse(
                {"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta", "thinking": piece}},
                "content_block_delta",
            )
        )
    out.append(
        _sse(
            {"type": "content_block_delta", "index": 0, "delta": {"type": "signature_delta", "signature": "sig-1"}},
            "content_block_delta",
        )
    )
    out.append(_sse({"type": "content_block_stop", "index": 0}, "content_block_stop"))
    out.append(_sse({"type": "content_block_start", "index": 1, "content_block": {"type": "text"}}, "content_block_start"))
    if scenario == "malformed":
        out.append("event: content_block_delta\ndata: {not json\n\n")
    for piece in ("Hi", " there"):
        out.append(
            _sse(
                {"type": "content_block_delta", "index": 1, "delta": {"type": "text_delta", "text": piece}},
                "content_block_delta",
            )
        )
    out.append(_sse({"type": "content_block_stop", "index": 1}, "content_block_stop"))
    out.append(_sse({"type": "content_block_start", "index": 2, "content_block": {"type": "tool_use", "id": "toolu_1", "name": "get_weather"}}, "content_block_start"))
    for piece in _split('{"city": "Berlin"}', 5):
        out.append(
            _sse(
                {"type": "content_block_delta", "index": 2, "delta": {"type": "input_json_delta", "partial_json": piece}},
                "content_block_delta",
            )
        )
    out.append(_sse({"type": "content_block_stop", "index": 2}, "content_block_stop"))
    out.append(_sse({"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 31}}, "message_delta"))
    out.append(_sse({"type": "message_stop"}, "message_stop"))
    return out


def _openai_events(scenario: str) -> list[str]:
    def chunk(delta: dict[str, Any], finish: str | None = None) -> dict[str, Any]:
        return {"id": "chatcmpl-mock", "choices": [{"index": 0, "delta": delta, "finish_reason": finish}]}

    space = scenario != "nospace"
    out = [_sse(chunk({"role": "assistant", "reasoning_content": "Checking the weather tool."}), space=space)]
    out.append(_sse(chunk({"content": "<think>inline reasoning</think>Let me look that up."}), space=space))
    out.append(_sse(chunk({"tool_calls": [{"index": 0, "id": "call_1", "function": {"name": "get_weather"}}]}), space=space))
    fragments = ['{"city":', '{"city": "Ber', 'lin"}']
    if scenario != "duplicates":
        fragments = ['{"city":', ' "Ber', 'lin"}']
    for fragment in fragments:
        out.append(_sse(chunk({"tool_calls": [{"index": 0, "function": {"arguments": fragment}}]}), space=space))
    if scenario == "malformed":
        out.append("data: {\"choices\": [\n\n")
    out.append(_sse(chunk({}, "tool_calls"), space=space))
    out.append(_sse({"id": "chatcmpl-mock", "choices": [], "usage": {"prompt_tokens": 9, "completion_tokens": 14}}, space=space))
    out.append(_sse("[DONE]", space=space))
    return out


def _responses_events(scenario: str) -> list[str]:
    out = [_sse({"type": "response.created", "response": {"id": "resp_mock"}}, "response.created")]
    for piece in _split("Thinking about which tool fits.", 6):
        out.append(_sse({"type": "response.reasoning_summary_text.delta", "delta": piece}, "response.reasoning_summary_text.delta"))
    out.append(_sse({"type": "response.reasoning_summary_text.done"}, "response.reasoning_summary_text.done"))
    out.append(_sse({"type": "response.output_text.delta", "delta": "Calling the tool."}, "response.output_text.delta"))
    item = {"type": "function_call", "id": "fc_1", "call_id": "call_1", "name": "shell"}
    out.append(_sse({"type": "response.output_item.added", "item": item}, "response.output_item.added"))
    for piece in _split('{"command": ["ls", "-la"]}', 7):
        out.append(
            _sse(
                {"type": "response.function_call_arguments.delta", "item_id": "fc_1", "delta": piece},
                "response.function_call_arguments.delta",
            )
        )
    if scenario == "malformed":
        out.append("event: response.output_text.delta\ndata: nope\n\n")
    out.append(_sse({"type": "response.output_item.done", "item": {**item, "arguments": '{"command": ["ls", "-la"]}'}}, "response.output_item.done"))
    out.append(
        _sse(
            {"type": "response.completed", "response": {"usage": {"input_tokens": 20, "output_tokens": 8, "total_tokens": 28}}},
            "response.completed",
        )
    )
    return out


async def _replay(events: list[str], delay: float) -> AsyncGenerator[bytes, None]:
    for event in events:
        # Split records mid-line to exercise reassembly.
        for piece in _split(event, 11):
            yield piece.encode("utf-8")
            await asyncio.sleep(delay)


def _rate_limit_headers() -> dict[str, str]:
    return {
        "x-codex-primary-used-percent": "25",
        "x-codex-primary-window-minutes": "300",
        "x-codex-primary-reset-at": str(int(time.time()) + 3600),
        "x-codex-secondary-used-percent": "60",
        "x-codex-secondary-window-minutes": "10080",
    }


def _usage_limit_response() -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "error": {
                "type": "usage_limit_reached",
                "message": "The usage limit has been reached",
                "plan_type": "plus",
                "resets_in_seconds": 5400,
            }
        },
    )


async def _respond(request: Request, build) -> Any:
    payload = await request.json()
    scenario = str(payload.get("scenario") or "default")
    if scenario == "usage_limit":
        return _usage_limit_response()
    if scenario == "server_error":
        return JSONResponse(status_code=503, content={"error": {"message": "overloaded"}})
    delay = float(payload.get("delay") or 0.01)
    return StreamingResponse(
        _replay(build(scenario), delay),
        media_type="text/event-stream",
        headers=_rate_limit_headers(),
    )


@app.post("/v1/messages")
async def messages(request: Request):
    return await _respond(request, _anthropic_events)


@app.post("/v1/chat/completions")
async def chat_completions(request: Request):
    return await _respond(request, _openai_events)


@app.post("/v1/responses")
async def responses(request: Request):
    return await _respond(request, _responses_events)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8091)
