"""Mock of the Vertex AI generateContent endpoints for manual end-to-end runs.

Start it with ``uvicorn examples.mock_vertex_server:app --port 8090`` and point
the proxy at it with ``VERTEX_AI_BASE_URL=http://127.0.0.1:8090``.
"""

from __future__ import annotations

import json
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

app = FastAPI(title="mock-vertex")


def _reply(payload: dict[str, Any]) -> dict[str, Any]:
    contents: list[dict[str, Any]] = payload.get("contents") or []
    tools: list[dict[str, Any]] = payload.get("tools") or []
    last = contents[-1] if contents else {}
    last_parts = last.get("parts") or []
    declared = [d.get("name") for t in tools for d in t.get("functionDeclarations") or []]

    function_response = next((p["functionResponse"] for p in last_parts if "functionResponse" in p), None)
    text = " ".join(p.get("text", "") for p in last_parts if "text" in p).lower()

    if function_response is not None:
        parts = [{"text": f"Tool result: {json.dumps(function_response.get('response'))}"}]
    elif "add" in text and "add" in declared:
        parts = [{"functionCall": {"name": "add", "args": {"a": 2, "b": 3}}}]
    elif "think" in text:
        parts = [
            {"text": "Considering the question.", "thought": True},
            {"text": "Here is the answer."},
        ]
    else:
        parts = [{"text": "Hello from mock Vertex AI."}]

    return {
        "candidates": [{"content": {"role": "model", "parts": parts}, "finishReason": "STOP"}],
        "usageMetadata": {"promptTokenCount": 1, "candidatesTokenCount": 1},
    }


@app.post("/v1/projects/{project}/locations/{location}/publishers/google/models/{model_action}")
async def generate(project: str, location: str, model_action: str, request: Request):
    model, _, action = model_action.partition(":")
    if model == "missing-model":
        return JSONResponse(
            {"error": {"code": 404, "message": f"Publisher model {model} was not found", "status": "NOT_FOUND"}},
            status_code=404,
        )

    reply = _reply(await request.json())
    if action == "generateContent":
        return JSONResponse(reply)

    async def gen():
        for part in reply["candidates"][0]["content"]["parts"]:
            chunk = {"candidates": [{"content": {"role": "model", "parts": [part]}}]}
            yield f"data: {json.dumps(chunk)}\r\n\r\n"

    return StreamingResponse(gen(), media_type="text/event-stream")
