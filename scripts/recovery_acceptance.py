"""Stream recovery end-to-end acceptance checks (no manual inspection required).

Runs against FastAPI TestClient with a scripted model and search index, and
asserts:
- event order of a full streamed answer
- /api/chat/recover returns exactly the streamed events
- a client that disconnects early can still recover the finished answer
"""

from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path

from fastapi.testclient import TestClient

# Ensure repository root is importable when running as script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from quotecast.main import create_app
from quotecast.schemas.chat import Quote
from quotecast.services.container import build_container
from quotecast.services.prompts import SUGGESTION_PROMPT
from quotecast.services.response_cache import MemoryResponseCache
from quotecast.services.sse import SSEEvent, SSEParser, parse_sse

QUOTES = [Quote(text="All is one. Love is the way.", reference="Ra 1.7", url="https://example.org/1/7")]
DELTAS = ["The short answer: ", "{{QUO", "TE:1:s2:s2}}", " That is the ", "whole of it."]


class ScriptedModel:
    async def complete(self, messages, *, model=None, reasoning_effort=None) -> str:
        if messages[0]["content"] == SUGGESTION_PROMPT:
            return '{"suggestions": ["What is harvest?", "Who is Ra?", "Why love?"]}'
        return "Love is the way."

    async def stream(self, messages, *, model=None, reasoning_effort=None):
        for delta in DELTAS:
            await asyncio.sleep(0.05)
            yield delta

    async def embed(self, text: str) -> list[float]:
        return [0.1, 0.2]


class ScriptedSearch:
    async def search(self, vector, top_k, namespace=None) -> list[Quote]:
        return list(QUOTES)


def _assert_order(events: list[SSEEvent]) -> None:
    kinds = [e.event for e in events]
    assert kinds[0] == "session", f"first event must be session: {kinds}"
    assert kinds[-1] == "done", f"last event must be done: {kinds}"
    assert "meta" in kinds and kinds.index("meta") < kinds.index("suggestions"), kinds
    assert any(e.event == "chunk" and e.data.get("type") == "quote" for e in events), "missing quote chunk"


def _recover(client: TestClient, response_id: str) -> dict:
    resp = client.get("/api/chat/recover", params={"id": response_id})
    assert resp.status_code == 200, f"recover failed: {resp.status_code} {resp.text}"
    return resp.json()


def main() -> None:
    container = build_container(
        llm=ScriptedModel(), search=ScriptedSearch(), cache=MemoryResponseCache()
    )

    with TestClient(create_app(container)) as client:
        # 1) full stream
        resp = client.post("/api/chat", json={"message": "What is love?"})
        assert resp.status_code == 200, f"stream failed: {resp.status_code}"
        events, rest = parse_sse(resp.text)
        assert rest == "", f"trailing partial event: {rest!r}"
        _assert_order(events)

        # 2) recovery mirrors the stream
        response_id = events[0].data["responseId"]
        cached = _recover(client, response_id)
        assert cached["complete"] is True
        assert [(e["event"], e["data"]) for e in cached["events"]] == [(e.event, e.data) for e in events]

        # 3) disconnect after the session event, then recover
        parser = SSEParser()
        early_id = None
        with client.stream("POST", "/api/chat", json={"message": "Why love?"}) as stream:
            for text in stream.iter_text():
                for event in parser.feed(text):
                    if event.event == "session":
                        early_id = event.data["responseId"]
                if early_id:
                    break
        assert early_id, "no session event before disconnect"

        deadline = time.monotonic() + 5
        cached = _recover(client, early_id)
        while not cached["complete"] and time.monotonic() < deadline:
            time.sleep(0.05)
            cached = _recover(client, early_id)
        assert cached["complete"] is True, "generation did not finish after disconnect"
        recovered = [SSEEvent(e["event"], e["data"]) for e in cached["events"]]
        _assert_order(recovered)

    print("recovery acceptance: OK")


if __name__ == "__main__":
    main()
