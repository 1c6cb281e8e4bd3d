from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, AsyncGenerator

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse
from sqlmodel import select

from ..config import resolve_guard_settings
from ..db import get_session
from ..errors import ChapterBusy, ChapterNotFound, ReviewPending
from ..llm import LLMError, build_model_client, resolve_llm_config
from ..models import Book, Chapter, ChatMessage, Run, TraceEvent, chapter_to_json
from ..pipeline.actions import run_action
from ..pipeline.chat import CHAT_SCOPES, answer_chat, apply_to_book
from ..pipeline.continuation import AgentState, run_continuation
from ..pipeline.prompts import AI_ACTIONS
from ..pipeline.session import PipelineSession, SessionRegistry
from ..storage import SqlChapterStore
from ..util import now_utc
from .story_bible import continuity_rules_of, load_entities, sync_from_chapter


logger = logging.getLogger(__name__)

router = APIRouter(tags=["runs"])

RUN_KINDS = ("action", "chat")
RECENT_MESSAGES = 8


@router.get("/api/books/{book_id}/runs")
def list_runs(book_id: str) -> list[Run]:
    with get_session() as session:
        if not session.get(Book, book_id):
            raise HTTPException(status_code=404, detail="Book not found")
        return list(session.exec(select(Run).where(Run.book_id == book_id).order_by(Run.created_at.desc())))


@router.get("/api/runs/{run_id}/events")
def list_run_events(run_id: str) -> list[TraceEvent]:
    with get_session() as session:
        return list(session.exec(select(TraceEvent).where(TraceEvent.run_id == run_id).order_by(TraceEvent.seq.asc())))


@router.get("/api/books/{book_id}/chat")
def list_chat(book_id: str, chapter_id: str | None = None, scope: str | None = None) -> list[ChatMessage]:
    with get_session() as session:
        if not session.get(Book, book_id):
            raise HTTPException(status_code=404, detail="Book not found")
        q = select(ChatMessage).where(ChatMessage.book_id == book_id)
        if scope == "book":
            q = q.where(ChatMessage.chapter_id.is_(None))  # type: ignore[union-attr]
        elif chapter_id:
            q = q.where(ChatMessage.chapter_id == chapter_id)
        return list(session.exec(q.order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())))


def _recent_text(book_id: str, chapter_id: str | None) -> str:
    """Last messages of the chapter's conversation (the book conversation when chapter_id is None)."""
    with get_session() as session:
        q = select(ChatMessage).where(ChatMessage.book_id == book_id)
        if chapter_id is None:
            q = q.where(ChatMessage.chapter_id.is_(None))  # type: ignore[union-attr]
        else:
            q = q.where(ChatMessage.chapter_id == chapter_id)
        rows = list(
            session.exec(q.order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc()).limit(RECENT_MESSAGES))
        )
    return "\n".join(f"{m.role}: {m.content}" for m in reversed(rows))


def _ordered_chapters(book_id: str) -> list[Chapter]:
    with get_session() as session:
        return list(
            session.exec(
                select(Chapter)
                .where(Chapter.book_id == book_id)
                .order_by(Chapter.chapter_index.asc(), Chapter.created_at.asc())
            )
        )


def _book_text(chapters: list[Chapter]) -> str:
    return "\n\n".join(f"Capitulo {i}: {ch.title}\n{ch.plain_text}" for i, ch in enumerate(chapters, start=1))


def _add_chat_message(book_id: str, chapter_id: str | None, role: str, content: str) -> None:
    with get_session() as session:
        session.add(ChatMessage(book_id=book_id, chapter_id=chapter_id, role=role, content=content))
        session.commit()


@router.post("/api/books/{book_id}/runs/stream")
async def stream_run(book_id: str, payload: dict[str, Any], request: Request) -> StreamingResponse:
    """
    Run one guarded pipeline and stream its trace as SSE.

    Supported kinds:
    - action: one AI action (`action` id) through a single guarded write
    - chat: `message` with `scope` chapter (default) or book.
      With auto-apply on, chapter scope runs the continuation agent and book
      scope rewrites every chapter through the guarded write. With auto-apply
      off, the model only answers and nothing is written.
    """
    registry: SessionRegistry = request.app.state.registry

    kind = str(payload.get("kind") or "")
    if kind not in RUN_KINDS:
        raise HTTPException(status_code=400, detail="invalid_kind")
    scope = str(payload.get("scope") or "chapter") if kind == "chat" else "chapter"
    if scope not in CHAT_SCOPES:
        raise HTTPException(status_code=400, detail="invalid_scope")
    chapter_id = str(payload.get("chapter_id") or "") or None
    action_id = str(payload.get("action") or "")
    message = str(payload.get("message") or "").strip()
    idea_text = str(payload.get("idea_text") or "")
    if kind == "action" and action_id not in AI_ACTIONS:
        raise HTTPException(status_code=400, detail="invalid_action")
    if kind == "chat" and not message:
        raise HTTPException(status_code=400, detail="empty_message")

    with get_session() as session:
        book = session.get(Book, book_id)
        if not book:
            raise HTTPException(status_code=404, detail="Book not found")
        ch = session.get(Chapter, chapter_id) if chapter_id else None
        if (chapter_id or scope == "chapter") and (not ch or ch.book_id != book_id):
            raise HTTPException(status_code=404, detail="Chapter not found")

    # Snapshot config at run start to avoid mixing settings changes mid-run.
    settings = resolve_guard_settings(book.settings)
    llm_cfg = resolve_llm_config(book.settings, model=settings.model, temperature=settings.temperature)

    chapters = _ordered_chapters(book_id)
    writes = kind == "action" or settings.auto_apply_chat_changes
    if not writes:
        hold_ids: list[str] = []
    elif scope == "book":
        hold_ids = [c.id for c in chapters]
    else:
        hold_ids = [chapter_id] if chapter_id else []
    if any(registry.is_busy(cid) for cid in hold_ids):
        raise HTTPException(status_code=409, detail="chapter_busy")

    # Book-scope conversation is stored without a chapter.
    chat_chapter_id = chapter_id if scope == "chapter" else None

    with get_session() as session:
        run = Run(book_id=book_id, chapter_id=chapter_id, kind=kind, status="running")
        session.add(run)
        session.commit()
        session.refresh(run)

    async def gen() -> AsyncGenerator[bytes, None]:
        seq = 0
        queue: asyncio.Queue[bytes | None] = asyncio.Queue()

        def emit(event_type: str, agent: str | None, data: dict[str, Any]) -> bytes:
            nonlocal seq
            seq += 1
            evt = {
                "run_id": run.id,
                "seq": seq,
                "ts": now_utc().isoformat(),
                "type": event_type,
                "agent": agent,
                "data": data,
            }

            # Persist trace.
            with get_session() as s2:
                s2.add(
                    TraceEvent(
                        run_id=run.id,
                        seq=seq,
                        ts=now_utc(),
                        event_type=event_type,
                        agent=agent,
                        payload=data,
                    )
                )
                s2.commit()

            return f"data: {json.dumps(evt, ensure_ascii=False)}\n\n".encode("utf-8")

        def sink(event_type: str, agent: str | None, data: dict[str, Any]) -> None:
            queue.put_nowait(emit(event_type, agent, data))

        def mark_run_finished(status: str, error: str | None = None) -> None:
            with get_session() as s3:
                r3 = s3.get(Run, run.id)
                if r3:
                    r3.status = status
                    r3.finished_at = now_utc()
                    if error:
                        r3.error = error[:500]
                    s3.add(r3)
                    s3.commit()

        def fail(agent: str, msg: str) -> None:
            sink("run_error", agent, {"error": msg})
            mark_run_finished("failed", msg)
            sink("run_completed", "Director", {"status": "failed"})

        def auto_sync(written: list[Chapter]) -> None:
            if not settings.story_bible_auto_sync:
                return
            added: list[dict[str, str]] = []
            for chapter in written:
                _, rows = sync_from_chapter(book_id, chapter)
                added += [{"kind": e.kind, "name": e.name} for e in rows]
            sink("story_bible_synced", "StoryBible", {"added": added})

        async def pipeline() -> None:
            try:
                with registry.hold_chapters(hold_ids):
                    characters, locations = load_entities(book_id)
                    history = _recent_text(book_id, chat_chapter_id)
                    if kind == "chat":
                        _add_chat_message(book_id, chat_chapter_id, "user", message)
                    session = PipelineSession(
                        book_id=book_id,
                        settings=settings,
                        client=build_model_client(llm_cfg),
                        store=SqlChapterStore(book_id),
                        ledger=registry.ledger(book_id),
                        review_gate=registry.review_gate,
                        book_title=book.title,
                        foundation=(book.settings or {}).get("foundation") or {},
                        characters=characters,
                        locations=locations,
                        continuity_rules=continuity_rules_of(book),
                        recent_text=_recent_text(book_id, chat_chapter_id),
                        book_text=_book_text(chapters),
                        emit=sink,
                    )
                    sink(
                        "run_started",
                        "Director",
                        {
                            "kind": kind,
                            "scope": scope,
                            "book_id": book_id,
                            "chapter_id": chapter_id,
                            "applies_changes": writes,
                            "llm": {"provider": llm_cfg.provider, "model": llm_cfg.model, "base_url": llm_cfg.base_url},
                            "safe_mode": settings.ai_safe_mode,
                        },
                    )

                    if kind == "action":
                        result = await run_action(session, chapter_id, action_id, idea_text=idea_text)
                        action = AI_ACTIONS[action_id]
                        if not action.modifies_text:
                            sink("artifact", "Editor", {"artifact_type": "feedback", "action": action_id, "text": result.text})
                            status = "completed"
                        elif result.applied and result.chapter is not None:
                            sink(
                                "artifact",
                                "Editor",
                                {
                                    "artifact_type": "chapter",
                                    "action": action_id,
                                    "chapter": chapter_to_json(result.chapter),
                                    "summary": result.summary_text,
                                },
                            )
                            auto_sync([result.chapter])
                            status = "completed"
                        else:
                            status = "cancelled"
                    elif not writes:
                        answer = await answer_chat(session, message, scope=scope, chapter=ch, history=history)
                        _add_chat_message(book_id, chat_chapter_id, "assistant", answer)
                        sink("artifact", "Chat", {"artifact_type": "chat_answer", "scope": scope, "text": answer})
                        status = "completed"
                    elif scope == "book":
                        book_result = await apply_to_book(session, hold_ids, message)
                        if book_result.state is AgentState.CANCELLED_BY_REVIEW and book_result.stopped_at:
                            position, iteration = book_result.stopped_at
                            reply = f"Cambios descartados en revision (cap {position}, iter {iteration})."
                            status = "cancelled"
                        else:
                            reply = (
                                f"Cambios aplicados automaticamente en todo el libro "
                                f"({len(hold_ids)} capitulos, {book_result.iterations} iteracion/es)."
                            )
                            if book_result.summaries_found:
                                reply += f" Resumenes detectados: {book_result.summaries_found}."
                            status = "completed"
                        _add_chat_message(book_id, None, "assistant", reply)
                        sink(
                            "artifact",
                            "Chat",
                            {
                                "artifact_type": "book",
                                "state": book_result.state.value,
                                "writes": book_result.writes,
                                "chapters": [chapter_to_json(c) for c in book_result.chapters],
                            },
                        )
                        if book_result.writes:
                            auto_sync(book_result.chapters)
                    else:
                        continuous = payload.get("continuous")
                        outcome = await run_continuation(
                            session,
                            chapter_id,
                            message,
                            continuous=continuous if isinstance(continuous, bool) else None,
                        )
                        if outcome.state is AgentState.CANCELLED_BY_REVIEW:
                            reply = f"Cambios descartados en revision (ronda {outcome.rounds})."
                            status = "cancelled"
                        elif outcome.summary_text:
                            reply = f"Resumen de cambios:\n{outcome.summary_text}"
                            status = "completed"
                        else:
                            reply = f'Cambios aplicados automaticamente en "{outcome.chapter.title}".'
                            status = "completed"
                        _add_chat_message(book_id, chapter_id, "assistant", reply)
                        sink(
                            "artifact",
                            "ContinuationAgent",
                            {
                                "artifact_type": "chapter",
                                "state": outcome.state.value,
                                "rounds": outcome.rounds,
                                "chapter": chapter_to_json(outcome.chapter),
                                "summary": outcome.summary_text,
                            },
                        )
                        if status == "completed":
                            auto_sync([outcome.chapter])

                mark_run_finished(status)
                sink("run_completed", "Director", {"status": status})
            except ChapterBusy:
                fail("Director", "chapter_busy")
            except ChapterNotFound:
                fail("Director", "chapter_not_found")
            except ReviewPending:
                fail("SafeModeGate", "review_pending")
            except LLMError as e:
                logger.warning("run %s failed: %s", run.id, e)
                fail("Director", str(e))
            except asyncio.CancelledError:
                mark_run_finished("cancelled", "client_disconnected")
                raise
            except Exception as e:
                logger.exception("run %s crashed", run.id)
                fail("Director", f"{type(e).__name__}: {e}")
            finally:
                queue.put_nowait(None)

        task = asyncio.create_task(pipeline())
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield item
        finally:
            # Client went away: stop the pipeline (a pending review is abandoned).
            if not task.done():
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    return StreamingResponse(gen(), media_type="text/event-stream")
