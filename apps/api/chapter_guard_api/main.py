from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .db import init_db
from .logging_config import configure_logging
from .pipeline.session import SessionRegistry
from .routers.books import router as books_router
from .routers.chapters import router as chapters_router
from .routers.reviews import router as reviews_router
from .routers.runs import router as runs_router
from .routers.search import router as search_router
from .routers.story_bible import router as story_bible_router
from .storage import SqlChapterStore


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging()
    init_db()
    yield


app = FastAPI(title="chapter-guard API", version=__version__, lifespan=lifespan)
# Undo/redo cursors and the pending review live for the whole process.
app.state.registry = SessionRegistry(SqlChapterStore)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:1420"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/health")
def health():
    return {"ok": True, "service": "chapter-guard-api", "version": __version__}


app.include_router(books_router)
app.include_router(chapters_router)
app.include_router(story_bible_router)
app.include_router(search_router)
app.include_router(runs_router)
app.include_router(reviews_router)
