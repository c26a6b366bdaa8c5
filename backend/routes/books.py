"""Book commands: list, saved, open, choose, ask, draw, close, resume, summary.

Every command returns only the output the reader emitted while handling it.
"""

from fastapi import APIRouter, HTTPException, Request

from .models import AskBody, ChooseBody, CommandResult, OpenBody

router = APIRouter()


def _result(request: Request, ok: bool, output) -> CommandResult:
    reader = request.app.state.runtime.reader
    return CommandResult(ok=ok, state=reader.state.value, output=output)


@router.get("/books")
async def list_books(request: Request):
    """List the books the reader carries."""
    reader = request.app.state.runtime.reader
    return [b.model_dump() for b in reader.available_books()]


@router.get("/books/saved")
async def saved_books(request: Request) -> list[str]:
    """Ids of the books with a saved session for this player."""
    return request.app.state.runtime.store.list_books()


@router.post("/books/open")
async def open_book(request: Request, body: OpenBody) -> CommandResult:
    """Open a carried book; generates page 1 or re-renders the current page."""
    runtime = request.app.state.runtime
    if runtime.reader.find_book(body.book) is None:
        raise HTTPException(404, "Book not found")
    with runtime.sink.capture() as output:
        ok = await runtime.reader.open(body.book)
    return _result(request, ok, output)


@router.post("/books/choose")
async def choose(request: Request, body: ChooseBody) -> CommandResult:
    """Pick a choice on the current page by number, id, or label prefix."""
    runtime = request.app.state.runtime
    with runtime.sink.capture() as output:
        ok = await runtime.reader.choose(body.choice)
    return _result(request, ok, output)


@router.post("/books/ask")
async def ask(request: Request, body: AskBody) -> CommandResult:
    """Ask the book's narrator a question about the current page."""
    runtime = request.app.state.runtime
    with runtime.sink.capture() as output:
        answer = await runtime.reader.ask(body.question)
    return _result(request, answer is not None, output)


@router.post("/books/draw")
async def draw(request: Request) -> CommandResult:
    """Illustrate the current page."""
    runtime = request.app.state.runtime
    with runtime.sink.capture() as output:
        url = await runtime.reader.draw()
    return _result(request, url is not None, output)


@router.post("/books/close")
async def close_book(request: Request) -> CommandResult:
    """Close the open book. It can be resumed later."""
    runtime = request.app.state.runtime
    with runtime.sink.capture() as output:
        ok = runtime.reader.close()
    return _result(request, ok, output)


@router.post("/books/resume")
async def resume_book(request: Request) -> CommandResult:
    """Reopen the last book at its current page."""
    runtime = request.app.state.runtime
    with runtime.sink.capture() as output:
        ok = runtime.reader.resume()
    return _result(request, ok, output)


@router.get("/books/summary")
async def summary(request: Request):
    """Title, seed, choice path and page count of the last opened book."""
    runtime = request.app.state.runtime
    with runtime.sink.capture():
        result = runtime.reader.summary()
    if result is None:
        raise HTTPException(404, "No book is open")
    return result
