"""QMUD Librarian — dev launcher. Serves the API with auto-reload."""

import argparse
import os
import shutil
from pathlib import Path

import uvicorn

from qmud.config import load_settings

ROOT = Path(__file__).parent


def _describe(settings) -> str:
    key = "set" if settings.api_key else "missing (log in through /api/login)"
    relay = settings.aterna_base or "disabled"
    return "\n".join([
        f"  provider:    {settings.api_base}",
        f"  api key:     {key}",
        f"  models:      {settings.text_model} / {settings.image_model}",
        f"  player:      {settings.player_id}",
        f"  data dir:    {settings.data_dir}",
        f"  event relay: {relay}",
    ])


def main():
    parser = argparse.ArgumentParser(description="QMUD Librarian dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Session and config storage directory (default: ./data)")
    parser.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("BACKEND_PORT", "13013")))
    parser.add_argument("--reset", action="store_true",
                        help="Forget every saved book session for the configured player")
    args = parser.parse_args()

    # The reloader re-imports backend.app in a child process; pass the dir by env
    if args.data_dir:
        os.environ["DATA_DIR"] = str(args.data_dir.resolve())
    settings = load_settings()

    if args.reset:
        books = settings.data_dir / "players" / settings.player_id / "books"
        if books.exists():
            shutil.rmtree(books)
        print(f"Cleared saved sessions in {books}")

    print("QMUD Librarian")
    print(_describe(settings))
    print(f"Serving on http://{args.host}:{args.port}/api ...")
    uvicorn.run(
        "backend.app:app",
        host=args.host,
        port=args.port,
        reload=True,
        reload_dirs=[str(ROOT / "qmud"), str(ROOT / "backend")],
    )


if __name__ == "__main__":
    main()
