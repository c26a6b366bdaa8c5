"""Health check, settings, login/logout and player endpoints."""

import httpx
from fastapi import APIRouter, HTTPException, Request

from qmud import config

from .models import LoginBody, UpdateSettings

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings(request: Request):
    """Current model choices and whether a key is available (the key itself is never returned)."""
    runtime = request.app.state.runtime
    return {
        "text_model": runtime.client.text_model,
        "image_model": runtime.client.image_model,
        "api_base": runtime.settings.api_base,
        "has_api_key": runtime.auth.has_credential,
        "ai_enabled": runtime.reader.llm is not None,
    }


@router.patch("/settings")
async def update_settings(request: Request, body: UpdateSettings):
    """Change the text/image model. Persisted in config.json."""
    runtime = request.app.state.runtime
    stored = config.update_config(runtime.settings.data_dir, body.model_dump(exclude_none=True))
    runtime.client.text_model = stored.get("text_model", runtime.client.text_model)
    runtime.client.image_model = stored.get("image_model", runtime.client.image_model)
    return await get_settings(request)


@router.post("/login")
async def login(request: Request, body: LoginBody):
    """Check an API key against the provider's model list, then enable the Librarian."""
    runtime = request.app.state.runtime
    key = body.api_key.strip()
    if not key:
        raise HTTPException(400, "API key is required")

    url = f"{runtime.auth.base_url}/models"
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            resp = await client.get(url, headers={"Authorization": f"Bearer {key}"})
    except httpx.HTTPError:
        raise HTTPException(502, "Cannot reach the LLM provider")
    if resp.status_code != 200:
        raise HTTPException(401, "The provider rejected this API key")

    runtime.auth.login(key)
    runtime.reader.llm = runtime.client
    return {"ok": True}


@router.post("/logout")
async def logout(request: Request):
    """Forget the key and take the Librarian offline."""
    runtime = request.app.state.runtime
    runtime.auth.invalidate()
    runtime.reader.llm = None
    return {"ok": True}


@router.get("/player")
async def player(request: Request):
    """Player stats and inventory, token usage, and the last provider status per channel."""
    runtime = request.app.state.runtime
    return {
        "player": runtime.reader.player.model_dump(),
        "tokens_used": runtime.client.tokens_used,
        "status": runtime.sink.status,
    }
