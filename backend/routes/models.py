"""Pydantic request/response models for API endpoints."""

from pydantic import BaseModel

from qmud.presentation import OutputEntry


class OpenBody(BaseModel):
    book: str


class ChooseBody(BaseModel):
    choice: str


class AskBody(BaseModel):
    question: str


class LoginBody(BaseModel):
    api_key: str


class UpdateSettings(BaseModel):
    text_model: str | None = None
    image_model: str | None = None


class CommandResult(BaseModel):
    ok: bool
    state: str
    output: list[OutputEntry]
