"""Identity collaborator – supplies a bearer credential and a subject id."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@runtime_checkable
class TokenProvider(Protocol):
    async def get_token(self) -> str | None:
        """Current bearer token, or None when nobody is signed in."""
        ...

    async def get_subject_id(self) -> str:
        """Stable identifier used to key admission control."""
        ...


@dataclass(frozen=True)
class StaticTokenProvider:
    """Fixed credentials, for scripts and tests."""

    token: str | None
    subject_id: str = "anonymous"

    async def get_token(self) -> str | None:
        return self.token

    async def get_subject_id(self) -> str:
        return self.subject_id
