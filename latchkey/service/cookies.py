from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Protocol


@dataclass(frozen=True)
class CookieOptions:
    http_only: bool = True
    secure: bool = False
    same_site: str = "lax"
    max_age: Optional[int] = None
    path: str = "/"


class CookieAdapter(Protocol):
    """Per-request cookie access supplied by the hosting framework."""

    async def get_cookie(self, name: str) -> Optional[str]:
        ...

    async def set_cookie(self, name: str, value: str, options: CookieOptions) -> None:
        ...

    async def delete_cookie(self, name: str) -> None:
        ...


class MemoryCookies:
    """Dict-backed adapter for scripts, tests and non-HTTP callers."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self.values: Dict[str, str] = dict(initial or {})
        self.options: Dict[str, CookieOptions] = {}

    async def get_cookie(self, name: str) -> Optional[str]:
        return self.values.get(name)

    async def set_cookie(self, name: str, value: str, options: CookieOptions) -> None:
        self.values[name] = value
        self.options[name] = options

    async def delete_cookie(self, name: str) -> None:
        self.values.pop(name, None)
        self.options.pop(name, None)


__all__ = ["CookieAdapter", "CookieOptions", "MemoryCookies"]
