from __future__ import annotations

from typing import Dict, Optional

from fastapi import Request, Response

from latchkey.service.cookies import CookieOptions


class ResponseCookieAdapter:
    """Cookie adapter over one Starlette request/response pair.

    Reads come from the request; writes go to the response FastAPI sends
    back. Writes made earlier in the same request are visible to later
    reads so a flow sees the cookie it just set.
    """

    def __init__(self, request: Request, response: Response) -> None:
        self.request = request
        self.response = response
        # name -> value, None for a deletion
        self._pending: Dict[str, Optional[str]] = {}

    async def get_cookie(self, name: str) -> Optional[str]:
        if name in self._pending:
            return self._pending[name]
        return self.request.cookies.get(name)

    async def set_cookie(self, name: str, value: str, options: CookieOptions) -> None:
        self.response.set_cookie(
            key=name,
            value=value,
            max_age=options.max_age,
            path=options.path,
            secure=options.secure,
            httponly=options.http_only,
            samesite=options.same_site,
        )
        self._pending[name] = value

    async def delete_cookie(self, name: str) -> None:
        self.response.delete_cookie(key=name, path="/")
        self._pending[name] = None
