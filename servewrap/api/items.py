from __future__ import annotations

from starlette.requests import Request

from servewrap.errors import HTTPError
from servewrap.models.schemas import Item
from servewrap.writer import ResponseWriter


_ITEMS: dict[str, Item] = {
    "0a1b2c3d4e5f6a7b": Item(id="0a1b2c3d4e5f6a7b", name="widget"),
    "9f8e7d6c5b4a3f2e": Item(id="9f8e7d6c5b4a3f2e", name="gadget"),
}


async def serve_api(writer: ResponseWriter, request: Request) -> BaseException | None:
    parts = [p for p in request.path_params.get("rest", "").split("/") if p]

    if parts == ["hello"]:
        writer.headers["Content-Type"] = "text/plain; charset=utf-8"
        await writer.write("hello\n")
        return None

    if len(parts) == 2 and parts[0] == "items":
        if request.method not in ("GET", "HEAD"):
            return HTTPError(405, "method not allowed", headers={"Allow": "GET, HEAD"})
        item = _ITEMS.get(parts[1])
        if item is None:
            return HTTPError(404, "item not found")
        writer.headers["Content-Type"] = "application/json"
        await writer.write(item.model_dump_json())
        return None

    if parts == ["broken"]:
        # Details stay in the server log; the client only sees a generic 500.
        return RuntimeError("items backend unavailable: dial tcp 10.0.0.7:5432: connection refused")

    return HTTPError(404, "not found")
